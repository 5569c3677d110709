"""Leases that keep one driver per orchestration instance and one worker per entity.

`single_process` mode uses a no-op implementation.
`distributed` mode uses a Redis-backed lease (see `distributed.redis_lease`).
`MemoryInstanceLease` applies the same owner/TTL rules to several engines that
share one process, e.g. embedded hosts and tests.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol


def instance_lease_key(instance_id: str) -> str:
    return f"instance:{instance_id}"


def entity_lease_key(entity_id: str) -> str:
    return f"entity:{entity_id}"


class InstanceLease(Protocol):
    async def acquire(self, key: str) -> bool:
        """Take `key` for this owner; re-acquiring an owned key extends it."""

    async def refresh(self, key: str) -> bool:
        """Extend `key` if this owner still holds it."""

    async def release(self, key: str) -> None:
        """Drop `key` if this owner holds it."""

    async def close(self) -> None:
        """Release resources held by the lease provider."""


class NoopInstanceLease:
    """Every key is always owned; only valid with a single engine."""

    async def acquire(self, key: str) -> bool:  # noqa: ARG002
        return True

    async def refresh(self, key: str) -> bool:  # noqa: ARG002
        return True

    async def release(self, key: str) -> None:  # noqa: ARG002
        return None

    async def close(self) -> None:
        return None


LeaseTable = dict[str, tuple[str, float]]


class MemoryInstanceLease:
    """Owner-checked leases with expiry held in a table shared between owners."""

    def __init__(
        self,
        owner_id: str,
        *,
        ttl_seconds: float = 30.0,
        table: LeaseTable | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.owner_id = owner_id
        self.ttl_seconds = ttl_seconds
        self.table: LeaseTable = table if table is not None else {}
        self._clock = clock

    def holder(self, key: str) -> str | None:
        entry = self.table.get(key)
        if entry is None:
            return None
        owner, expires_at = entry
        if expires_at <= self._clock():
            self.table.pop(key, None)
            return None
        return owner

    def _extend(self, key: str) -> None:
        self.table[key] = (self.owner_id, self._clock() + self.ttl_seconds)

    async def acquire(self, key: str) -> bool:
        if self.holder(key) not in (None, self.owner_id):
            return False
        self._extend(key)
        return True

    async def refresh(self, key: str) -> bool:
        if self.holder(key) != self.owner_id:
            return False
        self._extend(key)
        return True

    async def release(self, key: str) -> None:
        if self.holder(key) == self.owner_id:
            self.table.pop(key, None)

    async def close(self) -> None:
        owned = [key for key, (owner, _) in self.table.items() if owner == self.owner_id]
        for key in owned:
            self.table.pop(key, None)
