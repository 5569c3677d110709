"""Redis lease that gives each orchestration instance one driver and each entity one worker.

Keys come from `instance_lease_key` and `entity_lease_key` and are stored under
`durable:lease:`, e.g. `durable:lease:instance:approval-1` or
`durable:lease:entity:@Counter@a`. The value is the owning process id built by
the container, and the TTL is INSTANCE_LEASE_TTL_SECONDS.

The engine acquires an instance key before it creates a driver task, refreshes
it at the top of every episode loop and releases it when the driver exits. The
entity store does the same around each worker that drains an operation queue.
A process that stops refreshing (crash, lost connection) loses its keys once the
TTL runs out, and the next signal on another process picks the instance up.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as redis

_REFRESH_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('PEXPIRE', KEYS[1], ARGV[2]) "
    "else return 0 end"
)
_RELEASE_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('DEL', KEYS[1]) "
    "else return 0 end"
)


@dataclass(frozen=True)
class RedisLeaseConfig:
    url: str
    owner_id: str
    ttl_seconds: int
    key_prefix: str = "durable:lease:"


class RedisInstanceLease:
    """Cross-process `InstanceLease` used by the engine and entity store in distributed mode."""

    def __init__(self, config: RedisLeaseConfig, *, client: redis.Redis | None = None):
        self._config = config
        self._client = client
        self._refresh_script = None
        self._release_script = None

    def _ttl_ms(self) -> int:
        return max(1, int(self._config.ttl_seconds * 1000))

    def _full_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._config.url, decode_responses=True)
        return self._client

    async def acquire(self, key: str) -> bool:
        """Take `key` with SET NX PX; re-acquiring a key this process holds resets its TTL."""
        client = self._get_client()
        full_key = self._full_key(key)
        result = await client.set(full_key, self._config.owner_id, nx=True, px=self._ttl_ms())
        if result:
            return True

        # held by this process already
        current = await client.get(full_key)
        if current != self._config.owner_id:
            return False
        await client.pexpire(full_key, self._ttl_ms())
        return True

    def _ensure_scripts(self) -> None:
        if self._refresh_script is not None and self._release_script is not None:
            return
        client = self._get_client()
        self._refresh_script = client.register_script(_REFRESH_LUA)
        self._release_script = client.register_script(_RELEASE_LUA)

    async def refresh(self, key: str) -> bool:
        """Extend `key` only if this process still owns it; False stops the driver or worker."""
        self._ensure_scripts()
        assert self._refresh_script is not None
        result = await self._refresh_script(
            keys=[self._full_key(key)], args=[self._config.owner_id, self._ttl_ms()]
        )
        return int(result or 0) > 0

    async def release(self, key: str) -> None:
        """Delete `key` only if this process owns it; a stale driver never evicts the new owner."""
        self._ensure_scripts()
        assert self._release_script is not None
        await self._release_script(keys=[self._full_key(key)], args=[self._config.owner_id])

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        await client.aclose()
