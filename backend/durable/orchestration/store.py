"""Durable persistence for orchestration instances and their inboxes."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from ..filestore import JsonlQueue, atomic_write_json, file_key, identifier_from, read_json
from .models import HistoryEvent, OrchestrationInstance

logger = logging.getLogger(__name__)


class InstanceStore(Protocol):
    def ensure_base_dir(self) -> None: ...

    def save(self, instance: OrchestrationInstance) -> OrchestrationInstance: ...

    def load(self, instance_id: str) -> OrchestrationInstance | None: ...

    def claim_execution(
        self, instance_id: str, expected: str | None, execution_id: str
    ) -> bool: ...

    def list_instance_ids(self) -> list[str]: ...

    def append_inbox(self, instance_id: str, event: HistoryEvent) -> None: ...

    def peek_inbox(self, instance_id: str) -> list[HistoryEvent]: ...

    def ack_inbox(self, instance_id: str, count: int) -> None: ...

    def delete(self, instance_id: str) -> None: ...


class FileInstanceStore:
    """Persist instance snapshots as JSON files and inboxes as JSONL files."""

    def __init__(self, base_dir: str | Path, *, ensure_dirs: bool = True):
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()
        self._inbox = JsonlQueue(
            self.base_dir, HistoryEvent, lock=self._lock, suffix=".inbox.jsonl"
        )
        if ensure_dirs:
            self.ensure_base_dir()

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, instance_id: str) -> Path:
        return self.base_dir / f"{file_key(instance_id)}.json"

    def _execution_path(self, instance_id: str) -> Path:
        return self.base_dir / f"{file_key(instance_id)}.execution"

    def save(self, instance: OrchestrationInstance) -> OrchestrationInstance:
        """Persist the provided instance snapshot atomically."""
        with self._lock:
            atomic_write_json(self._path(instance.instance_id), instance.model_dump(mode="json"))
        return instance

    def load(self, instance_id: str) -> OrchestrationInstance | None:
        """Load a persisted instance if available."""
        try:
            payload = read_json(self._path(instance_id))
            if payload is None:
                return None
            return OrchestrationInstance.model_validate(payload)
        except (json.JSONDecodeError, ValidationError):
            logger.warning(
                "skipping unreadable instance file",
                extra={"instance_id": instance_id},
            )
            return None

    def claim_execution(self, instance_id: str, expected: str | None, execution_id: str) -> bool:
        """Make `execution_id` the current run if the current run is still `expected`."""
        with self._lock:
            path = self._execution_path(instance_id)
            current = path.read_text(encoding="utf-8").strip() if path.exists() else None
            if current != expected:
                return False
            path.write_text(execution_id, encoding="utf-8")
            return True

    def list_instance_ids(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(
            identifier_from(path.name, ".json") for path in self.base_dir.glob("*.json")
        )

    def append_inbox(self, instance_id: str, event: HistoryEvent) -> None:
        self._inbox.append(instance_id, event)

    def peek_inbox(self, instance_id: str) -> list[HistoryEvent]:
        return self._inbox.peek(instance_id)

    def ack_inbox(self, instance_id: str, count: int) -> None:
        """Drop the first `count` inbox entries once they are committed to history."""
        self._inbox.ack(instance_id, count)

    def delete(self, instance_id: str) -> None:
        """Remove the snapshot and any unprocessed inbox entries."""
        with self._lock:
            self._path(instance_id).unlink(missing_ok=True)
            self._execution_path(instance_id).unlink(missing_ok=True)
        self._inbox.clear(instance_id)
