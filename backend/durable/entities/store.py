"""Persistence for entity records and their operation queues."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from ..filestore import JsonlQueue, atomic_write_json, file_key, identifier_from, read_json
from .models import EntityOperation, EntityRecord

logger = logging.getLogger(__name__)


class EntityRecordStore(Protocol):
    def ensure_base_dir(self) -> None: ...

    def load(self, entity_id: str) -> EntityRecord | None: ...

    def save(self, record: EntityRecord) -> EntityRecord: ...

    def list_entity_ids(self) -> list[str]: ...

    def append_operation(self, entity_id: str, operation: EntityOperation) -> None: ...

    def peek_operations(self, entity_id: str) -> list[EntityOperation]: ...

    def ack_operations(self, entity_id: str, count: int) -> None: ...


def _entity_log_key(entity_id: str) -> dict[str, str]:
    return {"instance_id": entity_id}


class FileEntityRecordStore:
    """One JSON record plus one JSONL operation queue per entity id."""

    def __init__(self, base_dir: str | Path, *, ensure_dirs: bool = True):
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()
        self._queue = JsonlQueue(
            self.base_dir, EntityOperation, lock=self._lock, log_key=_entity_log_key
        )
        if ensure_dirs:
            self.ensure_base_dir()

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, entity_id: str) -> Path:
        return self.base_dir / f"{file_key(entity_id)}.json"

    def load(self, entity_id: str) -> EntityRecord | None:
        try:
            payload = read_json(self._path(entity_id))
            if payload is None:
                return None
            return EntityRecord.model_validate(payload)
        except (json.JSONDecodeError, ValidationError):
            logger.warning("skipping unreadable entity file", extra=_entity_log_key(entity_id))
            return None

    def save(self, record: EntityRecord) -> EntityRecord:
        with self._lock:
            atomic_write_json(self._path(record.entity_id), record.model_dump(mode="json"))
        return record

    def list_entity_ids(self) -> list[str]:
        """Ids with a committed record or a non-empty operation queue."""
        if not self.base_dir.exists():
            return []
        ids = {identifier_from(path.name, ".json") for path in self.base_dir.glob("*.json")}
        ids.update(self._queue.keys())
        return sorted(ids)

    def append_operation(self, entity_id: str, operation: EntityOperation) -> None:
        self._queue.append(entity_id, operation)

    def peek_operations(self, entity_id: str) -> list[EntityOperation]:
        return self._queue.peek(entity_id)

    def ack_operations(self, entity_id: str, count: int) -> None:
        self._queue.ack(entity_id, count)
