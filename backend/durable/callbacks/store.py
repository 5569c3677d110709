"""Persistence for callback correlations."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from ..filestore import atomic_write_json, file_key, read_json
from ..schemas import iso_timestamp
from .models import CorrelationToken

logger = logging.getLogger(__name__)


class CorrelationStore(Protocol):
    def ensure_base_dir(self) -> None: ...

    def create(self, record: CorrelationToken) -> bool:
        """Store `record` unless the token exists; returns False on conflict."""

    def load(self, token: str) -> CorrelationToken | None: ...

    def mark_consumed(self, token: str) -> CorrelationToken | None:
        """Flip the token to consumed; returns None if it was already consumed or missing."""

    def delete(self, token: str) -> None: ...

    def tokens_for_instance(self, instance_id: str) -> list[CorrelationToken]: ...


class FileCorrelationStore:
    """One JSON file per token."""

    def __init__(self, base_dir: str | Path, *, ensure_dirs: bool = True):
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()
        if ensure_dirs:
            self.ensure_base_dir()

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, token: str) -> Path:
        return self.base_dir / f"{file_key(token)}.json"

    def _read(self, path: Path) -> CorrelationToken | None:
        try:
            payload = read_json(path)
            if payload is None:
                return None
            return CorrelationToken.model_validate(payload)
        except (json.JSONDecodeError, ValidationError):
            logger.warning("skipping unreadable correlation file path=%s", path.name)
            return None

    def create(self, record: CorrelationToken) -> bool:
        path = self._path(record.token)
        with self._lock:
            if path.exists():
                return False
            atomic_write_json(path, record.model_dump(mode="json"))
        return True

    def load(self, token: str) -> CorrelationToken | None:
        return self._read(self._path(token))

    def mark_consumed(self, token: str) -> CorrelationToken | None:
        path = self._path(token)
        with self._lock:
            record = self._read(path)
            if record is None or record.consumed:
                return None
            record.consumed = True
            record.consumed_at = iso_timestamp()
            atomic_write_json(path, record.model_dump(mode="json"))
        return record

    def delete(self, token: str) -> None:
        with self._lock:
            self._path(token).unlink(missing_ok=True)

    def tokens_for_instance(self, instance_id: str) -> list[CorrelationToken]:
        if not self.base_dir.exists():
            return []
        records = (self._read(path) for path in sorted(self.base_dir.glob("*.json")))
        return [record for record in records if record and record.instance_id == instance_id]
