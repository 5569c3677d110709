"""JSON file helpers shared by the single-process stores."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, TypeVar
from urllib.parse import quote, unquote

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def file_key(identifier: str) -> str:
    """Encode an identifier so it is safe to use as a file name."""
    return quote(identifier, safe="")


def identifier_from(name: str, suffix: str) -> str:
    return unquote(name[: -len(suffix)])


def atomic_write_json(path: Path, payload: Any) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False)
    tmp_path.replace(path)


def read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


class JsonlQueue(Generic[M]):
    """Append-only JSONL file per key with peek/ack semantics.

    Entries stay on disk until acknowledged, so a crash between processing and
    acknowledging replays them. Malformed lines are logged and dropped.
    """

    suffix = ".queue.jsonl"

    def __init__(
        self,
        base_dir: Path,
        model: type[M],
        *,
        lock: threading.Lock,
        suffix: str | None = None,
        log_key: Callable[[str], dict[str, str]] | None = None,
    ):
        self.base_dir = base_dir
        self.model = model
        self._lock = lock
        if suffix is not None:
            self.suffix = suffix
        self._log_key = log_key or (lambda key: {"instance_id": key})

    def path(self, key: str) -> Path:
        return self.base_dir / f"{file_key(key)}{self.suffix}"

    def keys(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(
            identifier_from(path.name, self.suffix)
            for path in self.base_dir.glob(f"*{self.suffix}")
        )

    def append(self, key: str, item: M) -> None:
        line = json.dumps(item.model_dump(mode="json"), separators=(",", ":"))
        with self._lock:
            with self.path(key).open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.write("\n")

    def peek(self, key: str) -> list[M]:
        with self._lock:
            lines = self._read_lines(key)
        items: list[M] = []
        for line in lines:
            parsed = self._parse(line)
            if parsed is None:
                logger.warning(
                    "skipping malformed queue entry line=%s",
                    line,
                    extra=self._log_key(key),
                )
                continue
            items.append(parsed)
        return items

    def ack(self, key: str, count: int) -> None:
        """Drop the first `count` valid entries (and any malformed ones among them)."""
        if count <= 0:
            return
        with self._lock:
            lines = self._read_lines(key)
            consumed = 0
            index = 0
            while index < len(lines) and consumed < count:
                if self._parse(lines[index]) is not None:
                    consumed += 1
                index += 1
            remaining = lines[index:]
            path = self.path(key)
            if not remaining:
                path.unlink(missing_ok=True)
                return
            tmp_path = path.with_name(path.name + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                for line in remaining:
                    handle.write(line)
                    handle.write("\n")
            tmp_path.replace(path)

    def clear(self, key: str) -> None:
        with self._lock:
            self.path(key).unlink(missing_ok=True)

    def _parse(self, line: str) -> M | None:
        try:
            return self.model.model_validate_json(line)
        except ValidationError:
            return None

    def _read_lines(self, key: str) -> list[str]:
        path = self.path(key)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [line.strip() for line in handle if line.strip()]
