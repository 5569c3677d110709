"""Colour-grid data sets written by the approval activities."""

from __future__ import annotations

import json
import random
import threading
from collections import Counter
from pathlib import Path

from ..filestore import atomic_write_json, file_key

PALETTE: tuple[str, ...] = ("red", "orange", "yellow", "green", "blue", "indigo", "violet")

Grid = list[list[str]]


def random_grid(width: int, height: int, rng: random.Random | None = None) -> Grid:
    """Build a `height` x `width` grid of random palette colours."""
    rng = rng or random.Random()
    return [[rng.choice(PALETTE) for _ in range(width)] for _ in range(height)]


def ordered_grid(grid: Grid) -> Grid:
    """Return a grid of the same shape with colours grouped in palette order."""
    if not grid:
        return []
    width = len(grid[0])
    counts = Counter(cell for row in grid for cell in row)
    unknown = set(counts) - set(PALETTE)
    if unknown:
        raise ValueError(f"grid contains colours outside the palette: {sorted(unknown)}")
    cells = [colour for colour in PALETTE for _ in range(counts[colour])]
    return [cells[offset : offset + width] for offset in range(0, len(cells), width)]


class DataSetStore:
    """Stores grids under `{base_dir}/{orchestration_id}/{kind}/{file_name}`."""

    UNORDERED = "unordered"
    ORDERED = "ordered"

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()

    def path(self, orchestration_id: str, kind: str, file_name: str) -> Path:
        return self.base_dir / file_key(orchestration_id) / kind / file_key(file_name)

    def write(self, orchestration_id: str, kind: str, file_name: str, grid: Grid) -> Path:
        path = self.path(orchestration_id, kind, file_name)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, grid)
        return path

    def read(self, orchestration_id: str, kind: str, file_name: str) -> Grid:
        path = self.path(orchestration_id, kind, file_name)
        if not path.exists():
            raise FileNotFoundError(f"missing {kind} data set {file_name} for {orchestration_id}")
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def exists(self, orchestration_id: str, kind: str, file_name: str) -> bool:
        return self.path(orchestration_id, kind, file_name).exists()
