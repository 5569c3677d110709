"""Environment loading helpers.

Entrypoints (the ASGI factory and scripts) call these explicitly; nothing in
the package reads a `.env` file at import time.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import find_dotenv, load_dotenv


def load_dotenv_if_present(path: str | Path | None = None) -> bool:
    """Load variables from `path` or the nearest `.env`; return True if one was read."""

    if path is not None:
        return load_dotenv(dotenv_path=Path(path), override=False)
    dotenv_path = find_dotenv(filename=".env", usecwd=True)
    if not dotenv_path:
        return False
    return load_dotenv(dotenv_path=dotenv_path, override=False)
