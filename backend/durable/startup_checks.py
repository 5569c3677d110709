"""Startup validation to keep deployments predictable."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from redis import Redis
from redis.exceptions import RedisError

from .settings import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)

DATA_SUBDIRS = ("instances", "entities", "callbacks", "datasets")
INT_ENV_VARS = (
    "INSTANCE_LEASE_TTL_SECONDS",
    "ACTIVITY_WORKER_COUNT",
    "ACTIVITY_MAX_ATTEMPTS",
    "CALLBACK_TOKEN_TTL_SECONDS",
    "NUM_DATA_FILES",
    "DATASET_WIDTH",
    "DATASET_HEIGHT",
    "APPROVAL_TIMEOUT_SECONDS",
)
FLOAT_ENV_VARS = (
    "INBOX_POLL_SECONDS",
    "ACTIVITY_BACKOFF_SECONDS",
    "ACTIVITY_BACKOFF_COEFFICIENT",
    "ACTIVITY_MAX_BACKOFF_SECONDS",
)


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _ensure_non_negative_int(name: str) -> None:
    raw = _optional_env(name)
    if raw is None:
        return
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if parsed < 0:
        raise RuntimeError(f"{name} must be non-negative, got {parsed}")


def _ensure_numeric(name: str) -> None:
    raw = _optional_env(name)
    if raw is None:
        return
    try:
        float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be numeric, got {raw!r}") from exc


def _ensure_dir_writable(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    test_file = path / ".startup_write_test"
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError as exc:
        raise RuntimeError(f"Directory {path} is not writable: {exc}") from exc
    finally:
        test_file.unlink(missing_ok=True)


def run_startup_checks() -> None:
    """Fail fast when configuration or storage are invalid."""
    if os.getenv("SKIP_STARTUP_CHECKS") == "1":
        logger.warning("Startup checks skipped via SKIP_STARTUP_CHECKS=1")
        return

    backend_mode = (os.getenv("BACKEND_MODE") or "single_process").strip().lower()
    if backend_mode not in {"single_process", "distributed"}:
        raise RuntimeError(f"BACKEND_MODE must be single_process|distributed, got {backend_mode!r}")

    for var in INT_ENV_VARS:
        _ensure_non_negative_int(var)
    for var in FLOAT_ENV_VARS:
        _ensure_numeric(var)

    data_dir = Path(_optional_env("DURABLE_DATA_DIR") or DEFAULT_DATA_DIR)
    if backend_mode == "single_process":
        for name in DATA_SUBDIRS:
            _ensure_dir_writable(data_dir / name)
    else:
        redis_url = _optional_env("REDIS_URL")
        if redis_url is None:
            raise RuntimeError("REDIS_URL is required when BACKEND_MODE=distributed")
        try:
            Redis.from_url(redis_url, decode_responses=True).ping()
        except RedisError as exc:
            raise RuntimeError(f"Unable to connect to REDIS_URL={redis_url!r}: {exc}") from exc
        _ensure_dir_writable(data_dir / "datasets")

    logger.info(
        "Startup checks passed. Environment and runtime dependencies are valid.",
        extra={"instance_id": "system"},
    )


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    try:
        run_startup_checks()
    except RuntimeError as exc:  # pragma: no cover - CLI guard
        logger.error("Startup check failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
