"""Application-wide settings for the orchestration runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip()
    return normalized or default


RuntimeMode = Literal["single_process", "distributed"]

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime configuration for single vs distributed deployments."""

    mode: RuntimeMode
    redis_url: str | None
    instance_lease_ttl_seconds: int
    data_dir: Path
    inbox_poll_seconds: float

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        raw_mode = (_env_str("BACKEND_MODE", "single_process") or "single_process").lower()
        mode: RuntimeMode = "distributed" if raw_mode == "distributed" else "single_process"
        data_dir = _env_str("DURABLE_DATA_DIR")
        return cls(
            mode=mode,
            redis_url=_env_str("REDIS_URL"),
            instance_lease_ttl_seconds=max(5, _env_int("INSTANCE_LEASE_TTL_SECONDS", 30)),
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            inbox_poll_seconds=max(0.05, _env_float("INBOX_POLL_SECONDS", 1.0)),
        )


@dataclass(frozen=True)
class SchedulerSettings:
    """Activity worker pool and default retry configuration."""

    worker_count: int
    max_attempts: int
    backoff_seconds: float
    backoff_coefficient: float
    max_backoff_seconds: float

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        return cls(
            worker_count=max(1, _env_int("ACTIVITY_WORKER_COUNT", 8)),
            max_attempts=max(1, _env_int("ACTIVITY_MAX_ATTEMPTS", 3)),
            backoff_seconds=max(0.0, _env_float("ACTIVITY_BACKOFF_SECONDS", 1.0)),
            backoff_coefficient=max(1.0, _env_float("ACTIVITY_BACKOFF_COEFFICIENT", 2.0)),
            max_backoff_seconds=max(0.0, _env_float("ACTIVITY_MAX_BACKOFF_SECONDS", 30.0)),
        )


@dataclass(frozen=True)
class CallbackSettings:
    """External callback URL and token lifetime."""

    host_base_url: str
    token_ttl_seconds: int | None

    @classmethod
    def from_env(cls) -> "CallbackSettings":
        ttl = _env_int("CALLBACK_TOKEN_TTL_SECONDS", 0)
        return cls(
            host_base_url=(_env_str("HOST_BASE_URL", "http://localhost:8000") or "").rstrip("/"),
            token_ttl_seconds=ttl if ttl > 0 else None,
        )


@dataclass(frozen=True)
class NotificationSettings:
    """Addresses and delivery target for approval notifications."""

    sender_email: str
    approver_email: str
    template_id: str | None
    webhook_url: str | None
    enabled: bool

    @classmethod
    def from_env(cls) -> "NotificationSettings":
        return cls(
            sender_email=_env_str("SENDER_EMAIL_ADDRESS", "noreply@example.com")
            or "noreply@example.com",
            approver_email=_env_str("APPROVER_EMAIL_ADDRESS", "approver@example.com")
            or "approver@example.com",
            template_id=_env_str("NOTIFICATION_TEMPLATE_ID"),
            webhook_url=_env_str("NOTIFICATION_WEBHOOK_URL"),
            enabled=_env_bool("NOTIFICATIONS_ENABLED", True),
        )


@dataclass(frozen=True)
class DemoSettings:
    """Parameters for the approval demo workflow."""

    num_data_files: int
    dataset_width: int
    dataset_height: int
    approval_timeout_seconds: int | None

    @classmethod
    def from_env(cls) -> "DemoSettings":
        timeout = _env_int("APPROVAL_TIMEOUT_SECONDS", 0)
        return cls(
            num_data_files=max(1, _env_int("NUM_DATA_FILES", 3)),
            dataset_width=max(1, _env_int("DATASET_WIDTH", 50)),
            dataset_height=max(1, _env_int("DATASET_HEIGHT", 200)),
            approval_timeout_seconds=timeout if timeout > 0 else None,
        )


class Settings:
    """Container for application settings."""

    def __init__(
        self,
        *,
        runtime: RuntimeSettings,
        scheduler: SchedulerSettings,
        callbacks: CallbackSettings,
        notifications: NotificationSettings,
        demo: DemoSettings,
    ) -> None:
        self.runtime = runtime
        self.scheduler = scheduler
        self.callbacks = callbacks
        self.notifications = notifications
        self.demo = demo

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            runtime=RuntimeSettings.from_env(),
            scheduler=SchedulerSettings.from_env(),
            callbacks=CallbackSettings.from_env(),
            notifications=NotificationSettings.from_env(),
            demo=DemoSettings.from_env(),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return a cached Settings instance built from the current environment."""

    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""

    global _SETTINGS
    _SETTINGS = None
