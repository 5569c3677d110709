"""Shared fixtures for the durable runtime tests."""

from __future__ import annotations

import asyncio
import fnmatch
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from durable.approval.notifications import LoggingNotifier
from durable.callbacks.gateway import CallbackGateway
from durable.callbacks.store import FileCorrelationStore
from durable.container import build_container, shutdown, startup
from durable.entities.dispatcher import EntityStore
from durable.entities.store import FileEntityRecordStore
from durable.orchestration.engine import OrchestrationEngine
from durable.orchestration.registry import FunctionRegistry
from durable.orchestration.retries import RetryPolicy
from durable.orchestration.scheduler import ActivityScheduler
from durable.orchestration.store import FileInstanceStore
from durable.settings import (
    CallbackSettings,
    DemoSettings,
    NotificationSettings,
    RuntimeSettings,
    SchedulerSettings,
    Settings,
)


# =============================================================================
# Polling helpers
# =============================================================================


async def eventually(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.02) -> Any:
    """Poll `predicate` on the running loop until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


def wait_until(predicate: Callable[[], Any], timeout: float = 10.0, interval: float = 0.05) -> Any:
    """Blocking variant of `eventually` for TestClient based tests."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if time.monotonic() >= deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        time.sleep(interval)


# =============================================================================
# Settings and container
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        runtime=RuntimeSettings(
            mode="single_process",
            redis_url=None,
            instance_lease_ttl_seconds=30,
            data_dir=tmp_path / "data",
            inbox_poll_seconds=0.05,
        ),
        scheduler=SchedulerSettings(
            worker_count=4,
            max_attempts=3,
            backoff_seconds=0.0,
            backoff_coefficient=1.0,
            max_backoff_seconds=0.0,
        ),
        callbacks=CallbackSettings(host_base_url="http://testserver", token_ttl_seconds=None),
        notifications=NotificationSettings(
            sender_email="sender@example.com",
            approver_email="approver@example.com",
            template_id=None,
            webhook_url=None,
            enabled=True,
        ),
        demo=DemoSettings(
            num_data_files=3,
            dataset_width=4,
            dataset_height=5,
            approval_timeout_seconds=None,
        ),
    )


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest_asyncio.fixture
async def container(settings, notifier):
    """Fully wired runtime with the approval workflow registered."""
    built = build_container(settings=settings, notifier=notifier)
    await startup(built)
    yield built
    await shutdown(built)


# =============================================================================
# Bare engine over a scratch registry
# =============================================================================


@pytest.fixture
def registry() -> FunctionRegistry:
    return FunctionRegistry()


@pytest.fixture
def instance_store(tmp_path: Path) -> FileInstanceStore:
    return FileInstanceStore(tmp_path / "instances")


@pytest_asyncio.fixture
async def engine(registry, instance_store):
    """Engine with a started activity pool; tests register functions on `registry`."""
    scheduler = ActivityScheduler(
        registry,
        worker_count=4,
        default_retry_policy=RetryPolicy(max_attempts=1),
    )
    built = OrchestrationEngine(registry, instance_store, scheduler, poll_seconds=0.05)
    scheduler.start()
    yield built
    await built.shutdown()
    await scheduler.shutdown()


@pytest.fixture
def correlation_store(tmp_path: Path) -> FileCorrelationStore:
    return FileCorrelationStore(tmp_path / "callbacks")


@pytest.fixture
def gateway(correlation_store, engine) -> CallbackGateway:
    built = CallbackGateway(correlation_store, engine, base_url="http://testserver/")
    engine.add_completion_listener(built.release_instance)
    return built


@pytest.fixture
def entity_records(tmp_path: Path) -> FileEntityRecordStore:
    return FileEntityRecordStore(tmp_path / "entities")


@pytest_asyncio.fixture
async def entity_store(registry, entity_records):
    built = EntityStore(registry, entity_records)
    yield built
    await built.shutdown()


# =============================================================================
# In-memory Redis double for the synchronous store client
# =============================================================================


class FakeRedis:
    """Implements the subset of redis-py commands the Redis stores issue."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}

    def get(self, key: str) -> str | None:
        return self.strings.get(key)

    def set(self, key: str, value: str, nx: bool = False, px: int | None = None) -> bool | None:
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for bucket in (self.strings, self.lists, self.sets):
                if key in bucket:
                    del bucket[key]
                    removed += 1
        return removed

    def rpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self.lists.get(key, [])
        stop = len(items) if end == -1 else end + 1
        return list(items[start:stop])

    def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self.lists.get(key, [])
        stop = len(items) if end == -1 else end + 1
        kept = items[start:stop]
        if kept:
            self.lists[key] = kept
        else:
            self.lists.pop(key, None)
        return True

    def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    def srem(self, key: str, *members: str) -> int:
        bucket = self.sets.get(key, set())
        removed = len(bucket.intersection(members))
        bucket.difference_update(members)
        if not bucket:
            self.sets.pop(key, None)
        return removed

    def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    def keys(self, pattern: str = "*") -> list[str]:
        names = [*self.strings, *self.lists, *self.sets]
        return [name for name in names if fnmatch.fnmatch(name, pattern)]

    def register_script(self, source: str) -> Callable[..., int]:
        """The stores register one script: compare-and-set of a string key."""

        def run(keys: list[str], args: list[str]) -> int:
            if self.strings.get(keys[0], "") != args[0]:
                return 0
            self.strings[keys[0]] = args[1]
            return 1

        return run


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
