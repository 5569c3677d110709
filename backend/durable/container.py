"""Explicit dependency container for the durable runtime.

This module is side-effect free on import. It provides functions to build and
lifecycle-manage the dependency graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from .approval.activities import ActivityServices
    from .approval.datasets import DataSetStore
    from .approval.notifications import Notifier
    from .callbacks.gateway import CallbackGateway
    from .callbacks.store import CorrelationStore
    from .entities.dispatcher import EntityStore
    from .entities.store import EntityRecordStore
    from .lease import InstanceLease
    from .orchestration.engine import OrchestrationEngine
    from .orchestration.registry import FunctionRegistry
    from .orchestration.scheduler import ActivityScheduler
    from .orchestration.store import InstanceStore
    from .settings import Settings


@dataclass
class DurableContainer:
    """Holds the constructed runtime dependencies."""

    settings: Settings

    data_dir: Path
    instances_dir: Path
    entities_dir: Path
    callbacks_dir: Path
    datasets_dir: Path

    registry: FunctionRegistry
    instance_store: InstanceStore
    entity_records: EntityRecordStore
    correlation_store: CorrelationStore
    lease: InstanceLease

    scheduler: ActivityScheduler
    engine: OrchestrationEngine
    entity_store: EntityStore
    gateway: CallbackGateway

    datasets: DataSetStore
    notifier: Notifier
    services: ActivityServices


def build_container(
    *,
    settings: "Settings" | None = None,
    data_dir: Path | None = None,
    notifier: "Notifier" | None = None,
) -> DurableContainer:
    """Construct the dependency graph without starting background work."""

    # Local imports keep this module side-effect-free on import.
    from .approval import register_approval_workflow
    from .approval.activities import ActivityServices
    from .approval.datasets import DataSetStore
    from .approval.notifications import LoggingNotifier, WebhookNotifier
    from .callbacks.gateway import CallbackGateway
    from .callbacks.store import FileCorrelationStore
    from .entities.dispatcher import EntityStore
    from .entities.store import FileEntityRecordStore
    from .lease import NoopInstanceLease
    from .orchestration.engine import OrchestrationEngine
    from .orchestration.registry import FunctionRegistry
    from .orchestration.retries import RetryPolicy
    from .orchestration.scheduler import ActivityScheduler
    from .orchestration.store import FileInstanceStore
    from .settings import get_settings

    settings = settings or get_settings()
    owner_id = str(uuid4())

    resolved_data_dir = data_dir or settings.runtime.data_dir
    instances_dir = resolved_data_dir / "instances"
    entities_dir = resolved_data_dir / "entities"
    callbacks_dir = resolved_data_dir / "callbacks"
    datasets_dir = resolved_data_dir / "datasets"

    instance_store = FileInstanceStore(instances_dir, ensure_dirs=False)
    entity_records = FileEntityRecordStore(entities_dir, ensure_dirs=False)
    correlation_store = FileCorrelationStore(callbacks_dir, ensure_dirs=False)
    lease = NoopInstanceLease()

    if settings.runtime.mode == "distributed":
        if not settings.runtime.redis_url:
            msg = "BACKEND_MODE=distributed requires REDIS_URL"
            raise ValueError(msg)
        from .distributed.redis_lease import RedisInstanceLease, RedisLeaseConfig
        from .distributed.redis_stores import (
            RedisCorrelationStore,
            RedisEntityRecordStore,
            RedisInstanceStore,
            RedisStoreConfig,
        )

        lease = RedisInstanceLease(
            RedisLeaseConfig(
                url=settings.runtime.redis_url,
                owner_id=owner_id,
                ttl_seconds=settings.runtime.instance_lease_ttl_seconds,
            )
        )
        store_config = RedisStoreConfig(url=settings.runtime.redis_url)
        instance_store = RedisInstanceStore(store_config)
        entity_records = RedisEntityRecordStore(store_config)
        correlation_store = RedisCorrelationStore(store_config)

    default_retry = RetryPolicy(
        max_attempts=settings.scheduler.max_attempts,
        backoff_seconds=settings.scheduler.backoff_seconds,
        backoff_coefficient=settings.scheduler.backoff_coefficient,
        max_backoff_seconds=settings.scheduler.max_backoff_seconds,
    )
    registry = register_approval_workflow(FunctionRegistry(), settings.demo)

    scheduler = ActivityScheduler(
        registry,
        worker_count=settings.scheduler.worker_count,
        default_retry_policy=default_retry,
    )
    entity_store = EntityStore(registry, entity_records, lease=lease)
    engine = OrchestrationEngine(
        registry,
        instance_store,
        scheduler,
        lease=lease,
        entity_signaler=entity_store.signal,
        poll_seconds=settings.runtime.inbox_poll_seconds,
    )
    gateway = CallbackGateway(
        correlation_store,
        engine,
        base_url=settings.callbacks.host_base_url,
        token_ttl_seconds=settings.callbacks.token_ttl_seconds,
    )
    engine.add_completion_listener(gateway.release_instance)

    if notifier is None:
        if settings.notifications.webhook_url:
            notifier = WebhookNotifier(settings.notifications.webhook_url)
        else:
            notifier = LoggingNotifier()
    datasets = DataSetStore(datasets_dir)
    services = ActivityServices(
        datasets=datasets,
        notifier=notifier,
        gateway=gateway,
        notifications=settings.notifications,
        demo=settings.demo,
    )
    scheduler.services = services

    return DurableContainer(
        settings=settings,
        data_dir=resolved_data_dir,
        instances_dir=instances_dir,
        entities_dir=entities_dir,
        callbacks_dir=callbacks_dir,
        datasets_dir=datasets_dir,
        registry=registry,
        instance_store=instance_store,
        entity_records=entity_records,
        correlation_store=correlation_store,
        lease=lease,
        scheduler=scheduler,
        engine=engine,
        entity_store=entity_store,
        gateway=gateway,
        datasets=datasets,
        notifier=notifier,
        services=services,
    )


async def startup(container: DurableContainer, *, recover: bool = True) -> None:
    """Create storage, start workers and resume unfinished work."""

    container.instance_store.ensure_base_dir()
    container.entity_records.ensure_base_dir()
    container.correlation_store.ensure_base_dir()
    if container.settings.runtime.mode == "single_process":
        container.datasets_dir.mkdir(parents=True, exist_ok=True)
    container.scheduler.start()
    if recover:
        await container.entity_store.start()
        await container.engine.recover()


async def shutdown(container: DurableContainer) -> None:
    """Stop background tasks owned by the container."""

    await container.engine.shutdown()
    await container.entity_store.shutdown()
    await container.scheduler.shutdown()
    await container.lease.close()
