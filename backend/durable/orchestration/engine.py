"""Durable orchestration engine implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic_core import to_jsonable_python

from ..lease import InstanceLease, NoopInstanceLease, instance_lease_key
from ..schemas import parse_timestamp, utc_now
from .exceptions import (
    DurableError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    UnknownFunctionError,
)
from .executor import ExecutionState, OrchestrationExecutor, error_details
from .models import (
    COMPLETION_EVENTS,
    ActionKind,
    ActivityTask,
    HistoryEvent,
    HistoryEventType,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorAction,
)
from .registry import FunctionRegistry
from .scheduler import ActivityScheduler
from .store import InstanceStore

logger = logging.getLogger(__name__)

CompletionListener = Callable[[OrchestrationInstance], Awaitable[None]]
EntitySignaler = Callable[[str, str, Any], Awaitable[None]]


def _jsonable(value: Any) -> Any:
    return to_jsonable_python(value)


@dataclass
class WorkSignal:
    """Internal signal telling an instance driver to process its inbox."""

    reason: str


@dataclass
class InstanceRuntime:
    """In-memory bookkeeping for an instance with a live driver."""

    instance_id: str
    queue: asyncio.Queue[WorkSignal] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None


class OrchestrationEngine:
    """Runs orchestrators as replayed, event-sourced state machines.

    Every instance has a durable inbox. Starts, activity results, timer fires,
    raised events and terminations are appended to it; a single driver per
    instance turns the inbox into one episode at a time: replay, commit, then
    dispatch the new work.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        store: InstanceStore,
        scheduler: ActivityScheduler,
        *,
        lease: InstanceLease | None = None,
        entity_signaler: EntitySignaler | None = None,
        poll_seconds: float = 1.0,
    ):
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.lease = lease or NoopInstanceLease()
        self.entity_signaler = entity_signaler
        self.poll_seconds = poll_seconds
        self.executor = OrchestrationExecutor(registry)
        self._runtimes: dict[str, InstanceRuntime] = {}
        self._lock = asyncio.Lock()
        self._timers: dict[tuple[str, int], asyncio.TimerHandle] = {}
        self._completion_events: dict[str, asyncio.Event] = {}
        self._listeners: list[CompletionListener] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._closing = False
        scheduler.set_handlers(self._on_activity_completed, self._on_activity_failed)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call `listener` with the final snapshot whenever an instance ends."""
        self._listeners.append(listener)

    # -- client operations ---------------------------------------------------

    async def start_instance(
        self,
        name: str,
        input: Any = None,
        instance_id: str | None = None,
        *,
        parent_instance_id: str | None = None,
        parent_task_id: int | None = None,
        parent_execution_id: str | None = None,
    ) -> str:
        """Create an instance and queue its first episode.

        Every start gets a fresh execution id. The store swaps it in with a
        compare-and-set against the run that was current when the instance was
        loaded, so two engines racing on one id cannot both start it.
        """
        if not self.registry.has_orchestrator(name):
            raise UnknownFunctionError("orchestrator", name)
        instance_id = instance_id or uuid4().hex
        payload = _jsonable(input)
        async with self._lock:
            existing = self.store.load(instance_id)
            if existing is not None and not existing.is_terminal:
                raise DuplicateInstanceError(instance_id, existing.status.value)
            execution_id = uuid4().hex
            previous = existing.execution_id if existing is not None else None
            if not self.store.claim_execution(instance_id, previous, execution_id):
                current = self.store.load(instance_id)
                raise DuplicateInstanceError(
                    instance_id,
                    current.status.value if current else OrchestrationStatus.PENDING.value,
                )
            stale = self.store.peek_inbox(instance_id)
            if stale:
                self.store.ack_inbox(instance_id, len(stale))
            self.store.save(
                OrchestrationInstance(
                    instance_id=instance_id,
                    name=name,
                    input=payload,
                    execution_id=execution_id,
                    parent_instance_id=parent_instance_id,
                    parent_task_id=parent_task_id,
                    parent_execution_id=parent_execution_id,
                )
            )
            self.store.append_inbox(
                instance_id,
                HistoryEvent(
                    type=HistoryEventType.EXECUTION_STARTED,
                    name=name,
                    input=payload,
                    execution_id=execution_id,
                ),
            )
            self._completion_events.pop(instance_id, None)
        self.scheduler.allow_instance(instance_id)
        logger.info(
            "orchestration start queued name=%s replaced=%s",
            name,
            existing is not None,
            extra={"instance_id": instance_id},
        )
        await self._signal(instance_id, "start")
        return instance_id

    def get_status(self, instance_id: str) -> OrchestrationInstance | None:
        """Return the last committed snapshot of an instance."""
        return self.store.load(instance_id)

    async def raise_event(self, instance_id: str, event_name: str, payload: Any = None) -> bool:
        """Append an EventRaised entry; returns False if the instance already ended."""
        instance = self.store.load(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        if instance.is_terminal:
            logger.warning(
                "dropping event for finished instance event=%s status=%s",
                event_name,
                instance.status.value,
                extra={"instance_id": instance_id},
            )
            return False
        await self._deliver(
            instance_id,
            HistoryEvent(
                type=HistoryEventType.EVENT_RAISED,
                name=event_name,
                input=_jsonable(payload),
            ),
        )
        logger.info(
            "external event raised event=%s",
            event_name,
            extra={"instance_id": instance_id},
        )
        return True

    async def terminate(self, instance_id: str, reason: str | None = None) -> bool:
        """Request termination; in-flight activities are not interrupted."""
        instance = self.store.load(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        if instance.is_terminal:
            return False
        await self._deliver(
            instance_id,
            HistoryEvent(type=HistoryEventType.EXECUTION_TERMINATED, input=reason),
        )
        return True

    async def wait_for_completion(
        self, instance_id: str, timeout: float | None = None
    ) -> OrchestrationInstance:
        """Block until the instance reaches a terminal status."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            instance = self.store.load(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)
            if instance.is_terminal:
                return instance
            wait = self.poll_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError(f"instance {instance_id} did not finish in {timeout}s")
                wait = min(wait, remaining)
            event = self._completion_events.setdefault(instance_id, asyncio.Event())
            try:
                await asyncio.wait_for(event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                continue

    def purge_instances(self, *, finished_before: datetime, dry_run: bool = False) -> list[str]:
        """Delete terminal instances last updated before `finished_before`."""
        purged: list[str] = []
        for instance_id in self.store.list_instance_ids():
            instance = self.store.load(instance_id)
            if instance is None or not instance.is_terminal:
                continue
            if parse_timestamp(instance.updated_at) >= finished_before:
                continue
            purged.append(instance_id)
            if not dry_run:
                self.store.delete(instance_id)
                self._completion_events.pop(instance_id, None)
        if purged and not dry_run:
            logger.info(
                "purged finished instances count=%s",
                len(purged),
                extra={"instance_id": "system"},
            )
        return purged

    # -- lifecycle -------------------------------------------------------------

    async def recover(self) -> int:
        """Resume every non-terminal instance found in the store."""
        resumed = 0
        for instance_id in self.store.list_instance_ids():
            instance = self.store.load(instance_id)
            if instance is None or instance.is_terminal:
                continue
            runtime = await self._ensure_runtime(instance_id)
            if runtime is None:
                continue
            await self._redispatch(instance)
            runtime.queue.put_nowait(WorkSignal(reason="recover"))
            resumed += 1
        if resumed:
            logger.info(
                "orchestration recovery resumed=%s",
                resumed,
                extra={"instance_id": "system"},
            )
        return resumed

    async def shutdown(self) -> None:
        self._closing = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = [runtime.task for runtime in self._runtimes.values() if runtime.task]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("orchestration task failed during shutdown")
        self._runtimes.clear()
        self._background.clear()

    # -- drivers -----------------------------------------------------------------

    async def _deliver(self, instance_id: str, event: HistoryEvent) -> None:
        self.store.append_inbox(instance_id, event)
        await self._signal(instance_id, event.type.value)

    async def _signal(self, instance_id: str, reason: str) -> None:
        runtime = await self._ensure_runtime(instance_id)
        if runtime is not None:
            runtime.queue.put_nowait(WorkSignal(reason=reason))

    async def _ensure_runtime(self, instance_id: str) -> InstanceRuntime | None:
        async with self._lock:
            runtime = self._runtimes.get(instance_id)
            if runtime is not None:
                return runtime
            if not await self.lease.acquire(instance_lease_key(instance_id)):
                logger.info(
                    "instance lease unavailable; another worker owns it",
                    extra={"instance_id": instance_id},
                )
                return None
            runtime = InstanceRuntime(instance_id=instance_id)
            self._runtimes[instance_id] = runtime
            runtime.task = asyncio.create_task(
                self._run_driver(runtime), name=f"orchestration-{instance_id}"
            )
            return runtime

    async def _run_driver(self, runtime: InstanceRuntime) -> None:
        instance_id = runtime.instance_id
        lease_key = instance_lease_key(instance_id)
        try:
            while True:
                if not await self.lease.refresh(lease_key):
                    logger.info(
                        "instance lease lost; stopping driver",
                        extra={"instance_id": instance_id},
                    )
                    return
                while not runtime.queue.empty():
                    runtime.queue.get_nowait()
                instance = await self._run_episode(instance_id)
                if instance is None or instance.is_terminal:
                    return
                if self.store.peek_inbox(instance_id):
                    continue
                try:
                    await asyncio.wait_for(runtime.queue.get(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "orchestration driver crashed",
                extra={"instance_id": instance_id},
            )
        finally:
            async with self._lock:
                if self._runtimes.get(instance_id) is runtime:
                    self._runtimes.pop(instance_id, None)
                await self.lease.release(lease_key)
            self._resignal_if_restarted(instance_id)

    def _resignal_if_restarted(self, instance_id: str) -> None:
        if self._closing:
            return
        instance = self.store.load(instance_id)
        if instance is None or instance.is_terminal:
            return
        if not self.store.peek_inbox(instance_id):
            return
        self._spawn(self._signal(instance_id, "restart"))

    async def _run_episode(self, instance_id: str) -> OrchestrationInstance | None:
        instance = self.store.load(instance_id)
        inbox = self.store.peek_inbox(instance_id)
        if instance is None:
            if inbox:
                logger.warning(
                    "discarding inbox of unknown instance events=%s",
                    len(inbox),
                    extra={"instance_id": instance_id},
                )
                self.store.ack_inbox(instance_id, len(inbox))
            return None
        if instance.is_terminal:
            if inbox:
                logger.info(
                    "discarding late events for finished instance events=%s",
                    len(inbox),
                    extra={"instance_id": instance_id},
                )
                self.store.ack_inbox(instance_id, len(inbox))
            return instance
        if not inbox:
            return instance

        new_events = self._dedupe(instance, inbox)
        if not new_events:
            self.store.ack_inbox(instance_id, len(inbox))
            return instance

        termination = next(
            (e for e in new_events if e.type == HistoryEventType.EXECUTION_TERMINATED), None
        )
        if termination is not None:
            instance.append(termination)
            instance.mark_terminated(termination.input)
            self.store.save(instance)
            self.store.ack_inbox(instance_id, len(inbox))
            self.scheduler.cancel_instance(instance_id)
            logger.info(
                "orchestration terminated reason=%s",
                termination.input,
                extra={"instance_id": instance_id},
            )
            await self._finish(instance)
            return instance

        old_count = len(instance.history)
        instance.append(HistoryEvent(type=HistoryEventType.ORCHESTRATOR_STARTED))
        for event in new_events:
            instance.append(event)
            if event.type == HistoryEventType.EXECUTION_STARTED:
                instance.mark_running()

        result = self.executor.execute(
            instance.name,
            instance_id,
            instance.history[:old_count],
            instance.history[old_count:],
        )
        actions = [
            action.model_copy(update={"input": _jsonable(action.input)})
            for action in result.actions
        ]
        for action in actions:
            instance.append(action.to_event())
        instance.custom_status = _jsonable(result.custom_status)

        if result.state == ExecutionState.COMPLETED:
            output = _jsonable(result.output)
            instance.append(
                HistoryEvent(type=HistoryEventType.EXECUTION_COMPLETED, result=output)
            )
            instance.mark_completed(output)
        elif result.state == ExecutionState.FAILED:
            error = result.error or {"error_type": "Unknown", "message": "orchestrator failed"}
            instance.append(HistoryEvent(type=HistoryEventType.EXECUTION_FAILED, error=error))
            instance.mark_failed(error)
        else:
            instance.touch()

        self.store.save(instance)
        self.store.ack_inbox(instance_id, len(inbox))
        logger.info(
            "orchestration episode committed status=%s new_actions=%s history=%s",
            instance.status.value,
            len(actions),
            len(instance.history),
            extra={"instance_id": instance_id},
        )

        await self._dispatch(instance, actions)
        if instance.is_terminal:
            if instance.status == OrchestrationStatus.FAILED:
                logger.error(
                    "orchestration failed error=%s",
                    instance.error,
                    extra={"instance_id": instance_id},
                )
            await self._finish(instance)
        return instance

    @staticmethod
    def _dedupe(
        instance: OrchestrationInstance, inbox: list[HistoryEvent]
    ) -> list[HistoryEvent]:
        seen = instance.seen_event_ids()
        done = instance.completed_task_ids()
        fresh: list[HistoryEvent] = []
        for event in inbox:
            if event.event_id in seen:
                continue
            if event.execution_id is not None and event.execution_id != instance.execution_id:
                logger.info(
                    "dropping event of a previous execution type=%s task_id=%s",
                    event.type.value,
                    event.task_id,
                    extra={"instance_id": instance.instance_id},
                )
                continue
            if event.type in COMPLETION_EVENTS:
                if event.task_id in done:
                    continue
                done.add(event.task_id)  # type: ignore[arg-type]
            seen.add(event.event_id)
            fresh.append(event)
        return fresh

    # -- dispatch --------------------------------------------------------------

    async def _dispatch(
        self, instance: OrchestrationInstance, actions: list[OrchestratorAction]
    ) -> None:
        for action in actions:
            if action.kind == ActionKind.SCHEDULE_ACTIVITY:
                self.scheduler.schedule(
                    ActivityTask(
                        instance_id=instance.instance_id,
                        task_id=action.task_id,
                        name=action.name or "",
                        input=action.input,
                        retry_policy=action.retry_policy,
                        execution_id=instance.execution_id,
                    )
                )
            elif action.kind == ActionKind.SCHEDULE_SUB_ORCHESTRATION:
                await self._start_child(instance, action.task_id, action.name or "", action.input, action.instance_id)
            elif action.kind == ActionKind.CREATE_TIMER:
                self._arm_timer(instance, action.task_id, action.fire_at or "")
            elif action.kind == ActionKind.SIGNAL_ENTITY:
                await self._signal_entity(instance.instance_id, action)

    async def _redispatch(self, instance: OrchestrationInstance) -> None:
        pending = {
            event.task_id
            for event in self.store.peek_inbox(instance.instance_id)
            if event.type in COMPLETION_EVENTS
        }
        for event in instance.outstanding(HistoryEventType.TASK_SCHEDULED):
            if event.task_id in pending:
                continue
            self.scheduler.schedule(
                ActivityTask(
                    instance_id=instance.instance_id,
                    task_id=event.task_id,  # type: ignore[arg-type]
                    name=event.name or "",
                    input=event.input,
                    retry_policy=event.retry_policy,
                    execution_id=instance.execution_id,
                )
            )
        for event in instance.outstanding(HistoryEventType.TIMER_CREATED):
            if event.task_id not in pending:
                self._arm_timer(instance, event.task_id, event.fire_at or "")  # type: ignore[arg-type]
        for event in instance.outstanding(HistoryEventType.SUB_ORCHESTRATION_SCHEDULED):
            if event.task_id not in pending:
                await self._start_child(
                    instance,
                    event.task_id,  # type: ignore[arg-type]
                    event.name or "",
                    event.input,
                    event.instance_id,
                )

    async def _start_child(
        self,
        parent: OrchestrationInstance,
        task_id: int,
        name: str,
        input: Any,
        child_id: str | None,
    ) -> None:
        child_id = child_id or f"{parent.instance_id}:{task_id}"
        existing = self.store.load(child_id)
        # only a child started by this execution of the parent is reused
        if (
            existing is not None
            and existing.parent_instance_id == parent.instance_id
            and existing.parent_execution_id == parent.execution_id
        ):
            if existing.is_terminal:
                await self._notify_parent(existing)
            return
        try:
            await self.start_instance(
                name,
                input,
                child_id,
                parent_instance_id=parent.instance_id,
                parent_task_id=task_id,
                parent_execution_id=parent.execution_id,
            )
        except (DuplicateInstanceError, UnknownFunctionError) as exc:
            await self._deliver(
                parent.instance_id,
                HistoryEvent(
                    type=HistoryEventType.SUB_ORCHESTRATION_FAILED,
                    task_id=task_id,
                    name=name,
                    instance_id=child_id,
                    error=error_details(exc),
                    execution_id=parent.execution_id,
                ),
            )

    def _arm_timer(self, instance: OrchestrationInstance, task_id: int, fire_at: str) -> None:
        instance_id = instance.instance_id
        execution_id = instance.execution_id
        key = (instance_id, task_id)
        if key in self._timers:
            return
        delay = max(0.0, (parse_timestamp(fire_at) - utc_now()).total_seconds())
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            delay,
            lambda: self._spawn(self._fire_timer(instance_id, task_id, fire_at, execution_id)),
        )

    async def _fire_timer(
        self, instance_id: str, task_id: int, fire_at: str, execution_id: str | None
    ) -> None:
        self._timers.pop((instance_id, task_id), None)
        await self._deliver(
            instance_id,
            HistoryEvent(
                type=HistoryEventType.TIMER_FIRED,
                task_id=task_id,
                fire_at=fire_at,
                execution_id=execution_id,
            ),
        )

    async def _signal_entity(self, instance_id: str, action: OrchestratorAction) -> None:
        if self.entity_signaler is None:
            logger.warning(
                "entity signal dropped; no entity store configured entity=%s",
                action.name,
                extra={"instance_id": instance_id},
            )
            return
        try:
            await self.entity_signaler(action.name or "", action.operation or "", action.input)
        except (DurableError, ValueError) as exc:
            logger.error(
                "entity signal rejected entity=%s operation=%s error=%s",
                action.name,
                action.operation,
                exc,
                extra={"instance_id": instance_id},
            )

    # -- completion --------------------------------------------------------------

    async def _on_activity_completed(self, task: ActivityTask, result: Any) -> None:
        await self._deliver(
            task.instance_id,
            HistoryEvent(
                type=HistoryEventType.TASK_COMPLETED,
                task_id=task.task_id,
                name=task.name,
                result=_jsonable(result),
                execution_id=task.execution_id,
            ),
        )

    async def _on_activity_failed(self, task: ActivityTask, error: dict[str, Any]) -> None:
        await self._deliver(
            task.instance_id,
            HistoryEvent(
                type=HistoryEventType.TASK_FAILED,
                task_id=task.task_id,
                name=task.name,
                error=error,
                execution_id=task.execution_id,
            ),
        )

    async def _finish(self, instance: OrchestrationInstance) -> None:
        for key in [key for key in self._timers if key[0] == instance.instance_id]:
            self._timers.pop(key).cancel()
        event = self._completion_events.get(instance.instance_id)
        if event is not None:
            event.set()
        if instance.parent_instance_id:
            await self._notify_parent(instance)
        for listener in list(self._listeners):
            try:
                await listener(instance)
            except Exception:
                logger.exception(
                    "completion listener failed",
                    extra={"instance_id": instance.instance_id},
                )

    async def _notify_parent(self, child: OrchestrationInstance) -> None:
        parent_id = child.parent_instance_id
        if not parent_id:
            return
        if child.status == OrchestrationStatus.COMPLETED:
            event = HistoryEvent(
                type=HistoryEventType.SUB_ORCHESTRATION_COMPLETED,
                task_id=child.parent_task_id,
                name=child.name,
                instance_id=child.instance_id,
                result=child.output,
                execution_id=child.parent_execution_id,
            )
        else:
            error = child.error or {
                "error_type": child.status.value,
                "message": f"sub-orchestration {child.instance_id} {child.status.value.lower()}",
            }
            event = HistoryEvent(
                type=HistoryEventType.SUB_ORCHESTRATION_FAILED,
                task_id=child.parent_task_id,
                name=child.name,
                instance_id=child.instance_id,
                error=error,
                execution_id=child.parent_execution_id,
            )
        await self._deliver(parent_id, event)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
