"""Orchestration context handed to orchestrator generators."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Generator, Sequence
from datetime import datetime, timedelta
from typing import Any

from ..schemas import parse_timestamp
from .exceptions import NonDeterminismError
from .models import ActionKind, HistoryEvent, OrchestratorAction
from .retries import RetryPolicy
from .task import DurableTask, ExternalEventTask, Task, WhenAllTask, WhenAnyTask

logger = logging.getLogger(__name__)

_GUID_NAMESPACE = uuid.UUID("9e952958-5e33-4daf-827f-2fa12937b875")


class ReplaySafeLogger(logging.LoggerAdapter):
    """Logger adapter that stays silent while the orchestrator is replaying."""

    def __init__(self, base: logging.Logger, context: "OrchestrationContext"):
        super().__init__(base, {"instance_id": context.instance_id})
        self._context = context

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        if self._context.is_replaying:
            return False
        return super().isEnabledFor(level)

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("instance_id", self._context.instance_id)
        kwargs["extra"] = extra
        return msg, kwargs


class OrchestrationContext:
    """Deterministic API surface for orchestrator code.

    Every scheduling call allocates the next task id. On replay the executor
    matches those ids against the recorded history; any mismatch is a
    non-determinism violation.
    """

    def __init__(self, instance_id: str, name: str):
        self.instance_id = instance_id
        self.name = name
        self.is_replaying = False
        self.current_utc_datetime: datetime | None = None
        self.custom_status: Any = None
        self.logger = ReplaySafeLogger(logging.getLogger(f"orchestrator.{name}"), self)

        self._input: Any = None
        self._next_task_id = 0
        self._guid_counter = 0
        self._pending_actions: dict[int, OrchestratorAction] = {}
        self._pending_tasks: dict[int, DurableTask] = {}
        self._event_waiters: dict[str, list[ExternalEventTask]] = {}
        self._buffered_events: dict[str, list[tuple[Any, int]]] = {}
        self._generator: Generator[Task, Any, Any] | None = None
        self._current_task: Task | None = None

        self.is_complete = False
        self.output: Any = None
        self.failure: BaseException | None = None

    # -- orchestrator facing API ------------------------------------------------

    def get_input(self) -> Any:
        return self._input

    def set_custom_status(self, value: Any) -> None:
        self.custom_status = value

    def new_uuid(self) -> str:
        """Return a replay-stable UUID derived from the instance and clock."""
        self._guid_counter += 1
        stamp = self.current_utc_datetime.isoformat() if self.current_utc_datetime else ""
        name = f"{self.instance_id}_{stamp}_{self._guid_counter}"
        return str(uuid.uuid5(_GUID_NAMESPACE, name))

    def call_activity(
        self,
        name: str,
        input: Any = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> Task:
        return self._schedule(
            ActionKind.SCHEDULE_ACTIVITY,
            name=name,
            input=input,
            retry_policy=retry_policy,
        )

    def call_sub_orchestrator(
        self,
        name: str,
        input: Any = None,
        *,
        instance_id: str | None = None,
    ) -> Task:
        task_id = self._next_task_id + 1
        child_id = instance_id or f"{self.instance_id}:{task_id}"
        return self._schedule(
            ActionKind.SCHEDULE_SUB_ORCHESTRATION,
            name=name,
            input=input,
            instance_id=child_id,
        )

    def create_timer(self, fire_at: datetime | timedelta) -> Task:
        if isinstance(fire_at, timedelta):
            if self.current_utc_datetime is None:
                raise RuntimeError("relative timers need the orchestration clock")
            fire_at = self.current_utc_datetime + fire_at
        return self._schedule(ActionKind.CREATE_TIMER, fire_at=fire_at.isoformat())

    def signal_entity(self, entity_id: str, operation: str, input: Any = None) -> None:
        """Fire-and-forget an operation at a durable entity."""
        self._schedule(
            ActionKind.SIGNAL_ENTITY,
            name=entity_id,
            operation=operation,
            input=input,
        )

    def wait_for_external_event(self, name: str) -> Task:
        task = ExternalEventTask(name)
        buffered = self._buffered_events.get(name)
        if buffered:
            payload, seq = buffered.pop(0)
            task.complete(payload, seq)
        else:
            self._event_waiters.setdefault(name, []).append(task)
        return task

    def task_all(self, tasks: Sequence[Task], *, fail_fast: bool = True) -> Task:
        return WhenAllTask(tasks, fail_fast=fail_fast)

    def task_any(self, tasks: Sequence[Task]) -> Task:
        return WhenAnyTask(tasks)

    # -- executor facing API ----------------------------------------------------

    @property
    def pending_actions(self) -> list[OrchestratorAction]:
        return [self._pending_actions[key] for key in sorted(self._pending_actions)]

    def _schedule(self, kind: ActionKind, **fields: Any) -> DurableTask:
        self._next_task_id += 1
        action = OrchestratorAction(kind=kind, task_id=self._next_task_id, **fields)
        task = DurableTask(action)
        self._pending_actions[action.task_id] = action
        if kind != ActionKind.SIGNAL_ENTITY:
            self._pending_tasks[action.task_id] = task
        else:
            task.complete(None)
        return task

    def start(self, orchestrator: Any, input: Any) -> None:
        self._input = input
        try:
            output = orchestrator(self)
        except Exception as exc:
            self.is_complete = True
            self.failure = exc
            return
        if isinstance(output, Generator):
            self._generator = output
            self._drive(None, None)
        else:
            self._set_complete(output)

    def confirm_scheduled(self, event: HistoryEvent, expected: ActionKind) -> None:
        """Match a recorded scheduling event against a decision made during replay."""
        action = self._pending_actions.pop(event.task_id, None)  # type: ignore[arg-type]
        if action is None:
            raise NonDeterminismError(
                f"history records {event.type.value} task_id={event.task_id} "
                f"name={event.name!r} but the orchestrator did not schedule it"
            )
        if action.kind != expected or action.name != event.name:
            raise NonDeterminismError(
                f"task_id={event.task_id} was recorded as {expected.value} {event.name!r} "
                f"but replay produced {action.kind.value} {action.name!r}"
            )

    def resolve_task(self, task_id: int, seq: int, *, result: Any = None, error: BaseException | None = None) -> bool:
        task = self._pending_tasks.pop(task_id, None)
        if task is None:
            logger.warning(
                "ignoring completion for unknown task task_id=%s",
                task_id,
                extra={"instance_id": self.instance_id},
            )
            return False
        if error is not None:
            task.fail(error, seq)
        else:
            task.complete(result, seq)
        self.resume()
        return True

    def raise_event(self, name: str, payload: Any, seq: int) -> None:
        waiters = self._event_waiters.get(name)
        if waiters:
            task = waiters.pop(0)
            task.complete(payload, seq)
            self.resume()
            return
        self._buffered_events.setdefault(name, []).append((payload, seq))

    def set_clock(self, event: HistoryEvent) -> None:
        self.current_utc_datetime = parse_timestamp(event.ts)

    def resume(self) -> None:
        task = self._current_task
        if self.is_complete or task is None or not task.is_complete:
            return
        self._current_task = None
        if task.is_failed:
            self._drive(None, task.exception)
        else:
            self._drive(task._result, None)

    def _drive(self, value: Any, error: BaseException | None) -> None:
        assert self._generator is not None
        while True:
            try:
                if error is not None:
                    task = self._generator.throw(error)
                else:
                    task = self._generator.send(value)
            except StopIteration as stop:
                self._set_complete(stop.value)
                return
            except Exception as exc:  # orchestrator code raised
                self.is_complete = True
                self.failure = exc
                return
            if not isinstance(task, Task):
                self.is_complete = True
                self.failure = TypeError(
                    f"orchestrators must yield tasks, got {type(task).__name__}"
                )
                return
            if not task.is_complete:
                self._current_task = task
                return
            value, error = (None, task.exception) if task.is_failed else (task._result, None)

    def _set_complete(self, output: Any) -> None:
        self.is_complete = True
        self.output = output
