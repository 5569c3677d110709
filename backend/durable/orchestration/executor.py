"""Pure replay: (history, new events) -> decisions.

The executor never touches storage or the clock. Given the committed history of
an instance and the events that arrived since the last episode, it re-runs the
orchestrator from the top, feeds recorded results back into it in history
order, and reports the new actions plus the completion state.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .context import OrchestrationContext
from .exceptions import (
    ActivityFailure,
    NonDeterminismError,
    SubOrchestrationFailure,
    UnknownFunctionError,
)
from .models import ActionKind, HistoryEvent, HistoryEventType, OrchestratorAction
from .registry import FunctionRegistry

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """Outcome of one replay episode."""

    state: ExecutionState
    actions: list[OrchestratorAction] = field(default_factory=list)
    output: Any = None
    error: dict[str, Any] | None = None
    custom_status: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.state != ExecutionState.PENDING


_SCHEDULED_KINDS: dict[HistoryEventType, ActionKind] = {
    HistoryEventType.TASK_SCHEDULED: ActionKind.SCHEDULE_ACTIVITY,
    HistoryEventType.SUB_ORCHESTRATION_SCHEDULED: ActionKind.SCHEDULE_SUB_ORCHESTRATION,
    HistoryEventType.TIMER_CREATED: ActionKind.CREATE_TIMER,
    HistoryEventType.ENTITY_SIGNALED: ActionKind.SIGNAL_ENTITY,
}


def error_details(exc: BaseException) -> dict[str, Any]:
    """Serializable summary of an exception for history and status queries."""
    return {"error_type": exc.__class__.__name__, "message": str(exc)}


class OrchestrationExecutor:
    """Replays orchestrator functions against their history."""

    def __init__(self, registry: FunctionRegistry):
        self.registry = registry

    def execute(
        self,
        name: str,
        instance_id: str,
        old_events: Sequence[HistoryEvent],
        new_events: Sequence[HistoryEvent],
    ) -> ExecutionResult:
        try:
            orchestrator = self.registry.get_orchestrator(name)
        except UnknownFunctionError as exc:
            return ExecutionResult(ExecutionState.FAILED, error=error_details(exc))

        ctx = OrchestrationContext(instance_id, name)
        try:
            ctx.is_replaying = True
            for event in old_events:
                self._process(ctx, orchestrator, event)
            ctx.is_replaying = False
            for event in new_events:
                self._process(ctx, orchestrator, event)
        except NonDeterminismError as exc:
            logger.error(
                "non-deterministic orchestrator name=%s error=%s",
                name,
                exc,
                extra={"instance_id": instance_id},
            )
            return ExecutionResult(
                ExecutionState.FAILED,
                error=error_details(exc),
                custom_status=ctx.custom_status,
            )

        if ctx.failure is not None:
            return ExecutionResult(
                ExecutionState.FAILED,
                error=error_details(ctx.failure),
                custom_status=ctx.custom_status,
            )
        actions = ctx.pending_actions
        if ctx.is_complete:
            return ExecutionResult(
                ExecutionState.COMPLETED,
                actions=actions,
                output=ctx.output,
                custom_status=ctx.custom_status,
            )
        return ExecutionResult(
            ExecutionState.PENDING,
            actions=actions,
            custom_status=ctx.custom_status,
        )

    def _process(self, ctx: OrchestrationContext, orchestrator: Any, event: HistoryEvent) -> None:
        if ctx.is_complete and event.type != HistoryEventType.ORCHESTRATOR_STARTED:
            if event.type in _SCHEDULED_KINDS:
                ctx.confirm_scheduled(event, _SCHEDULED_KINDS[event.type])
            return

        etype = event.type
        if etype == HistoryEventType.ORCHESTRATOR_STARTED:
            ctx.set_clock(event)
        elif etype == HistoryEventType.EXECUTION_STARTED:
            ctx.start(orchestrator, event.input)
        elif etype in _SCHEDULED_KINDS:
            ctx.confirm_scheduled(event, _SCHEDULED_KINDS[etype])
        elif etype in (HistoryEventType.TASK_COMPLETED, HistoryEventType.SUB_ORCHESTRATION_COMPLETED):
            ctx.resolve_task(event.task_id, event.seq, result=event.result)  # type: ignore[arg-type]
        elif etype == HistoryEventType.TIMER_FIRED:
            ctx.resolve_task(event.task_id, event.seq, result=event.fire_at)  # type: ignore[arg-type]
        elif etype == HistoryEventType.TASK_FAILED:
            ctx.resolve_task(
                event.task_id,  # type: ignore[arg-type]
                event.seq,
                error=ActivityFailure(event.name or "activity", event.error),
            )
        elif etype == HistoryEventType.SUB_ORCHESTRATION_FAILED:
            ctx.resolve_task(
                event.task_id,  # type: ignore[arg-type]
                event.seq,
                error=SubOrchestrationFailure(event.name or "sub_orchestration", event.error),
            )
        elif etype == HistoryEventType.EVENT_RAISED:
            ctx.raise_event(event.name or "", event.input, event.seq)
