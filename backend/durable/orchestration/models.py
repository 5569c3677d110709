"""Orchestration state primitives: instances, history events and actions."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import iso_timestamp
from .retries import RetryPolicy


class OrchestrationStatus(str, Enum):
    """Lifecycle states persisted with every instance snapshot."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TERMINATED = "Terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        OrchestrationStatus.COMPLETED,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.TERMINATED,
    }
)


class HistoryEventType(str, Enum):
    ORCHESTRATOR_STARTED = "orchestrator_started"
    EXECUTION_STARTED = "execution_started"
    TASK_SCHEDULED = "task_scheduled"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    SUB_ORCHESTRATION_SCHEDULED = "sub_orchestration_scheduled"
    SUB_ORCHESTRATION_COMPLETED = "sub_orchestration_completed"
    SUB_ORCHESTRATION_FAILED = "sub_orchestration_failed"
    TIMER_CREATED = "timer_created"
    TIMER_FIRED = "timer_fired"
    EVENT_RAISED = "event_raised"
    ENTITY_SIGNALED = "entity_signaled"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_TERMINATED = "execution_terminated"


SCHEDULING_EVENTS = frozenset(
    {
        HistoryEventType.TASK_SCHEDULED,
        HistoryEventType.SUB_ORCHESTRATION_SCHEDULED,
        HistoryEventType.TIMER_CREATED,
        HistoryEventType.ENTITY_SIGNALED,
    }
)

COMPLETION_EVENTS = frozenset(
    {
        HistoryEventType.TASK_COMPLETED,
        HistoryEventType.TASK_FAILED,
        HistoryEventType.SUB_ORCHESTRATION_COMPLETED,
        HistoryEventType.SUB_ORCHESTRATION_FAILED,
        HistoryEventType.TIMER_FIRED,
    }
)


class HistoryEvent(BaseModel):
    """One entry of an instance's append-only history log."""

    model_config = ConfigDict(extra="forbid")

    type: HistoryEventType
    seq: int = 0
    event_id: str = Field(default_factory=lambda: uuid4().hex)
    ts: str = Field(default_factory=iso_timestamp)
    task_id: int | None = None
    name: str | None = None
    input: Any = None
    result: Any = None
    error: dict[str, Any] | None = None
    instance_id: str | None = None
    fire_at: str | None = None
    operation: str | None = None
    retry_policy: RetryPolicy | None = None
    execution_id: str | None = None


class ActionKind(str, Enum):
    SCHEDULE_ACTIVITY = "schedule_activity"
    SCHEDULE_SUB_ORCHESTRATION = "schedule_sub_orchestration"
    CREATE_TIMER = "create_timer"
    SIGNAL_ENTITY = "signal_entity"


ACTION_EVENT_TYPES: dict[ActionKind, HistoryEventType] = {
    ActionKind.SCHEDULE_ACTIVITY: HistoryEventType.TASK_SCHEDULED,
    ActionKind.SCHEDULE_SUB_ORCHESTRATION: HistoryEventType.SUB_ORCHESTRATION_SCHEDULED,
    ActionKind.CREATE_TIMER: HistoryEventType.TIMER_CREATED,
    ActionKind.SIGNAL_ENTITY: HistoryEventType.ENTITY_SIGNALED,
}


class OrchestratorAction(BaseModel):
    """A decision produced by an orchestrator that the engine must carry out."""

    model_config = ConfigDict(extra="forbid")

    kind: ActionKind
    task_id: int
    name: str | None = None
    input: Any = None
    instance_id: str | None = None
    fire_at: str | None = None
    operation: str | None = None
    retry_policy: RetryPolicy | None = None

    @property
    def event_type(self) -> HistoryEventType:
        return ACTION_EVENT_TYPES[self.kind]

    def to_event(self) -> HistoryEvent:
        return HistoryEvent(
            type=self.event_type,
            task_id=self.task_id,
            name=self.name,
            input=self.input,
            instance_id=self.instance_id,
            fire_at=self.fire_at,
            operation=self.operation,
            retry_policy=self.retry_policy,
        )


class ActivityTask(BaseModel):
    """A unit of work dispatched to the activity worker pool."""

    model_config = ConfigDict(extra="forbid")

    instance_id: str
    task_id: int
    name: str
    input: Any = None
    retry_policy: RetryPolicy | None = None
    execution_id: str | None = None


class OrchestrationInstance(BaseModel):
    """Durable instance snapshot persisted after every episode."""

    model_config = ConfigDict(extra="forbid")

    instance_id: str
    name: str
    status: OrchestrationStatus = Field(default=OrchestrationStatus.PENDING)
    input: Any = None
    output: Any = None
    custom_status: Any = None
    error: dict[str, Any] | None = None
    # new for every start of the id; events stamped with another run are dropped
    execution_id: str | None = None
    parent_instance_id: str | None = None
    parent_task_id: int | None = None
    parent_execution_id: str | None = None
    history: list[HistoryEvent] = Field(default_factory=list)
    created_at: str = Field(default_factory=iso_timestamp)
    updated_at: str = Field(default_factory=iso_timestamp)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        """Refresh the updated_at timestamp."""
        self.updated_at = iso_timestamp()

    def append(self, event: HistoryEvent) -> HistoryEvent:
        """Assign the next sequence number and append to history."""
        event.seq = len(self.history) + 1
        self.history.append(event)
        return event

    def mark_running(self) -> None:
        self.status = OrchestrationStatus.RUNNING
        self.touch()

    def mark_completed(self, output: Any) -> None:
        self.status = OrchestrationStatus.COMPLETED
        self.output = output
        self.error = None
        self.touch()

    def mark_failed(self, error: dict[str, Any]) -> None:
        self.status = OrchestrationStatus.FAILED
        self.error = dict(error)
        self.touch()

    def mark_terminated(self, reason: str | None) -> None:
        self.status = OrchestrationStatus.TERMINATED
        self.output = reason
        self.touch()

    def seen_event_ids(self) -> set[str]:
        return {event.event_id for event in self.history}

    def completed_task_ids(self) -> set[int]:
        return {
            event.task_id
            for event in self.history
            if event.type in COMPLETION_EVENTS and event.task_id is not None
        }

    def outstanding(self, event_type: HistoryEventType) -> list[HistoryEvent]:
        """Scheduling events of `event_type` that have no recorded completion yet."""
        done = self.completed_task_ids()
        return [
            event
            for event in self.history
            if event.type == event_type and event.task_id not in done
        ]
