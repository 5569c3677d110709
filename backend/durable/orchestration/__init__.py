"""Durable orchestration runtime: replay executor, engine and activity pool."""

from .context import OrchestrationContext
from .engine import OrchestrationEngine
from .exceptions import (
    ActivityFailure,
    DuplicateInstanceError,
    InstanceNotFoundError,
    NonDeterminismError,
    SubOrchestrationFailure,
    TaskFailure,
    UnknownFunctionError,
)
from .executor import ExecutionResult, ExecutionState, OrchestrationExecutor
from .models import (
    HistoryEvent,
    HistoryEventType,
    OrchestrationInstance,
    OrchestrationStatus,
)
from .registry import FunctionRegistry
from .retries import RetryPolicy
from .scheduler import ActivityContext, ActivityScheduler
from .store import FileInstanceStore, InstanceStore
from .task import Task

__all__ = [
    "ActivityContext",
    "ActivityFailure",
    "ActivityScheduler",
    "DuplicateInstanceError",
    "ExecutionResult",
    "ExecutionState",
    "FileInstanceStore",
    "FunctionRegistry",
    "HistoryEvent",
    "HistoryEventType",
    "InstanceNotFoundError",
    "InstanceStore",
    "NonDeterminismError",
    "OrchestrationContext",
    "OrchestrationEngine",
    "OrchestrationExecutor",
    "OrchestrationInstance",
    "OrchestrationStatus",
    "RetryPolicy",
    "SubOrchestrationFailure",
    "Task",
    "TaskFailure",
    "UnknownFunctionError",
]
