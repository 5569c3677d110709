"""Orchestration-specific exception types shared across modules."""

from __future__ import annotations

from typing import Any


class DurableError(Exception):
    """Base class for orchestration, entity and callback failures."""


class DuplicateInstanceError(DurableError):
    """Raised when a start request names an instance that is still active."""

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"instance {instance_id} already exists with status {status}")


class InstanceNotFoundError(DurableError):
    """Raised when an operation targets an unknown instance."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"instance {instance_id} not found")


class UnknownFunctionError(DurableError):
    """Raised when no orchestrator, activity or entity is registered under a name."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"no {kind} registered as {name!r}")


class NonDeterminismError(DurableError):
    """Raised when replayed history does not match the orchestrator's decisions."""


class TaskFailure(DurableError):
    """Raised inside an orchestrator when an awaited durable task failed."""

    def __init__(self, name: str, details: dict[str, Any] | None = None):
        self.name = name
        self.details = dict(details or {})
        message = self.details.get("message") or "task failed"
        super().__init__(f"{name}: {message}")

    @property
    def error_type(self) -> str | None:
        return self.details.get("error_type")


class ActivityFailure(TaskFailure):
    """An activity exhausted its retries."""


class SubOrchestrationFailure(TaskFailure):
    """A child orchestration ended in the Failed state."""


class EntityOperationError(DurableError):
    """Raised when an entity operation fails; the entity state is left untouched."""

    def __init__(self, entity_id: str, operation: str, message: str):
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(f"{entity_id}.{operation} failed: {message}")


class CallbackError(DurableError):
    """Base class for callback gateway failures."""

    def __init__(self, token: str, message: str):
        self.token = token
        super().__init__(message)


class UnknownTokenError(CallbackError):
    """No correlation was registered for the token."""

    def __init__(self, token: str):
        super().__init__(token, f"unknown callback token {token}")


class AlreadyConsumedError(CallbackError):
    """The token was already delivered once."""

    def __init__(self, token: str):
        super().__init__(token, f"callback token {token} already consumed")


class CorrelationExpiredError(CallbackError):
    """The token outlived its configured lifetime."""

    def __init__(self, token: str):
        super().__init__(token, f"callback token {token} expired")


class TokenAlreadyRegisteredError(CallbackError):
    """A correlation already exists for the token."""

    def __init__(self, token: str):
        super().__init__(token, f"callback token {token} already registered")
