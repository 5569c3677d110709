"""Shared Pydantic schemas and helpers for the HTTP API."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_timestamp() -> str:
    """Return an ISO-8601 timestamp string (UTC)."""
    return utc_now().isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp produced by `iso_timestamp`."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ApprovalResult(str, Enum):
    """Values accepted by the approval callback."""

    APPROVED = "Approved"
    REJECTED = "Rejected"


class CheckStatusResponse(BaseModel):
    """Management links returned when an orchestration is accepted."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    status_query_uri: str = Field(alias="statusQueryGetUri")
    send_event_uri: str = Field(alias="sendEventPostUri")
    terminate_uri: str = Field(alias="terminatePostUri")


class InstanceStatusResponse(BaseModel):
    """Public view of an orchestration instance."""

    model_config = ConfigDict(populate_by_name=True)

    instance_id: str = Field(alias="instanceId")
    name: str
    status: str
    input: Any = None
    output: Any = None
    custom_status: Any = Field(default=None, alias="customStatus")
    error: dict[str, Any] | None = None
    created_at: str = Field(alias="createdAt")
    last_updated_at: str = Field(alias="lastUpdatedAt")
    history: list[dict[str, Any]] | None = None


class TerminateRequest(BaseModel):
    """Body for POST /instances/{instance_id}/terminate."""

    reason: str | None = None


class EntityStateResponse(BaseModel):
    """Last committed state of a durable entity."""

    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(alias="entityId")
    exists: bool
    state: Any = None
    version: int = 0
    pending_operations: int = Field(default=0, alias="pendingOperations")
    last_error: dict[str, Any] | None = Field(default=None, alias="lastError")
