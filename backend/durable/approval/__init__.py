"""Approval demo workflow: data-set fan-out, human approval and a request counter."""

from __future__ import annotations

from ..orchestration.registry import FunctionRegistry
from ..orchestration.retries import RetryPolicy
from ..settings import DemoSettings
from . import activities
from .activities import ActivityServices
from .counter import COUNTER_ENTITY, COUNTER_ID, Counter
from .models import (
    APPROVAL_EVENT,
    APPROVAL_ORCHESTRATION,
    COMPLETE_APPROVAL,
    CONFIRM_APPROVAL,
    CONFIRM_REJECTION,
    GENERATE_APPROVAL_REQUEST,
    GENERATE_ORDERED_DATA_SET,
    GENERATE_UNORDERED_DATA_SET,
    REQUEST_APPROVAL,
)
from .orchestrators import build_approval_orchestration, complete_approval, generate_approval_request


def register_approval_workflow(
    registry: FunctionRegistry,
    demo: DemoSettings,
    *,
    notification_retry: RetryPolicy | None = None,
) -> FunctionRegistry:
    """Register the approval orchestrators, activities and the counter entity."""
    registry.add_orchestrator(APPROVAL_ORCHESTRATION, build_approval_orchestration(demo))
    registry.add_orchestrator(GENERATE_APPROVAL_REQUEST, generate_approval_request)
    registry.add_orchestrator(COMPLETE_APPROVAL, complete_approval)

    registry.add_activity(GENERATE_UNORDERED_DATA_SET, activities.generate_unordered_data_set)
    registry.add_activity(GENERATE_ORDERED_DATA_SET, activities.generate_ordered_data_set)
    registry.add_activity(
        REQUEST_APPROVAL, activities.request_approval, retry_policy=notification_retry
    )
    registry.add_activity(
        CONFIRM_APPROVAL, activities.confirm_approval, retry_policy=notification_retry
    )
    registry.add_activity(
        CONFIRM_REJECTION, activities.confirm_rejection, retry_policy=notification_retry
    )

    registry.add_entity(COUNTER_ENTITY, Counter)
    return registry


__all__ = [
    "APPROVAL_EVENT",
    "APPROVAL_ORCHESTRATION",
    "ActivityServices",
    "COUNTER_ID",
    "Counter",
    "register_approval_workflow",
]
