"""Approval workflow orchestrators.

`ApprovalOrchestration` generates data sets in a child orchestration, asks an
approver through a one-shot callback link and waits for the `ApprovalResult`
event. Approval runs a second fan-out that orders the data sets; rejection,
timeout or a failed approval request end in a rejection confirmation.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import timedelta
from typing import Any

from ..orchestration.context import OrchestrationContext
from ..orchestration.exceptions import ActivityFailure
from ..orchestration.task import Task
from ..schemas import ApprovalResult
from ..settings import DemoSettings
from .counter import COUNTER_ID
from .models import (
    APPROVAL_EVENT,
    COMPLETE_APPROVAL,
    CONFIRM_APPROVAL,
    CONFIRM_REJECTION,
    GENERATE_APPROVAL_REQUEST,
    GENERATE_ORDERED_DATA_SET,
    GENERATE_UNORDERED_DATA_SET,
    REQUEST_APPROVAL,
    ApprovalDecision,
    ApprovalInput,
    ApprovalRequest,
)

Orchestrator = Callable[[OrchestrationContext], Generator[Task, Any, Any]]


def _decision_value(payload: Any) -> str | None:
    if isinstance(payload, dict):
        payload = payload.get("result")
    return payload if isinstance(payload, str) else None


def generate_approval_request(ctx: OrchestrationContext):
    request = ApprovalRequest.model_validate(ctx.get_input())
    tasks = [
        ctx.call_activity(GENERATE_UNORDERED_DATA_SET, data_file.model_dump(by_alias=True))
        for data_file in request.data_files()
    ]
    files = yield ctx.task_all(tasks)
    return files


def complete_approval(ctx: OrchestrationContext):
    request = ApprovalRequest.model_validate(ctx.get_input())
    tasks = [
        ctx.call_activity(GENERATE_ORDERED_DATA_SET, data_file.model_dump(by_alias=True))
        for data_file in request.data_files()
    ]
    files = yield ctx.task_all(tasks)
    return files


def build_approval_orchestration(demo: DemoSettings) -> Orchestrator:
    """Bind the demo defaults used when the client does not supply them."""

    def approval_orchestration(ctx: OrchestrationContext):
        options = ApprovalInput.model_validate(ctx.get_input() or {})
        request = ApprovalRequest(
            orchestration_id=ctx.instance_id,
            num_data_files=options.num_data_files or demo.num_data_files,
        )
        timeout = options.timeout_seconds or demo.approval_timeout_seconds
        ctx.signal_entity(str(COUNTER_ID), "increment")

        ctx.set_custom_status("GeneratingDataSets")
        files = yield ctx.call_sub_orchestrator(
            GENERATE_APPROVAL_REQUEST, request.model_dump(by_alias=True)
        )
        files = sorted(files, key=lambda item: item["fileName"])

        ctx.set_custom_status("AwaitingApproval")
        try:
            yield ctx.call_activity(REQUEST_APPROVAL, files)
        except ActivityFailure as exc:
            ctx.logger.warning("approval request failed error=%s", exc)
            return (yield from _reject(ctx, files, f"approval request failed: {exc}"))

        approval = ctx.wait_for_external_event(APPROVAL_EVENT)
        if timeout:
            timer = ctx.create_timer(timedelta(seconds=timeout))
            winner = yield ctx.task_any([approval, timer])
            if winner is not approval:
                ctx.logger.info("approval timed out after %ss", timeout)
                return (yield from _reject(ctx, files, "approval timed out"))
            result = _decision_value(approval.result)
        else:
            result = _decision_value((yield approval))

        if result != ApprovalResult.APPROVED.value:
            ctx.logger.info("request was rejected result=%s", result)
            return (yield from _reject(ctx, files, f"approver answered {result!r}"))

        ctx.logger.info("request was approved")
        ctx.set_custom_status("CompletingApproval")
        ordered = yield ctx.call_sub_orchestrator(
            COMPLETE_APPROVAL, request.model_dump(by_alias=True)
        )
        yield ctx.call_activity(
            CONFIRM_APPROVAL,
            ApprovalDecision(
                orchestration_id=ctx.instance_id,
                result=ApprovalResult.APPROVED.value,
                files=ordered,
            ).model_dump(mode="json"),
        )
        ctx.set_custom_status(ApprovalResult.APPROVED.value)
        return ApprovalResult.APPROVED.value

    return approval_orchestration


def _reject(ctx: OrchestrationContext, files: list[dict[str, Any]], reason: str):
    yield ctx.call_activity(
        CONFIRM_REJECTION,
        ApprovalDecision(
            orchestration_id=ctx.instance_id,
            result=ApprovalResult.REJECTED.value,
            reason=reason,
            files=files,
        ).model_dump(mode="json"),
    )
    ctx.set_custom_status(ApprovalResult.REJECTED.value)
    return ApprovalResult.REJECTED.value
