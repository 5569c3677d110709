"""Activities of the approval workflow.

Activities receive everything they need through `ActivityContext.services`;
they never read configuration from the environment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..callbacks.gateway import CallbackGateway
from ..orchestration.scheduler import ActivityContext
from ..schemas import ApprovalResult
from ..settings import DemoSettings, NotificationSettings
from .datasets import DataSetStore, ordered_grid, random_grid
from .models import APPROVAL_EVENT, ApprovalDecision, DataFile
from .notifications import (
    ApprovalConfirmedNotification,
    ApprovalRequestNotification,
    Notification,
    Notifier,
    RejectionConfirmedNotification,
)

logger = logging.getLogger(__name__)


@dataclass
class ActivityServices:
    """Dependencies handed to approval activities by the container."""

    datasets: DataSetStore
    notifier: Notifier
    gateway: CallbackGateway
    notifications: NotificationSettings
    demo: DemoSettings


def _services(ctx: ActivityContext) -> ActivityServices:
    if not isinstance(ctx.services, ActivityServices):
        raise RuntimeError(f"activity {ctx.name} needs ActivityServices")
    return ctx.services


def _data_files(payload: Any) -> list[DataFile]:
    return sorted(
        (DataFile.model_validate(item) for item in payload or []),
        key=lambda data_file: data_file.file_name,
    )


async def _send(services: ActivityServices, notification: Notification) -> None:
    if not services.notifications.enabled:
        logger.info(
            "notifications disabled; skipping kind=%s",
            notification.kind,
            extra={"instance_id": notification.orchestration_id},
        )
        return
    await services.notifier.send(notification)


def generate_unordered_data_set(ctx: ActivityContext, payload: Any) -> dict[str, Any]:
    services = _services(ctx)
    data_file = DataFile.model_validate(payload)
    logger.info(
        "preparing unordered data file file=%s",
        data_file.file_name,
        extra={"instance_id": data_file.orchestration_id},
    )
    grid = random_grid(services.demo.dataset_width, services.demo.dataset_height)
    services.datasets.write(
        data_file.orchestration_id, DataSetStore.UNORDERED, data_file.file_name, grid
    )
    return data_file.model_dump(by_alias=True)


def generate_ordered_data_set(ctx: ActivityContext, payload: Any) -> dict[str, Any]:
    services = _services(ctx)
    data_file = DataFile.model_validate(payload)
    logger.info(
        "preparing ordered data file file=%s",
        data_file.file_name,
        extra={"instance_id": data_file.orchestration_id},
    )
    grid = services.datasets.read(
        data_file.orchestration_id, DataSetStore.UNORDERED, data_file.file_name
    )
    services.datasets.write(
        data_file.orchestration_id, DataSetStore.ORDERED, data_file.file_name, ordered_grid(grid)
    )
    return data_file.model_dump(by_alias=True)


async def request_approval(ctx: ActivityContext, payload: Any) -> str:
    """Register a callback token and send the approval request; returns the token."""
    services = _services(ctx)
    data_files = _data_files(payload)
    for data_file in data_files:
        if not services.datasets.exists(
            data_file.orchestration_id, DataSetStore.UNORDERED, data_file.file_name
        ):
            raise FileNotFoundError(f"missing data set {data_file.file_name}")

    gateway = services.gateway
    token = gateway.new_token()
    gateway.register_correlation(token, ctx.instance_id, APPROVAL_EVENT)
    notification = ApprovalRequestNotification(
        sender=services.notifications.sender_email,
        recipient=services.notifications.approver_email,
        subject="A new request is awaiting your approval",
        orchestration_id=ctx.instance_id,
        template_id=services.notifications.template_id,
        approved_url=gateway.callback_url(token, ApprovalResult.APPROVED.value),
        rejected_url=gateway.callback_url(token, ApprovalResult.REJECTED.value),
        attachments=[data_file.file_name for data_file in data_files],
    )
    await _send(services, notification)
    logger.info("sent approval request", extra={"instance_id": ctx.instance_id})
    return token


async def confirm_approval(ctx: ActivityContext, payload: Any) -> None:
    services = _services(ctx)
    decision = ApprovalDecision.model_validate(payload)
    ordered = [data_file.file_name for data_file in _ordered_files(services, decision)]
    await _send(
        services,
        ApprovalConfirmedNotification(
            sender=services.notifications.sender_email,
            recipient=services.notifications.approver_email,
            subject="Your approval has been processed",
            orchestration_id=decision.orchestration_id,
            template_id=services.notifications.template_id,
            ordered_files=ordered,
        ),
    )


async def confirm_rejection(ctx: ActivityContext, payload: Any) -> None:
    services = _services(ctx)
    decision = ApprovalDecision.model_validate(payload)
    await _send(
        services,
        RejectionConfirmedNotification(
            sender=services.notifications.sender_email,
            recipient=services.notifications.approver_email,
            subject="The request was rejected",
            orchestration_id=decision.orchestration_id,
            template_id=services.notifications.template_id,
            reason=decision.reason,
        ),
    )


def _ordered_files(services: ActivityServices, decision: ApprovalDecision) -> list[DataFile]:
    return [
        data_file
        for data_file in sorted(decision.files, key=lambda item: item.file_name)
        if services.datasets.exists(
            data_file.orchestration_id, DataSetStore.ORDERED, data_file.file_name
        )
    ]
