"""Approval notifications: typed templates and delivery backends."""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Protocol, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification backend rejects a message."""

    def __init__(self, code: str, details: dict[str, Any] | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(code)


class _Envelope(BaseModel):
    sender: str
    recipient: str
    subject: str
    orchestration_id: str
    template_id: str | None = None


class ApprovalRequestNotification(_Envelope):
    """Asks the approver to follow one of two callback links."""

    kind: Literal["approval_request"] = "approval_request"
    approved_url: str
    rejected_url: str
    attachments: list[str] = Field(default_factory=list)


class ApprovalConfirmedNotification(_Envelope):
    kind: Literal["approval_confirmed"] = "approval_confirmed"
    ordered_files: list[str] = Field(default_factory=list)


class RejectionConfirmedNotification(_Envelope):
    kind: Literal["rejection_confirmed"] = "rejection_confirmed"
    reason: str | None = None


Notification = Annotated[
    Union[
        ApprovalRequestNotification,
        ApprovalConfirmedNotification,
        RejectionConfirmedNotification,
    ],
    Field(discriminator="kind"),
]

notification_adapter: TypeAdapter[Notification] = TypeAdapter(Notification)


class Notifier(Protocol):
    async def send(self, notification: Notification) -> None:
        """Deliver `notification` or raise `NotificationError`."""


class LoggingNotifier:
    """Writes notifications to the log and keeps them for inspection."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "notification kind=%s recipient=%s subject=%s",
            notification.kind,
            notification.recipient,
            notification.subject,
            extra={"instance_id": notification.orchestration_id},
        )

    def last(self, kind: str, orchestration_id: str | None = None) -> Notification | None:
        for notification in reversed(self.sent):
            if notification.kind != kind:
                continue
            if orchestration_id and notification.orchestration_id != orchestration_id:
                continue
            return notification
        return None


class WebhookNotifier:
    """POSTs the notification JSON to a webhook (mail relay, chat hook, ...)."""

    def __init__(self, url: str, *, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> None:
        payload = notification_adapter.dump_python(notification, mode="json")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=payload)
            except httpx.HTTPError as exc:
                raise NotificationError("webhook_unreachable", details={"error": str(exc)}) from exc
        if response.status_code >= 400:
            raise NotificationError(
                "webhook_rejected",
                details={"status": response.status_code, "body": response.text[:200]},
            )
        logger.info(
            "notification delivered kind=%s status=%s",
            notification.kind,
            response.status_code,
            extra={"instance_id": notification.orchestration_id},
        )
