"""Maps one-shot callback tokens to external events on waiting instances."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from ..orchestration.engine import OrchestrationEngine
from ..orchestration.exceptions import (
    AlreadyConsumedError,
    CorrelationExpiredError,
    TokenAlreadyRegisteredError,
    UnknownTokenError,
)
from ..orchestration.models import OrchestrationInstance
from .models import CorrelationToken
from .store import CorrelationStore

logger = logging.getLogger(__name__)


class CallbackGateway:
    """Single-use delivery of external callbacks into orchestrations."""

    def __init__(
        self,
        store: CorrelationStore,
        engine: OrchestrationEngine,
        *,
        base_url: str = "http://localhost:8000",
        token_ttl_seconds: float | None = None,
    ):
        self.store = store
        self.engine = engine
        self.base_url = base_url.rstrip("/")
        self.token_ttl_seconds = token_ttl_seconds

    @staticmethod
    def new_token() -> str:
        return uuid4().hex

    def callback_url(self, token: str, result: str | None = None) -> str:
        url = f"{self.base_url}/callback/{quote(token, safe='')}"
        if result is not None:
            url += f"?result={quote(result, safe='')}"
        return url

    def register_correlation(self, token: str, instance_id: str, event_name: str) -> CorrelationToken:
        record = CorrelationToken.issue(token, instance_id, event_name, self.token_ttl_seconds)
        if not self.store.create(record):
            raise TokenAlreadyRegisteredError(token)
        logger.info(
            "callback correlation registered event=%s expires_at=%s",
            event_name,
            record.expires_at,
            extra={"instance_id": instance_id},
        )
        return record

    async def deliver(self, token: str, payload: Any) -> CorrelationToken:
        """Consume `token` and raise its event; a token is delivered at most once."""
        record = self.store.load(token)
        if record is None:
            raise UnknownTokenError(token)
        if record.consumed:
            raise AlreadyConsumedError(token)
        if record.is_expired():
            raise CorrelationExpiredError(token)
        consumed = self.store.mark_consumed(token)
        if consumed is None:
            raise AlreadyConsumedError(token)
        delivered = await self.engine.raise_event(record.instance_id, record.event_name, payload)
        logger.info(
            "callback delivered event=%s accepted=%s",
            record.event_name,
            delivered,
            extra={"instance_id": record.instance_id},
        )
        return consumed

    async def release_instance(self, instance: OrchestrationInstance) -> int:
        """Drop unconsumed tokens of a finished instance; consumed ones stay as tombstones."""
        released = 0
        for record in self.store.tokens_for_instance(instance.instance_id):
            if record.consumed:
                continue
            self.store.delete(record.token)
            released += 1
        if released:
            logger.info(
                "callback tokens released count=%s",
                released,
                extra={"instance_id": instance.instance_id},
            )
        return released
