"""Request counter entity."""

from __future__ import annotations

from pydantic import Field

from ..entities.models import DurableEntity, EntityId

COUNTER_ENTITY = "Counter"
COUNTER_KEY = "requests"
COUNTER_ID = EntityId(entity_type=COUNTER_ENTITY, key=COUNTER_KEY)


class Counter(DurableEntity):
    request_number: int = Field(default=0, alias="requestNumber")

    def get_request_number(self) -> int:
        return self.request_number

    def increment(self, amount: int | None = None) -> int:
        step = 1 if amount is None else int(amount)
        if step < 0:
            raise ValueError("counter increments must not be negative")
        self.request_number += step
        return self.request_number

    def reset(self) -> None:
        self.request_number = 0
