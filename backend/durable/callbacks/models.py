"""Correlation records linking callback tokens to waiting instances."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import iso_timestamp, parse_timestamp, utc_now


class CorrelationToken(BaseModel):
    """Maps an opaque token to the instance and event it resumes."""

    model_config = ConfigDict(extra="forbid")

    token: str
    instance_id: str
    event_name: str
    created_at: str = Field(default_factory=iso_timestamp)
    expires_at: str | None = None
    consumed: bool = False
    consumed_at: str | None = None

    @classmethod
    def issue(
        cls,
        token: str,
        instance_id: str,
        event_name: str,
        ttl_seconds: float | None = None,
    ) -> "CorrelationToken":
        expires_at = None
        if ttl_seconds:
            expires_at = (utc_now() + timedelta(seconds=ttl_seconds)).isoformat()
        return cls(
            token=token,
            instance_id=instance_id,
            event_name=event_name,
            expires_at=expires_at,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= parse_timestamp(self.expires_at)
