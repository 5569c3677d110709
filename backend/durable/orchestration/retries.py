"""Retry policy configuration for activities."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for an activity."""

    max_attempts: int
    backoff_seconds: float = 0
    backoff_coefficient: float = 1.0
    max_backoff_seconds: float | None = None

    def allows(self, attempt_number: int) -> bool:
        """Return True if another attempt is allowed after attempt_number."""
        return attempt_number < self.max_attempts

    def delay_for(self, attempt_number: int) -> float:
        """Seconds to wait before the attempt following `attempt_number`."""
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.backoff_coefficient ** max(0, attempt_number - 1))
        if self.max_backoff_seconds is not None:
            delay = min(delay, self.max_backoff_seconds)
        return delay


NO_RETRY = RetryPolicy(max_attempts=1)
