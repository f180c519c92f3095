"""Retry policy for webhook deliveries.

Attempts are 1-indexed. After attempt ``n`` fails, retry number ``n`` is
scheduled ``base * 2**(n-1)`` seconds later, so with the defaults the waits
are 1 s, 2 s and 4 s and the fourth failed attempt is terminal.
"""
from __future__ import annotations

from dataclasses import dataclass

from webhook_service.domain.enums import DeliveryStatus


@dataclass(frozen=True)
class Transition:
    status: DeliveryStatus
    delay_seconds: float | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_seconds(self, retry_number: int) -> float:
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        return self.base_delay_seconds * 2 ** (retry_number - 1)

    def next_transition(self, attempt_count: int, succeeded: bool) -> Transition:
        """Decide what happens after attempt number ``attempt_count``."""
        if succeeded:
            return Transition(DeliveryStatus.SUCCESS)
        if attempt_count <= self.max_retries:
            return Transition(DeliveryStatus.RETRYING, self.backoff_seconds(attempt_count))
        return Transition(DeliveryStatus.FAILED)
