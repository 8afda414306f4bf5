"""Exponential backoff with optional jitter for notification retries."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from groupbuy_core.config import CoreSettings


class BackoffPolicy(BaseModel):
    """Tuneable parameters for delivery retries."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Delivery attempts before an event is dead-lettered.",
    )
    base_delay: float = Field(
        default=5.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=900.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> BackoffPolicy:
        return cls(
            max_attempts=settings.dispatcher_max_attempts,
            base_delay=settings.dispatcher_base_delay_seconds,
            max_delay=settings.dispatcher_max_delay_seconds,
            jitter=settings.dispatcher_jitter,
        )

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def compute_delay(attempt: int, policy: BackoffPolicy) -> float:
    """Return the delay before retry number *attempt* (0-based)."""
    delay: float = min(policy.base_delay * (2**attempt), policy.max_delay)
    if policy.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def next_attempt_at(now: datetime, attempts_made: int, policy: BackoffPolicy) -> datetime:
    """When an event that has failed *attempts_made* times may be retried."""
    return now + timedelta(seconds=compute_delay(max(attempts_made - 1, 0), policy))
