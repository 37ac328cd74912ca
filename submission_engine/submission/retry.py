"""
Retry/backoff policy for submission runs.
"""

from dataclasses import dataclass
from typing import Optional

from ..config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff parameters (milliseconds)."""

    base_delay_ms: int = 5000
    max_delay_ms: int = 300000
    backoff_multiplier: int = 2
    max_attempts: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_attempts=settings.retry_max_attempts,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


def calculate_retry_delay(
    attempt_no: int, policy: Optional[RetryPolicy] = None
) -> int:
    """Delay before the next attempt, in milliseconds.

    ``min(base * multiplier ** (attempt_no - 1), max)``; attempt numbers
    below 1 are treated as the first attempt.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    exponent = max(attempt_no, 1) - 1
    delay = policy.base_delay_ms * policy.backoff_multiplier**exponent
    return min(delay, policy.max_delay_ms)
