"""Retry policy for Registry write requests."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from rentri_client.config import get_settings


@dataclass
class RetryPolicy:
    """Bounded retry with linear backoff.

    Attempt ``n`` that fails retryably waits ``n * base_delay`` seconds before
    attempt ``n + 1``. 4xx responses are final; 5xx responses and transport
    failures are retried. ``sleep`` is injectable so tests run without delays.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        settings = get_settings()
        values = {
            "max_attempts": settings.rentri_push_max_attempts,
            "base_delay": settings.rentri_push_backoff_seconds,
        }
        values.update(overrides)
        return cls(**values)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return attempt * self.base_delay

    @staticmethod
    def is_retryable_status(status: int) -> bool:
        return status >= 500
