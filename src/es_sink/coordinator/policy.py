from __future__ import annotations

import math
import random
from dataclasses import dataclass

from ..errors import ConnectorError
from .classifier import ErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for bulk requests.

    ``max_retries`` counts retries, so a request is attempted at most
    ``max_retries + 1`` times. The policy only computes delays; callers own
    the sleep.
    """

    max_retries: int = 5
    retry_backoff_ms: int = 100
    max_retry_backoff_ms: int = 10_000
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            retry_backoff_ms=settings.retry_backoff_ms,
            max_retry_backoff_ms=settings.max_retry_backoff_ms,
        )

    def next_backoff_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""
        raw = self.retry_backoff_ms * (2 ** max(0, attempt - 1))
        if self.jitter:
            raw *= random.uniform(0.5, 1.5)
        return int(min(self.max_retry_backoff_ms, math.ceil(raw)))

    def should_retry(self, attempts: int) -> bool:
        return attempts <= self.max_retries

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def exhausted(self, reason: str, attempts: int) -> ConnectorError:
        return ConnectorError(
            f"Failed to execute bulk request due to '{reason}' after {attempts} attempt(s)",
            kind=ErrorKind.EXHAUSTED.value,
            attempts=attempts,
        )
