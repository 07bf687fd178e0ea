"""
db/retry.py -- Retry policies with capped exponential backoff.

A policy says how many times to retry after the first attempt and how long
to wait in between. The delay before retry n (1-based) is

    min(base_delay * 2 ** (n - 1), max_delay)

so the default query policy waits 1s, 2s, 4s and the default transaction
policy waits 0.5s, 1s.
"""

from __future__ import annotations

from dataclasses import dataclass

from core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def backoff(self, retry: int) -> float:
        """Seconds to wait before the given retry (1 = first retry)."""
        if retry < 1:
            return 0.0
        return min(self.base_delay * (2 ** (retry - 1)), self.max_delay)

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def for_queries(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.db_query_retries,
            base_delay=settings.db_query_backoff_base,
            max_delay=settings.db_query_backoff_max,
        )

    @classmethod
    def for_transactions(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.db_tx_retries,
            base_delay=settings.db_tx_backoff_base,
            max_delay=settings.db_tx_backoff_max,
        )


# Single attempt, no retry. For callers that do their own recovery.
NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0)
