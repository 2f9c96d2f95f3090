"""
Retry-with-backoff combinator.

``with_retry`` is the one retry loop in the package. Workflow steps,
self-critique iterations and discussion contributions all call through it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    ``max_attempts`` counts the first try. The delay before attempt ``n + 1``
    is ``base_delay * multiplier ** (n - 1)`` capped at ``max_delay``; with
    ``jitter`` > 0 the delay is scaled by a random factor in
    ``[1 - jitter, 1 + jitter]``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, delay)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)


async def with_retry(
    policy: RetryPolicy,
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, the error is not retryable, or attempts run out.

    The last exception is re-raised unchanged. Cancellation is never retried.
    ``on_retry(attempt, error, delay)`` runs before each backoff sleep.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not retry_on(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed ({type(exc).__name__}: {exc}); "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                await on_retry(attempt, exc, delay)
            await sleep(delay)


__all__ = ["RetryPolicy", "with_retry"]
