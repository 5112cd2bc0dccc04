"""Retry with exponential backoff.

One parameterized policy shared by the notification listener (reconnects),
email dispatch (per-recipient delivery) and store access (transient errors).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff parameters.

    The delay before retry ``n`` (1-indexed) is
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-indexed)."""
        if attempt < 1:
            raise ValueError("attempt is 1-indexed")
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> list[float]:
        """All delays this policy would wait between its attempts."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


class RetryExhaustedError(Exception):
    """All attempts failed; wraps the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. When every attempt fails, raises
    RetryExhaustedError carrying the last error.

    Args:
        operation: zero-argument coroutine factory, called once per attempt
        policy: attempt count and delays
        retry_on: exception types that count as retryable
        on_retry: called with (attempt, error, delay) before each wait
        sleep: awaitable used to wait between attempts
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(attempt, e) from e

            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            else:
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay:.2f}s"
                )
            await sleep(delay)

    # max_attempts >= 1 guarantees the loop returns or raises
    raise AssertionError("unreachable")
