"""Store access with timeouts and transient-error retry."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from ..core.retry import BackoffPolicy, RetryExhaustedError, retry_with_backoff
from .exceptions import OperationFailedError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STORE_POLICY = BackoffPolicy(max_attempts=3, base_delay=0.2, max_delay=2.0)


def is_transient(error: BaseException) -> bool:
    """Whether a database error is worth retrying."""
    if isinstance(error, (TransientStoreError, asyncio.TimeoutError)):
        return True
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return False


async def run_store_operation(
    operation: Callable[[], Awaitable[T]],
    description: str,
    policy: BackoffPolicy = DEFAULT_STORE_POLICY,
    timeout: float | None = None,
) -> T:
    """
    Run one unit of work against the store.

    Each attempt gets its own timeout. Transient failures are retried with
    backoff; once exhausted they surface as OperationFailedError. Any other
    exception (validation, not found) propagates on the first attempt.
    """

    async def attempt() -> T:
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except Exception as e:
            if is_transient(e):
                raise TransientStoreError(f"{description}: {e}") from e
            raise

    def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
        logger.warning(
            f"Store operation '{description}' failed "
            f"(attempt {attempt_number}/{policy.max_attempts}): {error}; "
            f"retrying in {delay:.2f}s"
        )

    try:
        return await retry_with_backoff(
            attempt,
            policy,
            retry_on=(TransientStoreError,),
            on_retry=on_retry,
        )
    except RetryExhaustedError as e:
        logger.error(f"Store operation '{description}' failed after {e.attempts} attempts")
        raise OperationFailedError(
            f"{description} failed after {e.attempts} attempts: {e.last_error}"
        ) from e.last_error
