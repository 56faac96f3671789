"""Retry helpers built on tenacity.

Two entry points:

- ``retry_on_exception``: decorator for sync or async callables that
  should be retried on a fixed set of exception types.
- ``retry_async``: combinator that re-runs a whole async operation
  (typically a database transaction) while a predicate says the failure
  is retryable. Used for serializable-transaction retry.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from mangatrack_common.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying_operation",
        function=getattr(retry_state.fn, "__name__", "operation"),
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


def retry_on_exception(
    exception_types: tuple[type[BaseException], ...] = (Exception,),
    max_attempts: int = 3,
    min_wait_seconds: float = 1.0,
    max_wait_seconds: float = 10.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Retry the decorated function on the given exception types.

    Works for both plain and ``async def`` functions. The final failure
    is re-raised unchanged.

    Args:
        exception_types: Exceptions that trigger a retry
        max_attempts: Total attempts including the first call
        min_wait_seconds: Lower bound of the exponential backoff
        max_wait_seconds: Upper bound of the exponential backoff

    Example:
        >>> @retry_on_exception(exception_types=(TransientError,), max_attempts=3)
        ... async def fetch():
        ...     ...
    """
    return retry(
        retry=retry_if_exception_type(exception_types),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=min_wait_seconds, min=min_wait_seconds, max=max_wait_seconds
        ),
        before_sleep=_log_retry,
        reraise=True,
    )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    initial_wait_seconds: float = 0.05,
    max_wait_seconds: float = 2.0,
    jitter_seconds: float = 0.05,
    on_exhausted: Optional[Callable[[BaseException], BaseException]] = None,
) -> T:
    """Run ``operation`` until it succeeds or stops being retryable.

    Each attempt calls ``operation()`` afresh, so the operation must be
    safe to re-run from the start (e.g. opens its own transaction).

    Args:
        operation: Zero-argument coroutine factory
        is_retryable: Predicate deciding whether an exception is retried
        max_attempts: Total attempts including the first
        initial_wait_seconds: First backoff interval
        max_wait_seconds: Cap on a single backoff interval
        jitter_seconds: Random jitter added to each interval
        on_exhausted: Optional mapper applied to the last retryable error
            once attempts run out; its result is raised from the original

    Returns:
        Whatever ``operation`` returns on its successful attempt

    Raises:
        The first non-retryable exception, or the last retryable one
        (mapped through ``on_exhausted`` if given).
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(
            initial=initial_wait_seconds, max=max_wait_seconds, jitter=jitter_seconds
        ),
        before_sleep=_log_retry,
        sleep=asyncio.sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except BaseException as e:
        if on_exhausted is not None and is_retryable(e):
            raise on_exhausted(e) from e
        raise
    raise AssertionError("unreachable")  # pragma: no cover

