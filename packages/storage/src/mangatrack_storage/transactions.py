"""Serializable transactions with whole-transaction retry.

Serialization failures, deadlocks and unique-constraint races mean a
concurrent writer won. The transaction is re-run from the start with
exponential backoff and jitter; once attempts run out the failure
surfaces as ``ConflictError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

import asyncpg
from mangatrack_common import (
    ConflictError,
    MangaTrackError,
    StorageError,
    get_logger,
    retry_async,
)

from mangatrack_storage.connection import get_connection_pool

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.UniqueViolationError,
)


def is_retryable_conflict(exc: BaseException) -> bool:
    """True for errors that a fresh run of the transaction may avoid."""
    return isinstance(exc, (*RETRYABLE_ERRORS, ConflictError))


async def run_serializable(
    operation: Callable[[asyncpg.Connection], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    pool: Optional[asyncpg.Pool] = None,
) -> T:
    """Run ``operation(conn)`` inside a SERIALIZABLE transaction.

    The operation is called again on a fresh transaction after a
    retryable conflict, so it must not carry state between attempts.

    Args:
        operation: Coroutine function receiving the transaction's connection
        max_attempts: Total attempts including the first
        pool: Pool to use (default: the global pool)

    Returns:
        Result of the successful attempt

    Raises:
        ConflictError: Conflicts persisted through every attempt
        Exception: Any non-conflict error raised by ``operation``

    Example:
        >>> async def bump(conn):
        ...     return await conn.fetchval("UPDATE ... RETURNING retry_count")
        >>> count = await run_serializable(bump)
    """
    if pool is None:
        pool = await get_connection_pool()

    async def attempt() -> T:
        async with pool.acquire() as conn:
            async with conn.transaction(isolation="serializable"):
                return await operation(conn)

    def exhausted(exc: BaseException) -> BaseException:
        logger.warning(
            "transaction_conflict_exhausted",
            attempts=max_attempts,
            error_type=type(exc).__name__,
        )
        return ConflictError(f"Transaction conflict after {max_attempts} attempts: {exc}")

    return await retry_async(
        attempt,
        is_retryable=is_retryable_conflict,
        max_attempts=max_attempts,
        on_exhausted=exhausted,
    )


@contextmanager
def storage_errors(action: str, **context: Any) -> Iterator[None]:
    """Translate driver errors raised inside the block.

    Conflicts become ``ConflictError`` (retryable by ``run_serializable``),
    anything else from the driver becomes ``StorageError``. Errors that are
    already part of the mangatrack taxonomy pass through unchanged.

    Example:
        >>> with storage_errors("link source", provider="mangadex"):
        ...     await conn.execute(...)
    """
    try:
        yield
    except MangaTrackError:
        raise
    except RETRYABLE_ERRORS as e:
        logger.info("storage_conflict", action=action, error_type=type(e).__name__, **context)
        raise ConflictError(f"Conflict during {action}: {e}") from e
    except Exception as e:
        logger.error("storage_operation_failed", action=action, error=str(e), **context)
        raise StorageError(f"Failed to {action}: {e}") from e
