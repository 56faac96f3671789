"""LockStore - named leases shared by every worker process.

A lock is a row in ``distributed_locks`` with a random token and an
expiry. Acquiring takes over an expired row; releasing deletes the row
only if the token still matches, so a worker whose lease ran out cannot
release a lock someone else now holds.
"""

from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from mangatrack_common import LockBusyError, get_logger, retry_async

from mangatrack_storage.connection import get_connection_pool
from mangatrack_storage.transactions import storage_errors

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_ACQUIRE_ATTEMPTS = 5


class LockStore:
    """Storage operations for the distributed_locks table."""

    @staticmethod
    async def acquire(key: str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> Optional[str]:
        """Try once to take the lease on ``key``.

        Args:
            key: Lock name (e.g. ``canonicalize:solo leveling``)
            ttl_seconds: Lease length

        Returns:
            Token identifying this holder, or None if the lock is held
        """
        token = secrets.token_hex(16)
        pool = await get_connection_pool()

        with storage_errors("acquire lock", lock_key=key):
            async with pool.acquire() as conn:
                acquired = await conn.fetchval(
                    """
                    INSERT INTO distributed_locks (lock_key, token, expires_at)
                    VALUES ($1, $2, now() + make_interval(secs => $3))
                    ON CONFLICT (lock_key) DO UPDATE SET
                        token = EXCLUDED.token,
                        expires_at = EXCLUDED.expires_at
                    WHERE distributed_locks.expires_at < now()
                    RETURNING token
                    """,
                    key,
                    token,
                    float(ttl_seconds),
                )

        if acquired is None:
            logger.debug("lock_busy", lock_key=key)
            return None
        logger.debug("lock_acquired", lock_key=key, ttl_seconds=ttl_seconds)
        return acquired

    @staticmethod
    async def release(key: str, token: str) -> bool:
        """Release ``key`` if ``token`` still holds it.

        Returns:
            True if the lease was released, False if it had been taken over
        """
        pool = await get_connection_pool()

        with storage_errors("release lock", lock_key=key):
            async with pool.acquire() as conn:
                status = await conn.execute(
                    "DELETE FROM distributed_locks WHERE lock_key = $1 AND token = $2",
                    key,
                    token,
                )

        released = status == "DELETE 1"
        if not released:
            logger.warning("lock_release_lost", lock_key=key)
        return released

    @staticmethod
    @asynccontextmanager
    async def hold(
        key: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        attempts: int = DEFAULT_ACQUIRE_ATTEMPTS,
        wait_seconds: float = 0.2,
    ) -> AsyncIterator[str]:
        """Hold ``key`` for the duration of the block.

        Raises:
            LockBusyError: The lock stayed held through every attempt

        Example:
            >>> async with LockStore.hold("canonicalize:berserk", ttl_seconds=60):
            ...     await upsert(...)
        """

        async def try_acquire() -> str:
            token = await LockStore.acquire(key, ttl_seconds)
            if token is None:
                raise LockBusyError(f"Lock busy: {key}")
            return token

        token = await retry_async(
            try_acquire,
            is_retryable=lambda e: isinstance(e, LockBusyError),
            max_attempts=attempts,
            initial_wait_seconds=wait_seconds,
            max_wait_seconds=max(wait_seconds * 8, wait_seconds),
        )
        try:
            yield token
        finally:
            await LockStore.release(key, token)
