"""JobQueue - durable background jobs in the ``jobs`` table.

Job ids are deterministic (``resolution-<reference id>``,
``canonicalize-<provider>-<id>``, ...), so enqueueing the same work twice
is a no-op. Workers claim jobs with ``FOR UPDATE SKIP LOCKED``; failed
jobs are requeued with exponential backoff until ``max_attempts``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import asyncpg
from mangatrack_common import StorageError, get_logger
from mangatrack_contracts import Job, JobKind, JobStatus, Provider

from mangatrack_storage.connection import get_connection_pool

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
RETRY_BASE_SECONDS = 30.0
RETRY_MAX_SECONDS = 3600.0


# -----------------------------------------------------------------------------
# Deterministic job ids
# -----------------------------------------------------------------------------


def resolution_job_id(reference_id: UUID) -> str:
    return f"resolution-{reference_id}"


def recovery_job_id(reference_id: UUID) -> str:
    return f"recovery-{reference_id}"


def canonicalize_job_id(provider: Provider, provider_id: str) -> str:
    return f"canonicalize-{Provider(provider).value}-{provider_id}"


def cover_job_id(series_id: UUID) -> str:
    return f"cover-{series_id}"


def stats_job_id(series_id: UUID) -> str:
    return f"stats-{series_id}"


def mangaupdates_job_id(series_id: UUID) -> str:
    return f"mangaupdates-{series_id}"


def retry_delay_seconds(
    attempts: int, base: float = RETRY_BASE_SECONDS, cap: float = RETRY_MAX_SECONDS
) -> float:
    """Backoff before the next try after ``attempts`` failed tries."""
    return min(base * (2 ** max(attempts - 1, 0)), cap)


def _row_to_job(row: asyncpg.Record) -> Job:
    return Job(
        job_id=row["job_id"],
        kind=JobKind(row["kind"]),
        payload=row["payload"] or {},
        priority=row["priority"],
        run_at=row["run_at"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class JobQueue:
    """Storage operations for the jobs table."""

    @staticmethod
    async def enqueue(
        kind: JobKind,
        payload: dict[str, Any],
        job_id: str,
        priority: int = 0,
        delay: Optional[timedelta] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        replace: bool = False,
        conn: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """Add a job unless one with the same id already exists.

        Args:
            kind: Job type
            payload: JSON-serializable job arguments
            job_id: Deterministic id (see the ``*_job_id`` helpers)
            priority: Lower runs first
            delay: Earliest start, relative to now
            max_attempts: Attempts before the job is marked failed
            replace: Overwrite an existing job with the same id (used for
                recovery jobs, which supersede their predecessor). A
                superseded running job finishes, but its complete/fail
                no longer touch the row.
            conn: Enqueue inside the caller's transaction instead of
                on a pooled connection

        Returns:
            True if a job was written, False if the id was already taken

        Example:
            >>> await JobQueue.enqueue(
            ...     JobKind.RESOLVE_REFERENCE,
            ...     {"reference_id": str(ref_id)},
            ...     job_id=resolution_job_id(ref_id),
            ... )
        """
        kind = JobKind(kind)
        run_at = datetime.now(timezone.utc) + (delay or timedelta(0))

        if replace:
            conflict = """
                ON CONFLICT (job_id) DO UPDATE SET
                    kind = EXCLUDED.kind,
                    payload = EXCLUDED.payload,
                    priority = EXCLUDED.priority,
                    run_at = EXCLUDED.run_at,
                    max_attempts = EXCLUDED.max_attempts,
                    status = 'queued',
                    attempts = 0,
                    last_error = NULL,
                    locked_by = NULL,
                    locked_at = NULL,
                    updated_at = now()
            """
        else:
            conflict = "ON CONFLICT (job_id) DO NOTHING"

        query = f"""
            INSERT INTO jobs (job_id, kind, payload, priority, run_at, max_attempts)
            VALUES ($1, $2, $3, $4, $5, $6)
            {conflict}
            RETURNING job_id
        """
        params = (job_id, kind.value, payload, priority, run_at, max_attempts)

        try:
            if conn is not None:
                written = await conn.fetchval(query, *params)
            else:
                pool = await get_connection_pool()
                async with pool.acquire() as pooled:
                    written = await pooled.fetchval(query, *params)
        except Exception as e:
            logger.error("job_enqueue_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to enqueue job {job_id}: {e}") from e

        if written is None:
            logger.debug("job_already_enqueued", job_id=job_id, kind=kind.value)
            return False

        logger.info(
            "job_enqueued",
            job_id=job_id,
            kind=kind.value,
            run_at=run_at.isoformat(),
            replaced=replace,
        )
        return True

    @staticmethod
    async def claim(
        kinds: Optional[Sequence[JobKind]] = None, worker_id: str = "worker"
    ) -> Optional[Job]:
        """Take the next runnable job, skipping rows other workers hold.

        Args:
            kinds: Restrict to these job kinds (default: any)
            worker_id: Recorded in ``locked_by`` for operators

        Returns:
            The claimed Job (status RUNNING, attempts incremented) or None
        """
        kind_values = [JobKind(k).value for k in kinds] if kinds else None
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE jobs
                    SET status = 'running',
                        attempts = attempts + 1,
                        locked_by = $2,
                        locked_at = now(),
                        updated_at = now()
                    WHERE job_id = (
                        SELECT job_id FROM jobs
                        WHERE status = 'queued'
                          AND run_at <= now()
                          AND ($1::text[] IS NULL OR kind = ANY($1::text[]))
                        ORDER BY priority ASC, run_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                    """,
                    kind_values,
                    worker_id,
                )
        except Exception as e:
            logger.error("job_claim_failed", error=str(e))
            raise StorageError(f"Failed to claim job: {e}") from e

        if row is None:
            return None

        job = _row_to_job(row)
        logger.debug("job_claimed", job_id=job.job_id, kind=job.kind.value, attempt=job.attempts)
        return job

    @staticmethod
    async def complete(job_id: str) -> None:
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'completed', last_error = NULL,
                        locked_by = NULL, locked_at = NULL, updated_at = now()
                    WHERE job_id = $1 AND status = 'running'
                    """,
                    job_id,
                )
        except Exception as e:
            logger.error("job_complete_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to complete job {job_id}: {e}") from e

        logger.info("job_completed", job_id=job_id)

    @staticmethod
    async def fail(
        job_id: str,
        error: str,
        retryable: bool = True,
        retry_after: Optional[float] = None,
    ) -> JobStatus:
        """Record a failed run.

        Retryable failures go back to QUEUED with exponential backoff
        (or ``retry_after`` seconds, when the upstream said so) until the
        job's ``max_attempts`` is used up; then the job is FAILED.

        Args:
            job_id: Job id
            error: Sanitized error text
            retryable: False marks the job FAILED immediately
            retry_after: Minimum delay before the next attempt

        Returns:
            The job's new status

        Raises:
            StorageError: If the job does not exist or the update fails
        """
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT attempts, max_attempts FROM jobs WHERE job_id = $1", job_id
                )
                if row is None:
                    raise StorageError(f"Job not found: {job_id}")

                if retryable and row["attempts"] < row["max_attempts"]:
                    delay = retry_delay_seconds(row["attempts"])
                    if retry_after is not None:
                        delay = max(delay, retry_after)
                    status = JobStatus.QUEUED
                    run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
                else:
                    status = JobStatus.FAILED
                    run_at = None

                await conn.execute(
                    """
                    UPDATE jobs
                    SET status = $2,
                        last_error = $3,
                        run_at = COALESCE($4, run_at),
                        locked_by = NULL,
                        locked_at = NULL,
                        updated_at = now()
                    WHERE job_id = $1 AND status = 'running'
                    """,
                    job_id,
                    status.value,
                    error,
                    run_at,
                )

        except StorageError:
            raise
        except Exception as e:
            logger.error("job_fail_update_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to record job failure {job_id}: {e}") from e

        logger.warning(
            "job_failed",
            job_id=job_id,
            attempts=row["attempts"],
            requeued=status is JobStatus.QUEUED,
            error=error[:200],
        )
        return status

    @staticmethod
    async def requeue_stale(running_for: timedelta = timedelta(minutes=15)) -> int:
        """Put RUNNING jobs whose worker vanished back in the queue.

        Returns:
            Number of jobs requeued
        """
        cutoff = datetime.now(timezone.utc) - running_for
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'queued', locked_by = NULL, locked_at = NULL, updated_at = now()
                    WHERE status = 'running' AND locked_at < $1
                    """,
                    cutoff,
                )
        except Exception as e:
            logger.error("job_requeue_stale_failed", error=str(e))
            raise StorageError(f"Failed to requeue stale jobs: {e}") from e

        requeued = int(result.split()[-1]) if result else 0
        if requeued:
            logger.warning("stale_jobs_requeued", requeued=requeued)
        return requeued

    @staticmethod
    async def stats() -> dict[str, Any]:
        """Queue statistics.

        Returns:
            Dict with ``by_status``, ``by_kind`` (queued/running only) and ``total``

        Example:
            >>> stats = await JobQueue.stats()
            >>> print(stats["by_status"].get("queued", 0))
        """
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                status_rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
                )
                kind_rows = await conn.fetch(
                    """
                    SELECT kind, COUNT(*) AS count
                    FROM jobs
                    WHERE status IN ('queued', 'running')
                    GROUP BY kind
                    """
                )
        except Exception as e:
            logger.error("job_stats_failed", error=str(e))
            raise StorageError(f"Failed to get queue stats: {e}") from e

        return {
            "by_status": {r["status"]: r["count"] for r in status_rows},
            "by_kind": {r["kind"]: r["count"] for r in kind_rows},
            "total": sum(r["count"] for r in status_rows),
        }

    @staticmethod
    async def purge_completed(older_than: timedelta = timedelta(days=7)) -> int:
        """Delete completed jobs last touched before ``older_than`` ago.

        Completed ids stay in the table until purged, which is what keeps
        re-enqueueing finished work a no-op in the meantime.

        Returns:
            Number of jobs deleted
        """
        cutoff = datetime.now(timezone.utc) - older_than
        pool = await get_connection_pool()

        try:
            async with pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM jobs WHERE status = 'completed' AND updated_at < $1",
                    cutoff,
                )
        except Exception as e:
            logger.error("job_purge_failed", error=str(e))
            raise StorageError(f"Failed to purge completed jobs: {e}") from e

        deleted = int(result.split()[-1]) if result else 0
        if deleted:
            logger.info("completed_jobs_purged", deleted=deleted)
        return deleted
