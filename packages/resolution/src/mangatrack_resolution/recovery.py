"""Recovery scheduling for references that could not be resolved."""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

import asyncpg
from mangatrack_common import get_logger
from mangatrack_common.config import Settings
from mangatrack_contracts import JobKind
from mangatrack_storage import JobQueue, recovery_job_id
from mangatrack_storage.job_queue import DEFAULT_MAX_ATTEMPTS

logger = get_logger(__name__)

RECOVERY_PRIORITY = 5


def recovery_delay(
    attempt_count: int, base_hours: float = 24.0, max_hours: float = 168.0
) -> timedelta:
    """Delay before the next recovery attempt.

    1 day, 3 days, then capped at 7 days with the defaults.
    """
    exponent = max(attempt_count, 1) - 1
    hours = min(base_hours * (3**exponent), max_hours)
    return timedelta(hours=hours)


async def schedule_recovery(
    conn: asyncpg.Connection,
    reference_id: UUID,
    attempt_count: int,
    settings: Settings,
) -> timedelta:
    """Queue a recovery job, replacing any queued predecessor.

    The job carries the default retry budget: a rate limit or outage
    during the recovery run requeues it with backoff.

    Written on ``conn`` so the job exists only if the caller's
    transaction commits.
    """
    delay = recovery_delay(
        attempt_count,
        base_hours=settings.recovery_base_delay_hours,
        max_hours=settings.recovery_max_delay_hours,
    )
    await JobQueue.enqueue(
        JobKind.RECOVER_REFERENCE,
        {"reference_id": str(reference_id)},
        job_id=recovery_job_id(reference_id),
        priority=RECOVERY_PRIORITY,
        delay=delay,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        replace=True,
        conn=conn,
    )
    logger.info(
        "recovery_scheduled",
        reference_id=str(reference_id),
        attempt=attempt_count,
        delay_hours=delay.total_seconds() / 3600,
    )
    return delay
