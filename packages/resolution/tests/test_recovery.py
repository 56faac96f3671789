"""Tests for recovery scheduling and the content policy."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from mangatrack_common import PolicyBlockedError
from mangatrack_contracts import JobKind, JobStatus
from mangatrack_resolution.policy import BLOCKED_MESSAGE, check_content_policy, is_blocked
from mangatrack_resolution.recovery import RECOVERY_PRIORITY, recovery_delay, schedule_recovery
from mangatrack_storage import JobQueue
from mangatrack_storage.job_queue import DEFAULT_MAX_ATTEMPTS

pytestmark = pytest.mark.unit


class TestRecoveryDelay:
    """Tests for recovery_delay()."""

    @pytest.mark.parametrize(
        "attempt,hours",
        [(1, 24), (2, 72), (3, 168), (10, 168)],
    )
    def test_backoff_capped_at_a_week(self, attempt, hours):
        assert recovery_delay(attempt) == timedelta(hours=hours)

    def test_zero_attempts_treated_as_first(self):
        assert recovery_delay(0) == timedelta(hours=24)

    def test_custom_bounds(self):
        assert recovery_delay(2, base_hours=1, max_hours=2) == timedelta(hours=2)


class TestScheduleRecovery:
    """Tests for schedule_recovery()."""

    async def test_enqueues_replacing_job(self, settings):
        reference_id = uuid4()
        conn = object()

        with patch.object(JobQueue, "enqueue", AsyncMock(return_value=True)) as enqueue:
            delay = await schedule_recovery(conn, reference_id, 2, settings)

        assert delay == timedelta(hours=72)
        enqueue.assert_awaited_once_with(
            JobKind.RECOVER_REFERENCE,
            {"reference_id": str(reference_id)},
            job_id=f"recovery-{reference_id}",
            priority=RECOVERY_PRIORITY,
            delay=timedelta(hours=72),
            max_attempts=DEFAULT_MAX_ATTEMPTS,
            replace=True,
            conn=conn,
        )

    @patch("mangatrack_storage.job_queue.get_connection_pool", new_callable=AsyncMock)
    async def test_rate_limited_recovery_run_is_requeued(self, mock_get_pool, settings):
        """A transient failure on the first recovery run leaves the job queued."""
        with patch.object(JobQueue, "enqueue", AsyncMock(return_value=True)) as enqueue:
            await schedule_recovery(object(), uuid4(), 1, settings)
        max_attempts = enqueue.await_args.kwargs["max_attempts"]

        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value={"attempts": 1, "max_attempts": max_attempts})
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        mock_get_pool.return_value = pool

        status = await JobQueue.fail("recovery-x", "Rate limited", retry_after=30)

        assert status is JobStatus.QUEUED


class TestContentPolicy:
    """Tests for is_blocked() and check_content_policy()."""

    def test_case_insensitive(self):
        assert is_blocked(" Pornographic ", ["pornographic"])

    def test_unrated_allowed(self):
        assert not is_blocked(None, ["pornographic"])
        assert not is_blocked("", ["pornographic"])

    def test_other_ratings_allowed(self):
        assert not is_blocked("suggestive", ["pornographic"])
        check_content_policy("safe", ["pornographic"])

    def test_blocked_raises(self):
        with pytest.raises(PolicyBlockedError, match=BLOCKED_MESSAGE):
            check_content_policy("pornographic", ["pornographic"])
