"""Tests for ReferenceStore - tracked references and resolution state."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from mangatrack_common import StorageError
from mangatrack_contracts import ResolutionStatus, TrackedReference
from mangatrack_storage.reference_store import ClaimOutcome, ReferenceStore

pytestmark = pytest.mark.unit

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _reference_row(**overrides):
    row = {
        "id": uuid4(),
        "user_id": uuid4(),
        "source_url": None,
        "imported_title": "Omniscient Reader",
        "status": "pending",
        "retry_count": 0,
        "needs_review": False,
        "review_reason": None,
        "last_attempt_at": None,
        "last_error": None,
        "series_id": None,
        "match_confidence": None,
        "progress": 0.0,
        "manually_linked": False,
        "manual_override_at": None,
        "language_hint": None,
        "year_hint": None,
        "creator_hints": [],
        "deleted_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestCreate:
    """Tests for ReferenceStore.create()."""

    async def test_create(self):
        row = _reference_row(imported_title="Berserk", creator_hints=["Miura"])
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=row)

        reference = await ReferenceStore.create(
            conn, row["user_id"], "  Berserk ", creator_hints=["Miura"]
        )

        assert reference.status is ResolutionStatus.PENDING
        assert conn.fetchrow.call_args[0][3] == "Berserk"

    async def test_blank_title_rejected(self):
        with pytest.raises(StorageError, match="blank"):
            await ReferenceStore.create(AsyncMock(), uuid4(), "   ")


class TestTryClaim:
    """Tests for ReferenceStore.try_claim()."""

    async def test_claimed(self):
        row = _reference_row()
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=row)

        result = await ReferenceStore.try_claim(conn, row["id"])

        assert result.outcome is ClaimOutcome.CLAIMED
        assert result.claimed
        assert result.reference.id == row["id"]
        assert "FOR UPDATE SKIP LOCKED" in conn.fetchrow.call_args[0][0]
        conn.fetchval.assert_not_awaited()

    async def test_already_claimed(self):
        """A locked row that exists is reported as already claimed."""
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=True)

        result = await ReferenceStore.try_claim(conn, uuid4())

        assert result.outcome is ClaimOutcome.ALREADY_CLAIMED
        assert result.reference is None

    async def test_not_found(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=False)

        result = await ReferenceStore.try_claim(conn, uuid4())

        assert result.outcome is ClaimOutcome.NOT_FOUND


class TestFindDuplicate:
    """Tests for ReferenceStore.find_duplicate()."""

    async def test_survivor_ordering(self):
        """Highest progress first, then lowest id."""
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=_reference_row(progress=50.0))

        duplicate = await ReferenceStore.find_duplicate(conn, uuid4(), uuid4(), uuid4())

        assert duplicate.progress == 50.0
        query = conn.fetchrow.call_args[0][0]
        assert "ORDER BY progress DESC, id ASC" in query
        assert "deleted_at IS NULL" in query

    async def test_none(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        assert await ReferenceStore.find_duplicate(conn, uuid4(), uuid4(), uuid4()) is None


class TestOutcomeWrites:
    """Tests for the resolution outcome writes."""

    async def test_mark_resolved(self):
        series_id = uuid4()
        row = _reference_row(status="resolved", series_id=series_id, match_confidence=0.9)
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=row)

        reference = await ReferenceStore.mark_resolved(
            conn, row["id"], series_id, confidence=0.9, needs_review=False, retry_count=0
        )

        assert reference.status is ResolutionStatus.RESOLVED
        query = conn.fetchrow.call_args[0][0]
        assert "(series_id IS NULL OR series_id = $2)" in query
        assert "manually_linked = FALSE" in query

    async def test_mark_resolved_guard(self):
        """A reference rebound elsewhere is not re-pointed."""
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        result = await ReferenceStore.mark_resolved(
            conn, uuid4(), uuid4(), confidence=1.0, needs_review=False, retry_count=0
        )

        assert result is None

    async def test_mark_unresolved(self):
        conn = AsyncMock()
        reference_id = uuid4()

        await ReferenceStore.mark_unresolved(
            conn, reference_id, retry_count=2, last_error="No match", needs_review=True,
            review_reason="duplicate_has_more_progress",
        )

        args = conn.execute.call_args[0]
        assert args[1:] == (
            reference_id,
            "unresolved",
            2,
            "No match",
            True,
            "duplicate_has_more_progress",
        )

    async def test_mark_permanently_failed(self):
        conn = AsyncMock()

        await ReferenceStore.mark_permanently_failed(conn, uuid4(), 10, "blocked")

        assert conn.execute.call_args[0][2] == "permanently_failed"

    async def test_transient_failure_keeps_status(self):
        conn = AsyncMock()

        await ReferenceStore.record_transient_failure(conn, uuid4(), "Rate limited")

        query = conn.execute.call_args[0][0]
        assert "status" not in query.split("SET", 1)[1].split("WHERE")[0]


class TestMergeIntoDuplicate:
    """Tests for ReferenceStore.merge_into_duplicate()."""

    async def test_progress_max_and_soft_delete(self):
        current = TrackedReference(
            id=uuid4(), user_id=uuid4(), imported_title="ORV", progress=80.0
        )
        duplicate = TrackedReference(
            id=uuid4(), user_id=current.user_id, imported_title="ORV", progress=50.0
        )
        conn = AsyncMock()

        progress = await ReferenceStore.merge_into_duplicate(conn, current, duplicate)

        assert progress == 80.0
        first, second = conn.execute.call_args_list
        assert first[0][1:] == (duplicate.id, 80.0)
        assert "deleted_at = now()" in second[0][0]
        assert second[0][1] == current.id


class TestListRecoverable:
    async def test_returns_ids(self):
        ids = [uuid4(), uuid4()]
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[{"id": i} for i in ids])

        assert await ReferenceStore.list_recoverable(conn, limit=10) == ids
