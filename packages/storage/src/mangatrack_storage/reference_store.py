"""ReferenceStore - tracked references (a user's library entries).

Resolution state changes go through the coordinator, which holds the
row lock from ``try_claim`` for the whole transaction. All methods take
the caller's connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

import asyncpg
from mangatrack_common import StorageError, get_logger
from mangatrack_contracts import ResolutionStatus, TrackedReference

from mangatrack_storage.transactions import storage_errors

logger = get_logger(__name__)


class ClaimOutcome(str, Enum):
    """Result of trying to lock a reference for resolution."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    reference: Optional[TrackedReference] = None

    @property
    def claimed(self) -> bool:
        return self.outcome is ClaimOutcome.CLAIMED


def _row_to_reference(row: asyncpg.Record) -> TrackedReference:
    return TrackedReference(
        id=row["id"],
        user_id=row["user_id"],
        source_url=row["source_url"],
        imported_title=row["imported_title"],
        status=ResolutionStatus(row["status"]),
        retry_count=row["retry_count"],
        needs_review=row["needs_review"],
        review_reason=row["review_reason"],
        last_attempt_at=row["last_attempt_at"],
        last_error=row["last_error"],
        series_id=row["series_id"],
        match_confidence=row["match_confidence"],
        progress=float(row["progress"] or 0),
        manually_linked=row["manually_linked"],
        manual_override_at=row["manual_override_at"],
        language_hint=row["language_hint"],
        year_hint=row["year_hint"],
        creator_hints=list(row["creator_hints"] or []),
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ReferenceStore:
    """Storage operations for the tracked_references table."""

    @staticmethod
    async def create(
        conn: asyncpg.Connection,
        user_id: UUID,
        imported_title: str,
        source_url: Optional[str] = None,
        progress: float = 0.0,
        language_hint: Optional[str] = None,
        year_hint: Optional[int] = None,
        creator_hints: Optional[list[str]] = None,
    ) -> TrackedReference:
        """Insert a pending reference.

        Returns:
            The created TrackedReference

        Raises:
            StorageError: If the title is blank or the insert fails
        """
        if not imported_title or not imported_title.strip():
            raise StorageError("imported_title must not be blank")

        with storage_errors("create reference", user_id=str(user_id)):
            row = await conn.fetchrow(
                """
                INSERT INTO tracked_references (
                    user_id, source_url, imported_title, progress,
                    language_hint, year_hint, creator_hints
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                user_id,
                source_url,
                imported_title.strip(),
                progress,
                language_hint,
                year_hint,
                creator_hints or [],
            )

        reference = _row_to_reference(row)
        logger.info(
            "reference_created",
            reference_id=str(reference.id),
            user_id=str(user_id),
            title=reference.imported_title[:80],
        )
        return reference

    @staticmethod
    async def get_by_id(conn: asyncpg.Connection, reference_id: UUID) -> Optional[TrackedReference]:
        """Fetch a reference by id, including soft-deleted ones."""
        with storage_errors("get reference", reference_id=str(reference_id)):
            row = await conn.fetchrow(
                "SELECT * FROM tracked_references WHERE id = $1", reference_id
            )
        return _row_to_reference(row) if row else None

    @staticmethod
    async def try_claim(conn: asyncpg.Connection, reference_id: UUID) -> ClaimResult:
        """Lock a reference row without waiting.

        Uses ``FOR UPDATE SKIP LOCKED``: a row already locked by another
        worker is reported as ALREADY_CLAIMED instead of blocking.

        Args:
            conn: Connection inside the coordinator's transaction
            reference_id: Reference UUID

        Returns:
            ClaimResult; ``reference`` is set only when CLAIMED
        """
        with storage_errors("claim reference", reference_id=str(reference_id)):
            row = await conn.fetchrow(
                """
                SELECT * FROM tracked_references
                WHERE id = $1
                FOR UPDATE SKIP LOCKED
                """,
                reference_id,
            )
            if row is not None:
                return ClaimResult(ClaimOutcome.CLAIMED, _row_to_reference(row))

            exists = await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM tracked_references WHERE id = $1)",
                reference_id,
            )

        if exists:
            logger.debug("reference_already_claimed", reference_id=str(reference_id))
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED)
        return ClaimResult(ClaimOutcome.NOT_FOUND)

    @staticmethod
    async def find_duplicate(
        conn: asyncpg.Connection, user_id: UUID, series_id: UUID, exclude_id: UUID
    ) -> Optional[TrackedReference]:
        """Find another live reference of ``user_id`` bound to ``series_id``.

        With several duplicates the survivor is the one with the most
        progress, then the lowest id. The row is locked.
        """
        with storage_errors("find duplicate reference", reference_id=str(exclude_id)):
            row = await conn.fetchrow(
                """
                SELECT * FROM tracked_references
                WHERE user_id = $1
                  AND series_id = $2
                  AND id <> $3
                  AND deleted_at IS NULL
                ORDER BY progress DESC, id ASC
                LIMIT 1
                FOR UPDATE
                """,
                user_id,
                series_id,
                exclude_id,
            )
        return _row_to_reference(row) if row else None

    # -------------------------------------------------------------------------
    # Outcome writes
    # -------------------------------------------------------------------------

    @staticmethod
    async def mark_resolved(
        conn: asyncpg.Connection,
        reference_id: UUID,
        series_id: UUID,
        confidence: float,
        needs_review: bool,
        retry_count: int,
        review_reason: Optional[str] = None,
    ) -> Optional[TrackedReference]:
        """Bind a reference to a series.

        Refuses to re-point a reference that is already bound to a
        different series, has been manually linked, or was deleted.

        Returns:
            Updated reference, or None when the guard refused the bind
        """
        with storage_errors("mark reference resolved", reference_id=str(reference_id)):
            row = await conn.fetchrow(
                """
                UPDATE tracked_references
                SET status = $3,
                    series_id = $2,
                    match_confidence = $4,
                    needs_review = $5,
                    review_reason = $6,
                    retry_count = $7,
                    last_error = NULL,
                    last_attempt_at = now(),
                    updated_at = now()
                WHERE id = $1
                  AND deleted_at IS NULL
                  AND manually_linked = FALSE
                  AND (series_id IS NULL OR series_id = $2)
                RETURNING *
                """,
                reference_id,
                series_id,
                ResolutionStatus.RESOLVED.value,
                confidence,
                needs_review,
                review_reason,
                retry_count,
            )

        if row is None:
            logger.warning(
                "reference_bind_refused",
                reference_id=str(reference_id),
                series_id=str(series_id),
            )
            return None
        return _row_to_reference(row)

    @staticmethod
    async def mark_unresolved(
        conn: asyncpg.Connection,
        reference_id: UUID,
        retry_count: int,
        last_error: Optional[str],
        needs_review: bool = False,
        review_reason: Optional[str] = None,
    ) -> None:
        """Record a failed attempt that may be retried by recovery."""
        await ReferenceStore._set_failed(
            conn,
            reference_id,
            ResolutionStatus.UNRESOLVED,
            retry_count,
            last_error,
            needs_review,
            review_reason,
        )

    @staticmethod
    async def mark_permanently_failed(
        conn: asyncpg.Connection,
        reference_id: UUID,
        retry_count: int,
        last_error: Optional[str],
    ) -> None:
        await ReferenceStore._set_failed(
            conn,
            reference_id,
            ResolutionStatus.PERMANENTLY_FAILED,
            retry_count,
            last_error,
            False,
            None,
        )

    @staticmethod
    async def _set_failed(
        conn: asyncpg.Connection,
        reference_id: UUID,
        status: ResolutionStatus,
        retry_count: int,
        last_error: Optional[str],
        needs_review: bool,
        review_reason: Optional[str],
    ) -> None:
        with storage_errors("record failed attempt", reference_id=str(reference_id)):
            await conn.execute(
                """
                UPDATE tracked_references
                SET status = $2,
                    retry_count = $3,
                    last_error = $4,
                    needs_review = $5,
                    review_reason = $6,
                    last_attempt_at = now(),
                    updated_at = now()
                WHERE id = $1
                """,
                reference_id,
                status.value,
                retry_count,
                last_error,
                needs_review,
                review_reason,
            )

    @staticmethod
    async def record_transient_failure(
        conn: asyncpg.Connection, reference_id: UUID, last_error: Optional[str]
    ) -> None:
        """Note a retryable failure without changing the resolution status."""
        with storage_errors("record transient failure", reference_id=str(reference_id)):
            await conn.execute(
                """
                UPDATE tracked_references
                SET last_error = $2, last_attempt_at = now(), updated_at = now()
                WHERE id = $1
                """,
                reference_id,
                last_error,
            )

    @staticmethod
    async def merge_into_duplicate(
        conn: asyncpg.Connection, current: TrackedReference, duplicate: TrackedReference
    ) -> float:
        """Fold ``current`` into ``duplicate`` and soft-delete ``current``.

        The surviving duplicate keeps the larger of the two progress values.

        Returns:
            The surviving reference's progress
        """
        progress = max(current.progress, duplicate.progress)

        with storage_errors("merge duplicate reference", reference_id=str(current.id)):
            await conn.execute(
                """
                UPDATE tracked_references
                SET progress = GREATEST(progress, $2), updated_at = now()
                WHERE id = $1
                """,
                duplicate.id,
                progress,
            )
            await conn.execute(
                """
                UPDATE tracked_references
                SET deleted_at = now(), updated_at = now()
                WHERE id = $1
                """,
                current.id,
            )

        logger.info(
            "duplicate_reference_merged",
            reference_id=str(current.id),
            survivor_id=str(duplicate.id),
            progress=progress,
        )
        return progress

    @staticmethod
    async def set_manual_link(
        conn: asyncpg.Connection, reference_id: UUID, series_id: UUID
    ) -> TrackedReference:
        """Bind a reference by hand; automated resolution leaves it alone afterwards.

        Raises:
            StorageError: Reference not found
        """
        with storage_errors("set manual link", reference_id=str(reference_id)):
            row = await conn.fetchrow(
                """
                UPDATE tracked_references
                SET series_id = $2,
                    status = $3,
                    manually_linked = TRUE,
                    manual_override_at = now(),
                    needs_review = FALSE,
                    review_reason = NULL,
                    match_confidence = 1.0,
                    updated_at = now()
                WHERE id = $1 AND deleted_at IS NULL
                RETURNING *
                """,
                reference_id,
                series_id,
                ResolutionStatus.RESOLVED.value,
            )
        if row is None:
            raise StorageError(f"Reference not found: {reference_id}")

        logger.info(
            "reference_manually_linked",
            reference_id=str(reference_id),
            series_id=str(series_id),
        )
        return _row_to_reference(row)

    @staticmethod
    async def list_recoverable(
        conn: asyncpg.Connection,
        limit: int = 100,
        idle_for: timedelta = timedelta(hours=1),
    ) -> list[UUID]:
        """Ids of pending/unresolved references not attempted recently.

        Used by the recovery sweep to re-enqueue work that lost its job.
        """
        cutoff = datetime.now(timezone.utc) - idle_for
        with storage_errors("list recoverable references"):
            rows = await conn.fetch(
                """
                SELECT id FROM tracked_references
                WHERE status IN ('pending', 'unresolved')
                  AND deleted_at IS NULL
                  AND manually_linked = FALSE
                  AND (last_attempt_at IS NULL OR last_attempt_at < $1)
                ORDER BY last_attempt_at ASC NULLS FIRST, id ASC
                LIMIT $2
                """,
                cutoff,
                limit,
            )
        return [row["id"] for row in rows]
