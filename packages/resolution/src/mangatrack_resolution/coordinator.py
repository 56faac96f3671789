"""Resolution coordinator: drives one tracked reference through matching.

One call to ``ResolutionCoordinator.resolve`` is one attempt. The whole
attempt runs in a single serializable transaction that holds the
reference's row lock:

    claim (SKIP LOCKED) -> skip checks -> match -> policy -> upsert/link
    -> duplicate merge or bind -> events and follow-up jobs

Failures are written to the reference inside the same transaction.
Transient failures are re-raised after commit so the job queue retries
them with backoff; every other outcome is returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import UUID

import asyncpg
from mangatrack_common import StorageError, get_logger
from mangatrack_common.config import Settings, get_settings
from mangatrack_contracts import (
    CanonicalSeries,
    JobKind,
    LinkDetails,
    Provider,
    ResolutionStatus,
    TrackedReference,
)
from mangatrack_matching import CandidateMatcher, MatchResult
from mangatrack_storage import (
    ClaimOutcome,
    EventPublisher,
    JobQueue,
    ReferenceStore,
    SeriesCatalog,
    SeriesStore,
    cover_job_id,
    mangaupdates_job_id,
    run_serializable,
    stats_job_id,
)

from mangatrack_resolution.classification import (
    NO_MATCH_MESSAGE,
    ErrorClass,
    classify,
    sanitize_error,
)
from mangatrack_resolution.policy import check_content_policy
from mangatrack_resolution.recovery import schedule_recovery

logger = get_logger(__name__)

DUPLICATE_MORE_PROGRESS = "duplicate_has_more_progress"
DUPLICATE_MANUALLY_LINKED = "duplicate_manually_linked"
FOLLOW_UP_PRIORITY = 10


class Outcome(str, Enum):
    """What a resolution attempt did."""

    RESOLVED = "resolved"
    MERGED = "merged"
    NEEDS_REVIEW = "needs_review"
    UNRESOLVED = "unresolved"
    PERMANENTLY_FAILED = "permanently_failed"
    TRANSIENT_FAILURE = "transient_failure"
    GUARD_ABORTED = "guard_aborted"
    SKIPPED = "skipped"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ResolutionOutcome:
    reference_id: UUID
    outcome: Outcome
    series_id: Optional[UUID] = None
    confidence: Optional[float] = None
    needs_review: bool = False
    series_created: bool = False
    survivor_id: Optional[UUID] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class _Attempt:
    result: ResolutionOutcome
    reraise: Optional[BaseException] = None


def _is_database_error(exc: BaseException) -> bool:
    # A failed statement aborts the transaction, so nothing more can be written on it.
    return isinstance(exc, (StorageError, asyncpg.PostgresError, asyncpg.InterfaceError))


class ResolutionCoordinator:
    """Resolves tracked references against the canonical catalog.

    Args:
        matcher: Candidate matcher (provider, cache and scoring policy)
        settings: Lifecycle thresholds (defaults to ``get_settings()``)
        pool: Connection pool (default: the global pool)

    Example:
        >>> async with MangaDexClient() as client:
        ...     coordinator = ResolutionCoordinator(CandidateMatcher(client))
        ...     outcome = await coordinator.resolve(reference_id)
    """

    def __init__(
        self,
        matcher: CandidateMatcher,
        settings: Optional[Settings] = None,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.matcher = matcher
        self.settings = settings or get_settings()
        self.pool = pool

    async def resolve(self, reference_id: UUID) -> ResolutionOutcome:
        """Run one resolution attempt for ``reference_id``.

        Returns:
            ResolutionOutcome describing what was written

        Raises:
            TransientError: Provider rate limit, outage, network failure or
                lock contention; the failure is recorded before raising
            ConflictError: Serialization conflicts outlasted the retries
            StorageError: Database failure
        """

        async def work(conn: asyncpg.Connection) -> _Attempt:
            return await self._attempt(conn, reference_id)

        attempt = await run_serializable(
            work, max_attempts=self.settings.transaction_max_attempts, pool=self.pool
        )
        if attempt.reraise is not None:
            raise attempt.reraise
        return attempt.result

    # -------------------------------------------------------------------------
    # Transaction body
    # -------------------------------------------------------------------------

    async def _attempt(self, conn: asyncpg.Connection, reference_id: UUID) -> _Attempt:
        claim = await ReferenceStore.try_claim(conn, reference_id)
        if claim.outcome is ClaimOutcome.NOT_FOUND:
            logger.warning("reference_not_found", reference_id=str(reference_id))
            return _Attempt(ResolutionOutcome(reference_id, Outcome.NOT_FOUND))
        if claim.outcome is ClaimOutcome.ALREADY_CLAIMED:
            logger.info("reference_claimed_elsewhere", reference_id=str(reference_id))
            return _Attempt(ResolutionOutcome(reference_id, Outcome.ALREADY_CLAIMED))

        reference = claim.reference
        skip_reason = await self._skip_reason(conn, reference)
        if skip_reason is not None:
            logger.info("resolution_skipped", reference_id=str(reference_id), reason=skip_reason)
            return _Attempt(
                ResolutionOutcome(
                    reference_id,
                    Outcome.SKIPPED,
                    series_id=reference.series_id,
                    detail=skip_reason,
                )
            )

        attempt_number = reference.retry_count + 1
        try:
            return await self._match_and_apply(conn, reference, attempt_number)
        except Exception as e:
            if _is_database_error(e) or classify(e) is ErrorClass.CONFLICT:
                raise
            return await self._record_failure(conn, reference, attempt_number, e)

    async def _skip_reason(
        self, conn: asyncpg.Connection, reference: TrackedReference
    ) -> Optional[str]:
        if reference.deleted_at is not None:
            return "deleted"
        if reference.status is ResolutionStatus.RESOLVED:
            return "already_resolved"
        if reference.manually_linked or reference.manual_override_at is not None:
            return "manually_linked"
        if reference.series_id is not None:
            bound = await SeriesStore.get_by_id(conn, reference.series_id)
            if bound is not None and bound.is_user_override:
                return "user_override_series"
        return None

    async def _match_and_apply(
        self, conn: asyncpg.Connection, reference: TrackedReference, attempt_number: int
    ) -> _Attempt:
        result = await self.matcher.match(reference, attempt_number, SeriesCatalog(conn))
        if not result.matched:
            return await self._record_no_match(conn, reference, attempt_number)

        content_rating = (
            result.candidate.content_rating if result.candidate else result.series.content_rating
        )
        check_content_policy(content_rating, self.settings.blocked_content_ratings)

        series, created = await self._canonical_series(conn, result)

        duplicate = await ReferenceStore.find_duplicate(
            conn, reference.user_id, series.id, reference.id
        )
        if duplicate is not None:
            return await self._resolve_duplicate(
                conn, reference, duplicate, series, attempt_number, result
            )

        return await self._bind(conn, reference, series, created, attempt_number, result)

    async def _canonical_series(
        self, conn: asyncpg.Connection, result: MatchResult
    ) -> tuple[CanonicalSeries, bool]:
        if result.candidate is None:
            return result.series, False

        upsert = await SeriesStore.upsert_canonical(
            conn,
            result.candidate,
            LinkDetails(match_confidence=round(result.confidence, 4)),
        )
        return upsert.series, upsert.created

    async def _bind(
        self,
        conn: asyncpg.Connection,
        reference: TrackedReference,
        series: CanonicalSeries,
        created: bool,
        attempt_number: int,
        result: MatchResult,
    ) -> _Attempt:
        needs_review = result.needs_review
        confident = (
            result.confidence >= self.settings.high_confidence_threshold and not needs_review
        )
        review_reason = None
        if needs_review and result.review and result.review.factors:
            review_reason = ",".join(result.review.factors)

        updated = await ReferenceStore.mark_resolved(
            conn,
            reference.id,
            series.id,
            confidence=result.confidence,
            needs_review=needs_review,
            retry_count=0 if confident else attempt_number,
            review_reason=review_reason,
        )
        if updated is None:
            logger.warning(
                "resolution_guard_aborted",
                reference_id=str(reference.id),
                series_id=str(series.id),
                bound_series_id=str(reference.series_id) if reference.series_id else None,
            )
            return _Attempt(
                ResolutionOutcome(reference.id, Outcome.GUARD_ABORTED, series_id=series.id)
            )

        if reference.source_url:
            await SeriesStore.rebind_source_url(conn, reference.source_url, series.id)

        await self._announce(conn, reference, series, created)

        logger.info(
            "reference_resolved",
            reference_id=str(reference.id),
            series_id=str(series.id),
            confidence=round(result.confidence, 4),
            source=result.source.value if result.source else None,
            needs_review=needs_review,
            series_created=created,
            attempt=attempt_number,
        )
        return _Attempt(
            ResolutionOutcome(
                reference.id,
                Outcome.RESOLVED,
                series_id=series.id,
                confidence=result.confidence,
                needs_review=needs_review,
                series_created=created,
            )
        )

    async def _resolve_duplicate(
        self,
        conn: asyncpg.Connection,
        reference: TrackedReference,
        duplicate: TrackedReference,
        series: CanonicalSeries,
        attempt_number: int,
        result: MatchResult,
    ) -> _Attempt:
        """Fold ``reference`` into an existing entry for the same series.

        The existing entry survives unless the current one carries more
        reading progress or was linked by hand; those cases are left for
        a person to sort out.
        """
        if reference.manually_linked or reference.progress > duplicate.progress:
            reason = (
                DUPLICATE_MANUALLY_LINKED
                if reference.manually_linked
                else DUPLICATE_MORE_PROGRESS
            )
            await ReferenceStore.mark_unresolved(
                conn,
                reference.id,
                retry_count=attempt_number,
                last_error=f"Duplicate of tracked entry {duplicate.id}",
                needs_review=True,
                review_reason=reason,
            )
            logger.warning(
                "duplicate_merge_aborted",
                reference_id=str(reference.id),
                duplicate_id=str(duplicate.id),
                series_id=str(series.id),
                reason=reason,
            )
            return _Attempt(
                ResolutionOutcome(
                    reference.id,
                    Outcome.NEEDS_REVIEW,
                    series_id=series.id,
                    confidence=result.confidence,
                    needs_review=True,
                    survivor_id=duplicate.id,
                    detail=reason,
                )
            )

        await ReferenceStore.merge_into_duplicate(conn, reference, duplicate)
        return _Attempt(
            ResolutionOutcome(
                reference.id,
                Outcome.MERGED,
                series_id=series.id,
                confidence=result.confidence,
                survivor_id=duplicate.id,
            )
        )

    async def _announce(
        self,
        conn: asyncpg.Connection,
        reference: TrackedReference,
        series: CanonicalSeries,
        created: bool,
    ) -> None:
        await EventPublisher.series_available(
            conn,
            series.id,
            series.title,
            created=created,
            reference_id=reference.id,
            user_id=reference.user_id,
        )
        payload = {"series_id": str(series.id)}
        await JobQueue.enqueue(
            JobKind.REFRESH_COVER,
            payload,
            job_id=cover_job_id(series.id),
            priority=FOLLOW_UP_PRIORITY,
            conn=conn,
        )
        await JobQueue.enqueue(
            JobKind.ENRICH_STATS,
            payload,
            job_id=stats_job_id(series.id),
            priority=FOLLOW_UP_PRIORITY,
            conn=conn,
        )
        if not series.external_id(Provider.MANGAUPDATES):
            await JobQueue.enqueue(
                JobKind.ENRICH_MANGAUPDATES,
                payload,
                job_id=mangaupdates_job_id(series.id),
                priority=FOLLOW_UP_PRIORITY,
                conn=conn,
            )

    # -------------------------------------------------------------------------
    # Failure paths
    # -------------------------------------------------------------------------

    async def _record_no_match(
        self, conn: asyncpg.Connection, reference: TrackedReference, attempt_number: int
    ) -> _Attempt:
        await ReferenceStore.mark_unresolved(
            conn, reference.id, retry_count=attempt_number, last_error=NO_MATCH_MESSAGE
        )
        await schedule_recovery(conn, reference.id, attempt_number, self.settings)
        return _Attempt(
            ResolutionOutcome(reference.id, Outcome.UNRESOLVED, detail=NO_MATCH_MESSAGE)
        )

    async def _record_failure(
        self,
        conn: asyncpg.Connection,
        reference: TrackedReference,
        attempt_number: int,
        exc: Exception,
    ) -> _Attempt:
        error_class = classify(exc)
        message = sanitize_error(exc)
        logger.warning(
            "resolution_attempt_failed",
            reference_id=str(reference.id),
            error_class=error_class.value,
            error_type=type(exc).__name__,
            error=message,
            attempt=attempt_number,
        )

        if error_class is ErrorClass.TRANSIENT:
            await ReferenceStore.record_transient_failure(conn, reference.id, message)
            return _Attempt(
                ResolutionOutcome(reference.id, Outcome.TRANSIENT_FAILURE, detail=message),
                reraise=exc,
            )

        if error_class is ErrorClass.NOT_FOUND:
            return await self._record_no_match(conn, reference, attempt_number)

        if error_class is ErrorClass.POLICY_BLOCKED:
            await ReferenceStore.mark_permanently_failed(
                conn, reference.id, retry_count=attempt_number, last_error=message
            )
            return _Attempt(
                ResolutionOutcome(reference.id, Outcome.PERMANENTLY_FAILED, detail=message)
            )

        if attempt_number >= self.settings.permanent_failure_after:
            await ReferenceStore.mark_permanently_failed(
                conn, reference.id, retry_count=attempt_number, last_error=message
            )
            outcome = Outcome.PERMANENTLY_FAILED
        else:
            await ReferenceStore.mark_unresolved(
                conn, reference.id, retry_count=attempt_number, last_error=message
            )
            outcome = Outcome.UNRESOLVED
        await schedule_recovery(conn, reference.id, attempt_number, self.settings)
        return _Attempt(ResolutionOutcome(reference.id, outcome, detail=message))
