"""Pytest fixtures for resolution tests.

``db`` replaces the storage layer with an in-memory database so the
coordinator, canonicalizer and enricher run their real control flow
without PostgreSQL. ``run_serializable`` is emulated: the operation runs
against a snapshot that is restored when it raises, and retryable
conflicts re-run it like the real combinator.
"""

import copy
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest

from mangatrack_common import ConflictError
from mangatrack_common.config import Settings
from mangatrack_contracts import (
    CanonicalSeries,
    JobKind,
    Provider,
    ProviderCandidate,
    ResolutionStatus,
    TrackedReference,
)
from mangatrack_storage import (
    ClaimOutcome,
    ClaimResult,
    EventPublisher,
    JobQueue,
    ReferenceStore,
    SeriesStore,
    UpsertResult,
    is_retryable_conflict,
)

FAKE_CONN = object()


class FakeDatabase:
    """Dict-backed stand-in for the tables the resolution package touches."""

    def __init__(self):
        self.references: dict[UUID, TrackedReference] = {}
        self.series: dict[UUID, CanonicalSeries] = {}
        self.jobs: dict[str, dict] = {}
        self.events: list[dict] = []
        self.rebinds: list[tuple[str, UUID]] = []
        self.stats: dict[UUID, tuple] = {}
        self.held_by_others: set[UUID] = set()
        self.transactions = 0
        self.upsert_failures: list[BaseException] = []

    # -------------------------------------------------------------------------
    # Seeding helpers
    # -------------------------------------------------------------------------

    def add_reference(self, title: str, **fields) -> TrackedReference:
        fields.setdefault("user_id", uuid4())
        reference = TrackedReference(id=uuid4(), imported_title=title, **fields)
        self.references[reference.id] = reference
        return reference

    def add_series(self, title: str, **fields) -> CanonicalSeries:
        series = CanonicalSeries(id=uuid4(), title=title, **fields)
        self.series[series.id] = series
        return series

    def jobs_of(self, kind: JobKind) -> list[dict]:
        return [job for job in self.jobs.values() if job["kind"] is kind]

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _snapshot(self):
        return copy.deepcopy((self.references, self.series, self.jobs, self.events, self.rebinds))

    def _restore(self, snapshot) -> None:
        self.references, self.series, self.jobs, self.events, self.rebinds = snapshot

    async def run_serializable(self, operation, *, max_attempts=3, pool=None):
        for attempt in range(1, max_attempts + 1):
            snapshot = self._snapshot()
            self.transactions += 1
            try:
                return await operation(FAKE_CONN)
            except Exception as e:
                self._restore(snapshot)
                if not is_retryable_conflict(e):
                    raise
                if attempt == max_attempts:
                    raise ConflictError(
                        f"Transaction conflict after {max_attempts} attempts: {e}"
                    ) from e

    # -------------------------------------------------------------------------
    # ReferenceStore
    # -------------------------------------------------------------------------

    def _update(self, reference_id: UUID, **changes) -> TrackedReference:
        updated = self.references[reference_id].model_copy(update=changes)
        self.references[reference_id] = updated
        return updated

    async def try_claim(self, conn, reference_id):
        if reference_id not in self.references:
            return ClaimResult(ClaimOutcome.NOT_FOUND)
        if reference_id in self.held_by_others:
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED)
        return ClaimResult(ClaimOutcome.CLAIMED, self.references[reference_id].model_copy())

    async def find_duplicate(self, conn, user_id, series_id, exclude_id):
        matches = [
            r
            for r in self.references.values()
            if r.user_id == user_id
            and r.series_id == series_id
            and r.id != exclude_id
            and r.deleted_at is None
        ]
        matches.sort(key=lambda r: (-r.progress, str(r.id)))
        return matches[0] if matches else None

    async def mark_resolved(
        self,
        conn,
        reference_id,
        series_id,
        confidence,
        needs_review,
        retry_count,
        review_reason=None,
    ):
        current = self.references[reference_id]
        if current.deleted_at is not None or current.manually_linked:
            return None
        if current.series_id is not None and current.series_id != series_id:
            return None
        return self._update(
            reference_id,
            status=ResolutionStatus.RESOLVED,
            series_id=series_id,
            match_confidence=confidence,
            needs_review=needs_review,
            review_reason=review_reason,
            retry_count=retry_count,
            last_error=None,
        )

    async def mark_unresolved(
        self, conn, reference_id, retry_count, last_error, needs_review=False, review_reason=None
    ):
        self._update(
            reference_id,
            status=ResolutionStatus.UNRESOLVED,
            retry_count=retry_count,
            last_error=last_error,
            needs_review=needs_review,
            review_reason=review_reason,
        )

    async def mark_permanently_failed(self, conn, reference_id, retry_count, last_error):
        self._update(
            reference_id,
            status=ResolutionStatus.PERMANENTLY_FAILED,
            retry_count=retry_count,
            last_error=last_error,
            needs_review=False,
            review_reason=None,
        )

    async def record_transient_failure(self, conn, reference_id, last_error):
        self._update(reference_id, last_error=last_error)

    async def merge_into_duplicate(self, conn, current, duplicate):
        progress = max(current.progress, duplicate.progress)
        self._update(duplicate.id, progress=progress)
        self._update(current.id, deleted_at=datetime.now(timezone.utc))
        return progress

    # -------------------------------------------------------------------------
    # SeriesStore
    # -------------------------------------------------------------------------

    async def get_by_id(self, conn, series_id, for_update=False):
        series = self.series.get(series_id)
        return series if series is not None and series.deleted_at is None else None

    async def find_by_external_id(self, conn, provider, provider_id):
        for series in self.series.values():
            if series.external_ids.get(provider) == provider_id and series.deleted_at is None:
                return series
        return None

    async def find_by_title(self, conn, title):
        for series in self.series.values():
            if series.title.lower() == title.strip().lower() and series.deleted_at is None:
                return series
        return None

    async def upsert_canonical(self, conn, candidate: ProviderCandidate, details=None):
        if self.upsert_failures:
            raise self.upsert_failures.pop(0)

        series = await self.find_by_external_id(conn, candidate.provider, candidate.provider_id)
        if series is None:
            series = await self.find_by_title(conn, candidate.title)
        if series is None:
            series = self.add_series(
                candidate.title,
                external_ids={candidate.provider: candidate.provider_id},
                cover_url=candidate.cover_url,
                content_rating=candidate.content_rating,
            )
            return UpsertResult(series=series, created=True)
        if series.is_user_override:
            return UpsertResult(series=series, override_protected=True)

        updated_fields = ()
        if candidate.provider not in series.external_ids:
            ids = {**series.external_ids, candidate.provider: candidate.provider_id}
            series = series.model_copy(update={"external_ids": ids})
            updated_fields = (f"{candidate.provider.value}_id",)
        if candidate.cover_url and candidate.cover_url != series.cover_url:
            series = series.model_copy(update={"cover_url": candidate.cover_url})
            updated_fields += ("cover_url",)
        self.series[series.id] = series
        return UpsertResult(series=series, updated_fields=updated_fields)

    async def rebind_source_url(self, conn, source_url, series_id):
        self.rebinds.append((source_url, series_id))
        return 0

    async def update_statistics(self, conn, series_id, total_follows, average_rating):
        series = self.series.get(series_id)
        if series is None or series.is_user_override:
            return False
        self.stats[series_id] = (total_follows, average_rating)
        return True

    async def set_mangaupdates_id(self, conn, series_id, mangaupdates_id):
        series = self.series.get(series_id)
        if series is None or series.external_id(Provider.MANGAUPDATES):
            return False
        if any(s.external_id(Provider.MANGAUPDATES) == mangaupdates_id for s in self.series.values()):
            return False
        series.external_ids[Provider.MANGAUPDATES] = mangaupdates_id
        return True

    # -------------------------------------------------------------------------
    # JobQueue / EventPublisher
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        kind,
        payload,
        job_id,
        priority=0,
        delay=None,
        max_attempts=5,
        replace=False,
        conn=None,
    ):
        if job_id in self.jobs and not replace:
            return False
        self.jobs[job_id] = {
            "kind": JobKind(kind),
            "payload": payload,
            "priority": priority,
            "delay": delay,
            "max_attempts": max_attempts,
            "in_transaction": conn is not None,
        }
        return True

    async def series_available(
        self, conn, series_id, title, created, reference_id=None, user_id=None
    ):
        payload = {"series_id": series_id, "title": title, "created": created}
        if reference_id is not None:
            payload["reference_id"] = reference_id
        self.events.append(payload)
        return payload

    # -------------------------------------------------------------------------

    def install(self, monkeypatch) -> None:
        for name in (
            "try_claim",
            "find_duplicate",
            "mark_resolved",
            "mark_unresolved",
            "mark_permanently_failed",
            "record_transient_failure",
            "merge_into_duplicate",
        ):
            monkeypatch.setattr(ReferenceStore, name, getattr(self, name))
        for name in (
            "get_by_id",
            "find_by_external_id",
            "find_by_title",
            "upsert_canonical",
            "rebind_source_url",
            "update_statistics",
            "set_mangaupdates_id",
        ):
            monkeypatch.setattr(SeriesStore, name, getattr(self, name))
        monkeypatch.setattr(JobQueue, "enqueue", self.enqueue)
        monkeypatch.setattr(EventPublisher, "series_available", self.series_available)

        for module in ("coordinator", "canonicalize", "enrichment"):
            monkeypatch.setattr(
                f"mangatrack_resolution.{module}.run_serializable", self.run_serializable
            )

        pool = MagicMock()
        ctx = AsyncMock()
        ctx.__aenter__ = AsyncMock(return_value=FAKE_CONN)
        ctx.__aexit__ = AsyncMock(return_value=False)
        pool.acquire.return_value = ctx
        monkeypatch.setattr(
            "mangatrack_resolution.enrichment.get_connection_pool", AsyncMock(return_value=pool)
        )


@pytest.fixture
def db(monkeypatch) -> FakeDatabase:
    """In-memory storage layer."""
    fake = FakeDatabase()
    fake.install(monkeypatch)
    return fake


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from any local .env file."""
    return Settings(_env_file=None)
