"""SeriesStore - canonical series records and their source links.

Every method takes the caller's connection so that lookups, merges and
link upserts share one transaction. Use ``run_serializable`` to open it.

Lookup order for an incoming candidate:
1. Series holding the candidate's provider identifier
2. Series bound to an existing (provider, provider_id) source link
3. Series with the same title (case-insensitive)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import asyncpg
from mangatrack_common import OverrideProtectedError, StorageError, get_logger
from mangatrack_contracts import (
    CanonicalSeries,
    LinkDetails,
    Provenance,
    Provider,
    ProviderCandidate,
    SeriesStatus,
    SourceLink,
)

from mangatrack_storage.merge_rules import (
    EXTERNAL_ID_COLUMNS,
    is_valid_cover_url,
    plan_create,
    plan_merge,
)
from mangatrack_storage.transactions import storage_errors

logger = get_logger(__name__)

SERIES_COLUMNS = (
    "title",
    "alt_titles",
    "description",
    "cover_url",
    "status",
    "content_rating",
    "genres",
    "tags",
    "mangadex_id",
    "mangaupdates_id",
    "original_language",
    "year",
)


@dataclass
class UpsertResult:
    """Outcome of ``SeriesStore.upsert_canonical``."""

    series: CanonicalSeries
    created: bool = False
    updated_fields: tuple[str, ...] = ()
    override_protected: bool = False


def _row_to_series(row: asyncpg.Record) -> CanonicalSeries:
    external_ids = {
        provider: row[column]
        for provider, column in EXTERNAL_ID_COLUMNS.items()
        if row[column]
    }
    return CanonicalSeries(
        id=row["id"],
        title=row["title"],
        alt_titles=list(row["alt_titles"] or []),
        description=row["description"],
        cover_url=row["cover_url"],
        status=SeriesStatus(row["status"]) if row["status"] else None,
        content_rating=row["content_rating"],
        genres=list(row["genres"] or []),
        tags=list(row["tags"] or []),
        external_ids=external_ids,
        original_language=row["original_language"],
        year=row["year"],
        provenance=Provenance(row["provenance"]),
        override_user_id=row["override_user_id"],
        total_follows=row["total_follows"],
        average_rating=row["average_rating"],
        stats_updated_at=row["stats_updated_at"],
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_link(row: asyncpg.Record) -> SourceLink:
    return SourceLink(
        id=row["id"],
        series_id=row["series_id"],
        provider=Provider(row["provider"]),
        provider_id=row["provider_id"],
        source_url=row["source_url"],
        source_title=row["source_title"],
        match_confidence=row["match_confidence"],
        cover_url=row["cover_url"],
        cover_updated_at=row["cover_updated_at"],
        status=row["source_status"],
        consecutive_failures=row["consecutive_failures"],
        next_check_at=row["next_check_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SeriesStore:
    """Storage operations for the series and series_sources tables."""

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @staticmethod
    async def get_by_id(
        conn: asyncpg.Connection, series_id: UUID, for_update: bool = False
    ) -> Optional[CanonicalSeries]:
        """Fetch a non-deleted series by id.

        Args:
            conn: Connection (inside the caller's transaction)
            series_id: Series UUID
            for_update: Lock the row until the transaction ends

        Returns:
            CanonicalSeries if found, None otherwise
        """
        query = "SELECT * FROM series WHERE id = $1 AND deleted_at IS NULL"
        if for_update:
            query += " FOR UPDATE"
        with storage_errors("get series", series_id=str(series_id)):
            row = await conn.fetchrow(query, series_id)
        return _row_to_series(row) if row else None

    @staticmethod
    async def find_by_external_id(
        conn: asyncpg.Connection, provider: Provider, provider_id: str
    ) -> Optional[CanonicalSeries]:
        """Find the series holding ``provider_id`` in the provider's slot."""
        column = EXTERNAL_ID_COLUMNS[Provider(provider)]
        with storage_errors("find series by external id", provider=Provider(provider).value):
            row = await conn.fetchrow(
                f"SELECT * FROM series WHERE {column} = $1 AND deleted_at IS NULL",
                provider_id,
            )
        return _row_to_series(row) if row else None

    @staticmethod
    async def find_by_source_link(
        conn: asyncpg.Connection, provider: Provider, provider_id: str
    ) -> Optional[CanonicalSeries]:
        """Find the series an existing (provider, provider_id) link points at."""
        with storage_errors("find series by source link", provider=Provider(provider).value):
            row = await conn.fetchrow(
                """
                SELECT s.*
                FROM series_sources ss
                JOIN series s ON s.id = ss.series_id
                WHERE ss.provider = $1 AND ss.provider_id = $2 AND s.deleted_at IS NULL
                """,
                Provider(provider).value,
                provider_id,
            )
        return _row_to_series(row) if row else None

    @staticmethod
    async def find_by_title(conn: asyncpg.Connection, title: str) -> Optional[CanonicalSeries]:
        """Case-insensitive exact title lookup (oldest row wins)."""
        with storage_errors("find series by title"):
            row = await conn.fetchrow(
                """
                SELECT * FROM series
                WHERE lower(title) = lower($1) AND deleted_at IS NULL
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                title.strip(),
            )
        return _row_to_series(row) if row else None

    @staticmethod
    async def get_link(
        conn: asyncpg.Connection, provider: Provider, provider_id: str
    ) -> Optional[SourceLink]:
        with storage_errors("get source link", provider=Provider(provider).value):
            row = await conn.fetchrow(
                "SELECT * FROM series_sources WHERE provider = $1 AND provider_id = $2",
                Provider(provider).value,
                provider_id,
            )
        return _row_to_link(row) if row else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @staticmethod
    async def upsert_canonical(
        conn: asyncpg.Connection,
        candidate: ProviderCandidate,
        details: Optional[LinkDetails] = None,
    ) -> UpsertResult:
        """Create or enrich the canonical series for ``candidate`` and link it.

        Existing series are found by provider id, then by source link,
        then by title. Found series are enriched per ``plan_merge``; a
        user-overridden series is returned unchanged. The candidate's
        (provider, provider_id) link is upserted either way.

        Args:
            conn: Connection inside a serializable transaction
            candidate: Provider metadata to fold in
            details: Extra link metadata (URL, confidence, cover)

        Returns:
            UpsertResult with the resulting series

        Raises:
            ConflictError: A concurrent writer created the same identifier
            StorageError: Any other database failure

        Example:
            >>> async def work(conn):
            ...     return await SeriesStore.upsert_canonical(conn, candidate)
            >>> result = await run_serializable(work)
        """
        series = await SeriesStore.find_by_external_id(
            conn, candidate.provider, candidate.provider_id
        )
        matched_by = "external_id"
        if series is None:
            series = await SeriesStore.find_by_source_link(
                conn, candidate.provider, candidate.provider_id
            )
            matched_by = "source_link"
        if series is None:
            series = await SeriesStore.find_by_title(conn, candidate.title)
            matched_by = "title"

        if series is None:
            series = await SeriesStore._insert(conn, candidate)
            result = UpsertResult(series=series, created=True)
        else:
            logger.debug(
                "series_matched_for_upsert",
                series_id=str(series.id),
                matched_by=matched_by,
            )
            result = await SeriesStore._merge(conn, series, candidate)

        link_details = details or LinkDetails()
        if link_details.source_title is None:
            link_details = link_details.model_copy(update={"source_title": candidate.title})
        if link_details.cover_url is None and is_valid_cover_url(candidate.cover_url):
            link_details = link_details.model_copy(update={"cover_url": candidate.cover_url})
        if link_details.source_url is None and candidate.source_url:
            link_details = link_details.model_copy(update={"source_url": candidate.source_url})

        await SeriesStore.link_source(
            conn, result.series.id, candidate.provider, candidate.provider_id, link_details
        )
        return result

    @staticmethod
    async def _insert(conn: asyncpg.Connection, candidate: ProviderCandidate) -> CanonicalSeries:
        values = plan_create(candidate)
        columns = list(SERIES_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

        with storage_errors("create series", provider_id=candidate.provider_id):
            row = await conn.fetchrow(
                f"""
                INSERT INTO series ({", ".join(columns)})
                VALUES ({placeholders})
                RETURNING *
                """,
                *[values[c] for c in columns],
            )

        series = _row_to_series(row)
        logger.info(
            "series_created",
            series_id=str(series.id),
            title=series.title[:80],
            provider=candidate.provider.value,
            provider_id=candidate.provider_id,
        )
        return series

    @staticmethod
    async def _merge(
        conn: asyncpg.Connection, series: CanonicalSeries, candidate: ProviderCandidate
    ) -> UpsertResult:
        try:
            plan = plan_merge(series, candidate)
        except OverrideProtectedError:
            logger.info(
                "series_merge_skipped_override",
                series_id=str(series.id),
                provider=candidate.provider.value,
                provider_id=candidate.provider_id,
            )
            return UpsertResult(series=series, override_protected=True)

        if plan.is_noop:
            return UpsertResult(series=series)

        columns = list(plan.changes)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=2))
        with storage_errors("merge series", series_id=str(series.id)):
            row = await conn.fetchrow(
                f"""
                UPDATE series
                SET {assignments}, updated_at = now()
                WHERE id = $1 AND provenance = 'canonical'
                RETURNING *
                """,
                series.id,
                *[plan.changes[c] for c in columns],
            )

        if row is None:
            # Override set between our read and write
            logger.info("series_merge_skipped_override", series_id=str(series.id))
            return UpsertResult(series=series, override_protected=True)

        logger.info(
            "series_enriched",
            series_id=str(series.id),
            fields=columns,
            provider=candidate.provider.value,
        )
        return UpsertResult(series=_row_to_series(row), updated_fields=tuple(columns))

    @staticmethod
    async def link_source(
        conn: asyncpg.Connection,
        series_id: UUID,
        provider: Provider,
        provider_id: str,
        details: Optional[LinkDetails] = None,
    ) -> SourceLink:
        """Bind (provider, provider_id) to ``series_id``.

        Upserts on the natural key, so re-resolving the same source moves
        or refreshes the existing link rather than adding a second one.

        Returns:
            The stored SourceLink
        """
        details = details or LinkDetails()
        now = datetime.now(timezone.utc)
        cover_updated_at = now if details.cover_url else None

        with storage_errors("link source", provider=Provider(provider).value, provider_id=provider_id):
            row = await conn.fetchrow(
                """
                INSERT INTO series_sources (
                    series_id, provider, provider_id, source_url, source_title,
                    match_confidence, cover_url, cover_updated_at, source_status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'active')
                ON CONFLICT (provider, provider_id) DO UPDATE SET
                    series_id = EXCLUDED.series_id,
                    source_url = COALESCE(EXCLUDED.source_url, series_sources.source_url),
                    source_title = COALESCE(EXCLUDED.source_title, series_sources.source_title),
                    match_confidence = COALESCE(EXCLUDED.match_confidence, series_sources.match_confidence),
                    cover_url = COALESCE(EXCLUDED.cover_url, series_sources.cover_url),
                    cover_updated_at = COALESCE(EXCLUDED.cover_updated_at, series_sources.cover_updated_at),
                    source_status = 'active',
                    updated_at = now()
                RETURNING *
                """,
                series_id,
                Provider(provider).value,
                provider_id,
                details.source_url,
                details.source_title,
                details.match_confidence,
                details.cover_url,
                cover_updated_at,
            )

        logger.debug(
            "source_linked",
            series_id=str(series_id),
            provider=Provider(provider).value,
            provider_id=provider_id,
        )
        return _row_to_link(row)

    @staticmethod
    async def rebind_source_url(
        conn: asyncpg.Connection, source_url: str, series_id: UUID
    ) -> int:
        """Point links for ``source_url`` at ``series_id``.

        Only done when the target series has no link for that URL yet, so
        a link is never duplicated on the target.

        Returns:
            Number of links moved
        """
        if not source_url:
            return 0

        with storage_errors("rebind source url", series_id=str(series_id)):
            status = await conn.execute(
                """
                UPDATE series_sources
                SET series_id = $2, updated_at = now()
                WHERE source_url = $1
                  AND series_id <> $2
                  AND NOT EXISTS (
                      SELECT 1 FROM series_sources existing
                      WHERE existing.series_id = $2 AND existing.source_url = $1
                  )
                """,
                source_url,
                series_id,
            )

        moved = int(status.split()[-1]) if status else 0
        if moved:
            logger.info("source_url_rebound", series_id=str(series_id), links=moved)
        return moved

    @staticmethod
    async def update_statistics(
        conn: asyncpg.Connection,
        series_id: UUID,
        total_follows: Optional[int],
        average_rating: Optional[float],
    ) -> bool:
        """Store provider follow/rating numbers.

        User-overridden series are left untouched.

        Returns:
            True if the row was updated
        """
        with storage_errors("update series statistics", series_id=str(series_id)):
            status = await conn.execute(
                """
                UPDATE series
                SET total_follows = COALESCE($2, total_follows),
                    average_rating = COALESCE($3, average_rating),
                    stats_updated_at = now(),
                    updated_at = now()
                WHERE id = $1 AND deleted_at IS NULL AND provenance = 'canonical'
                """,
                series_id,
                total_follows,
                average_rating,
            )
        return status == "UPDATE 1"

    @staticmethod
    async def set_mangaupdates_id(
        conn: asyncpg.Connection, series_id: UUID, mangaupdates_id: str
    ) -> bool:
        """Fill an empty MangaUpdates slot.

        An id already held by another live series is not taken over, and a
        filled slot is never overwritten.

        Returns:
            True if the slot was filled
        """
        with storage_errors("set mangaupdates id", series_id=str(series_id)):
            status = await conn.execute(
                """
                UPDATE series
                SET mangaupdates_id = $2, updated_at = now()
                WHERE id = $1
                  AND deleted_at IS NULL
                  AND mangaupdates_id IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM series other
                      WHERE other.mangaupdates_id = $2 AND other.deleted_at IS NULL
                  )
                """,
                series_id,
                mangaupdates_id,
            )
        return status == "UPDATE 1"

    @staticmethod
    async def set_user_override(
        conn: asyncpg.Connection,
        series_id: UUID,
        user_id: UUID,
        fields: Optional[dict[str, Any]] = None,
    ) -> CanonicalSeries:
        """Mark a series as user-owned, optionally writing user-provided fields.

        Raises:
            StorageError: Series not found, or a field is not editable
        """
        fields = dict(fields or {})
        editable = {"title", "alt_titles", "description", "cover_url", "genres", "tags", "status"}
        unknown = set(fields) - editable
        if unknown:
            raise StorageError(f"Fields not editable by override: {sorted(unknown)}")
        if isinstance(fields.get("status"), SeriesStatus):
            fields["status"] = fields["status"].value

        columns = list(fields)
        assignments = "".join(f", {c} = ${i}" for i, c in enumerate(columns, start=3))
        with storage_errors("set user override", series_id=str(series_id)):
            row = await conn.fetchrow(
                f"""
                UPDATE series
                SET provenance = 'user_override', override_user_id = $2,
                    updated_at = now(){assignments}
                WHERE id = $1 AND deleted_at IS NULL
                RETURNING *
                """,
                series_id,
                user_id,
                *[fields[c] for c in columns],
            )

        if row is None:
            raise StorageError(f"Series not found: {series_id}")

        logger.info(
            "series_override_set",
            series_id=str(series_id),
            user_id=str(user_id),
            fields=columns,
        )
        return _row_to_series(row)

    @staticmethod
    async def clear_user_override(conn: asyncpg.Connection, series_id: UUID) -> CanonicalSeries:
        """Return a series to canonical provenance so enrichment may resume.

        Raises:
            StorageError: Series not found
        """
        with storage_errors("clear user override", series_id=str(series_id)):
            row = await conn.fetchrow(
                """
                UPDATE series
                SET provenance = 'canonical', override_user_id = NULL, updated_at = now()
                WHERE id = $1 AND deleted_at IS NULL
                RETURNING *
                """,
                series_id,
            )

        if row is None:
            raise StorageError(f"Series not found: {series_id}")

        logger.info("series_override_cleared", series_id=str(series_id))
        return _row_to_series(row)


class SeriesCatalog:
    """Read-only ``LocalCatalog`` view of SeriesStore bound to one connection.

    Handed to ``CandidateMatcher.match`` so matching reads inside the
    coordinator's transaction.
    """

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def find_by_external_id(
        self, provider: Provider, provider_id: str
    ) -> Optional[CanonicalSeries]:
        return await SeriesStore.find_by_external_id(self.conn, provider, provider_id)

    async def find_by_title(self, title: str) -> Optional[CanonicalSeries]:
        return await SeriesStore.find_by_title(self.conn, title)
