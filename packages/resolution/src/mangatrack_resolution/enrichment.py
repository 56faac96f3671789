"""Follow-up enrichment for resolved series.

Handlers for the ``refresh_cover``, ``enrich_stats`` and
``enrich_mangaupdates`` jobs that the coordinator queues after binding a
reference. Each re-reads the series, calls the provider outside any
transaction, then writes in a short one.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

import asyncpg
from mangadex_client import MangaDexClient, MangaUpdatesClient, RateLimiter
from mangatrack_common import get_logger
from mangatrack_common.config import Settings, get_settings
from mangatrack_contracts import CanonicalSeries, Provider
from mangatrack_matching.normalize import best_title_similarity
from mangatrack_storage import SeriesStore, get_connection_pool, run_serializable
from mangatrack_storage.merge_rules import LOCAL_ID_PREFIX

logger = get_logger(__name__)

MANGAUPDATES_CANDIDATES = 5


class SeriesEnricher:
    """Refreshes provider-owned data on canonical series.

    Args:
        client: MangaDex client
        settings: Transaction retry settings and the MangaUpdates match floor
        mangaupdates: MangaUpdates client for the id follow-up
    """

    def __init__(
        self,
        client: MangaDexClient,
        settings: Optional[Settings] = None,
        mangaupdates: Optional[MangaUpdatesClient] = None,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.mangaupdates = mangaupdates or MangaUpdatesClient(
            base_url=self.settings.mangaupdates_base_url,
            rate_limiter=RateLimiter(self.settings.mangaupdates_requests_per_second),
        )

    async def _mangadex_series(
        self, series_id: UUID
    ) -> tuple[Optional[CanonicalSeries], Optional[str]]:
        pool = await get_connection_pool()
        async with pool.acquire() as conn:
            series = await SeriesStore.get_by_id(conn, series_id)

        if series is None:
            logger.info("enrichment_skipped", series_id=str(series_id), reason="not_found")
            return None, None
        if series.is_user_override:
            logger.info("enrichment_skipped", series_id=str(series_id), reason="user_override")
            return None, None

        manga_id = series.external_id(Provider.MANGADEX)
        if not manga_id or manga_id.startswith(LOCAL_ID_PREFIX):
            logger.info("enrichment_skipped", series_id=str(series_id), reason="no_mangadex_id")
            return None, None
        return series, manga_id

    async def refresh_cover(self, series_id: UUID) -> bool:
        """Re-fetch the MangaDex record and fold it in under the merge rules.

        Returns:
            True if the series cover changed
        """
        series, manga_id = await self._mangadex_series(series_id)
        if series is None:
            return False

        candidate = await self.client.get_by_id(manga_id)

        async def work(conn: asyncpg.Connection):
            return await SeriesStore.upsert_canonical(conn, candidate)

        result = await run_serializable(work, max_attempts=self.settings.transaction_max_attempts)
        changed = "cover_url" in result.updated_fields
        logger.info(
            "cover_refreshed",
            series_id=str(series_id),
            changed=changed,
            fields=list(result.updated_fields),
        )
        return changed

    async def enrich_stats(self, series_id: UUID) -> bool:
        """Store the MangaDex follow count and rating.

        Returns:
            True if the series row was updated
        """
        series, manga_id = await self._mangadex_series(series_id)
        if series is None:
            return False

        stats = await self.client.get_statistics(manga_id)

        async def work(conn: asyncpg.Connection) -> bool:
            return await SeriesStore.update_statistics(
                conn, series_id, stats.follows, stats.average_rating
            )

        updated = await run_serializable(work, max_attempts=self.settings.transaction_max_attempts)
        logger.info(
            "series_stats_enriched",
            series_id=str(series_id),
            follows=stats.follows,
            rating=stats.average_rating,
            updated=updated,
        )
        return updated

    async def enrich_mangaupdates(self, series_id: UUID) -> Optional[str]:
        """Fill the series' MangaUpdates id from a title search.

        Best effort: the slot stays empty when no hit reaches
        ``mangaupdates_match_floor`` or another series already holds the
        id. An existing id is kept as is.

        Returns:
            The series' MangaUpdates id, or None if it is still unset
        """
        pool = await get_connection_pool()
        async with pool.acquire() as conn:
            series = await SeriesStore.get_by_id(conn, series_id)

        if series is None:
            logger.info("enrichment_skipped", series_id=str(series_id), reason="not_found")
            return None
        if series.is_user_override:
            logger.info("enrichment_skipped", series_id=str(series_id), reason="user_override")
            return None
        existing = series.external_id(Provider.MANGAUPDATES)
        if existing:
            logger.debug("mangaupdates_already_linked", series_id=str(series_id), mangaupdates_id=existing)
            return existing

        hits = await self.mangaupdates.search(series.title, per_page=MANGAUPDATES_CANDIDATES)

        best_id: Optional[str] = None
        best_score = 0.0
        for hit in hits[:MANGAUPDATES_CANDIDATES]:
            aliases = [hit.hit_title] if hit.hit_title else []
            score = best_title_similarity(series.title, hit.record.title, aliases)
            if score > best_score:
                best_id, best_score = str(hit.record.series_id), score

        if best_id is None or best_score < self.settings.mangaupdates_match_floor:
            logger.info(
                "mangaupdates_no_match",
                series_id=str(series_id),
                hits=len(hits),
                best_score=round(best_score, 4),
            )
            return None

        async def work(conn: asyncpg.Connection) -> bool:
            return await SeriesStore.set_mangaupdates_id(conn, series_id, best_id)

        stored = await run_serializable(work, max_attempts=self.settings.transaction_max_attempts)
        logger.info(
            "mangaupdates_linked" if stored else "mangaupdates_id_taken",
            series_id=str(series_id),
            mangaupdates_id=best_id,
            similarity=round(best_score, 4),
        )
        return best_id if stored else None
