"""Tests for SeriesEnricher (cover refresh, statistics and MangaUpdates id jobs)."""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from mangadex_client import MangaUpdatesHit, MangaUpdatesUnavailableError
from mangadex_client.models import MangaDexRating, MangaDexStatistics
from mangatrack_contracts import Provenance, Provider, ProviderCandidate
from mangatrack_resolution.enrichment import SeriesEnricher

pytestmark = pytest.mark.unit

MD_ID = "32d76d19-8a05-4db0-9fc2-e0b0648fe9d0"
COVER = "https://uploads.mangadex.org/covers/solo/cover.jpg"


def _hit(series_id, title, hit_title=None):
    return MangaUpdatesHit.model_validate(
        {"record": {"series_id": series_id, "title": title}, "hit_title": hit_title or title}
    )


@pytest.fixture
def client():
    client = AsyncMock()
    client.get_by_id = AsyncMock(
        return_value=ProviderCandidate(
            provider=Provider.MANGADEX, provider_id=MD_ID, title="Solo Leveling", cover_url=COVER
        )
    )
    client.get_statistics = AsyncMock(
        return_value=MangaDexStatistics(
            follows=48210, rating=MangaDexRating(average=8.61, bayesian=8.47)
        )
    )
    return client


class TestRefreshCover:
    """Tests for SeriesEnricher.refresh_cover()."""

    async def test_cover_updated(self, db, settings, client):
        series = db.add_series("Solo Leveling", external_ids={Provider.MANGADEX: MD_ID})

        changed = await SeriesEnricher(client, settings).refresh_cover(series.id)

        assert changed is True
        assert db.series[series.id].cover_url == COVER
        client.get_by_id.assert_awaited_once_with(MD_ID)

    async def test_override_series_skipped(self, db, settings, client):
        series = db.add_series(
            "Mine",
            external_ids={Provider.MANGADEX: MD_ID},
            provenance=Provenance.USER_OVERRIDE,
        )

        assert await SeriesEnricher(client, settings).refresh_cover(series.id) is False
        client.get_by_id.assert_not_awaited()

    @pytest.mark.parametrize("external_ids", [{}, {Provider.MANGADEX: "local-abc"}])
    async def test_without_mangadex_id_skipped(self, db, settings, client, external_ids):
        series = db.add_series("Solo Leveling", external_ids=external_ids)

        assert await SeriesEnricher(client, settings).refresh_cover(series.id) is False
        client.get_by_id.assert_not_awaited()

    async def test_missing_series(self, db, settings, client):
        assert await SeriesEnricher(client, settings).refresh_cover(uuid4()) is False


class TestEnrichStats:
    """Tests for SeriesEnricher.enrich_stats()."""

    async def test_stats_stored(self, db, settings, client):
        series = db.add_series("Solo Leveling", external_ids={Provider.MANGADEX: MD_ID})

        updated = await SeriesEnricher(client, settings).enrich_stats(series.id)

        assert updated is True
        assert db.stats[series.id] == (48210, 8.47)
        client.get_statistics.assert_awaited_once_with(MD_ID)


class TestEnrichMangaUpdates:
    """Tests for SeriesEnricher.enrich_mangaupdates()."""

    @staticmethod
    def _enricher(client, settings, hits=None, error=None):
        mangaupdates = AsyncMock()
        mangaupdates.search = AsyncMock(return_value=hits or [], side_effect=error)
        return SeriesEnricher(client, settings, mangaupdates=mangaupdates), mangaupdates

    async def test_best_hit_stored(self, db, settings, client):
        series = db.add_series("Vinland Saga", external_ids={Provider.MANGADEX: MD_ID})
        enricher, mangaupdates = self._enricher(
            client, settings, hits=[_hit(99, "Vinland Saga Deluxe Edition"), _hit(15, "Vinland Saga")]
        )

        assert await enricher.enrich_mangaupdates(series.id) == "15"
        assert db.series[series.id].external_ids[Provider.MANGAUPDATES] == "15"
        mangaupdates.search.assert_awaited_once_with("Vinland Saga", per_page=5)

    async def test_matched_alias_counts(self, db, settings, client):
        series = db.add_series("Na Honjaman Level Up")
        enricher, _ = self._enricher(
            client, settings, hits=[_hit(151, "Solo Leveling", hit_title="Na Honjaman Level Up")]
        )

        assert await enricher.enrich_mangaupdates(series.id) == "151"

    async def test_below_floor_left_empty(self, db, settings, client):
        series = db.add_series("Vinland Saga")
        enricher, _ = self._enricher(client, settings, hits=[_hit(7, "Planetes")])

        assert await enricher.enrich_mangaupdates(series.id) is None
        assert Provider.MANGAUPDATES not in db.series[series.id].external_ids

    async def test_no_hits(self, db, settings, client):
        series = db.add_series("Vinland Saga")
        enricher, _ = self._enricher(client, settings)

        assert await enricher.enrich_mangaupdates(series.id) is None

    async def test_existing_id_kept(self, db, settings, client):
        series = db.add_series("Vinland Saga", external_ids={Provider.MANGAUPDATES: "15"})
        enricher, mangaupdates = self._enricher(client, settings, hits=[_hit(99, "Vinland Saga")])

        assert await enricher.enrich_mangaupdates(series.id) == "15"
        mangaupdates.search.assert_not_awaited()

    async def test_id_held_by_another_series(self, db, settings, client):
        db.add_series("Vinland Saga (dup)", external_ids={Provider.MANGAUPDATES: "15"})
        series = db.add_series("Vinland Saga")
        enricher, _ = self._enricher(client, settings, hits=[_hit(15, "Vinland Saga")])

        assert await enricher.enrich_mangaupdates(series.id) is None
        assert Provider.MANGAUPDATES not in db.series[series.id].external_ids

    async def test_override_series_skipped(self, db, settings, client):
        series = db.add_series("Mine", provenance=Provenance.USER_OVERRIDE)
        enricher, mangaupdates = self._enricher(client, settings, hits=[_hit(1, "Mine")])

        assert await enricher.enrich_mangaupdates(series.id) is None
        mangaupdates.search.assert_not_awaited()

    async def test_outage_propagates_for_job_retry(self, db, settings, client):
        series = db.add_series("Vinland Saga")
        enricher, _ = self._enricher(
            client, settings, error=MangaUpdatesUnavailableError(503, "maintenance")
        )

        with pytest.raises(MangaUpdatesUnavailableError):
            await enricher.enrich_mangaupdates(series.id)
        assert Provider.MANGAUPDATES not in db.series[series.id].external_ids
