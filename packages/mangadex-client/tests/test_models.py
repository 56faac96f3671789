"""Tests for MangaDex response models."""

import pytest

from mangadex_client.models import MangaDexManga, MangaDexSearchResult
from mangatrack_contracts import Provider

pytestmark = pytest.mark.unit


class TestMangaDexManga:
    """Tests for MangaDexManga parsing and flattening."""

    def test_title_falls_back_to_first_language(self):
        """Without an English title the first non-empty value is used."""
        manga = MangaDexManga(id="m1", attributes={"title": {"ja-ro": "Shingeki no Kyojin"}})

        assert manga.title == "Shingeki no Kyojin"

    def test_alt_titles_deduplicated_and_exclude_primary(self):
        """Alt titles skip duplicates and the primary title."""
        manga = MangaDexManga(
            id="m1",
            attributes={
                "title": {"en": "Attack on Titan"},
                "altTitles": [
                    {"en": "Attack on Titan"},
                    {"ja": "進撃の巨人"},
                    {"ja-ro": "Shingeki no Kyojin"},
                    {"ja": "進撃の巨人"},
                ],
            },
        )

        assert manga.alt_titles == ["進撃の巨人", "Shingeki no Kyojin"]

    def test_missing_cover_is_none(self):
        """No cover_art relationship yields no cover URL."""
        manga = MangaDexManga(id="m1", attributes={"title": {"en": "X"}})

        assert manga.cover_url is None

    def test_unknown_status_dropped(self):
        """Statuses outside the known set become None."""
        manga = MangaDexManga(id="m1", attributes={"title": {"en": "X"}, "status": "paused"})

        assert manga.to_candidate().status is None

    def test_demographic_added_to_tags(self):
        """Publication demographic is kept as a tag."""
        manga = MangaDexManga(
            id="m1",
            attributes={"title": {"en": "X"}, "publicationDemographic": "seinen"},
        )

        assert manga.to_candidate().tags == ["seinen"]

    def test_to_candidate_provider(self):
        """Candidates are tagged with the MangaDex provider."""
        candidate = MangaDexManga(id="m1", attributes={"title": {"en": "X"}}).to_candidate()

        assert candidate.provider == Provider.MANGADEX
        assert candidate.provider_id == "m1"


class TestMangaDexSearchResult:
    """Tests for the search envelope."""

    def test_extra_fields_ignored(self):
        """Unmodeled envelope fields are ignored."""
        result = MangaDexSearchResult.model_validate(
            {"result": "ok", "response": "collection", "data": [], "total": 0}
        )

        assert result.data == []
        assert not hasattr(result, "response")
