"""Tests for merge_rules - folding provider metadata into canonical series."""

from uuid import uuid4

import pytest

from mangatrack_common import OverrideProtectedError
from mangatrack_contracts import (
    CanonicalSeries,
    Provenance,
    Provider,
    ProviderCandidate,
    SeriesStatus,
)
from mangatrack_storage.merge_rules import (
    choose_cover,
    is_placeholder_cover,
    is_valid_cover_url,
    merge_external_id,
    merge_status,
    plan_create,
    plan_merge,
    union_preserving_order,
)

pytestmark = pytest.mark.unit

REAL_COVER = "https://uploads.mangadex.org/covers/abc/3f1c9e.jpg"
OTHER_COVER = "https://cdn.example.com/covers/berserk.png"
PLACEHOLDER = "https://uploads.mangadex.org/covers/abc/placeholder.jpg"


def _series(**kwargs) -> CanonicalSeries:
    kwargs.setdefault("title", "Berserk")
    return CanonicalSeries(id=uuid4(), **kwargs)


def _candidate(**kwargs) -> ProviderCandidate:
    kwargs.setdefault("provider", Provider.MANGADEX)
    kwargs.setdefault("provider_id", "md-1")
    kwargs.setdefault("title", "Berserk")
    return ProviderCandidate(**kwargs)


# -----------------------------------------------------------------------------
# Covers
# -----------------------------------------------------------------------------


class TestCoverHelpers:
    """Tests for cover URL validation and placeholder detection."""

    @pytest.mark.parametrize(
        "url,valid",
        [
            (REAL_COVER, True),
            ("http://example.com/a.jpg", True),
            ("ftp://example.com/a.jpg", False),
            ("/covers/a.jpg", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_valid_cover_url(self, url, valid):
        assert is_valid_cover_url(url) is valid

    @pytest.mark.parametrize(
        "url",
        [
            None,
            PLACEHOLDER,
            "https://uploads.mangadex.org/covers/abc/no_cover.jpg",
            "https://uploads.mangadex.org/covers/abc/missing.jpg",
        ],
    )
    def test_placeholders(self, url):
        assert is_placeholder_cover(url) is True

    def test_real_cover_not_placeholder(self):
        assert is_placeholder_cover(REAL_COVER) is False
        assert is_placeholder_cover(OTHER_COVER) is False


class TestChooseCover:
    """Tests for choose_cover()."""

    def test_invalid_incoming_ignored(self):
        assert choose_cover(REAL_COVER, "not-a-url", True) == REAL_COVER

    def test_missing_existing_takes_incoming(self):
        assert choose_cover(None, OTHER_COVER, False) == OTHER_COVER

    def test_missing_existing_takes_placeholder(self):
        """Any valid cover beats no cover at all."""
        assert choose_cover(None, PLACEHOLDER, False) == PLACEHOLDER

    def test_real_replaces_placeholder(self):
        assert choose_cover(PLACEHOLDER, OTHER_COVER, False) == OTHER_COVER

    def test_placeholder_never_replaces_real(self):
        assert choose_cover(REAL_COVER, PLACEHOLDER, True) == REAL_COVER

    def test_authoritative_provider_wins(self):
        assert choose_cover(OTHER_COVER, REAL_COVER, True) == REAL_COVER

    def test_non_authoritative_keeps_existing(self):
        assert choose_cover(REAL_COVER, OTHER_COVER, False) == REAL_COVER


# -----------------------------------------------------------------------------
# Scalars and sets
# -----------------------------------------------------------------------------


class TestMergeStatus:
    """Tests for merge_status()."""

    def test_fill_if_empty(self):
        assert merge_status(None, SeriesStatus.ONGOING) is SeriesStatus.ONGOING

    def test_terminal_advances_non_terminal(self):
        assert merge_status(SeriesStatus.ONGOING, SeriesStatus.COMPLETED) is SeriesStatus.COMPLETED

    def test_terminal_never_regresses(self):
        assert merge_status(SeriesStatus.COMPLETED, SeriesStatus.ONGOING) is SeriesStatus.COMPLETED

    def test_non_terminal_keeps_existing(self):
        assert merge_status(SeriesStatus.HIATUS, SeriesStatus.ONGOING) is SeriesStatus.HIATUS

    def test_missing_incoming_keeps_existing(self):
        assert merge_status(SeriesStatus.HIATUS, None) is SeriesStatus.HIATUS


class TestMergeExternalId:
    """Tests for merge_external_id()."""

    def test_fills_empty_slot(self):
        assert merge_external_id(None, "md-1") == "md-1"

    def test_replaces_local_id(self):
        assert merge_external_id("local-123", "md-1") == "md-1"

    def test_keeps_confirmed_id(self):
        assert merge_external_id("md-1", "md-2") == "md-1"

    def test_local_does_not_replace_local(self):
        assert merge_external_id("local-1", "local-2") == "local-1"


class TestUnion:
    """Tests for union_preserving_order()."""

    def test_case_insensitive_dedupe(self):
        assert union_preserving_order(["Action", "Drama"], ["drama", "Horror"]) == [
            "Action",
            "Drama",
            "Horror",
        ]

    def test_exclude(self):
        assert union_preserving_order([], ["Berserk", "Beruseruku"], exclude="berserk") == [
            "Beruseruku"
        ]

    def test_blank_values_dropped(self):
        assert union_preserving_order(["  "], ["", "Seinen"]) == ["Seinen"]


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------


class TestPlanCreate:
    """Tests for plan_create()."""

    def test_provider_slot_filled(self):
        values = plan_create(_candidate(provider=Provider.MANGAUPDATES, provider_id="pb8uwds"))

        assert values["mangaupdates_id"] == "pb8uwds"
        assert values["mangadex_id"] is None

    def test_invalid_cover_dropped(self):
        assert plan_create(_candidate(cover_url="javascript:alert(1)"))["cover_url"] is None

    def test_title_not_duplicated_in_alt_titles(self):
        values = plan_create(_candidate(alt_titles=["BERSERK", "Beruseruku"]))

        assert values["alt_titles"] == ["Beruseruku"]

    def test_status_stored_as_value(self):
        assert plan_create(_candidate(status=SeriesStatus.HIATUS))["status"] == "hiatus"


class TestPlanMerge:
    """Tests for plan_merge()."""

    def test_user_override_rejected(self):
        """Overridden series are never merged into."""
        series = _series(provenance=Provenance.USER_OVERRIDE, description="mine")

        with pytest.raises(OverrideProtectedError):
            plan_merge(series, _candidate(description="theirs"))

    def test_identical_data_is_noop(self):
        """Merging the same data twice changes nothing the second time."""
        series = _series(
            external_ids={"mangadex": "md-1"},
            genres=["Action"],
            description="Guts.",
        )
        candidate = _candidate(genres=["Action"], description="Guts.")

        assert plan_merge(series, candidate).is_noop

    def test_empty_incoming_never_clears(self):
        """Missing incoming genres/tags/description keep existing values."""
        series = _series(
            external_ids={"mangadex": "md-1"},
            genres=["Action"],
            tags=["Gore"],
            description="Guts.",
        )

        plan = plan_merge(series, _candidate())

        assert "genres" not in plan.changes
        assert "tags" not in plan.changes
        assert "description" not in plan.changes

    def test_sets_unioned(self):
        series = _series(external_ids={"mangadex": "md-1"}, tags=["Gore"])

        plan = plan_merge(series, _candidate(tags=["Demons", "gore"]))

        assert plan.changes["tags"] == ["Gore", "Demons"]

    def test_incoming_title_added_as_alt(self):
        series = _series(external_ids={"mangadex": "md-1"})

        plan = plan_merge(series, _candidate(title="Beruseruku"))

        assert plan.changes["alt_titles"] == ["Beruseruku"]

    def test_description_fill_if_empty(self):
        series = _series(external_ids={"mangadex": "md-1"}, description="")

        plan = plan_merge(series, _candidate(description="Guts."))

        assert plan.changes["description"] == "Guts."

    def test_existing_description_kept(self):
        series = _series(external_ids={"mangadex": "md-1"}, description="Original.")

        assert "description" not in plan_merge(series, _candidate(description="New.")).changes

    def test_local_id_upgraded(self):
        series = _series(external_ids={"mangadex": "local-42"})

        plan = plan_merge(series, _candidate(provider_id="md-1"))

        assert plan.changes["mangadex_id"] == "md-1"

    def test_cover_from_non_authoritative_provider_kept(self):
        """A second provider's real cover does not replace the first's."""
        series = _series(external_ids={"mangadex": "md-1"}, cover_url=REAL_COVER)
        candidate = _candidate(
            provider=Provider.MANGAUPDATES, provider_id="mu-1", cover_url=OTHER_COVER
        )

        plan = plan_merge(series, candidate)

        assert "cover_url" not in plan.changes
        assert plan.changes["mangaupdates_id"] == "mu-1"

    def test_cover_from_authoritative_provider_applied(self):
        series = _series(external_ids={"mangadex": "md-1"}, cover_url=OTHER_COVER)

        plan = plan_merge(series, _candidate(cover_url=REAL_COVER))

        assert plan.changes["cover_url"] == REAL_COVER

    def test_status_regression_blocked(self):
        series = _series(external_ids={"mangadex": "md-1"}, status=SeriesStatus.COMPLETED)

        assert "status" not in plan_merge(series, _candidate(status=SeriesStatus.ONGOING)).changes

    def test_year_and_language_fill_if_empty(self):
        series = _series(external_ids={"mangadex": "md-1"}, year=1989)

        plan = plan_merge(series, _candidate(year=1990, original_language="ja"))

        assert "year" not in plan.changes
        assert plan.changes["original_language"] == "ja"
