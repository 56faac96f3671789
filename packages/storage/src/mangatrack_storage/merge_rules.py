"""Field-merge rules for folding a provider candidate into a canonical series.

Pure functions, no I/O. ``SeriesStore.upsert_canonical`` calls
``plan_merge`` and writes only the columns the plan changes.

Rules:
- Alternative titles, genres, tags: union. An empty incoming set never
  clears an existing one.
- Description, content rating, language, year: fill if empty.
- Status: fill if empty; a terminal status may replace a non-terminal
  one; a terminal status is never replaced.
- Cover: see ``choose_cover``.
- External id: fill an empty slot, or replace a provisional ``local-`` id.
- User-overridden series are never merged into.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from mangatrack_common import OverrideProtectedError
from mangatrack_contracts import CanonicalSeries, Provider, ProviderCandidate, SeriesStatus

EXTERNAL_ID_COLUMNS: dict[Provider, str] = {
    Provider.MANGADEX: "mangadex_id",
    Provider.MANGAUPDATES: "mangaupdates_id",
}

LOCAL_ID_PREFIX = "local-"

_PLACEHOLDER_NAME = re.compile(
    r"^(?:placeholder|no[_-]?cover|missing|default|noimage|no[_-]?image)(?:\.\w+)?$",
    re.IGNORECASE,
)


@dataclass
class MergePlan:
    """Column updates to apply to an existing series."""

    series_id: Any
    changes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.changes


# -----------------------------------------------------------------------------
# Covers
# -----------------------------------------------------------------------------


def is_valid_cover_url(url: Optional[str]) -> bool:
    """True for absolute http(s) URLs."""
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_placeholder_cover(url: Optional[str]) -> bool:
    """True when ``url`` is missing or points at a stock "no cover" image."""
    if not url:
        return True
    filename = urlparse(url).path.rsplit("/", 1)[-1]
    return bool(_PLACEHOLDER_NAME.match(filename))


def choose_cover(
    existing: Optional[str], incoming: Optional[str], incoming_is_authoritative: bool
) -> Optional[str]:
    """Pick the cover to keep.

    - invalid incoming is ignored
    - missing or invalid existing takes any valid incoming
    - real incoming replaces a placeholder existing
    - placeholder incoming never replaces a real existing
    - both real: incoming wins only from the authoritative provider
    """
    if not is_valid_cover_url(incoming):
        return existing
    if not is_valid_cover_url(existing):
        return incoming

    incoming_placeholder = is_placeholder_cover(incoming)
    existing_placeholder = is_placeholder_cover(existing)

    if existing_placeholder and not incoming_placeholder:
        return incoming
    if incoming_placeholder:
        return existing
    if incoming_is_authoritative:
        return incoming
    return existing


# -----------------------------------------------------------------------------
# Scalars and sets
# -----------------------------------------------------------------------------


def merge_status(
    existing: Optional[SeriesStatus], incoming: Optional[SeriesStatus]
) -> Optional[SeriesStatus]:
    if incoming is None:
        return existing
    if existing is None:
        return incoming
    if existing.is_terminal:
        return existing
    if incoming.is_terminal:
        return incoming
    return existing


def merge_external_id(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return existing
    if not existing:
        return incoming
    if existing.startswith(LOCAL_ID_PREFIX) and not incoming.startswith(LOCAL_ID_PREFIX):
        return incoming
    return existing


def union_preserving_order(
    existing: Iterable[str], incoming: Iterable[str], exclude: Optional[str] = None
) -> list[str]:
    """Case-insensitive union; first spelling wins, ``exclude`` is dropped."""
    seen: set[str] = set()
    if exclude:
        seen.add(exclude.strip().casefold())

    merged: list[str] = []
    for value in [*existing, *incoming]:
        if not value or not value.strip():
            continue
        key = value.strip().casefold()
        if key in seen:
            continue
        seen.add(key)
        merged.append(value.strip())
    return merged


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------


def plan_create(candidate: ProviderCandidate) -> dict[str, Any]:
    """Column values for a brand-new series built from ``candidate``."""
    values: dict[str, Any] = {
        "title": candidate.title,
        "alt_titles": union_preserving_order([], candidate.alt_titles, exclude=candidate.title),
        "description": candidate.description,
        "cover_url": candidate.cover_url if is_valid_cover_url(candidate.cover_url) else None,
        "status": candidate.status.value if candidate.status else None,
        "content_rating": candidate.content_rating,
        "genres": union_preserving_order([], candidate.genres),
        "tags": union_preserving_order([], candidate.tags),
        "original_language": candidate.original_language,
        "year": candidate.year,
    }
    for provider, column in EXTERNAL_ID_COLUMNS.items():
        values[column] = candidate.provider_id if provider == candidate.provider else None
    return values


def plan_merge(series: CanonicalSeries, candidate: ProviderCandidate) -> MergePlan:
    """Compute the column updates that fold ``candidate`` into ``series``.

    Args:
        series: Existing canonical record
        candidate: Incoming provider metadata

    Returns:
        MergePlan holding only the columns whose value changes

    Raises:
        OverrideProtectedError: ``series`` carries user-provided metadata
    """
    if series.is_user_override:
        raise OverrideProtectedError(
            f"Series {series.id} is user-overridden; automated merge rejected"
        )

    changes: dict[str, Any] = {}

    column = EXTERNAL_ID_COLUMNS[candidate.provider]
    current_id = series.external_id(candidate.provider)
    merged_id = merge_external_id(current_id, candidate.provider_id)
    if merged_id != current_id:
        changes[column] = merged_id

    alt_titles = union_preserving_order(
        series.alt_titles, [*candidate.alt_titles, candidate.title], exclude=series.title
    )
    if alt_titles != series.alt_titles:
        changes["alt_titles"] = alt_titles

    for name, current, incoming in (
        ("genres", series.genres, candidate.genres),
        ("tags", series.tags, candidate.tags),
    ):
        merged = union_preserving_order(current, incoming)
        if merged != current:
            changes[name] = merged

    for name in ("description", "content_rating", "original_language", "year"):
        current = getattr(series, name)
        incoming = getattr(candidate, name)
        if current in (None, "") and incoming not in (None, ""):
            changes[name] = incoming

    status = merge_status(series.status, candidate.status)
    if status != series.status:
        changes["status"] = status.value if status else None

    # Authoritative: the series already held this id, or this id is the
    # first confirmed one it gets.
    holds_other = any(
        value and not value.startswith(LOCAL_ID_PREFIX)
        for provider, value in series.external_ids.items()
        if provider != candidate.provider
    )
    authoritative = current_id == candidate.provider_id or (
        merged_id == candidate.provider_id and not holds_other
    )
    cover = choose_cover(series.cover_url, candidate.cover_url, authoritative)
    if cover != series.cover_url:
        changes["cover_url"] = cover

    return MergePlan(series_id=series.id, changes=changes)
