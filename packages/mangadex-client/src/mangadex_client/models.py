"""Pydantic models for MangaDex API responses.

Only the fields the resolver uses are modeled; everything else in the
payload is ignored. ``MangaDexManga.to_candidate()`` flattens the nested
JSON:API shape into a provider-neutral ``ProviderCandidate``.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from mangatrack_contracts import Provider, ProviderCandidate, SeriesStatus

COVER_BASE_URL = "https://uploads.mangadex.org/covers"
TITLE_BASE_URL = "https://mangadex.org/title"

_STATUS_MAP = {status.value: status for status in SeriesStatus}


def _pick_localized(values: dict[str, str], preferred: str = "en") -> Optional[str]:
    """Preferred-language entry, else the first non-empty value."""
    if not values:
        return None
    if values.get(preferred):
        return values[preferred]
    for value in values.values():
        if value:
            return value
    return None


class MangaDexTagAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: dict[str, str] = Field(default_factory=dict)
    group: Optional[str] = None


class MangaDexTag(BaseModel):
    """Genre/theme/format tag."""

    model_config = ConfigDict(extra="ignore")

    id: str
    attributes: MangaDexTagAttributes = Field(default_factory=MangaDexTagAttributes)

    @property
    def name(self) -> Optional[str]:
        return _pick_localized(self.attributes.name)


class MangaDexRelationship(BaseModel):
    """Related entity (cover_art, author, artist) embedded via ``includes[]``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    attributes: Optional[dict[str, Any]] = None


class MangaDexMangaAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: dict[str, str] = Field(default_factory=dict)
    alt_titles: list[dict[str, str]] = Field(default_factory=list, alias="altTitles")
    description: dict[str, str] = Field(default_factory=dict)
    status: Optional[str] = None
    year: Optional[int] = None
    content_rating: Optional[str] = Field(default=None, alias="contentRating")
    original_language: Optional[str] = Field(default=None, alias="originalLanguage")
    publication_demographic: Optional[str] = Field(default=None, alias="publicationDemographic")
    tags: list[MangaDexTag] = Field(default_factory=list)
    links: Optional[dict[str, str]] = None


class MangaDexManga(BaseModel):
    """A single manga entity from /manga or /manga/{id}."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str = "manga"
    attributes: MangaDexMangaAttributes = Field(default_factory=MangaDexMangaAttributes)
    relationships: list[MangaDexRelationship] = Field(default_factory=list)

    @property
    def title(self) -> Optional[str]:
        return _pick_localized(self.attributes.title)

    @property
    def alt_titles(self) -> list[str]:
        primary = self.title
        seen: set[str] = set()
        titles: list[str] = []
        for entry in self.attributes.alt_titles:
            for value in entry.values():
                if value and value != primary and value not in seen:
                    seen.add(value)
                    titles.append(value)
        return titles

    @property
    def cover_url(self) -> Optional[str]:
        for rel in self.relationships:
            if rel.type == "cover_art" and rel.attributes and rel.attributes.get("fileName"):
                return f"{COVER_BASE_URL}/{self.id}/{rel.attributes['fileName']}"
        return None

    @property
    def creators(self) -> list[str]:
        names: list[str] = []
        for rel in self.relationships:
            if rel.type in ("author", "artist") and rel.attributes:
                name = rel.attributes.get("name")
                if name and name not in names:
                    names.append(name)
        return names

    def to_candidate(self) -> ProviderCandidate:
        """Flatten into a provider-neutral candidate."""
        attrs = self.attributes
        genres = [t.name for t in attrs.tags if t.attributes.group == "genre" and t.name]
        tags = [t.name for t in attrs.tags if t.attributes.group != "genre" and t.name]
        if attrs.publication_demographic:
            tags.append(attrs.publication_demographic)

        return ProviderCandidate(
            provider=Provider.MANGADEX,
            provider_id=self.id,
            title=self.title or self.id,
            alt_titles=self.alt_titles,
            description=_pick_localized(attrs.description),
            cover_url=self.cover_url,
            status=_STATUS_MAP.get((attrs.status or "").lower()),
            content_rating=attrs.content_rating,
            genres=genres,
            tags=tags,
            creators=self.creators,
            original_language=attrs.original_language,
            year=attrs.year,
            source_url=f"{TITLE_BASE_URL}/{self.id}",
        )


class MangaDexSearchResult(BaseModel):
    """Paginated /manga search response."""

    model_config = ConfigDict(extra="ignore")

    result: str = "ok"
    data: list[MangaDexManga] = Field(default_factory=list)
    limit: int = 0
    offset: int = 0
    total: int = 0


class MangaDexEntityResult(BaseModel):
    """Single-entity /manga/{id} response."""

    model_config = ConfigDict(extra="ignore")

    result: str = "ok"
    data: MangaDexManga


class MangaDexRating(BaseModel):
    model_config = ConfigDict(extra="ignore")

    average: Optional[float] = None
    bayesian: Optional[float] = None


class MangaDexStatistics(BaseModel):
    """Follow count and rating for one manga."""

    model_config = ConfigDict(extra="ignore")

    follows: Optional[int] = None
    rating: MangaDexRating = Field(default_factory=MangaDexRating)

    @property
    def average_rating(self) -> Optional[float]:
        return self.rating.bayesian if self.rating.bayesian is not None else self.rating.average


class MangaDexStatisticsResult(BaseModel):
    """/statistics/manga/{id} response, keyed by manga id."""

    model_config = ConfigDict(extra="ignore")

    result: str = "ok"
    statistics: dict[str, MangaDexStatistics] = Field(default_factory=dict)
