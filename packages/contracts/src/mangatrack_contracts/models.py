"""Pydantic schemas for the mangatrack catalog.

Entities:
- CanonicalSeries: the single authoritative record for a real-world work
- SourceLink: binding of one provider's identifier to a canonical series
- TrackedReference: a user's pointer to a work, resolved asynchronously
- ProviderCandidate: a normalized search/lookup result from a provider
- Job: a unit of work in the background job queue
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """External catalogs that can hold an identifier for a series."""

    MANGADEX = "mangadex"
    MANGAUPDATES = "mangaupdates"


class Provenance(str, Enum):
    """Who owns a canonical record's metadata."""

    CANONICAL = "canonical"
    USER_OVERRIDE = "user_override"


class SeriesStatus(str, Enum):
    """Publication lifecycle of a series."""

    ONGOING = "ongoing"
    HIATUS = "hiatus"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SeriesStatus.COMPLETED, SeriesStatus.CANCELLED)


class ResolutionStatus(str, Enum):
    """Lifecycle of a tracked reference's link to a canonical series."""

    PENDING = "pending"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    PERMANENTLY_FAILED = "permanently_failed"


class MatchSource(str, Enum):
    """How a match was found."""

    EXACT_ID = "exact_id"
    LOCAL_TITLE = "local_title"
    PROVIDER_SEARCH = "provider_search"


class JobKind(str, Enum):
    """Closed set of background job types."""

    RESOLVE_REFERENCE = "resolve_reference"
    RECOVER_REFERENCE = "recover_reference"
    CANONICALIZE = "canonicalize"
    REFRESH_COVER = "refresh_cover"
    ENRICH_STATS = "enrich_stats"
    ENRICH_MANGAUPDATES = "enrich_mangaupdates"


class JobStatus(str, Enum):
    """Job queue row states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderCandidate(BaseModel):
    """Series metadata as reported by one provider.

    Produced by provider clients and scrapers; consumed by the matcher
    and the canonical store.
    """

    provider: Provider = Field(description="Provider that produced this record")
    provider_id: str = Field(min_length=1, description="Identifier at the provider")
    title: str = Field(min_length=1, description="Primary title")
    alt_titles: list[str] = Field(default_factory=list, description="Alternative titles")
    description: Optional[str] = None
    cover_url: Optional[str] = None
    status: Optional[SeriesStatus] = None
    content_rating: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    creators: list[str] = Field(default_factory=list, description="Authors and artists")
    original_language: Optional[str] = None
    year: Optional[int] = None
    source_url: Optional[str] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped


class CanonicalSeries(BaseModel):
    """The single authoritative record for a real-world work."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    alt_titles: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    cover_url: Optional[str] = None
    status: Optional[SeriesStatus] = None
    content_rating: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    external_ids: dict[Provider, str] = Field(
        default_factory=dict, description="One identifier slot per provider"
    )
    original_language: Optional[str] = None
    year: Optional[int] = None
    provenance: Provenance = Provenance.CANONICAL
    override_user_id: Optional[UUID] = None
    total_follows: Optional[int] = Field(default=None, ge=0)
    average_rating: Optional[float] = None
    stats_updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_user_override(self) -> bool:
        return self.provenance == Provenance.USER_OVERRIDE

    def external_id(self, provider: Provider) -> Optional[str]:
        return self.external_ids.get(provider)


class LinkDetails(BaseModel):
    """Per-source metadata recorded alongside a SourceLink upsert."""

    source_url: Optional[str] = None
    source_title: Optional[str] = None
    match_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    cover_url: Optional[str] = None


class SourceLink(BaseModel):
    """A provider identifier bound to exactly one canonical series."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    series_id: UUID
    provider: Provider
    provider_id: str
    source_url: Optional[str] = None
    source_title: Optional[str] = None
    match_confidence: Optional[float] = None
    cover_url: Optional[str] = None
    cover_updated_at: Optional[datetime] = None
    consecutive_failures: int = 0
    status: str = "active"
    next_check_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TrackedReference(BaseModel):
    """A user's pointer to a work, bound to a canonical series once resolved."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    source_url: Optional[str] = None
    imported_title: str
    status: ResolutionStatus = ResolutionStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    needs_review: bool = False
    review_reason: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    series_id: Optional[UUID] = None
    match_confidence: Optional[float] = None
    progress: float = Field(default=0.0, ge=0.0, description="Last read chapter number")
    manually_linked: bool = False
    manual_override_at: Optional[datetime] = None
    language_hint: Optional[str] = None
    year_hint: Optional[int] = None
    creator_hints: list[str] = Field(default_factory=list)
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Job(BaseModel):
    """A row in the background job queue."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    run_at: datetime
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 5
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
