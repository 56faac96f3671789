"""mangatrack Contracts - Pure Pydantic schemas.

Version: 1.0.0

This package contains ONLY Pydantic schemas with no business logic.
Dependencies: pydantic only (no logging, no DB drivers, no HTTP).
"""

from mangatrack_contracts.models import (
    # Catalog entities
    CanonicalSeries,
    LinkDetails,
    SourceLink,
    TrackedReference,
    ProviderCandidate,
    # Enumerations
    JobKind,
    JobStatus,
    MatchSource,
    Provenance,
    Provider,
    ResolutionStatus,
    SeriesStatus,
    # Queue
    Job,
)

__version__ = "1.0.0"

__all__ = [
    # Catalog entities
    "CanonicalSeries",
    "LinkDetails",
    "SourceLink",
    "TrackedReference",
    "ProviderCandidate",
    # Enumerations
    "JobKind",
    "JobStatus",
    "MatchSource",
    "Provenance",
    "Provider",
    "ResolutionStatus",
    "SeriesStatus",
    # Queue
    "Job",
]
