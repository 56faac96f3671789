"""mangatrack resolution - coordinator, canonicalization and the job worker.

Components:
- ResolutionCoordinator: one serializable attempt per tracked reference
- Canonicalizer: folds scraped candidates into the catalog under a title lock
- SeriesEnricher: cover and statistics follow-up jobs
- Worker: job queue consumer dispatching on JobKind
- classify / sanitize_error: error taxonomy and operator-safe messages
"""

from mangatrack_resolution.canonicalize import (
    CanonicalizeOutcome,
    Canonicalizer,
    title_lock_key,
)
from mangatrack_resolution.classification import (
    NO_MATCH_MESSAGE,
    ErrorClass,
    classify,
    sanitize_error,
)
from mangatrack_resolution.coordinator import (
    Outcome,
    ResolutionCoordinator,
    ResolutionOutcome,
)
from mangatrack_resolution.enrichment import SeriesEnricher
from mangatrack_resolution.policy import check_content_policy, is_blocked
from mangatrack_resolution.recovery import recovery_delay, schedule_recovery
from mangatrack_resolution.worker import Worker, build_client, build_worker, run_workers

__all__ = [
    "CanonicalizeOutcome",
    "Canonicalizer",
    "ErrorClass",
    "NO_MATCH_MESSAGE",
    "Outcome",
    "ResolutionCoordinator",
    "ResolutionOutcome",
    "SeriesEnricher",
    "Worker",
    "build_client",
    "build_worker",
    "check_content_policy",
    "classify",
    "is_blocked",
    "recovery_delay",
    "run_workers",
    "sanitize_error",
    "schedule_recovery",
    "title_lock_key",
]
