"""mangatrack matching - title normalization, search escalation, candidate scoring.

Pure logic plus the CandidateMatcher, which reads the local catalog
through a caller-provided interface and never writes.
"""

from mangatrack_matching.identifiers import PlatformId, extract_platform_id
from mangatrack_matching.matcher import (
    CandidateMatcher,
    LocalCatalog,
    MatchResult,
    MetadataProvider,
)
from mangatrack_matching.normalize import (
    SEQUEL_MISMATCH_CAP,
    normalize_title,
    sequel_marker,
    similarity,
    title_similarity,
)
from mangatrack_matching.signals import (
    MatchPolicy,
    MatchSignals,
    ReviewDecision,
    blend_score,
    review_decision,
)
from mangatrack_matching.strategy import (
    CriterionKind,
    MatchCriterion,
    SearchStrategy,
    SearchVariation,
    parse_variation,
    strategy_for,
    title_variations,
)

__all__ = [
    "CandidateMatcher",
    "CriterionKind",
    "LocalCatalog",
    "MatchCriterion",
    "MatchPolicy",
    "MatchResult",
    "MatchSignals",
    "MetadataProvider",
    "PlatformId",
    "ReviewDecision",
    "SEQUEL_MISMATCH_CAP",
    "SearchStrategy",
    "SearchVariation",
    "blend_score",
    "extract_platform_id",
    "normalize_title",
    "parse_variation",
    "review_decision",
    "sequel_marker",
    "similarity",
    "strategy_for",
    "title_similarity",
    "title_variations",
]
