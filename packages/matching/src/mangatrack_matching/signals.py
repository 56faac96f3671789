"""Secondary match signals and the review-decision policy.

Title similarity alone cannot tell apart two works with near-identical
names. Creator overlap, original language, and publication year are
blended into the score, and contradictions between them send a match to
human review instead of silently accepting it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from mangatrack_matching.normalize import normalize_title

if TYPE_CHECKING:
    from mangatrack_common.config import Settings

LANGUAGE_FAMILIES: dict[str, str] = {
    "ja": "japanese",
    "jp": "japanese",
    "japanese": "japanese",
    "ko": "korean",
    "kr": "korean",
    "korean": "korean",
    "zh": "chinese",
    "cn": "chinese",
    "zh-cn": "chinese",
    "zh-hk": "chinese",
    "zh-tw": "chinese",
    "chinese": "chinese",
    "mandarin": "chinese",
    "en": "english",
    "english": "english",
}


@dataclass(frozen=True)
class MatchPolicy:
    """Tunable weights and thresholds for blending and review.

    Attributes:
        high_confidence: Score at or above which a match needs no review
        confirmed_floor: Lower score accepted without review when creators agree
        year_drift_tolerance: Max publication-year difference before review
        creator_overlap_min: Overlap ratio counted as a creator match
        creator_boost: Added when creators match
        language_boost: Added when languages are known and compatible
        language_penalty: Subtracted when languages are incompatible
    """

    high_confidence: float = 0.85
    confirmed_floor: float = 0.70
    year_drift_tolerance: int = 2
    creator_overlap_min: float = 0.5
    creator_boost: float = 0.05
    language_boost: float = 0.02
    language_penalty: float = 0.15

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MatchPolicy":
        return cls(
            high_confidence=settings.high_confidence_threshold,
            confirmed_floor=settings.confirmed_confidence_floor,
            year_drift_tolerance=settings.year_drift_tolerance,
            creator_boost=settings.creator_match_boost,
            language_boost=settings.language_match_boost,
            language_penalty=settings.language_mismatch_penalty,
        )


def language_family(code: Optional[str]) -> Optional[str]:
    """Language family of a code or name, or None if unknown."""
    if not code:
        return None
    key = code.strip().lower().replace("_", "-")
    return LANGUAGE_FAMILIES.get(key)


def language_compatible(a: Optional[str], b: Optional[str]) -> Optional[bool]:
    """True/False when both families are known, None otherwise."""
    fa, fb = language_family(a), language_family(b)
    if fa is None or fb is None:
        return None
    return fa == fb


def creator_overlap(a: Iterable[str], b: Iterable[str]) -> Optional[float]:
    """|A ∩ B| / max(|A|, |B|) over normalized creator names.

    Returns None when either side has no usable names.
    """
    set_a = {n for n in (normalize_title(x) for x in a) if n}
    set_b = {n for n in (normalize_title(x) for x in b) if n}
    if not set_a or not set_b:
        return None
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def year_drift(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return abs(a - b)


@dataclass
class MatchSignals:
    """Secondary signals observed for one candidate."""

    creator_overlap: Optional[float] = None
    creator_match: Optional[bool] = None
    language_match: Optional[bool] = None
    year_drift: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "creator_overlap": self.creator_overlap,
            "creator_match": self.creator_match,
            "language_match": self.language_match,
            "year_drift": self.year_drift,
        }


def collect_signals(
    *,
    reference_creators: Iterable[str],
    candidate_creators: Iterable[str],
    reference_language: Optional[str],
    candidate_language: Optional[str],
    reference_year: Optional[int],
    candidate_year: Optional[int],
    policy: MatchPolicy,
) -> MatchSignals:
    overlap = creator_overlap(reference_creators, candidate_creators)
    if overlap is None:
        creator_match = None
    elif overlap >= policy.creator_overlap_min:
        creator_match = True
    elif overlap == 0:
        creator_match = False
    else:
        creator_match = None

    return MatchSignals(
        creator_overlap=overlap,
        creator_match=creator_match,
        language_match=language_compatible(reference_language, candidate_language),
        year_drift=year_drift(reference_year, candidate_year),
    )


def blend_score(
    title_score: float, signals: MatchSignals, policy: MatchPolicy, allow_boosts: bool = True
) -> float:
    """Combine title similarity with secondary signals, clamped to [0, 1].

    Penalties always apply. Boosts are skipped when ``allow_boosts`` is
    False so that a strict first attempt cannot be lifted over its
    threshold by side information.
    """
    score = title_score
    if allow_boosts:
        if signals.creator_match is True:
            score += policy.creator_boost
        if signals.language_match is True:
            score += policy.language_boost
    if signals.language_match is False:
        score -= policy.language_penalty
    return max(0.0, min(1.0, score))


@dataclass
class ReviewDecision:
    needs_review: bool
    confidence: float
    factors: list[str] = field(default_factory=list)


def review_decision(
    confidence: float,
    *,
    is_exact_id: bool,
    creator_match: Optional[bool],
    language_match: Optional[bool],
    year_drift: Optional[int],
    policy: MatchPolicy,
) -> ReviewDecision:
    """Decide whether an accepted match needs human review.

    Rules, first match wins:
    1. exact identifier match: never reviewed
    2. any contradiction (language, creators, year beyond tolerance): review
    3. confidence >= high_confidence: no review
    4. confidence >= confirmed_floor and creators match: no review
    5. otherwise: review
    """
    confidence = max(0.0, min(1.0, confidence))
    if is_exact_id:
        return ReviewDecision(needs_review=False, confidence=confidence)

    factors: list[str] = []
    if language_match is False:
        factors.append("language_mismatch")
    if creator_match is False:
        factors.append("creator_mismatch")
    if year_drift is not None and year_drift > policy.year_drift_tolerance:
        factors.append(f"year_drift_{year_drift}")
    if factors:
        return ReviewDecision(needs_review=True, confidence=confidence, factors=factors)

    if confidence >= policy.high_confidence:
        return ReviewDecision(needs_review=False, confidence=confidence)
    if confidence >= policy.confirmed_floor and creator_match is True:
        return ReviewDecision(needs_review=False, confidence=confidence)
    return ReviewDecision(needs_review=True, confidence=confidence, factors=["low_confidence"])
