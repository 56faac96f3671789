"""Search strategy escalation.

Each retry of a reference widens the search: the similarity threshold
drops, more provider candidates are considered, and the query title is
rewritten in progressively looser ways.

| attempt | fuzzy | variations | threshold | candidates | variation  |
|---------|-------|------------|-----------|------------|------------|
| 1       | no    | no         | 0.85      | 5          | normal     |
| 2       | yes   | yes        | 0.75      | 10         | normal     |
| 3       | yes   | yes        | 0.70      | 15         | simplified |
| >=4     | yes   | yes        | 0.60      | 20         | aggressive |
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Mapping


class SearchVariation(str, Enum):
    """How aggressively a title is rewritten before searching."""

    NORMAL = "normal"
    SIMPLIFIED = "simplified"
    AGGRESSIVE = "aggressive"


def parse_variation(value: str | SearchVariation) -> SearchVariation:
    """Parse a variation name, rejecting unknown values.

    Raises:
        ValueError: If ``value`` is not a known variation
    """
    if isinstance(value, SearchVariation):
        return value
    try:
        return SearchVariation(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(v.value for v in SearchVariation)
        raise ValueError(f"Unknown search variation {value!r} (expected one of: {allowed})") from None


class CriterionKind(str, Enum):
    """Ways a candidate can satisfy a match."""

    EXACT_ID = "exact_id"
    LOCAL_TITLE = "local_title"
    PROVIDER_FUZZY = "provider_fuzzy"


@dataclass(frozen=True)
class MatchCriterion:
    """One step of the matcher's resolution order.

    ``threshold`` is the minimum score a candidate needs under this
    criterion; identity criteria use 1.0.
    """

    kind: CriterionKind
    threshold: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "MatchCriterion":
        """Build a criterion from a plain mapping (e.g. a job payload).

        Raises:
            ValueError: Unknown kind or out-of-range threshold
        """
        raw_kind = data.get("kind")
        try:
            kind = CriterionKind(raw_kind)
        except ValueError:
            raise ValueError(f"Unknown match criterion kind: {raw_kind!r}") from None
        threshold = float(data.get("threshold", 1.0))
        return cls(kind=kind, threshold=threshold)


@dataclass(frozen=True)
class SearchStrategy:
    """Search configuration for one resolution attempt."""

    attempt_number: int
    exact_match: bool
    fuzzy_match: bool
    use_title_variations: bool
    similarity_threshold: float
    max_candidates: int
    variation: SearchVariation

    def criteria(self) -> tuple[MatchCriterion, ...]:
        """Criteria in the order the matcher applies them."""
        return (
            MatchCriterion(CriterionKind.EXACT_ID),
            MatchCriterion(CriterionKind.LOCAL_TITLE),
            MatchCriterion(CriterionKind.PROVIDER_FUZZY, self.similarity_threshold),
        )


def strategy_for(attempt_number: int) -> SearchStrategy:
    """Search strategy for a 1-based attempt number.

    Values below 1 are treated as the first attempt. Thresholds never
    increase and candidate breadth never decreases as attempts grow.
    """
    attempt = max(1, int(attempt_number))

    if attempt == 1:
        return SearchStrategy(attempt, True, False, False, 0.85, 5, SearchVariation.NORMAL)
    if attempt == 2:
        return SearchStrategy(attempt, True, True, True, 0.75, 10, SearchVariation.NORMAL)
    if attempt == 3:
        return SearchStrategy(attempt, True, True, True, 0.70, 15, SearchVariation.SIMPLIFIED)
    return SearchStrategy(attempt, True, True, True, 0.60, 20, SearchVariation.AGGRESSIVE)


# -----------------------------------------------------------------------------
# Title variations
# -----------------------------------------------------------------------------

_SUFFIX_PATTERNS = (
    re.compile(r"\s*\(manga\)", re.IGNORECASE),
    re.compile(r"\s*\(manhwa\)", re.IGNORECASE),
    re.compile(r"\s*\(manhua\)", re.IGNORECASE),
    re.compile(r"\s*\(webtoon\)", re.IGNORECASE),
    re.compile(r"\s*\(novel\)", re.IGNORECASE),
    re.compile(r"\s*\(light novel\)", re.IGNORECASE),
    re.compile(r"\s*\[.*?\]$"),
    re.compile(r"\s*-\s*raw$", re.IGNORECASE),
    re.compile(r"\s*\braw$", re.IGNORECASE),
)
_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)
_TRAILING_NUMERAL = re.compile(r"\s+\d+$")
_SEPARATORS = re.compile(r"[:\-–—]")
_NON_ALNUM = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

MIN_VARIATION_LENGTH = 4


def _iter_variations(title: str, variation: SearchVariation) -> Iterator[str]:
    yield title

    clean = title
    for pattern in _SUFFIX_PATTERNS:
        clean = pattern.sub("", clean)
    clean = clean.strip()
    yield clean

    without_article = _LEADING_ARTICLE.sub("", clean)
    if without_article != clean:
        yield without_article

    yield _TRAILING_NUMERAL.sub("", clean).strip()

    if variation in (SearchVariation.SIMPLIFIED, SearchVariation.AGGRESSIVE):
        words = _WHITESPACE.sub(" ", _SEPARATORS.sub(" ", clean)).strip().split(" ")
        yield " ".join(words[:3])

    if variation == SearchVariation.AGGRESSIVE:
        yield _WHITESPACE.sub(" ", _NON_ALNUM.sub("", clean)).strip()


def title_variations(title: str, variation: SearchVariation | str = SearchVariation.NORMAL) -> list[str]:
    """Ordered, de-duplicated search forms of ``title``.

    The original title always comes first. Derived forms shorter than
    MIN_VARIATION_LENGTH characters are dropped.

    Example:
        >>> title_variations("The Beginning After The End (Manhwa)")
        ['The Beginning After The End (Manhwa)', 'The Beginning After The End', 'Beginning After The End']
    """
    variation = parse_variation(variation)
    original = (title or "").strip()
    if not original:
        return []

    seen: set[str] = set()
    result: list[str] = []
    for form in _iter_variations(original, variation):
        if form in seen:
            continue
        if form != original and len(form) < MIN_VARIATION_LENGTH:
            continue
        seen.add(form)
        result.append(form)
    return result
