"""Candidate matcher: find the canonical work a tracked reference points at.

Resolution order (first hit wins):

1. Exact external identifier parsed from the reference URL. A local
   series already holding the identifier wins without any API call;
   otherwise the provider is asked directly (through the cache).
2. Exact, case-insensitive title match against the local catalog.
3. Provider title search across the strategy's title variations. Every
   candidate is scored against the imported title, not the query that
   found it, by sequel-aware similarity blended with creator/language/year
   signals.

The matcher never writes. The caller owns the transaction that the
``LocalCatalog`` reads through, and persists whatever is returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from mangadex_client.cache import MetadataCache
from mangatrack_common import NotFoundError, get_logger
from mangatrack_contracts import (
    CanonicalSeries,
    MatchSource,
    Provider,
    ProviderCandidate,
    TrackedReference,
)

from mangatrack_matching.identifiers import extract_platform_id
from mangatrack_matching.normalize import best_title_similarity, normalize_title
from mangatrack_matching.signals import (
    MatchPolicy,
    MatchSignals,
    ReviewDecision,
    blend_score,
    collect_signals,
    review_decision,
)
from mangatrack_matching.strategy import (
    CriterionKind,
    MatchCriterion,
    SearchStrategy,
    strategy_for,
    title_variations,
)

logger = get_logger(__name__)


class MetadataProvider(Protocol):
    """External metadata source (e.g. ``mangadex_client.MangaDexClient``)."""

    provider: Provider

    async def search(self, title: str, limit: int = 10) -> list[ProviderCandidate]: ...

    async def get_by_id(self, manga_id: str) -> ProviderCandidate: ...


class LocalCatalog(Protocol):
    """Read access to canonical series, bound to the caller's transaction."""

    async def find_by_external_id(
        self, provider: Provider, provider_id: str
    ) -> Optional[CanonicalSeries]: ...

    async def find_by_title(self, title: str) -> Optional[CanonicalSeries]: ...


@dataclass
class MatchResult:
    """Outcome of one matching attempt.

    Exactly one of ``candidate``/``series`` is usually set on a match:
    provider hits carry a candidate to upsert, local hits carry the
    existing series. An exact-id provider hit carries both when the
    provider record was fetched for a series not yet linked locally.
    """

    strategy: SearchStrategy
    source: Optional[MatchSource] = None
    confidence: float = 0.0
    candidate: Optional[ProviderCandidate] = None
    series: Optional[CanonicalSeries] = None
    signals: MatchSignals = field(default_factory=MatchSignals)
    review: Optional[ReviewDecision] = None
    query: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.source is not None

    @property
    def needs_review(self) -> bool:
        return bool(self.review and self.review.needs_review)


class CandidateMatcher:
    """Scores provider and local candidates for a tracked reference.

    Args:
        provider: Metadata provider used for id lookups and title search
        cache: Advisory cache for provider responses
        policy: Blending weights and review thresholds
    """

    def __init__(
        self,
        provider: MetadataProvider,
        cache: Optional[MetadataCache] = None,
        policy: Optional[MatchPolicy] = None,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else MetadataCache()
        self.policy = policy or MatchPolicy()

    async def match(
        self,
        reference: TrackedReference,
        attempt_number: int,
        catalog: LocalCatalog,
    ) -> MatchResult:
        """Run the matching pipeline for one attempt.

        Raises:
            TransientError: Provider rate limit / network failure; the
                caller decides whether to retry
        """
        strategy = strategy_for(attempt_number)

        for criterion in strategy.criteria():
            result = await self._apply(criterion, reference, strategy, catalog)
            if result is not None:
                logger.info(
                    "candidate_matched",
                    reference_id=str(reference.id),
                    source=result.source.value if result.source else None,
                    confidence=round(result.confidence, 4),
                    needs_review=result.needs_review,
                    attempt=strategy.attempt_number,
                )
                return result

        logger.info(
            "candidate_not_matched",
            reference_id=str(reference.id),
            attempt=strategy.attempt_number,
            threshold=strategy.similarity_threshold,
        )
        return MatchResult(strategy=strategy)

    async def _apply(
        self,
        criterion: MatchCriterion,
        reference: TrackedReference,
        strategy: SearchStrategy,
        catalog: LocalCatalog,
    ) -> Optional[MatchResult]:
        if criterion.kind is CriterionKind.EXACT_ID:
            return await self._match_exact_id(reference, strategy, catalog)
        if criterion.kind is CriterionKind.LOCAL_TITLE:
            return await self._match_local_title(reference, strategy, catalog)
        if criterion.kind is CriterionKind.PROVIDER_FUZZY:
            return await self._match_provider_search(reference, strategy, criterion.threshold)
        raise ValueError(f"Unhandled match criterion: {criterion.kind}")

    # -------------------------------------------------------------------------
    # 1. Exact identifier
    # -------------------------------------------------------------------------

    async def _match_exact_id(
        self, reference: TrackedReference, strategy: SearchStrategy, catalog: LocalCatalog
    ) -> Optional[MatchResult]:
        platform_id = extract_platform_id(reference.source_url)
        if platform_id is None or platform_id.provider is None:
            return None
        provider = platform_id.provider

        existing = await catalog.find_by_external_id(provider, platform_id.id)
        if existing is not None:
            return MatchResult(
                strategy=strategy,
                source=MatchSource.EXACT_ID,
                confidence=1.0,
                series=existing,
                review=review_decision(
                    1.0,
                    is_exact_id=True,
                    creator_match=None,
                    language_match=None,
                    year_drift=None,
                    policy=self.policy,
                ),
            )

        if provider != self.provider.provider:
            return None

        try:
            candidate = await self._get_by_id(platform_id.id)
        except NotFoundError:
            logger.info(
                "exact_id_not_found",
                reference_id=str(reference.id),
                provider=provider.value,
                provider_id=platform_id.id,
            )
            return None

        return MatchResult(
            strategy=strategy,
            source=MatchSource.EXACT_ID,
            confidence=1.0,
            candidate=candidate,
            review=review_decision(
                1.0,
                is_exact_id=True,
                creator_match=None,
                language_match=None,
                year_drift=None,
                policy=self.policy,
            ),
        )

    # -------------------------------------------------------------------------
    # 2. Local exact title
    # -------------------------------------------------------------------------

    async def _match_local_title(
        self, reference: TrackedReference, strategy: SearchStrategy, catalog: LocalCatalog
    ) -> Optional[MatchResult]:
        if not normalize_title(reference.imported_title):
            return None
        series = await catalog.find_by_title(reference.imported_title.strip())
        if series is None:
            return None

        signals = collect_signals(
            reference_creators=reference.creator_hints,
            candidate_creators=[],
            reference_language=reference.language_hint,
            candidate_language=series.original_language,
            reference_year=reference.year_hint,
            candidate_year=series.year,
            policy=self.policy,
        )
        return MatchResult(
            strategy=strategy,
            source=MatchSource.LOCAL_TITLE,
            confidence=1.0,
            series=series,
            signals=signals,
            review=review_decision(
                1.0,
                is_exact_id=False,
                creator_match=signals.creator_match,
                language_match=signals.language_match,
                year_drift=signals.year_drift,
                policy=self.policy,
            ),
        )

    # -------------------------------------------------------------------------
    # 3. Provider search
    # -------------------------------------------------------------------------

    async def _match_provider_search(
        self, reference: TrackedReference, strategy: SearchStrategy, threshold: float
    ) -> Optional[MatchResult]:
        title = reference.imported_title.strip()
        if not normalize_title(title):
            return None

        if strategy.use_title_variations:
            queries = title_variations(title, strategy.variation)
        else:
            queries = [title]

        for query in queries:
            candidates = await self._search(query, strategy.max_candidates)
            best: Optional[MatchResult] = None

            for candidate in candidates[: strategy.max_candidates]:
                # Always scored against the imported title, never the variation.
                title_score = best_title_similarity(title, candidate.title, candidate.alt_titles)
                signals = collect_signals(
                    reference_creators=reference.creator_hints,
                    candidate_creators=candidate.creators,
                    reference_language=reference.language_hint,
                    candidate_language=candidate.original_language,
                    reference_year=reference.year_hint,
                    candidate_year=candidate.year,
                    policy=self.policy,
                )
                score = blend_score(title_score, signals, self.policy, allow_boosts=strategy.fuzzy_match)
                if best is None or score > best.confidence:
                    best = MatchResult(
                        strategy=strategy,
                        source=MatchSource.PROVIDER_SEARCH,
                        confidence=score,
                        candidate=candidate,
                        signals=signals,
                        query=query,
                    )

            if best is not None and best.confidence >= threshold:
                best.review = review_decision(
                    best.confidence,
                    is_exact_id=False,
                    creator_match=best.signals.creator_match,
                    language_match=best.signals.language_match,
                    year_drift=best.signals.year_drift,
                    policy=self.policy,
                )
                return best

            logger.debug(
                "variation_below_threshold",
                reference_id=str(reference.id),
                query=query[:80],
                best_score=round(best.confidence, 4) if best else None,
                threshold=threshold,
            )

        return None

    # -------------------------------------------------------------------------
    # Provider access through the cache
    # -------------------------------------------------------------------------

    async def _get_by_id(self, provider_id: str) -> ProviderCandidate:
        key = f"id:{self.provider.provider.value}:{provider_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        candidate = await self.provider.get_by_id(provider_id)
        self.cache.set(key, candidate)
        return candidate

    async def _search(self, query: str, limit: int) -> list[ProviderCandidate]:
        key = f"search:{self.provider.provider.value}:{normalize_title(query)}:{limit}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        results = await self.provider.search(query, limit=limit)
        self.cache.set(key, results)
        return results
