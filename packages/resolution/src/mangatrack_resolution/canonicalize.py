"""Canonicalization of scraped candidates.

Scrapers hand over provider records that were not requested by any user.
Each one is folded into the catalog under a title lock, so two workers
scraping the same work from different sources cannot both create it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import asyncpg
from mangatrack_common import PolicyBlockedError, get_logger
from mangatrack_common.config import Settings, get_settings
from mangatrack_contracts import LinkDetails, ProviderCandidate
from mangatrack_matching import normalize_title
from mangatrack_storage import (
    EventPublisher,
    LockStore,
    SeriesStore,
    UpsertResult,
    run_serializable,
)

from mangatrack_resolution.policy import check_content_policy

logger = get_logger(__name__)

TITLE_LOCK_PREFIX = "canonicalize:"
TITLE_LOCK_KEY_LENGTH = 100


def title_lock_key(title: str) -> str:
    """Lock key shared by every candidate that normalizes to the same title.

    Example:
        >>> title_lock_key("Solo Leveling!")
        'canonicalize:solo leveling'
    """
    normalized = normalize_title(title) or title.strip().lower()
    return f"{TITLE_LOCK_PREFIX}{normalized[:TITLE_LOCK_KEY_LENGTH]}"


@dataclass(frozen=True)
class CanonicalizeOutcome:
    series_id: Optional[UUID] = None
    created: bool = False
    updated_fields: tuple[str, ...] = ()
    blocked: bool = False


class Canonicalizer:
    """Folds scraped provider candidates into the canonical catalog."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def canonicalize(
        self, candidate: ProviderCandidate, details: Optional[LinkDetails] = None
    ) -> CanonicalizeOutcome:
        """Create or enrich the canonical series for ``candidate``.

        Args:
            candidate: Scraped provider record
            details: Link metadata from the scraper (URL, cover)

        Returns:
            CanonicalizeOutcome; ``blocked`` is set when the content
            policy rejected the candidate and nothing was written

        Raises:
            LockBusyError: Another worker holds the title lock
            ConflictError: Transaction retries exhausted
        """
        try:
            check_content_policy(candidate.content_rating, self.settings.blocked_content_ratings)
        except PolicyBlockedError as e:
            logger.warning(
                "canonicalize_blocked",
                provider=candidate.provider.value,
                provider_id=candidate.provider_id,
                reason=str(e),
            )
            return CanonicalizeOutcome(blocked=True)

        key = title_lock_key(candidate.title)

        async def work(conn: asyncpg.Connection) -> UpsertResult:
            result = await SeriesStore.upsert_canonical(conn, candidate, details)
            await EventPublisher.series_available(
                conn, result.series.id, result.series.title, created=result.created
            )
            return result

        async with LockStore.hold(key, ttl_seconds=self.settings.title_lock_ttl_seconds):
            result = await run_serializable(
                work, max_attempts=self.settings.transaction_max_attempts
            )

        logger.info(
            "candidate_canonicalized",
            provider=candidate.provider.value,
            provider_id=candidate.provider_id,
            series_id=str(result.series.id),
            created=result.created,
            override_protected=result.override_protected,
        )
        return CanonicalizeOutcome(
            series_id=result.series.id,
            created=result.created,
            updated_fields=tuple(result.updated_fields),
        )
