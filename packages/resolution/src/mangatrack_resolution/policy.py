"""Platform content policy."""

from __future__ import annotations

from typing import Iterable, Optional

from mangatrack_common import PolicyBlockedError

BLOCKED_MESSAGE = "Content blocked by platform policy."


def is_blocked(content_rating: Optional[str], blocked_ratings: Iterable[str]) -> bool:
    if not content_rating:
        return False
    return content_rating.strip().lower() in {r.lower() for r in blocked_ratings}


def check_content_policy(content_rating: Optional[str], blocked_ratings: Iterable[str]) -> None:
    """Raise if a work with ``content_rating`` may not enter the catalog.

    Raises:
        PolicyBlockedError: The rating is on the blocked list
    """
    if is_blocked(content_rating, blocked_ratings):
        raise PolicyBlockedError(f"{BLOCKED_MESSAGE} (rating: {content_rating})")
