"""MangaDex API client, plus the MangaUpdates title search.

Async httpx client with token-bucket rate limiting, error mapping, and an
in-memory TTL cache used by the candidate matcher.
"""

from mangadex_client.cache import DEFAULT_TTL_SECONDS, MetadataCache
from mangadex_client.client import MangaDexClient
from mangadex_client.errors import (
    MangaDexAPIError,
    MangaDexCloudflareError,
    MangaDexConfigError,
    MangaDexError,
    MangaDexNetworkError,
    MangaDexNotFoundError,
    MangaDexRateLimitError,
)
from mangadex_client.mangaupdates import (
    MangaUpdatesClient,
    MangaUpdatesError,
    MangaUpdatesHit,
    MangaUpdatesUnavailableError,
)
from mangadex_client.rate_limiter import RateLimiter

__all__ = [
    "DEFAULT_TTL_SECONDS",
    "MangaDexAPIError",
    "MangaDexClient",
    "MangaDexCloudflareError",
    "MangaDexConfigError",
    "MangaDexError",
    "MangaDexNetworkError",
    "MangaDexNotFoundError",
    "MangaDexRateLimitError",
    "MangaUpdatesClient",
    "MangaUpdatesError",
    "MangaUpdatesHit",
    "MangaUpdatesUnavailableError",
    "MetadataCache",
    "RateLimiter",
]
