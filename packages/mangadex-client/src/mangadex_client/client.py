"""Async HTTP client for the MangaDex API.

Provides the two lookups the resolver needs:
- search(title, limit): ranked title search
- get_by_id(manga_id): direct lookup by MangaDex UUID
- get_statistics(manga_id): follow count and rating

HTTP failures are mapped onto the error types in ``mangadex_client.errors``
so callers can classify them without looking at status codes.

Example:
    >>> async with MangaDexClient() as client:
    ...     candidates = await client.search("Solo Leveling", limit=5)
    ...     print(candidates[0].title)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from mangatrack_common import get_logger, retry_on_exception
from mangatrack_contracts import Provider, ProviderCandidate

from mangadex_client.errors import (
    MangaDexAPIError,
    MangaDexCloudflareError,
    MangaDexConfigError,
    MangaDexNetworkError,
    MangaDexNotFoundError,
    MangaDexRateLimitError,
)
from mangadex_client.models import (
    MangaDexEntityResult,
    MangaDexSearchResult,
    MangaDexStatistics,
    MangaDexStatisticsResult,
)
from mangadex_client.rate_limiter import RateLimiter

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.mangadex.org"
DEFAULT_TIMEOUT = 30.0
DEFAULT_CONTENT_RATINGS = ("safe", "suggestive", "erotica")
USER_AGENT = "mangatrack-resolver/1.0"
MAX_SEARCH_LIMIT = 100

_INCLUDES = ("cover_art", "author", "artist")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class MangaDexClient:
    """MangaDex metadata provider.

    Args:
        base_url: API root
        timeout: Per-request timeout in seconds
        rate_limiter: Shared limiter (default: 5 requests/second)
        api_key: Optional bearer token for authenticated clients
        content_ratings: Ratings included in search results
        http_client: Pre-built httpx client (tests, connection sharing)
    """

    provider = Provider.MANGADEX

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        rate_limiter: Optional[RateLimiter] = None,
        api_key: Optional[str] = None,
        content_ratings: tuple[str, ...] = DEFAULT_CONTENT_RATINGS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise MangaDexConfigError("base_url must not be empty")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter(requests_per_second=5.0)
        self.content_ratings = content_ratings
        self._api_key = api_key
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "MangaDexClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, headers=headers
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @retry_on_exception(
        exception_types=(MangaDexNetworkError,),
        max_attempts=3,
        min_wait_seconds=0.1,
        max_wait_seconds=2.0,
    )
    async def _get(self, path: str, params: Optional[list[tuple[str, Any]]] = None) -> dict:
        """GET ``path`` and return decoded JSON, mapping failures to errors."""
        client = self._ensure_client()
        await self.rate_limiter.acquire()

        try:
            response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise MangaDexNetworkError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise MangaDexNetworkError(f"Network error calling {path}: {e}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response)
            logger.warning("mangadex_rate_limited", endpoint=path, retry_after=retry_after)
            raise MangaDexRateLimitError(retry_after=retry_after, endpoint=path)
        if response.status_code == 403 and "cloudflare" in response.text.lower():
            raise MangaDexCloudflareError(endpoint=path)
        if response.status_code == 404:
            raise MangaDexNotFoundError(path.rsplit("/", 1)[-1], endpoint=path)
        if response.status_code >= 400:
            raise MangaDexAPIError(response.status_code, response.text[:200], endpoint=path)

        try:
            return response.json()
        except ValueError as e:
            raise MangaDexAPIError(response.status_code, "Invalid JSON body", endpoint=path) from e

    async def search(self, title: str, limit: int = 10) -> list[ProviderCandidate]:
        """Search manga by title.

        Args:
            title: Free-text title query
            limit: Maximum results (clamped to 1..100)

        Returns:
            Candidates in provider relevance order; entries without a
            usable title are skipped.
        """
        if not title or not title.strip():
            return []
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))

        params: list[tuple[str, Any]] = [("title", title.strip()), ("limit", limit)]
        params.extend(("includes[]", inc) for inc in _INCLUDES)
        params.extend(("contentRating[]", rating) for rating in self.content_ratings)
        params.append(("order[relevance]", "desc"))

        data = await self._get("/manga", params=params)
        result = MangaDexSearchResult.model_validate(data)

        candidates = [m.to_candidate() for m in result.data if m.title]
        logger.debug("mangadex_search", query=title[:80], results=len(candidates), total=result.total)
        return candidates

    async def get_by_id(self, manga_id: str) -> ProviderCandidate:
        """Fetch a single manga by MangaDex UUID.

        Raises:
            MangaDexNotFoundError: Unknown id
        """
        params = [("includes[]", inc) for inc in _INCLUDES]
        data = await self._get(f"/manga/{manga_id}", params=params)
        result = MangaDexEntityResult.model_validate(data)
        return result.data.to_candidate()

    async def get_statistics(self, manga_id: str) -> MangaDexStatistics:
        """Fetch follow count and rating for one manga.

        Raises:
            MangaDexNotFoundError: Unknown id, or no statistics returned
        """
        path = f"/statistics/manga/{manga_id}"
        data = await self._get(path)
        result = MangaDexStatisticsResult.model_validate(data)
        stats = result.statistics.get(manga_id)
        if stats is None:
            raise MangaDexNotFoundError(manga_id, endpoint=path)
        return stats
