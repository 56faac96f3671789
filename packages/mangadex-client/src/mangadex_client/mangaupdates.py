"""Minimal MangaUpdates API client.

Only title search is needed: after a reference resolves, the series'
MangaUpdates id is filled from the best search hit. MangaUpdates allows
about one request per second.

Example:
    >>> async with MangaUpdatesClient() as client:
    ...     hits = await client.search("Vinland Saga")
    ...     print(hits[0].record.series_id)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from mangatrack_common import MangaTrackError, TransientError, get_logger, retry_on_exception
from pydantic import BaseModel, ConfigDict, Field

from mangadex_client.client import USER_AGENT, _parse_retry_after
from mangadex_client.rate_limiter import RateLimiter

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.mangaupdates.com/v1"
DEFAULT_TIMEOUT = 30.0
MAX_PER_PAGE = 100


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class MangaUpdatesError(MangaTrackError):
    """HTTP error response from the MangaUpdates API."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"MangaUpdates API error {status_code}: {message}")


class MangaUpdatesUnavailableError(MangaUpdatesError, TransientError):
    """429, 5xx, timeout or transport failure."""

    def __init__(self, status_code: int, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(status_code, message)


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------


class MangaUpdatesRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    series_id: int
    title: str
    year: Optional[str] = None


class MangaUpdatesHit(BaseModel):
    """One search result; ``hit_title`` is the alias that matched."""

    model_config = ConfigDict(extra="ignore")

    record: MangaUpdatesRecord
    hit_title: Optional[str] = None


class MangaUpdatesSearchResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_hits: int = 0
    results: list[MangaUpdatesHit] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class MangaUpdatesClient:
    """MangaUpdates series search.

    Args:
        base_url: API root
        timeout: Per-request timeout in seconds
        rate_limiter: Shared limiter (default: 1 request/second)
        http_client: Pre-built httpx client (tests, connection sharing)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter(requests_per_second=1.0)
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "MangaUpdatesClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @retry_on_exception(
        exception_types=(httpx.TransportError,),
        max_attempts=3,
        min_wait_seconds=0.1,
        max_wait_seconds=2.0,
    )
    async def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        client = self._ensure_client()
        await self.rate_limiter.acquire()
        return await client.post(path, json=body)

    async def search(self, title: str, per_page: int = 5) -> list[MangaUpdatesHit]:
        """Search series by title, best hits first.

        Raises:
            MangaUpdatesUnavailableError: Rate limit, outage or network failure
            MangaUpdatesError: Any other error response
        """
        if not title or not title.strip():
            return []
        per_page = max(1, min(per_page, MAX_PER_PAGE))
        path = "/series/search"

        try:
            response = await self._post(path, {"search": title.strip(), "page": 1, "perpage": per_page})
        except httpx.TransportError as e:
            raise MangaUpdatesUnavailableError(0, f"Network error calling {path}: {e}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response)
            logger.warning("mangaupdates_rate_limited", retry_after=retry_after)
            raise MangaUpdatesUnavailableError(429, "Rate limit exceeded", retry_after=retry_after)
        if response.status_code >= 500:
            raise MangaUpdatesUnavailableError(response.status_code, response.text[:200])
        if response.status_code >= 400:
            raise MangaUpdatesError(response.status_code, response.text[:200])

        try:
            result = MangaUpdatesSearchResult.model_validate(response.json())
        except ValueError as e:
            raise MangaUpdatesError(response.status_code, "Invalid JSON body") from e

        logger.debug("mangaupdates_search", query=title[:80], results=len(result.results))
        return result.results
