"""Tests for MangaUpdatesClient.

Uses respx to mock the MangaUpdates series search endpoint.
"""

import json

import httpx
import pytest
import respx
from httpx import Response

from mangadex_client import (
    MangaUpdatesClient,
    MangaUpdatesError,
    MangaUpdatesUnavailableError,
    RateLimiter,
)
from mangatrack_common import TransientError

pytestmark = pytest.mark.unit

BASE = "https://api.mangaupdates.com/v1"


def _hit(series_id: int, title: str, hit_title: str = None) -> dict:
    return {
        "record": {"series_id": series_id, "title": title, "year": "2005", "url": "https://..."},
        "hit_title": hit_title or title,
    }


@pytest.fixture
def fast_limiter() -> RateLimiter:
    return RateLimiter(requests_per_second=1000, burst_size=1000)


class TestSearch:
    """Tests for MangaUpdatesClient.search()."""

    @respx.mock
    async def test_parses_hits(self, fast_limiter):
        respx.post(f"{BASE}/series/search").mock(
            return_value=Response(
                200,
                json={
                    "total_hits": 2,
                    "results": [_hit(15, "Vinland Saga"), _hit(99, "Vinland Saga (Novel)")],
                },
            )
        )

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            hits = await client.search("Vinland Saga")

        assert [h.record.series_id for h in hits] == [15, 99]
        assert hits[0].hit_title == "Vinland Saga"

    @respx.mock
    async def test_sends_search_body(self, fast_limiter):
        route = respx.post(f"{BASE}/series/search").mock(
            return_value=Response(200, json={"total_hits": 0, "results": []})
        )

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            await client.search("  Berserk ", per_page=500)

        body = json.loads(route.calls.last.request.content)
        assert body == {"search": "Berserk", "page": 1, "perpage": 100}

    async def test_blank_title_skips_request(self, fast_limiter):
        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            assert await client.search(" ") == []


class TestErrors:
    """Error mapping for MangaUpdates responses."""

    @respx.mock
    async def test_rate_limit_is_transient(self, fast_limiter):
        respx.post(f"{BASE}/series/search").mock(
            return_value=Response(429, headers={"Retry-After": "12"})
        )

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            with pytest.raises(MangaUpdatesUnavailableError) as exc_info:
                await client.search("Berserk")

        assert isinstance(exc_info.value, TransientError)
        assert exc_info.value.retry_after == 12.0

    @respx.mock
    async def test_server_error_is_transient(self, fast_limiter):
        respx.post(f"{BASE}/series/search").mock(return_value=Response(502, text="bad gateway"))

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            with pytest.raises(MangaUpdatesUnavailableError):
                await client.search("Berserk")

    @respx.mock
    async def test_client_error_is_permanent(self, fast_limiter):
        respx.post(f"{BASE}/series/search").mock(return_value=Response(400, text="bad search"))

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            with pytest.raises(MangaUpdatesError) as exc_info:
                await client.search("Berserk")

        assert not isinstance(exc_info.value, TransientError)
        assert exc_info.value.status_code == 400

    @respx.mock
    async def test_network_error_retried_then_raised(self, fast_limiter):
        route = respx.post(f"{BASE}/series/search").mock(
            side_effect=httpx.ConnectError("refused")
        )

        async with MangaUpdatesClient(rate_limiter=fast_limiter) as client:
            with pytest.raises(MangaUpdatesUnavailableError):
                await client.search("Berserk")

        assert route.call_count == 3
