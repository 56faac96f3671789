"""MangaDex client error types.

Hierarchy:
    MangaDexError
    ├── MangaDexAPIError (HTTP error responses)
    │   ├── MangaDexRateLimitError (429)
    │   ├── MangaDexCloudflareError (403 challenge page)
    │   └── MangaDexNotFoundError (404)
    ├── MangaDexNetworkError (timeouts, connection failures)
    └── MangaDexConfigError (invalid client configuration)
"""

from __future__ import annotations

from typing import Optional

from mangatrack_common import MangaTrackError, NotFoundError, TransientError


class MangaDexError(MangaTrackError):
    """Base exception for all MangaDex client errors."""

    pass


class MangaDexAPIError(MangaDexError):
    """HTTP error response from the MangaDex API."""

    def __init__(self, status_code: int, message: str, endpoint: str = ""):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"MangaDex API error {status_code} on {endpoint or '<unknown>'}: {message}")

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class MangaDexRateLimitError(MangaDexAPIError, TransientError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, retry_after: Optional[float] = None, endpoint: str = ""):
        self.retry_after = retry_after
        message = "Rate limit exceeded"
        if retry_after is not None:
            message += f", retry after {retry_after:g}s"
        super().__init__(429, message, endpoint)


class MangaDexCloudflareError(MangaDexAPIError, TransientError):
    """Request blocked by the Cloudflare challenge in front of the API."""

    def __init__(self, endpoint: str = ""):
        super().__init__(403, "Blocked by Cloudflare challenge", endpoint)


class MangaDexNotFoundError(MangaDexAPIError, NotFoundError):
    """Requested resource does not exist (HTTP 404)."""

    def __init__(self, resource_id: str, resource_type: str = "manga", endpoint: str = ""):
        self.resource_id = resource_id
        self.resource_type = resource_type
        super().__init__(404, f"{resource_type} not found: {resource_id}", endpoint)


class MangaDexNetworkError(MangaDexError, TransientError):
    """Timeout or transport failure talking to MangaDex."""

    pass


class MangaDexConfigError(MangaDexError):
    """Invalid client configuration."""

    pass
