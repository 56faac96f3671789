"""Error classification and operator-facing error text.

``classify`` decides how the coordinator and the job queue react to a
failure. ``sanitize_error`` turns an exception into the text stored in
``tracked_references.last_error``: well-known upstream failures get a
fixed message, everything else is redacted and truncated.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import asyncpg
import httpx
from mangadex_client import (
    MangaDexAPIError,
    MangaDexCloudflareError,
    MangaDexNetworkError,
    MangaDexRateLimitError,
)
from mangatrack_common import (
    ConflictError,
    NotFoundError,
    PolicyBlockedError,
    StorageError,
    TransientError,
    redact,
)
from mangatrack_storage.transactions import RETRYABLE_ERRORS

RATE_LIMITED_MESSAGE = "Rate limited by external API. Will retry automatically."
UNAVAILABLE_MESSAGE = "External service temporarily unavailable. Will retry automatically."
NETWORK_MESSAGE = "Network error connecting to external API. Will retry automatically."
NO_MATCH_MESSAGE = "No match found on metadata source."

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    httpx.TransportError,
    ConnectionError,
    asyncio.TimeoutError,
)


class ErrorClass(str, Enum):
    """How a failure should be handled."""

    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERMANENT = "permanent"
    POLICY_BLOCKED = "policy_blocked"

    @property
    def retryable(self) -> bool:
        return self in (ErrorClass.TRANSIENT, ErrorClass.CONFLICT)


def classify(exc: BaseException) -> ErrorClass:
    """Map an exception onto the error taxonomy.

    Wrapped storage errors are classified by their cause, so a dropped
    database connection counts as transient even after being wrapped.
    """
    if isinstance(exc, PolicyBlockedError):
        return ErrorClass.POLICY_BLOCKED
    if isinstance(exc, TransientError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, NotFoundError):
        return ErrorClass.NOT_FOUND
    if isinstance(exc, ConflictError) or isinstance(exc, RETRYABLE_ERRORS):
        return ErrorClass.CONFLICT
    if isinstance(exc, MangaDexAPIError):
        return ErrorClass.TRANSIENT if exc.is_server_error else ErrorClass.PERMANENT
    if isinstance(exc, _CONNECTION_ERRORS):
        return ErrorClass.TRANSIENT
    if isinstance(exc, StorageError) and exc.__cause__ is not None:
        cause_class = classify(exc.__cause__)
        if cause_class in (ErrorClass.TRANSIENT, ErrorClass.CONFLICT):
            return cause_class
    return ErrorClass.PERMANENT


def sanitize_error(exc: BaseException) -> str:
    """Operator-safe description of ``exc``.

    Example:
        >>> sanitize_error(MangaDexRateLimitError(retry_after=5))
        'Rate limited by external API. Will retry automatically.'
    """
    if isinstance(exc, MangaDexRateLimitError):
        return RATE_LIMITED_MESSAGE
    if isinstance(exc, MangaDexCloudflareError):
        return UNAVAILABLE_MESSAGE
    if isinstance(exc, MangaDexAPIError) and exc.is_server_error:
        return UNAVAILABLE_MESSAGE
    if isinstance(exc, (MangaDexNetworkError, httpx.TransportError, asyncio.TimeoutError)):
        return NETWORK_MESSAGE
    if isinstance(exc, NotFoundError):
        return NO_MATCH_MESSAGE

    message = str(exc) or type(exc).__name__
    return redact(message)
