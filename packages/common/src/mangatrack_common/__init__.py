"""mangatrack common - errors, logging, settings, and retry helpers.

Version: 1.0.0

Shared by every mangatrack package. Has no dependency on the database or
the metadata provider.
"""

from mangatrack_common.errors import (
    ConfigError,
    ConflictError,
    LockBusyError,
    MangaTrackError,
    NotFoundError,
    OverrideProtectedError,
    PermanentError,
    PolicyBlockedError,
    StorageError,
    TransientError,
)
from mangatrack_common.logging_config import configure_logging, get_logger
from mangatrack_common.retry import retry_async, retry_on_exception
from mangatrack_common.sanitize import redact

__all__ = [
    "ConfigError",
    "ConflictError",
    "LockBusyError",
    "MangaTrackError",
    "NotFoundError",
    "OverrideProtectedError",
    "PermanentError",
    "PolicyBlockedError",
    "StorageError",
    "TransientError",
    "configure_logging",
    "get_logger",
    "redact",
    "retry_async",
    "retry_on_exception",
]
