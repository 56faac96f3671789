"""Custom error types for the mangatrack system.

Errors are grouped by how the caller should react, not by where they
were raised:

- TransientError: retry later with backoff (rate limits, network, lock busy)
- NotFoundError: the thing asked for does not exist; treat as "no match"
- ConflictError: a concurrent writer won; retry the whole transaction
- PermanentError: retrying will not help; record and move on
- PolicyBlockedError: content is not allowed; terminal, never retried
"""


class MangaTrackError(Exception):
    """Base exception for all mangatrack errors."""

    pass


class TransientError(MangaTrackError):
    """Temporary failure; the operation may succeed if retried later."""

    pass


class NotFoundError(MangaTrackError):
    """Requested entity does not exist (locally or at a provider)."""

    pass


class ConflictError(MangaTrackError):
    """Serialization failure, deadlock, or unique-constraint race."""

    pass


class PermanentError(MangaTrackError):
    """Failure that will not be fixed by retrying."""

    pass


class PolicyBlockedError(PermanentError):
    """Content rejected by content policy (e.g. blocked content rating)."""

    pass


class StorageError(MangaTrackError):
    """Error during database operations."""

    pass


class LockBusyError(TransientError):
    """Distributed lock is held by another worker."""

    pass


class OverrideProtectedError(PermanentError):
    """Automated mutation attempted on a user-overridden series.

    The series keeps its user-provided metadata until the override is
    cleared explicitly.
    """

    pass


class ConfigError(MangaTrackError):
    """Invalid or missing configuration."""

    pass
