"""In-memory TTL cache for provider lookups.

The cache is advisory: a miss (or an expired entry) always falls through
to a live provider call, and nothing here is shared between processes.
Entries are evicted lazily on read and by insertion order once the cache
is full.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Optional, TypeVar

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000

V = TypeVar("V")


class MetadataCache(Generic[V]):
    """Key -> (value, expires_at) map with per-entry expiry.

    Args:
        ttl_seconds: Lifetime of an entry; 0 disables caching
        max_entries: Upper bound on stored entries
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: str, value: V) -> None:
        if self.ttl_seconds == 0:
            return
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }
