"""Platform identifier extraction from series URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from mangatrack_contracts import Provider

_PATTERNS: tuple[tuple[str, re.Pattern[str], int], ...] = (
    (
        "mangadex",
        re.compile(
            r"mangadex\.org/(?:title|manga)/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})",
            re.IGNORECASE,
        ),
        1,
    ),
    ("mangaupdates", re.compile(r"mangaupdates\.com/series/([0-9a-z]+)(?:[/?#]|$)", re.IGNORECASE), 1),
    ("mangaupdates", re.compile(r"mangaupdates\.com/series\.html\?id=(\d+)", re.IGNORECASE), 1),
    ("mangasee", re.compile(r"(?:manga4life\.com|mangasee123\.com)/manga/([^/?#]+)", re.IGNORECASE), 1),
    ("mangapark", re.compile(r"mangapark\.(?:net|me|com)/(?:title|comic)/([^/?#]+)", re.IGNORECASE), 1),
)

_PROVIDERS = {p.value: p for p in Provider}


@dataclass(frozen=True)
class PlatformId:
    """Identifier of a series on one platform, parsed from a URL."""

    platform: str
    id: str

    @property
    def provider(self) -> Optional[Provider]:
        """Metadata provider for this platform, if it is one we can query."""
        return _PROVIDERS.get(self.platform)


def extract_platform_id(url: Optional[str]) -> Optional[PlatformId]:
    """Parse a platform identifier out of ``url``.

    Only complete identifiers are returned; a truncated MangaDex UUID is
    treated as no identifier at all.

    Example:
        >>> extract_platform_id("https://mangadex.org/title/32d76d19-8a05-4db0-9fc2-e0b0648fe9d0/solo")
        PlatformId(platform='mangadex', id='32d76d19-8a05-4db0-9fc2-e0b0648fe9d0')
    """
    if not url:
        return None
    for platform, pattern, group in _PATTERNS:
        match = pattern.search(url)
        if match:
            value = match.group(group)
            if platform == "mangadex":
                value = value.lower()
            return PlatformId(platform=platform, id=value)
    return None
