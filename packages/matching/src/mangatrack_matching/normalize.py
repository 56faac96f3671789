"""Title normalization and similarity scoring.

All functions here are pure and total: they never raise on odd input and
can be called from any number of tasks concurrently.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

from rapidfuzz.distance import Levenshtein

SEQUEL_MISMATCH_CAP = 0.3

_WHITESPACE = re.compile(r"\s+")
_SEQUEL_KEYWORD = re.compile(r"\b(season|part|vol|volume)\.?\s*(\d+|[ivx]+)\b")
_TRAILING_NUMBER = re.compile(r"(\d+)$")
_TRAILING_ROMAN = re.compile(r"\s(ii|iii|iv|v|vi|vii|viii|ix|x)$")


def _keep_char(ch: str) -> bool:
    category = unicodedata.category(ch)
    return category[0] in ("L", "N", "M")


def normalize_title(title: Optional[str]) -> str:
    """Canonical comparison form of a title.

    Lower-cases, strips diacritics, turns punctuation and symbols into
    spaces, and collapses whitespace. Letters and digits of every script
    are kept.

    Example:
        >>> normalize_title("  Kimetsu no Yaiba: Démon Slayer!! ")
        'kimetsu no yaiba demon slayer'
    """
    if not title:
        return ""

    decomposed = unicodedata.normalize("NFKD", title.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    recomposed = unicodedata.normalize("NFC", stripped)

    cleaned = "".join(ch if _keep_char(ch) else " " for ch in recomposed)
    return _WHITESPACE.sub(" ", cleaned).strip()


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Normalized edit-distance similarity in [0, 1].

    ``1 - levenshtein(na, nb) / max(len(na), len(nb))`` over normalized
    inputs. Returns 0.0 if either side normalizes to the empty string.
    """
    na = normalize_title(a)
    nb = normalize_title(b)
    if not na or not nb:
        return 0.0
    return Levenshtein.normalized_similarity(na, nb)


def sequel_marker(title: Optional[str]) -> Optional[str]:
    """Installment marker of a title ("season2", "part3", "2", "ii"), if any."""
    if not title:
        return None
    lower = title.lower().strip()

    keyword = _SEQUEL_KEYWORD.search(lower)
    if keyword:
        word = "vol" if keyword.group(1) == "volume" else keyword.group(1)
        return f"{word}{keyword.group(2)}"

    number = _TRAILING_NUMBER.search(lower)
    if number:
        return str(int(number.group(1)))

    roman = _TRAILING_ROMAN.search(lower)
    if roman:
        return roman.group(1)

    return None


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Similarity with sequel protection.

    Two titles that both name an installment, but different ones
    ("Tower of God Season 2" vs "Tower of God Season 3"), score at most
    SEQUEL_MISMATCH_CAP however close the strings are.
    """
    score = similarity(a, b)
    marker_a = sequel_marker(a)
    marker_b = sequel_marker(b)
    if marker_a and marker_b and marker_a != marker_b:
        return min(score, SEQUEL_MISMATCH_CAP)
    return score


def best_title_similarity(title: str, candidate_title: str, alt_titles: list[str]) -> float:
    """Best sequel-aware similarity of ``title`` against a candidate's titles."""
    best = title_similarity(title, candidate_title)
    for alt in alt_titles:
        if best >= 1.0:
            break
        best = max(best, title_similarity(title, alt))
    return best
