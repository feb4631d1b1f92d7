"""Small text helpers shared by the scorer, formatters and coordinator."""

from __future__ import annotations

import math
import re

_NON_WORD = re.compile(r"[^\w\s]")

# ~4 characters per token is close enough for budgeting
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate(text: str, max_chars: int, ellipsis: str = "...") -> str:
    """Cut *text* to at most *max_chars* characters, ellipsis included."""
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    if max_chars <= len(ellipsis):
        return text[:max_chars]
    return text[: max_chars - len(ellipsis)].rstrip() + ellipsis


def word_set(text: str, min_length: int = 4) -> set[str]:
    """Lower-cased words of at least *min_length* characters, punctuation removed."""
    cleaned = _NON_WORD.sub("", text.lower())
    return {w for w in cleaned.split() if len(w) >= min_length}


def overlap(a: str, b: str) -> float:
    """Overlap coefficient |A∩B| / min(|A|,|B|) over ``word_set``; 0 when either is empty."""
    wa, wb = word_set(a), word_set(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / min(len(wa), len(wb))
