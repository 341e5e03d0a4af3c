"""
Utility helper functions.
"""
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

import numpy as np

_WORD_RE = re.compile(r"\w+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def month_key(value: datetime) -> str:
    """Return the YYYY-MM bucket for a timestamp."""
    return as_utc(value).strftime("%Y-%m")


def normalize_tag(tag: str) -> str:
    return " ".join(str(tag).split()).lower()


def normalize_tags(tags: Iterable) -> List[str]:
    """
    Lowercase, trim and dedupe tags, keeping first-seen order.

    Args:
        tags: Raw tag values, possibly with duplicates, blanks or odd casing

    Returns:
        Normalized tags

    Example:
        >>> normalize_tags([" Science", "science", "", "AI "])
        ['science', 'ai']
    """
    seen = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        normalized = normalize_tag(tag)
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


def top_words(text: str, limit: int, min_length: int) -> List[str]:
    """
    Most frequent words strictly longer than min_length, ties broken by first occurrence.
    """
    words = [w for w in _WORD_RE.findall(text.lower()) if len(w) > min_length]
    return [word for word, _ in Counter(words).most_common(limit)]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched or zero-length vectors."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def snippet(text: str, length: int = 200) -> str:
    text = text or ""
    if len(text) <= length:
        return text
    return text[:length].rstrip() + "..."
