"""Mention key canonicalization.

The scraper emits the same entity under two shapes: a bare symbol ("DOGE") and
a link whose last path segment is the symbol or mint address
("https://t.co/DOGE", "https://pump.fun/coin/<mint>"). Both forms must collapse
onto one canonical key with their counts summed; otherwise the same mention
would be attributed twice, or one form would overwrite the other.
"""

from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import structlog

from mention_ingest.models.video_models import MentionCount

logger = structlog.get_logger(__name__)

URL_SCHEMES = ("http://", "https://")


def canonical_mention_key(raw_key: str) -> Optional[str]:
    """Return the canonical form of a raw mention key.

    URL keys canonicalize to their final non-empty path segment (query string,
    fragment and trailing slashes are ignored). Other keys are already
    canonical and are returned unchanged, whitespace included, so " FOO" and
    "FOO" stay distinct keys.

    Args:
        raw_key: Mention key as emitted by the scraper

    Returns:
        The canonical key, or None when the key has no usable form
        (blank key, or a URL without a path segment)

    Examples:
        >>> canonical_mention_key("https://x.com/FOO")
        'FOO'
        >>> canonical_mention_key("FOO")
        'FOO'
        >>> canonical_mention_key("https://x.com/") is None
        True
    """
    if not raw_key or not raw_key.strip():
        return None

    key = raw_key.strip()
    if not key.lower().startswith(URL_SCHEMES):
        return raw_key

    segments = [segment for segment in urlsplit(key).path.split("/") if segment]
    if not segments:
        return None
    return segments[-1]


def normalize_mentions(raw_mentions: Mapping[str, Any]) -> Dict[str, MentionCount]:
    """Collapse equivalent mention keys and merge their counts.

    For every raw key the canonical key is computed; when two raw keys share a
    canonical key their counts are summed and their is_ticker flags OR-ed.
    The result does not depend on input order.

    Values may be {"count": int, "isTicker": bool} dicts, or a bare integer
    count (older scraper output), which is read as a ticker mention.

    Args:
        raw_mentions: Raw mention key -> mention value

    Returns:
        Canonical key -> merged MentionCount

    Example:
        >>> merged = normalize_mentions({"https://x.com/FOO": {"count": 3}, "FOO": {"count": 2}})
        >>> merged["FOO"].count
        5
    """
    merged: Dict[str, MentionCount] = {}

    for raw_key, value in (raw_mentions or {}).items():
        key = canonical_mention_key(raw_key)
        if key is None:
            logger.debug("mention_key_dropped", raw_key=raw_key)
            continue

        count, is_ticker = _read_mention_value(value)

        existing = merged.get(key)
        if existing is None:
            merged[key] = MentionCount(count=count, is_ticker=is_ticker)
        else:
            existing.count += count
            existing.is_ticker = existing.is_ticker or is_ticker

    return merged


def _read_mention_value(value: Any):
    """Return (count, is_ticker) from either mention value shape."""
    if isinstance(value, Mapping):
        return _non_negative_int(value.get("count", 0)), bool(value.get("isTicker", False))
    return _non_negative_int(value), True


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0
