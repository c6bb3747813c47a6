"""View count normalization.

Converts the human-readable engagement counts shown on video pages ("12.3K",
"1.2M", "4821") into exact integers. Malformed upstream data must never abort
an ingestion run, so parse_view_count() never raises.
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Any

# Suffix multipliers, matched case-insensitively
UNIT_MULTIPLIERS = {
    "k": 1_000,
    "m": 1_000_000,
    "b": 1_000_000_000,
}


def parse_view_count(views: Any) -> int:
    """Convert a view count string to a non-negative integer.

    Fractional results are truncated toward zero after multiplication, never
    rounded up. Decimal arithmetic is used so that "1.13K" yields 1130 rather
    than a float artifact like 1129.

    Args:
        views: Count as displayed ("12.3K", "1.2m", "4,821", "42") or a number

    Returns:
        The count as an int, or 0 for empty, unparseable, or negative input

    Examples:
        >>> parse_view_count("1.5K")
        1500
        >>> parse_view_count("2M")
        2000000
        >>> parse_view_count("abc")
        0
    """
    if views is None or isinstance(views, bool):
        return 0

    if isinstance(views, (int, float)):
        if isinstance(views, float) and not math.isfinite(views):
            return 0
        return max(int(views), 0)

    text = str(views).strip().replace(",", "")
    if not text:
        return 0

    multiplier = 1
    unit = text[-1].lower()
    if unit in UNIT_MULTIPLIERS:
        multiplier = UNIT_MULTIPLIERS[unit]
        text = text[:-1].strip()

    try:
        number = Decimal(text)
    except InvalidOperation:
        return 0

    if not number.is_finite() or number < 0:
        return 0

    return int(number * multiplier)
