"""Recency filter for items."""

import logging
from typing import Optional

from .rate_limiter import current_time_ms
from .types import Item

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000


def filter_by_age(
    items: list[Item], threshold_minutes: Optional[int], now_ms: Optional[int] = None
) -> list[Item]:
    """Drop items published more than ``threshold_minutes`` ago.

    The age is measured against the wall clock at call time (or ``now_ms``),
    so the same input can give different results on different calls.
    A ``None`` or non-positive threshold keeps every item.
    """
    if threshold_minutes is None or threshold_minutes <= 0:
        return items

    now_ms = current_time_ms() if now_ms is None else now_ms
    threshold_ms = threshold_minutes * MINUTE_MS
    recent = [item for item in items if now_ms - item.publish_date_utc <= threshold_ms]

    logger.info(
        "After age filtering (%d min): %d of %d items remain",
        threshold_minutes,
        len(recent),
        len(items),
    )
    return recent
