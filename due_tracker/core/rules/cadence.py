"""Cadence classification — how often an announcement needs refreshing.

Only the soonest upcoming item matters:

  remaining <= 60s   → second
  remaining <= 1h    → minute
  otherwise          → hour
  nothing upcoming   → none

As time passes a record can only move hour → minute → second → none;
appending an earlier item is the only way to move the other direction.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from due_tracker.core.constants import MINUTE_CADENCE_MAX, SECOND_CADENCE_MAX
from due_tracker.core.models import Bucket, DueItem

# Lower rank = finer cadence
CADENCE_RANK: dict[Bucket, int] = {
    Bucket.SECOND: 1,
    Bucket.MINUTE: 2,
    Bucket.HOUR: 3,
}


def soonest_upcoming(items: Iterable[DueItem], now: datetime) -> DueItem | None:
    """Return the item with the earliest due time still in the future."""
    upcoming = [item for item in items if item.due_at > now]
    if not upcoming:
        return None
    return min(upcoming, key=lambda item: item.due_at)


def classify(items: Iterable[DueItem], now: datetime) -> Bucket:
    soonest = soonest_upcoming(items, now)
    if soonest is None:
        return Bucket.NONE
    remaining = soonest.due_at - now
    if remaining <= SECOND_CADENCE_MAX:
        return Bucket.SECOND
    if remaining <= MINUTE_CADENCE_MAX:
        return Bucket.MINUTE
    return Bucket.HOUR


def is_finer(candidate: Bucket, than: Bucket) -> bool:
    """True when *candidate* is a real cadence that refreshes more often than *than*."""
    if candidate not in CADENCE_RANK or than not in CADENCE_RANK:
        return False
    return CADENCE_RANK[candidate] < CADENCE_RANK[than]
