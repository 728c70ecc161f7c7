"""Staged countdown labels and render signatures.

The countdown shown next to each item is coarsened near the deadline so the
text only changes a handful of times per minute:

  > 60s    → "in N min" / "in N hr(s)" / "in N day(s)"
  31–60s   → "in 1 min"
  16–30s   → "in 30 sec"
  11–15s   → "in 15 sec"
  1–10s    → "in N sec"
  <= 0     → "due"

A signature concatenates the labels of all items (soonest first) plus the
record's bucket. Equal signatures mean the rendered countdowns are identical,
which lets the refresh queue skip edits that would change nothing.
"""

from __future__ import annotations

import math
from datetime import datetime

from due_tracker.core.models import AnnouncementRecord
from due_tracker.core.utils import round_half_up

DUE_LABEL = "due"


def _plural(n: int, unit: str) -> str:
    return f"in {n} {unit}{'' if n == 1 else 's'}"


def staged_label(due_at: datetime, now: datetime) -> str:
    remaining = (due_at - now).total_seconds()
    if remaining <= 0:
        return DUE_LABEL

    secs = math.ceil(remaining)
    if secs > 60:
        mins = round_half_up(remaining / 60)
        if mins < 60:
            return f"in {mins} min"
        hrs = round_half_up(mins / 60)
        if hrs < 24:
            return _plural(hrs, "hr")
        return _plural(round_half_up(hrs / 24), "day")

    if secs > 30:
        return "in 1 min"
    if secs > 15:
        return "in 30 sec"
    if secs > 10:
        return "in 15 sec"
    return f"in {secs} sec"


def signature(record: AnnouncementRecord, now: datetime) -> str:
    ordered = sorted(record.items, key=lambda item: item.due_at)
    parts = [staged_label(item.due_at, now) for item in ordered]
    parts.append(record.bucket.value)
    return "|".join(parts)
