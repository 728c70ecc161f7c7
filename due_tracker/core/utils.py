"""Shared utility helpers for the core layer."""

from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_utc_datetime(value: str | datetime) -> datetime:
    """Parse a datetime value, ensuring it is timezone-aware (UTC).

    Accepts an ISO-format string or a datetime instance.
    Naive datetimes are assumed to be UTC.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def round_half_up(value: float) -> int:
    """Round halves up (2.5 -> 3), unlike the built-in round()."""
    return math.floor(value + 0.5)


def minute_of_hour(moment: datetime, tz: ZoneInfo) -> int:
    """Minute-of-hour of *moment* as seen in *tz*."""
    return moment.astimezone(tz).minute


def safe_json_loads(raw: str | None, default=None, context: str = ""):
    """Parse JSON with graceful fallback on decode errors.

    Returns *default* when *raw* is None or contains malformed JSON,
    logging a warning so corrupted rows are visible without crashing
    the caller.
    """
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON in %s: %r", context or "unknown field", raw[:120])
        return default
