"""Due-time rules: bell schedule periods and free-form due strings."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

# Start time of each class period (conference schedule)
BELL_SCHEDULE: dict[int, time] = {
    1: time(8, 0),
    2: time(8, 50),
    3: time(9, 40),
    4: time(10, 30),
    5: time(11, 20),
    6: time(12, 10),
    7: time(13, 0),
    8: time(13, 50),
    9: time(14, 40),
    10: time(15, 30),
}

_DUE_RE = re.compile(
    r"^\s*(?:(?P<date>\d{4}-\d{2}-\d{2})\s*)?"
    r"(?:p(?P<period>\d{1,2})|(?P<hour>\d{1,2}):(?P<minute>\d{2}))\s*$",
    re.IGNORECASE,
)


class DueParseError(ValueError):
    pass


def period_start(period: int) -> time:
    try:
        return BELL_SCHEDULE[period]
    except KeyError:
        raise DueParseError(f"Unknown period: {period}") from None


def parse_due(text: str, tz: ZoneInfo, today: date) -> datetime:
    """Turn ``2026-10-20 14:30``, ``2026-10-20 p3``, ``14:30`` or ``p3`` into a UTC instant.

    Dates and times are read in *tz*; a missing date means *today*.
    """
    match = _DUE_RE.match(text)
    if match is None:
        raise DueParseError(f"Unrecognised due time: {text!r}")

    day = today
    if match["date"]:
        try:
            day = date.fromisoformat(match["date"])
        except ValueError:
            raise DueParseError(f"Invalid date: {match['date']}") from None

    if match["period"]:
        at = period_start(int(match["period"]))
    else:
        hour, minute = int(match["hour"]), int(match["minute"])
        if hour > 23 or minute > 59:
            raise DueParseError(f"Invalid time: {hour}:{minute:02d}")
        at = time(hour, minute)

    return datetime.combine(day, at, tzinfo=tz).astimezone(UTC)
