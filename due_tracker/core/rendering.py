"""Text renderer for homework announcements.

Output is Telegram HTML. The countdown column uses the same staged labels as
the signature, so a refresh is only worth sending when the signature moved.
"""

from __future__ import annotations

import html
from datetime import datetime
from zoneinfo import ZoneInfo

from due_tracker.core.constants import DATE_FORMAT, DEFAULT_HOME_TZ, HEADER_PREFIX
from due_tracker.core.models import DueItem, Payload
from due_tracker.core.rules.labels import staged_label


def render_header(label: str, items: list[DueItem]) -> str:
    resolved = label or (items[0].group_key if items else "") or "Class"
    return f"{HEADER_PREFIX} {resolved}"


def render_line(item: DueItem, now: datetime, tz: ZoneInfo) -> str:
    due_date = item.due_at.astimezone(tz).strftime(DATE_FORMAT)
    return (
        f"• {html.escape(item.title)} — {due_date} · "
        f"<i>{staged_label(item.due_at, now)}</i>"
    )


def render_text(
    items: list[DueItem],
    label: str,
    now: datetime,
    tz: ZoneInfo | None = None,
) -> Payload:
    """Render the full announcement; pure given its arguments."""
    tz = tz or ZoneInfo(DEFAULT_HOME_TZ)
    ordered = sorted(items, key=lambda item: item.due_at)
    lines = [f"<b>{html.escape(render_header(label, ordered))}</b>"]
    if not ordered:
        lines.append("No upcoming assignments.")
    lines.extend(render_line(item, now, tz) for item in ordered)
    return Payload(text="\n".join(lines), parse_mode="HTML")
