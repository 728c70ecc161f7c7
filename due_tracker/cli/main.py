"""CLI entry point for the homework tracker."""

from __future__ import annotations

import asyncio
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click

from due_tracker.core.constants import DEFAULT_HOME_TZ
from due_tracker.core.models import DueItem, SnapshotEntry
from due_tracker.core.rendering import render_text
from due_tracker.core.rules.cadence import classify, soonest_upcoming
from due_tracker.core.rules.labels import staged_label
from due_tracker.core.schedule import DueParseError, parse_due
from due_tracker.core.utils import utc_now

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("httpx", "telegram.ext.Updater", "telegram.request", "telegram.ext._utils.networkloop")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _load_snapshot(db_path: str | None) -> list[SnapshotEntry]:
    """Read the snapshot from the store the bot would use."""
    from due_tracker.storage.snapshot import open_store

    async def run() -> list[SnapshotEntry]:
        store = open_store(db_path)
        try:
            return await store.load()
        finally:
            await store.aclose()

    return asyncio.run(run())


def _remove_from_snapshot(db_path: str | None, message_id: str) -> bool | None:
    """None when the entry is absent, otherwise whether the rewrite was saved."""
    from due_tracker.storage.snapshot import open_store

    async def run() -> bool | None:
        store = open_store(db_path)
        try:
            entries = await store.load()
            kept = [entry for entry in entries if entry.message_id != message_id]
            if len(kept) == len(entries):
                return None
            return await store.save(kept)
        finally:
            await store.aclose()

    return asyncio.run(run())


@click.group()
@click.option("--db", default=None, envvar="DT_DB_PATH", help="Path to SQLite snapshot database.")
@click.option("--tz", "home_tz", default=DEFAULT_HOME_TZ, envvar="DT_HOME_TZ", help="Home time zone.")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level.",
)
@click.pass_context
def cli(ctx: click.Context, db: str | None, home_tz: str, log_level: str) -> None:
    """Homework tracker -- live countdowns for posted homework."""
    _configure_logging(log_level)
    try:
        tz = ZoneInfo(home_tz)
    except (ZoneInfoNotFoundError, ValueError):
        click.echo(f"Error: unknown time zone: {home_tz}", err=True)
        raise SystemExit(1) from None
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["tz"] = tz


@cli.command()
@click.option("--token", envvar="TELEGRAM_BOT_TOKEN", default=None, help="Telegram bot token.")
@click.pass_context
def bot(ctx: click.Context, token: str | None) -> None:
    """Run the Telegram bot with live countdown tracking."""
    if not token:
        click.echo("Error: set TELEGRAM_BOT_TOKEN or pass --token.", err=True)
        raise SystemExit(1)

    from due_tracker.integrations.telegram import run_bot
    from due_tracker.storage.snapshot import open_store

    run_bot(token, open_store(ctx.obj["db_path"]), ctx.obj["tz"])


@cli.command()
@click.pass_context
def tracked(ctx: click.Context) -> None:
    """List persisted announcements with their current cadence."""
    entries = _load_snapshot(ctx.obj["db_path"])
    if not entries:
        click.echo("Nothing tracked.")
        return

    now = utc_now()
    for entry in entries:
        soonest = soonest_upcoming(entry.items, now)
        countdown = staged_label(soonest.due_at, now) if soonest else "all due"
        click.echo(
            f"[{entry.message_id}] {entry.label or '(no label)'} "
            f"channel={entry.channel_id} items={len(entry.items)} "
            f"cadence={classify(entry.items, now).value} next={countdown}"
        )


@cli.command()
@click.argument("message_id")
@click.pass_context
def forget(ctx: click.Context, message_id: str) -> None:
    """Remove an announcement from the persisted snapshot."""
    saved = _remove_from_snapshot(ctx.obj["db_path"], message_id)
    if saved is None:
        click.echo(f"Not in snapshot: {message_id}", err=True)
        raise SystemExit(1)
    if not saved:
        click.echo("Error: could not write the snapshot.", err=True)
        raise SystemExit(1)
    click.echo(f"Forgot {message_id}")


@cli.command()
@click.argument("title")
@click.argument("due")
@click.option("--label", "-l", default="", help="Announcement header label.")
@click.pass_context
def preview(ctx: click.Context, title: str, due: str, label: str) -> None:
    """Print the rendered announcement for one item due at DUE."""
    tz = ctx.obj["tz"]
    now = utc_now()
    try:
        due_at = parse_due(due, tz, now.astimezone(tz).date())
    except DueParseError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from None

    payload = render_text([DueItem(title=title, due_at=due_at, group_key=label)], label, now, tz)
    click.echo(payload.text)
