"""Telegram bot integration for the homework tracker.

Two halves:
  TelegramPlatform — the ChatPlatform adapter the tracker edits messages through.
  Command handlers — post and manage tracked announcements:
    /post <label>         — post an announcement; one "title | due" per following line
    /add <message_id>     — append "title | due" lines to a tracked announcement
    /status [message_id]  — tracking status (or reply to the announcement)
    /tracked              — tracked announcements in this chat
    /untrack <message_id> — delete the announcement and stop tracking it
    /help                 — show commands

Due times accept "2026-10-20 14:30", "2026-10-20 p3", "14:30" or "p3".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from zoneinfo import ZoneInfo

from telegram import Bot, Update
from telegram.error import BadRequest, Forbidden, RetryAfter, TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

from due_tracker.core.models import AnnouncementRecord, DueItem, Payload
from due_tracker.core.schedule import DueParseError, parse_due
from due_tracker.integrations.platform import (
    MessageNotFoundError,
    PlatformError,
    RateLimitedError,
)
from due_tracker.runtime.tracker import HomeworkTracker
from due_tracker.storage.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = (
    "message to edit not found",
    "message to delete not found",
    "message can't be edited",
    "message_id_invalid",
    "chat not found",
)
_NOT_MODIFIED_MARKER = "message is not modified"

# ── Platform adapter ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MessageRef:
    """Telegram cannot fetch a message by id; a reference is all we can resolve."""

    chat_id: int | str
    message_id: int


def _chat_id(channel_id: str) -> int | str:
    try:
        return int(channel_id)
    except ValueError:
        return channel_id  # "@channelusername"


def message_key(chat_id: int | str, message_id: int | str) -> str:
    """Tracker key for a Telegram post; message ids repeat across chats."""
    return f"{chat_id}:{message_id}"


def _message_number(message_id: str) -> int:
    """The numeric Telegram id from a ``message_key`` or a bare id."""
    return int(message_id.rpartition(":")[2])


def _seconds(value: int | float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def translate_error(exc: TelegramError) -> PlatformError:
    """Map a python-telegram-bot error onto the platform error hierarchy."""
    if isinstance(exc, RetryAfter):
        return RateLimitedError(exc.message, retry_after=_seconds(exc.retry_after))
    if isinstance(exc, Forbidden):
        return MessageNotFoundError(exc.message)
    if isinstance(exc, BadRequest):
        text = exc.message.lower()
        if any(marker in text for marker in _NOT_FOUND_MARKERS):
            return MessageNotFoundError(exc.message)
    return PlatformError(exc.message)


class TelegramPlatform:
    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def fetch_channel(self, channel_id: str):
        try:
            return await self._bot.get_chat(chat_id=_chat_id(channel_id))
        except TelegramError as exc:
            error = translate_error(exc)
            if isinstance(error, MessageNotFoundError):
                return None
            raise error from exc

    async def fetch_message(self, channel_id: str, message_id: str) -> MessageRef | None:
        try:
            numeric_id = _message_number(message_id)
        except ValueError:
            return None
        chat = await self.fetch_channel(channel_id)
        if chat is None:
            return None
        return MessageRef(chat_id=chat.id, message_id=numeric_id)

    async def edit_message(self, channel_id: str, message_id: str, payload: Payload) -> None:
        try:
            await self._bot.edit_message_text(
                chat_id=_chat_id(channel_id),
                message_id=_message_number(message_id),
                text=payload.text,
                parse_mode=payload.parse_mode,
            )
        except BadRequest as exc:
            if _NOT_MODIFIED_MARKER in exc.message.lower():
                return
            raise translate_error(exc) from exc
        except TelegramError as exc:
            raise translate_error(exc) from exc

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        try:
            await self._bot.delete_message(
                chat_id=_chat_id(channel_id), message_id=_message_number(message_id)
            )
        except TelegramError as exc:
            raise translate_error(exc) from exc

    async def send_message(self, channel_id: str, payload: Payload) -> str:
        try:
            message = await self._bot.send_message(
                chat_id=_chat_id(channel_id),
                text=payload.text,
                parse_mode=payload.parse_mode,
            )
        except TelegramError as exc:
            raise translate_error(exc) from exc
        return message_key(channel_id, message.message_id)


# ── Parsing helpers ──────────────────────────────────────────────────────────


def _command_body(text: str | None) -> str:
    """Everything after the "/command" token, newlines preserved."""
    if not text:
        return ""
    parts = text.split(maxsplit=1)
    return parts[1] if len(parts) > 1 else ""


def parse_item_lines(lines: list[str], tz: ZoneInfo, today: date, group_key: str = "") -> list[DueItem]:
    """Parse "title | due" lines; raises DueParseError naming the bad line."""
    items: list[DueItem] = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        title, sep, due_text = line.rpartition("|")
        if not sep or not title.strip():
            raise DueParseError(f"Line {number}: expected 'title | due', got {line.strip()!r}")
        try:
            due_at = parse_due(due_text, tz, today)
        except DueParseError as exc:
            raise DueParseError(f"Line {number}: {exc}") from None
        items.append(DueItem(title=title.strip(), due_at=due_at, group_key=group_key))
    return items


def _today(tracker: HomeworkTracker) -> date:
    return tracker.now().astimezone(tracker.home_tz).date()


def _get_tracker(context: ContextTypes.DEFAULT_TYPE) -> HomeworkTracker:
    return context.application.bot_data["tracker"]


def _target_message_id(update: Update, context: ContextTypes.DEFAULT_TYPE) -> str | None:
    if context.args:
        return context.args[0]
    reply = update.message.reply_to_message
    if reply is not None:
        return str(reply.message_id)
    return None


def _chat_record(tracker: HomeworkTracker, update: Update, message_id: str) -> AnnouncementRecord | None:
    """The record for ``message_id`` in the chat the command came from, if tracked."""
    chat_id = str(update.effective_chat.id)
    record = tracker.get_record(message_key(chat_id, message_id))
    if record is None or record.channel_id != chat_id:
        return None
    return record


# ── Handlers ─────────────────────────────────────────────────────────────────


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "Homework tracker connected.\n\n"
        "Post an announcement with /post and its countdowns stay up to date.\n"
        "Use /help to see all commands."
    )


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "Commands:\n"
        "  /post <label> — then one 'title | due' per line\n"
        "  /add <message_id> — then one 'title | due' per line\n"
        "  /status [message_id] — tracking status (or reply to the post)\n"
        "  /tracked — announcements tracked in this chat\n"
        "  /untrack <message_id> — delete the post and stop tracking\n"
        "  /help — this message\n\n"
        "Due: '2026-10-20 14:30', '2026-10-20 p3', '14:30' or 'p3'."
    )


async def cmd_post(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    body = _command_body(update.message.text)
    label, _, rest = body.partition("\n")
    label = label.strip()
    if not label or not rest.strip():
        await update.message.reply_text("Usage: /post <label>\n<title> | <due>\n...")
        return

    tracker = _get_tracker(context)
    try:
        items = parse_item_lines(rest.splitlines(), tracker.home_tz, _today(tracker), group_key=label)
    except (DueParseError, ValueError) as exc:
        await update.message.reply_text(f"Could not read homework: {exc}")
        return

    payload = tracker.render(items, label)
    sent = await update.message.reply_text(payload.text, parse_mode=payload.parse_mode)
    chat_id = str(update.effective_chat.id)
    tracker.track(chat_id, message_key(chat_id, sent.message_id), items, label)


async def cmd_add(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    body = _command_body(update.message.text)
    first, _, rest = body.partition("\n")
    message_id = first.strip()
    if not message_id or not rest.strip():
        await update.message.reply_text("Usage: /add <message_id>\n<title> | <due>\n...")
        return

    tracker = _get_tracker(context)
    record = _chat_record(tracker, update, message_id)
    if record is None:
        await update.message.reply_text(f"Not tracked: {message_id}")
        return
    try:
        items = parse_item_lines(rest.splitlines(), tracker.home_tz, _today(tracker), group_key=record.label)
    except (DueParseError, ValueError) as exc:
        await update.message.reply_text(f"Could not read homework: {exc}")
        return

    added = tracker.append_items(record.message_id, items)
    if added:
        tracker.refresh_now(record.message_id)
    await update.message.reply_text(f"Added {added} item{'' if added == 1 else 's'} to {message_id}.")


async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message_id = _target_message_id(update, context)
    if message_id is None:
        await update.message.reply_text("Usage: /status <message_id> (or reply to the post)")
        return

    tracker = _get_tracker(context)
    record = _chat_record(tracker, update, message_id)
    if record is None:
        await update.message.reply_text(f"Not tracked: {message_id}")
        return
    status = tracker.get_status(record.message_id)
    await update.message.reply_text(
        f"Tracking {message_id}\n"
        f"  bucket: {status.bucket.value}\n"
        f"  items: {status.item_count}\n"
        f"  all due: {'yes' if status.all_past_due else 'no'}"
    )


async def cmd_tracked(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = str(update.effective_chat.id)
    records = [r for r in _get_tracker(context).list_tracked() if r.channel_id == chat_id]
    if not records:
        await update.message.reply_text("Nothing tracked in this chat.")
        return

    lines = [f"Tracked ({len(records)})\n"]
    for record in records:
        lines.append(
            f"[{_message_number(record.message_id)}] {record.label or '(no label)'} — "
            f"{len(record.items)} item(s), {record.bucket.value}"
        )
    await update.message.reply_text("\n".join(lines))


async def cmd_untrack(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message_id = _target_message_id(update, context)
    if message_id is None:
        await update.message.reply_text("Usage: /untrack <message_id>")
        return

    tracker = _get_tracker(context)
    record = _chat_record(tracker, update, message_id)
    if record is None:
        await update.message.reply_text(f"Not tracked: {message_id}")
        return

    try:
        await tracker.platform.delete_message(record.channel_id, record.message_id)
    except PlatformError:
        logger.info("Could not delete message %s; untracking anyway", record.message_id, exc_info=True)
    tracker.untrack(record.message_id)
    await update.message.reply_text(f"Stopped tracking {message_id}.")


# ── Bot builder ──────────────────────────────────────────────────────────────


async def _post_init(application: Application) -> None:
    await application.bot_data["tracker"].start()


async def _post_shutdown(application: Application) -> None:
    await application.bot_data["tracker"].stop()


def build_app(
    token: str,
    store: SnapshotStore | None = None,
    home_tz: ZoneInfo | None = None,
) -> Application:
    """Build and return a configured Telegram Application (does not start it)."""
    app = (
        Application.builder()
        .token(token)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    app.bot_data["tracker"] = HomeworkTracker(TelegramPlatform(app.bot), store, home_tz=home_tz)

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("post", cmd_post))
    app.add_handler(CommandHandler("add", cmd_add))
    app.add_handler(CommandHandler("status", cmd_status))
    app.add_handler(CommandHandler("tracked", cmd_tracked))
    app.add_handler(CommandHandler("untrack", cmd_untrack))

    return app


def run_bot(token: str, store: SnapshotStore | None = None, home_tz: ZoneInfo | None = None) -> None:
    """Build and run the bot (blocking, uses polling)."""
    application = build_app(token, store, home_tz)
    logger.info("Starting homework tracker Telegram bot...")
    application.run_polling()
