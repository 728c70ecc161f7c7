"""SQLite storage layer -- connection management and migration runner."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".due_tracker" / "tracker.db"
MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class Database:
    """Single-owner SQLite connection in WAL mode.

    The tracker runs on one event loop thread, so the connection is pinned to
    the thread that opened it.
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self.path = Path(db_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._owner_thread = threading.get_ident()
        self.run_migrations()

    def _check_thread(self) -> None:
        """Raise RuntimeError if called from a thread other than the owner."""
        if threading.get_ident() != self._owner_thread:
            raise RuntimeError(
                "Database accessed from a different thread than the one that created it"
            )

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Yield a cursor inside an explicit transaction."""
        self._check_thread()
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield cursor
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            cursor.close()

    def execute(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Cursor:
        """Execute a single SQL statement and commit."""
        self._check_thread()
        cursor = self._conn.execute(sql, params)
        self._conn.commit()
        return cursor

    def fetchone(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Row | None:
        self._check_thread()
        return self._conn.execute(sql, params).fetchone()

    def fetchall(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> list[sqlite3.Row]:
        self._check_thread()
        return self._conn.execute(sql, params).fetchall()

    def run_migrations(self) -> list[str]:
        """Apply unapplied migrations in order; returns the names applied."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS _migrations (
                filename   TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

        applied = {
            row[0] for row in self._conn.execute("SELECT filename FROM _migrations").fetchall()
        }

        newly_applied: list[str] = []
        for mf in sorted(MIGRATIONS_DIR.glob("*.sql")):
            if mf.name in applied:
                continue
            try:
                # executescript() commits per statement; migrations use IF NOT EXISTS guards.
                self._conn.executescript(mf.read_text(encoding="utf-8"))
            except sqlite3.Error:
                logger.exception("Migration %s failed", mf.name)
                raise RuntimeError(f"Migration {mf.name} failed") from None
            self._conn.execute(
                "INSERT INTO _migrations (filename, applied_at) VALUES (?, ?)",
                (mf.name, datetime.now(UTC).isoformat()),
            )
            self._conn.commit()
            newly_applied.append(mf.name)
        return newly_applied

    def close(self) -> None:
        self._conn.close()
