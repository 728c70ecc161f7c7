"""Tests for the SQLite layer, migrations and snapshot stores."""

import json
import shutil
import sqlite3
import threading
from datetime import UTC, datetime

import httpx
import pytest

from due_tracker.core.models import DueItem, SnapshotEntry
from due_tracker.storage import sqlite as sqlite_module
from due_tracker.storage.snapshot import (
    EdgeConfigSnapshotStore,
    SqliteSnapshotStore,
    build_document,
    open_store,
    parse_entries,
)
from due_tracker.storage.sqlite import Database

DUE = datetime(2026, 10, 20, 18, 30, tzinfo=UTC)


def _entry(message_id: str = "42", channel_id: str = "-100123") -> SnapshotEntry:
    return SnapshotEntry(
        channel_id=channel_id,
        message_id=message_id,
        items=[DueItem(title="Essay", due_at=DUE, group_key="English")],
        label="English",
    )


class TestDatabase:
    def test_creates_file_and_parents(self, tmp_path):
        db_path = tmp_path / "sub" / "dir" / "tracker.db"
        db = Database(db_path)
        assert db_path.exists()
        db.close()

    def test_wal_mode(self, db):
        row = db.fetchone("PRAGMA journal_mode")
        assert row[0] == "wal"

    def test_tables_exist(self, db):
        rows = db.fetchall(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        )
        assert {"snapshots", "_migrations"} <= {row["name"] for row in rows}

    def test_migrations_recorded_once(self, db):
        rows = db.fetchall("SELECT filename FROM _migrations ORDER BY filename")
        assert [row["filename"] for row in rows] == ["001_snapshots.sql"]
        assert db.run_migrations() == []

    def test_transaction_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError), db.transaction() as cursor:
            cursor.execute(
                "INSERT INTO snapshots (key, version, updated_at, payload) VALUES ('k', 1, 'now', '{}')"
            )
            raise RuntimeError("abort")
        assert db.fetchone("SELECT * FROM snapshots WHERE key = 'k'") is None

    def test_rejects_cross_thread_access(self, tmp_path):
        db = Database(tmp_path / "thread_test.db")
        error = None

        def bg():
            nonlocal error
            try:
                db.execute("SELECT 1")
            except RuntimeError as exc:
                error = exc

        t = threading.Thread(target=bg)
        t.start()
        t.join()
        db.close()
        assert error is not None
        assert "different thread" in str(error)

    def test_migration_failure_is_surfaced(self, tmp_path, monkeypatch):
        custom = tmp_path / "migrations"
        shutil.copytree(sqlite_module.MIGRATIONS_DIR, custom)
        (custom / "999_broken.sql").write_text("THIS IS NOT VALID SQL;\n", encoding="utf-8")
        monkeypatch.setattr(sqlite_module, "MIGRATIONS_DIR", custom)

        with pytest.raises(RuntimeError, match="999_broken.sql"):
            Database(tmp_path / "broken.db")


class TestSqliteSnapshotStore:
    def test_empty_load(self, store):
        assert store.load_sync() == []

    def test_save_and_load(self, store):
        assert store.save_sync([_entry("1"), _entry("2")])
        loaded = store.load_sync()
        assert [e.message_id for e in loaded] == ["1", "2"]
        assert loaded[0] == _entry("1")

    def test_save_overwrites(self, store):
        store.save_sync([_entry("1"), _entry("2")])
        store.save_sync([_entry("3")])
        assert [e.message_id for e in store.load_sync()] == ["3"]

    def test_single_document_row(self, db, store):
        store.save_sync([_entry("1")])
        row = db.fetchone("SELECT version, payload FROM snapshots WHERE key = 'homeworkTracker'")
        assert row["version"] == 1
        assert json.loads(row["payload"])["records"][0]["message_id"] == "1"

    def test_corrupt_payload_yields_empty(self, db, store):
        db.execute(
            "INSERT INTO snapshots (key, version, updated_at, payload) VALUES (?, 1, 'now', ?)",
            ("homeworkTracker", "{not json"),
        )
        assert store.load_sync() == []

    @pytest.mark.asyncio
    async def test_aclose_closes_database(self, tmp_path):
        db = Database(tmp_path / "closing.db")
        store = SqliteSnapshotStore(db)
        await store.aclose()
        with pytest.raises(sqlite3.ProgrammingError):
            db.fetchone("SELECT 1")

    @pytest.mark.asyncio
    async def test_async_interface(self, store):
        assert await store.save([_entry("1")])
        assert [e.message_id for e in await store.load()] == ["1"]


class TestParseEntries:
    def test_document(self):
        doc = build_document([_entry("1")])
        assert doc["version"] == 1
        assert [e.message_id for e in parse_entries(doc)] == ["1"]

    def test_bare_list(self):
        raw = [_entry("1").model_dump(mode="json")]
        assert [e.message_id for e in parse_entries(raw)] == ["1"]

    def test_malformed_entries_are_skipped(self):
        raw = [
            {"channel_id": "c", "message_id": "m"},
            {"channel_id": "c", "message_id": "m2", "items": [{"title": "", "due_at": DUE.isoformat()}]},
            _entry("ok").model_dump(mode="json"),
        ]
        assert [e.message_id for e in parse_entries(raw)] == ["ok"]

    def test_unexpected_shape(self):
        assert parse_entries("nope") == []
        assert parse_entries({"records": None}) == []


class TestEdgeConfigSnapshotStore:
    @pytest.mark.asyncio
    async def test_load(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/ecfg_1/item/homeworkTracker"
            assert request.url.params["token"] == "read-token"
            return httpx.Response(200, json=build_document([_entry("1")]))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = EdgeConfigSnapshotStore("ecfg_1", "read-token", client=client)
        assert [e.message_id for e in await store.load()] == ["1"]
        await store.aclose()

    @pytest.mark.asyncio
    async def test_load_http_error_yields_empty(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        store = EdgeConfigSnapshotStore("ecfg_1", "read-token", client=client)
        assert await store.load() == []
        await store.aclose()

    @pytest.mark.asyncio
    async def test_save(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "ok"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = EdgeConfigSnapshotStore("ecfg_1", "read-token", "write-token", client=client)
        assert await store.save([_entry("1")])

        assert seen["method"] == "PATCH"
        assert seen["url"] == "https://api.vercel.com/v1/edge-config/ecfg_1/items"
        assert seen["auth"] == "Bearer write-token"
        item = seen["body"]["items"][0]
        assert item["operation"] == "upsert"
        assert item["key"] == "homeworkTracker"
        assert item["value"]["records"][0]["message_id"] == "1"
        await store.aclose()

    @pytest.mark.asyncio
    async def test_save_without_write_token(self):
        def handler(request):
            raise AssertionError("no request expected")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = EdgeConfigSnapshotStore("ecfg_1", "read-token", client=client)
        assert await store.save([_entry("1")]) is False
        await store.aclose()

    @pytest.mark.asyncio
    async def test_save_http_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(403)))
        store = EdgeConfigSnapshotStore("ecfg_1", "read-token", "write-token", client=client)
        assert await store.save([_entry("1")]) is False
        await store.aclose()


class TestOpenStore:
    def test_sqlite_by_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("EDGE_CONFIG_ID", raising=False)
        monkeypatch.delenv("EDGE_CONFIG_TOKEN", raising=False)
        store = open_store(str(tmp_path / "tracker.db"))
        assert isinstance(store, SqliteSnapshotStore)
        assert (tmp_path / "tracker.db").exists()

    def test_edge_config_when_configured(self, monkeypatch):
        monkeypatch.setenv("EDGE_CONFIG_ID", "ecfg_1")
        monkeypatch.setenv("EDGE_CONFIG_TOKEN", "read-token")
        monkeypatch.setenv("VERCEL_API_TOKEN", "write-token")
        assert isinstance(open_store(), EdgeConfigSnapshotStore)
