"""Snapshot stores — where the tracking table is persisted between runs.

Both stores keep a single JSON document under one key:

    {"version": 1, "updated_at": "...", "records": [SnapshotEntry, ...]}

Loading never raises: unreadable documents yield an empty list and
malformed entries are skipped. Saving reports success as a bool.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from due_tracker.core.constants import SNAPSHOT_KEY, SNAPSHOT_VERSION
from due_tracker.core.models import SnapshotEntry
from due_tracker.core.utils import safe_json_loads
from due_tracker.storage.sqlite import Database

logger = logging.getLogger(__name__)

EDGE_CONFIG_READ_URL = "https://edge-config.vercel.com/{config_id}/item/{key}"
EDGE_CONFIG_WRITE_URL = "https://api.vercel.com/v1/edge-config/{config_id}/items"


class SnapshotStore(Protocol):
    async def load(self) -> list[SnapshotEntry]: ...

    async def save(self, entries: list[SnapshotEntry]) -> bool: ...

    async def aclose(self) -> None: ...


def build_document(entries: list[SnapshotEntry]) -> dict[str, Any]:
    return {
        "version": SNAPSHOT_VERSION,
        "updated_at": datetime.now(UTC).isoformat(),
        "records": [entry.model_dump(mode="json") for entry in entries],
    }


def parse_entries(value: Any) -> list[SnapshotEntry]:
    """Accept ``{"records": [...]}`` or a bare list; skip entries that fail validation."""
    if isinstance(value, dict):
        value = value.get("records")
    if not isinstance(value, list):
        return []

    entries: list[SnapshotEntry] = []
    for raw in value:
        try:
            entries.append(SnapshotEntry.model_validate(raw))
        except ValidationError as exc:
            logger.warning("Skipping malformed snapshot entry: %s", exc.errors()[:1])
    return entries


class SqliteSnapshotStore:
    def __init__(self, db: Database, key: str = SNAPSHOT_KEY) -> None:
        self._db = db
        self._key = key

    async def load(self) -> list[SnapshotEntry]:
        return self.load_sync()

    async def save(self, entries: list[SnapshotEntry]) -> bool:
        return self.save_sync(entries)

    def load_sync(self) -> list[SnapshotEntry]:
        try:
            row = self._db.fetchone("SELECT payload FROM snapshots WHERE key = ?", (self._key,))
        except Exception:
            logger.warning("Could not read snapshot %r", self._key, exc_info=True)
            return []
        if row is None:
            return []
        return parse_entries(safe_json_loads(row["payload"], default=None, context="snapshot"))

    def save_sync(self, entries: list[SnapshotEntry]) -> bool:
        document = build_document(entries)
        try:
            with self._db.transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO snapshots (key, version, updated_at, payload)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        version = excluded.version,
                        updated_at = excluded.updated_at,
                        payload = excluded.payload
                    """,
                    (self._key, document["version"], document["updated_at"], json.dumps(document)),
                )
        except Exception:
            logger.warning("Could not write snapshot %r", self._key, exc_info=True)
            return False
        return True

    async def aclose(self) -> None:
        self._db.close()


class EdgeConfigSnapshotStore:
    """Vercel Edge Config: reads through the edge endpoint, writes through the REST API."""

    def __init__(
        self,
        config_id: str,
        read_token: str,
        write_token: str | None = None,
        key: str = SNAPSHOT_KEY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config_id = config_id
        self._read_token = read_token
        self._write_token = write_token
        self._key = key
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def load(self) -> list[SnapshotEntry]:
        url = EDGE_CONFIG_READ_URL.format(config_id=self._config_id, key=self._key)
        try:
            response = await self._client.get(url, params={"token": self._read_token})
            response.raise_for_status()
            value = response.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Could not load snapshot from Edge Config", exc_info=True)
            return []
        return parse_entries(value)

    async def save(self, entries: list[SnapshotEntry]) -> bool:
        if not self._write_token:
            logger.debug("No Edge Config write token; snapshot not saved")
            return False
        url = EDGE_CONFIG_WRITE_URL.format(config_id=self._config_id)
        body = {
            "items": [
                {"operation": "upsert", "key": self._key, "value": build_document(entries)},
            ]
        }
        try:
            response = await self._client.patch(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self._write_token}"},
            )
            response.raise_for_status()
        except httpx.HTTPError:
            logger.warning("Could not save snapshot to Edge Config", exc_info=True)
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


def open_store(db_path: str | None = None, client: httpx.AsyncClient | None = None) -> SnapshotStore:
    """Edge Config when EDGE_CONFIG_ID/EDGE_CONFIG_TOKEN are set, local SQLite otherwise."""
    config_id = os.environ.get("EDGE_CONFIG_ID")
    read_token = os.environ.get("EDGE_CONFIG_TOKEN")
    if config_id and read_token:
        logger.info("Persisting tracker state to Edge Config %s", config_id)
        return EdgeConfigSnapshotStore(
            config_id, read_token, os.environ.get("VERCEL_API_TOKEN"), client=client
        )
    db = Database(db_path) if db_path else Database()
    logger.info("Persisting tracker state to %s", db.path)
    return SqliteSnapshotStore(db)
