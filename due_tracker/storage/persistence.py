"""Debounced, best-effort persistence of the tracking table."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from due_tracker.core.constants import PERSIST_DEBOUNCE_SECONDS
from due_tracker.core.models import SnapshotEntry
from due_tracker.runtime.queue import Sleep
from due_tracker.storage.snapshot import SnapshotStore

logger = logging.getLogger(__name__)


class PersistenceAdapter:
    """Coalesces save requests into one write per debounce window.

    ``provider`` is called at write time, so the snapshot always reflects the
    latest state rather than the state when the request was made. Without a
    running event loop requests are only remembered; ``flush`` writes them.
    """

    def __init__(
        self,
        store: SnapshotStore | None,
        provider: Callable[[], list[SnapshotEntry]],
        debounce: float = PERSIST_DEBOUNCE_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._debounce = debounce
        self._sleep = sleep
        self._dirty = False
        # Set only while a task is still in its debounce sleep.
        self._timer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self.saves = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._store is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    def request_save(self) -> None:
        """Restart the debounce window. A write already in progress is never cancelled."""
        if self._store is None:
            return
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = task = loop.create_task(self._debounced(), name="tracker-persist")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _debounced(self) -> None:
        await self._sleep(self._debounce)
        self._timer = None
        await self.flush()

    async def flush(self) -> bool:
        """Write now if anything changed since the last write.

        Writes are serialized; a flush that arrives during a write waits for it
        and then snapshots the state as it is at that point.
        """
        async with self._write_lock:
            if self._store is None or not self._dirty:
                return False
            self._dirty = False
            entries = self._provider()
            try:
                ok = await self._store.save(entries)
            except Exception:
                logger.warning("Snapshot save raised; will retry on next change", exc_info=True)
                ok = False
            if ok:
                self.saves += 1
                logger.debug("Saved snapshot with %d record(s)", len(entries))
            else:
                self.failures += 1
            return ok

    async def wait_idle(self) -> None:
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def load(self) -> list[SnapshotEntry]:
        if self._store is None:
            return []
        try:
            return await self._store.load()
        except Exception:
            logger.warning("Snapshot load failed; starting with an empty table", exc_info=True)
            return []
