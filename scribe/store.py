"""Key-value persistence for the offline queue.

SQLiteKeyValueStore keeps a single `kv` table in WAL mode behind an
asyncio.Lock. MemoryKeyValueStore is the in-process variant used by tests
and short-lived CLI runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import time
from typing import Protocol

import aiosqlite

from scribe.config import QUEUE_DB_PATH

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


def _remove_db_files(db_path: str) -> None:
    """Remove database file and WAL/SHM sidecars so a clean DB can be created."""
    for path in (db_path, db_path + "-wal", db_path + "-shm", db_path + "-journal"):
        try:
            if os.path.exists(path):
                os.unlink(path)
                logger.info("Removed %s", path)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)


class SQLiteKeyValueStore:
    """SQLite-backed string store.

    Usage:
        store = SQLiteKeyValueStore("data/offline_queue.db")
        await store.init()
        await store.set("offline-queue", "[]")
        raw = await store.get("offline-queue")
        await store.close()

    """

    def __init__(self, db_path: str = QUEUE_DB_PATH):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        """Open the database and create the kv table.

        A corrupted file is removed and recreated once; a second failure
        propagates.
        """
        if self._initialized:
            return

        dir_path = os.path.dirname(self.db_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)

        for attempt in range(2):
            try:
                self._db = await aiosqlite.connect(self.db_path)
                await self._db.execute("PRAGMA journal_mode=WAL")
                await self._db.execute("PRAGMA busy_timeout=5000")
                await self._db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                    """
                )
                await self._db.commit()
                self._initialized = True
                logger.info("Key-value store initialized at %s", self.db_path)
                return
            except (sqlite3.Error, OSError) as e:
                if self._db:
                    await self._db.close()
                    self._db = None
                if attempt == 0:
                    logger.warning(
                        "Store missing or corrupted (%s), creating new one: %s", type(e).__name__, e
                    )
                    _remove_db_files(self.db_path)
                else:
                    raise

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    async def get(self, key: str) -> str | None:
        await self.init()
        async with self._lock:
            async with self._db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        await self.init()
        async with self._lock:
            await self._db.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, time.time()),
            )
            await self._db.commit()

    async def delete(self, key: str) -> None:
        await self.init()
        async with self._lock:
            await self._db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await self._db.commit()


class MemoryKeyValueStore:
    """Dict-backed store; contents live as long as the instance."""

    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
