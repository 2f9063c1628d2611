"""
Finished Trip Store
===================

Append/read persistence for finished trip records.

All records live in one ordered JSON collection under a fixed storage key,
so the store behaves like a small key-value slot rather than a table of
trips.

Usage:
    store = SqliteSessionStore("data/fieldtrip.db")
    await store.init_schema()

    saved = await store.append(record)
    records = await store.list_all()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

import aiosqlite
from pydantic import TypeAdapter, ValidationError

from ...domain.errors import PersistenceError
from ...domain.models import FinishedSessionRecord

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "fieldtrip:sessions"

KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

_records_adapter = TypeAdapter(list[FinishedSessionRecord])


def dump_records(records: list[FinishedSessionRecord]) -> str:
    """Serialize records field-for-field as JSON text."""
    return _records_adapter.dump_json(records).decode("utf-8")


def load_records(payload: str | bytes | None) -> list[FinishedSessionRecord]:
    """Parse JSON text produced by ``dump_records``."""
    if not payload:
        return []
    try:
        return _records_adapter.validate_json(payload)
    except ValidationError as e:
        raise PersistenceError(f"stored trips are unreadable: {e}") from e


class SessionStore(Protocol):
    """Persistence collaborator for finished trips."""

    async def append(self, record: FinishedSessionRecord) -> bool: ...

    async def list_all(self) -> list[FinishedSessionRecord]: ...

    async def get_by_id(self, record_id: str) -> FinishedSessionRecord | None: ...

    async def remove_by_id(self, record_id: str) -> bool: ...

    async def clear_all(self) -> None: ...


class MemorySessionStore:
    """In-process store; keeps the serialized form to mirror real storage."""

    def __init__(self) -> None:
        self._payload: str | None = None

    async def append(self, record: FinishedSessionRecord) -> bool:
        records = load_records(self._payload)
        records.append(record)
        self._payload = dump_records(records)
        return True

    async def list_all(self) -> list[FinishedSessionRecord]:
        return load_records(self._payload)

    async def get_by_id(self, record_id: str) -> FinishedSessionRecord | None:
        return next((r for r in await self.list_all() if r.id == record_id), None)

    async def remove_by_id(self, record_id: str) -> bool:
        records = load_records(self._payload)
        kept = [r for r in records if r.id != record_id]
        self._payload = dump_records(kept)
        return len(kept) != len(records)

    async def clear_all(self) -> None:
        self._payload = None


class SqliteSessionStore:
    """
    aiosqlite-backed store.

    Writes are read-modify-write on the single storage key, serialized by
    an asyncio lock.
    """

    def __init__(
        self,
        db_path: str | Path,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.storage_key = storage_key
        self._lock = asyncio.Lock()
        self._initialized = False

    async def init_schema(self) -> None:
        """Create the key/value table. Safe to call repeatedly."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._get_connection() as conn:
            await conn.executescript(KV_SCHEMA)
            await conn.commit()
        self._initialized = True
        logger.debug("Trip store initialized: %s", self.db_path)

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(str(self.db_path), timeout=30.0)
        try:
            yield conn
        finally:
            await conn.close()

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await self.init_schema()

    async def _read(self, conn: aiosqlite.Connection) -> list[FinishedSessionRecord]:
        async with conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (self.storage_key,)
        ) as cursor:
            row = await cursor.fetchone()
        return load_records(row[0] if row else None)

    async def _write(
        self, conn: aiosqlite.Connection, records: list[FinishedSessionRecord]
    ) -> None:
        await conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (self.storage_key, dump_records(records)),
        )
        await conn.commit()

    async def append(self, record: FinishedSessionRecord) -> bool:
        """
        Append a finished record.

        Returns:
            True if saved, False if the store could not be written
        """
        async with self._lock:
            try:
                await self._ensure_schema()
                async with self._get_connection() as conn:
                    records = await self._read(conn)
                    records.append(record)
                    await self._write(conn, records)
            except (aiosqlite.Error, OSError, PersistenceError) as e:
                logger.error("Error saving trip %s: %s", record.id, e)
                return False

        logger.info("Saved trip %s (%d stored)", record.id, len(records))
        return True

    async def list_all(self) -> list[FinishedSessionRecord]:
        """All stored records in insertion order."""
        async with self._lock:
            await self._ensure_schema()
            async with self._get_connection() as conn:
                return await self._read(conn)

    async def get_by_id(self, record_id: str) -> FinishedSessionRecord | None:
        return next((r for r in await self.list_all() if r.id == record_id), None)

    async def remove_by_id(self, record_id: str) -> bool:
        """Delete one record. Returns True if it existed."""
        async with self._lock:
            await self._ensure_schema()
            async with self._get_connection() as conn:
                records = await self._read(conn)
                kept = [r for r in records if r.id != record_id]
                if len(kept) == len(records):
                    return False
                await self._write(conn, kept)

        logger.info("Deleted trip %s", record_id)
        return True

    async def clear_all(self) -> None:
        """Remove every stored record."""
        async with self._lock:
            await self._ensure_schema()
            async with self._get_connection() as conn:
                await conn.execute("DELETE FROM kv_store WHERE key = ?", (self.storage_key,))
                await conn.commit()

        logger.info("Cleared all trips from %s", self.db_path)
