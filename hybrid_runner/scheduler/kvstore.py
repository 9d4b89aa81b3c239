"""KeyValueStore — durable string key/value table on aiosqlite."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, TypeVar

from hybrid_runner.db import get_connection

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    import aiosqlite

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


class KeyValueStore:
    """Persists small values under string keys.

    Values are stored as text; typed helpers convert on the way in and out.
    Each call opens its own connection, so instances are cheap and safe to
    share between the alarm and the work-queue contexts.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            self._initialised = True
        return db

    # -- Raw access ------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row[0] if row else None
        finally:
            await db.close()

    async def set(self, key: str, value: str) -> None:
        db = await self._connect()
        try:
            await db.execute(
                "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
        finally:
            await db.close()

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        db = await self._connect()
        try:
            placeholders = ",".join("?" for _ in keys)
            await db.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)
        finally:
            await db.close()

    # -- Typed helpers ---------------------------------------------------------

    async def get_int(self, key: str) -> int | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer value under %s: %r", key, raw)
            return None

    async def set_int(self, key: str, value: int) -> None:
        await self.set(key, str(int(value)))

    async def get_bool(self, key: str, default: bool = False) -> bool:
        value = await self.get_int(key)
        return default if value is None else bool(value)

    async def set_bool(self, key: str, value: bool) -> None:
        await self.set_int(key, int(value))

    # -- Atomic read-modify-write ---------------------------------------------

    async def update(self, key: str, mutate: Callable[[str | None], tuple[str | None, T]]) -> T:
        """Read, transform and write the value under *key* in one transaction.

        *mutate* receives the current value (``None`` if unset) and returns
        ``(new_value, result)``.  A ``new_value`` of ``None`` leaves the row
        untouched.  The read and the write happen inside one
        ``BEGIN IMMEDIATE`` transaction, so concurrent callers sharing the
        database file are serialized.  Returns *result*.
        """
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
                row = await cursor.fetchone()
                new_value, result = mutate(row[0] if row else None)
                if new_value is not None:
                    await db.execute(
                        "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (key, new_value),
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            return result
        finally:
            await db.close()

    async def increment(self, key: str, default: int) -> int:
        """Atomically return the current integer under *key* and store it + 1.

        A missing or unreadable value counts as *default*, so concurrent
        callers never receive the same value.
        """

        def bump(raw: str | None) -> tuple[str, int]:
            try:
                current = int(raw) if raw is not None else default
            except ValueError:
                current = default
            return str(current + 1), current

        return await self.update(key, bump)
