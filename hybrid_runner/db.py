"""Async SQLite connection helper shared by the runner's persistent stores.

Every store opens a short-lived connection per operation.  The connection
target is ``database_path`` from settings unless an explicit path is given
(test isolation).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite

from hybrid_runner.config import settings

if TYPE_CHECKING:
    from pathlib import Path


async def get_connection(path: Path | None = None) -> aiosqlite.Connection:
    """Return an open aiosqlite connection with WAL mode and a busy timeout.

    If *path* is given it takes priority over ``settings.database_path``.
    """
    db_path = path or settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Transactions are managed explicitly (BEGIN IMMEDIATE where needed).
    db = await aiosqlite.connect(str(db_path), isolation_level=None)
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA journal_mode=WAL")
    return db
