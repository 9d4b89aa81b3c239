"""SqliteWorkQueue — durable one-off and periodic work on APScheduler."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from hybrid_runner.config import settings
from hybrid_runner.db import get_connection
from hybrid_runner.scheduler.errors import SchedulingError
from hybrid_runner.scheduler.models import utcnow
from hybrid_runner.scheduler.policy import ConflictPolicy

if TYPE_CHECKING:
    from pathlib import Path

    import aiosqlite

    from hybrid_runner.scheduler.adapters import WorkDispatcher

logger = logging.getLogger(__name__)

_CREATE_WORK_TABLE = """
CREATE TABLE IF NOT EXISTS work (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slot_key TEXT NOT NULL,
    work_name TEXT NOT NULL,
    task_name TEXT,
    tag TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'queued',
    attempts INTEGER NOT NULL DEFAULT 0,
    enqueued_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
)
"""

_CREATE_PERIODIC_TABLE = """
CREATE TABLE IF NOT EXISTS periodic_work (
    unique_name TEXT PRIMARY KEY,
    work_name TEXT NOT NULL,
    task_name TEXT,
    tag TEXT NOT NULL,
    frequency_seconds REAL NOT NULL,
    registered_at TEXT NOT NULL
)
"""

_CREATE_INDEX = "CREATE INDEX IF NOT EXISTS idx_work_slot_state ON work(slot_key, state)"


class WorkState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkRecord:
    """One row of the work queue, as returned by ``history()``."""

    id: int
    slot_key: str
    work_name: str
    task_name: str | None
    tag: str
    state: WorkState
    attempts: int
    enqueued_at: str
    started_at: str | None
    finished_at: str | None

    @classmethod
    def from_row(cls, row: tuple) -> WorkRecord:
        return cls(
            id=row[0],
            slot_key=row[1],
            work_name=row[2],
            task_name=row[3],
            tag=row[4],
            state=WorkState(row[5]),
            attempts=row[6],
            enqueued_at=row[7],
            started_at=row[8],
            finished_at=row[9],
        )


@dataclass(frozen=True)
class PeriodicRecord:
    unique_name: str
    work_name: str
    task_name: str | None
    tag: str
    frequency: timedelta


def _work_job_id(work_id: int) -> str:
    return f"work:{work_id}"


def _periodic_job_id(unique_name: str) -> str:
    return f"periodic:{unique_name}"


class SqliteWorkQueue:
    """Durable work queue: rows in SQLite, execution through APScheduler.

    Work survives a process restart: queued rows, and rows that were running
    when the process died, are picked up again by ``start()``.  A dispatcher
    result of ``False`` (or an exception) is retried with exponential backoff
    until ``max_attempts`` runs have been made.

    Args:
        db_path: SQLite file for the queue tables (default from settings).
        timezone: IANA timezone for the scheduler (default from settings).
        periodic_floor: Shortest allowed periodic frequency.
        max_attempts: Total runs allowed per unit of work.
        backoff: Delay before the first retry; doubles on each further retry.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        timezone: str | None = None,
        periodic_floor: timedelta | None = None,
        max_attempts: int | None = None,
        backoff: timedelta | None = None,
    ) -> None:
        self._db_path = db_path
        self._timezone = timezone or settings.scheduler_timezone
        self._periodic_floor = periodic_floor or settings.periodic_floor
        self._max_attempts = max_attempts or settings.work_max_attempts
        self._backoff = backoff or settings.work_backoff
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._dispatcher: WorkDispatcher | None = None
        self._initialised = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def periodic_floor(self) -> timedelta:
        return self._periodic_floor

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_WORK_TABLE)
            await db.execute(_CREATE_PERIODIC_TABLE)
            await db.execute(_CREATE_INDEX)
            self._initialised = True
        return db

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, dispatcher: WorkDispatcher) -> None:
        """Wire the dispatcher, recover outstanding work, start the scheduler."""
        self._dispatcher = dispatcher
        if self._running:
            return

        db = await self._connect()
        try:
            cursor = await db.execute(
                "UPDATE work SET state = ? WHERE state = ?",
                (WorkState.QUEUED.value, WorkState.RUNNING.value),
            )
            interrupted = cursor.rowcount
            cursor = await db.execute(
                "SELECT id FROM work WHERE state = ? ORDER BY id", (WorkState.QUEUED.value,)
            )
            queued = [row[0] for row in await cursor.fetchall()]
        finally:
            await db.close()

        for work_id in queued:
            self._add_work_job(work_id, utcnow())
        periodic = await self.list_periodic()
        for record in periodic:
            self._add_periodic_job(record.unique_name, record.frequency)

        self._scheduler.start()
        self._running = True
        logger.info(
            "Work queue started: %d queued (%d interrupted), %d periodic",
            len(queued),
            interrupted,
            len(periodic),
        )

    async def shutdown(self) -> None:
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Work queue stopped")

    # -- One-off work ----------------------------------------------------------

    async def enqueue_one_off(
        self,
        slot_key: str,
        on_conflict: ConflictPolicy,
        *,
        work_name: str,
        tag: str,
        task_name: str | None = None,
    ) -> bool:
        """Queue one run under *slot_key*.

        KEEP drops the new work if the key already has queued or running work.
        REPLACE cancels queued work under the key; work that is already
        running is left to finish.
        """
        now = utcnow()
        cancelled: list[int] = []
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT id, state FROM work WHERE slot_key = ? AND state IN (?, ?)",
                    (slot_key, WorkState.QUEUED.value, WorkState.RUNNING.value),
                )
                outstanding = await cursor.fetchall()
                if outstanding and on_conflict is ConflictPolicy.KEEP:
                    await db.execute("COMMIT")
                    logger.info("Work %s already outstanding; keeping it", slot_key)
                    return False

                cancelled = [row[0] for row in outstanding if row[1] == WorkState.QUEUED.value]
                for work_id in cancelled:
                    await db.execute(
                        "UPDATE work SET state = ?, finished_at = ? WHERE id = ?",
                        (WorkState.CANCELLED.value, now.isoformat(), work_id),
                    )
                cursor = await db.execute(
                    """
                    INSERT INTO work (slot_key, work_name, task_name, tag, state, enqueued_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (slot_key, work_name, task_name, tag, WorkState.QUEUED.value, now.isoformat()),
                )
                new_id = cursor.lastrowid
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        finally:
            await db.close()

        for work_id in cancelled:
            self._remove_job(_work_job_id(work_id))
        if cancelled:
            logger.info("Replaced %d queued run(s) of %s", len(cancelled), slot_key)

        try:
            self._add_work_job(new_id, now)
        except Exception as exc:
            msg = f"Could not enqueue work {slot_key}: {exc}"
            raise SchedulingError(msg) from exc
        logger.info("Enqueued work %s (id=%d, task=%s)", slot_key, new_id, task_name)
        return True

    # -- Periodic work ---------------------------------------------------------

    async def register_periodic(
        self,
        unique_name: str,
        *,
        work_name: str,
        tag: str,
        frequency: timedelta,
        task_name: str | None = None,
    ) -> timedelta:
        """Register a recurring run, keeping an existing registration if present.

        The frequency is clamped up to the periodic floor.
        """
        effective = max(frequency, self._periodic_floor)
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT frequency_seconds FROM periodic_work WHERE unique_name = ?",
                (unique_name,),
            )
            row = await cursor.fetchone()
            if row is not None:
                effective = timedelta(seconds=row[0])
            else:
                await db.execute(
                    """
                    INSERT INTO periodic_work
                        (unique_name, work_name, task_name, tag, frequency_seconds, registered_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        unique_name,
                        work_name,
                        task_name,
                        tag,
                        effective.total_seconds(),
                        utcnow().isoformat(),
                    ),
                )
        finally:
            await db.close()

        if self._scheduler.get_job(_periodic_job_id(unique_name)) is None:
            try:
                self._add_periodic_job(unique_name, effective)
            except Exception as exc:
                msg = f"Could not register periodic work {unique_name}: {exc}"
                raise SchedulingError(msg) from exc
        logger.info("Periodic work %s registered every %s", unique_name, effective)
        return effective

    async def list_periodic(self, tag: str | None = None) -> list[PeriodicRecord]:
        db = await self._connect()
        try:
            if tag is None:
                cursor = await db.execute(
                    "SELECT unique_name, work_name, task_name, tag, frequency_seconds "
                    "FROM periodic_work ORDER BY registered_at"
                )
            else:
                cursor = await db.execute(
                    "SELECT unique_name, work_name, task_name, tag, frequency_seconds "
                    "FROM periodic_work WHERE tag = ? ORDER BY registered_at",
                    (tag,),
                )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [
            PeriodicRecord(
                unique_name=row[0],
                work_name=row[1],
                task_name=row[2],
                tag=row[3],
                frequency=timedelta(seconds=row[4]),
            )
            for row in rows
        ]

    # -- Cancellation ----------------------------------------------------------

    async def cancel_by_tag(self, tag: str) -> None:
        """Cancel queued work and periodic registrations carrying *tag*."""
        now = utcnow().isoformat()
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id FROM work WHERE tag = ? AND state = ?",
                (tag, WorkState.QUEUED.value),
            )
            queued = [row[0] for row in await cursor.fetchall()]
            await db.execute(
                "UPDATE work SET state = ?, finished_at = ? WHERE tag = ? AND state = ?",
                (WorkState.CANCELLED.value, now, tag, WorkState.QUEUED.value),
            )
            cursor = await db.execute(
                "SELECT unique_name FROM periodic_work WHERE tag = ?", (tag,)
            )
            periodic = [row[0] for row in await cursor.fetchall()]
            await db.execute("DELETE FROM periodic_work WHERE tag = ?", (tag,))
        finally:
            await db.close()

        for work_id in queued:
            self._remove_job(_work_job_id(work_id))
        for unique_name in periodic:
            self._remove_job(_periodic_job_id(unique_name))
        if queued or periodic:
            logger.info(
                "Cancelled work tagged %s: %d queued, %d periodic", tag, len(queued), len(periodic)
            )

    # -- History ---------------------------------------------------------------

    async def history(self, limit: int = 50) -> list[WorkRecord]:
        """Return the most recent work rows, newest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                SELECT id, slot_key, work_name, task_name, tag, state, attempts,
                       enqueued_at, started_at, finished_at
                FROM work ORDER BY id DESC LIMIT ?
                """,
                (int(limit),),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [WorkRecord.from_row(row) for row in rows]

    # -- Internal --------------------------------------------------------------

    def _add_work_job(self, work_id: int, run_at: datetime) -> None:
        self._scheduler.add_job(
            self._run_work,
            trigger=DateTrigger(run_date=run_at, timezone=self._timezone),
            id=_work_job_id(work_id),
            args=[work_id],
            misfire_grace_time=None,
            replace_existing=True,
        )

    def _add_periodic_job(self, unique_name: str, frequency: timedelta) -> None:
        self._scheduler.add_job(
            self._run_periodic,
            trigger=IntervalTrigger(seconds=frequency.total_seconds(), timezone=self._timezone),
            id=_periodic_job_id(unique_name),
            args=[unique_name],
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
            replace_existing=True,
        )

    def _remove_job(self, job_id: str) -> None:
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(job_id)

    async def _invoke(self, work_name: str, task_name: str | None) -> bool:
        if self._dispatcher is None:
            logger.warning("Work %s ran before a dispatcher was wired", work_name)
            return False
        try:
            return bool(await self._dispatcher(work_name, task_name))
        except Exception:
            logger.exception("Dispatcher raised for work %s (task=%s)", work_name, task_name)
            return False

    async def _run_work(self, work_id: int) -> None:
        """Job callback for one unit of queued work."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "UPDATE work SET state = ?, attempts = attempts + 1, started_at = ? "
                "WHERE id = ? AND state = ?",
                (WorkState.RUNNING.value, utcnow().isoformat(), work_id, WorkState.QUEUED.value),
            )
            if cursor.rowcount != 1:
                logger.debug("Work %d is no longer queued; skipping", work_id)
                return
            cursor = await db.execute(
                "SELECT work_name, task_name, attempts FROM work WHERE id = ?", (work_id,)
            )
            work_name, task_name, attempts = await cursor.fetchone()
        finally:
            await db.close()

        success = await self._invoke(work_name, task_name)

        retry_at: datetime | None = None
        if success:
            state = WorkState.SUCCEEDED
        elif attempts < self._max_attempts:
            state = WorkState.QUEUED
            retry_at = utcnow() + self._backoff * (2 ** (attempts - 1))
        else:
            state = WorkState.FAILED

        db = await self._connect()
        try:
            await db.execute(
                "UPDATE work SET state = ?, finished_at = ? WHERE id = ?",
                (state.value, None if retry_at else utcnow().isoformat(), work_id),
            )
        finally:
            await db.close()

        if retry_at is not None:
            self._add_work_job(work_id, retry_at)
            logger.warning(
                "Work %d failed (attempt %d/%d); retrying at %s",
                work_id,
                attempts,
                self._max_attempts,
                retry_at.isoformat(),
            )
        else:
            logger.info("Work %d finished: %s", work_id, state.value)

    async def _run_periodic(self, unique_name: str) -> None:
        """Job callback for a periodic registration."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT work_name, task_name FROM periodic_work WHERE unique_name = ?",
                (unique_name,),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            self._remove_job(_periodic_job_id(unique_name))
            return
        work_name, task_name = row
        success = await self._invoke(work_name, task_name)
        logger.info("Periodic work %s finished: success=%s", unique_name, success)
