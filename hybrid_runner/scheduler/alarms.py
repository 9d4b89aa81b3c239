"""SchedulerAlarmTrigger — exact one-shot alarms on APScheduler."""

from __future__ import annotations

import contextlib
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from hybrid_runner.config import settings
from hybrid_runner.db import get_connection
from hybrid_runner.scheduler.adapters import AlarmOptions
from hybrid_runner.scheduler.errors import SchedulingError
from hybrid_runner.scheduler.models import utcnow

if TYPE_CHECKING:
    from datetime import timedelta
    from pathlib import Path

    import aiosqlite

    from hybrid_runner.scheduler.adapters import AlarmHandler

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS alarms (
    slot_id INTEGER PRIMARY KEY,
    fire_at TEXT NOT NULL,
    rearm INTEGER NOT NULL DEFAULT 1
)
"""


def _job_id(slot_id: int) -> str:
    return f"alarm:{slot_id}"


class SchedulerAlarmTrigger:
    """One APScheduler date job per slot, mirrored into an ``alarms`` table.

    The table lets a restarted process re-arm alarms that asked for
    ``rearm_on_reboot``; alarms whose time passed while the process was down
    fire as soon as the scheduler starts.

    Args:
        db_path: SQLite file for the alarms table (default from settings).
        timezone: IANA timezone for the scheduler (default from settings).
    """

    def __init__(self, db_path: Path | None = None, timezone: str | None = None) -> None:
        self._db_path = db_path
        self._timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._on_fire: AlarmHandler | None = None
        self._initialised = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            self._initialised = True
        return db

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, on_fire: AlarmHandler) -> None:
        """Wire the firing handler, re-arm persisted alarms, start the scheduler."""
        self._on_fire = on_fire
        if self._running:
            return

        db = await self._connect()
        try:
            cursor = await db.execute("SELECT slot_id, fire_at, rearm FROM alarms")
            rows = await cursor.fetchall()
            await db.execute("DELETE FROM alarms WHERE rearm = 0")
        finally:
            await db.close()

        now = utcnow()
        rearmed = 0
        for slot_id, fire_at, rearm in rows:
            if not rearm:
                logger.info("Dropping alarm %d (not re-armed after restart)", slot_id)
                continue
            run_at = max(datetime.fromisoformat(fire_at), now)
            self._add_job(slot_id, run_at)
            rearmed += 1

        self._scheduler.start()
        self._running = True
        logger.info("Alarm trigger started, %d alarm(s) re-armed (tz=%s)", rearmed, self._timezone)

    async def shutdown(self) -> None:
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Alarm trigger stopped")

    # -- Alarms ----------------------------------------------------------------

    async def schedule_one_shot(
        self,
        delay: timedelta,
        slot_id: int,
        options: AlarmOptions | None = None,
    ) -> None:
        """Fire the handler for *slot_id* once, *delay* from now."""
        options = options or AlarmOptions()
        run_at = utcnow() + delay

        # Persist before arming so a very short delay cannot fire first.
        db = await self._connect()
        try:
            await db.execute(
                "INSERT INTO alarms (slot_id, fire_at, rearm) VALUES (?, ?, ?) "
                "ON CONFLICT(slot_id) DO UPDATE SET fire_at = excluded.fire_at, "
                "rearm = excluded.rearm",
                (slot_id, run_at.isoformat(), int(options.rearm_on_reboot)),
            )
        finally:
            await db.close()

        try:
            self._add_job(slot_id, run_at, exact=options.exact)
        except Exception as exc:
            await self._forget(slot_id)
            msg = f"Could not schedule alarm {slot_id}: {exc}"
            raise SchedulingError(msg) from exc
        logger.debug("Alarm %d scheduled for %s", slot_id, run_at.isoformat())

    async def cancel(self, slot_id: int) -> None:
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(_job_id(slot_id))
        await self._forget(slot_id)
        logger.debug("Alarm %d cancelled", slot_id)

    async def is_scheduled(self, slot_id: int) -> bool:
        return self._scheduler.get_job(_job_id(slot_id)) is not None

    # -- Internal --------------------------------------------------------------

    def _add_job(self, slot_id: int, run_at: datetime, *, exact: bool = True) -> None:
        self._scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at, timezone=self._timezone),
            id=_job_id(slot_id),
            name=f"alarm {slot_id}",
            args=[slot_id],
            # Exact alarms run no matter how late the loop wakes up.
            misfire_grace_time=None if exact else 60,
            replace_existing=True,
        )

    async def _forget(self, slot_id: int) -> None:
        db = await self._connect()
        try:
            await db.execute("DELETE FROM alarms WHERE slot_id = ?", (slot_id,))
        finally:
            await db.close()

    async def _fire(self, slot_id: int) -> None:
        """Job callback. Hands the slot to the runner and returns."""
        await self._forget(slot_id)
        if self._on_fire is None:
            logger.warning("Alarm %d fired before a handler was wired", slot_id)
            return
        logger.info("Alarm %d fired", slot_id)
        try:
            await self._on_fire(slot_id)
        except Exception:
            logger.exception("Alarm handler failed for slot %d", slot_id)
