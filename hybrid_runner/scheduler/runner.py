"""HybridRunner — precise alarms feeding a durable work queue.

An alarm fires at the exact time but only enqueues work; the durable queue
then runs the task callbacks and the runner arms the next alarm.  A coarse
periodic backup job per recurring task re-establishes the chain if the
alarms are lost.

Lifecycle per task::

    registered (active) -> firing -> executing -> rescheduled | removed
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from hybrid_runner.config import settings
from hybrid_runner.scheduler.adapters import AlarmOptions
from hybrid_runner.scheduler.alarms import SchedulerAlarmTrigger
from hybrid_runner.scheduler.callbacks import CallbackRegistry
from hybrid_runner.scheduler.constants import WORK_NAME, WORK_TAG
from hybrid_runner.scheduler.errors import (
    CallbackUnresolvableError,
    NotInitializedError,
    SchedulingError,
)
from hybrid_runner.scheduler.executor import SqliteWorkQueue
from hybrid_runner.scheduler.kvstore import KeyValueStore
from hybrid_runner.scheduler.models import LegacySlot, OverlapPolicy, RegisteredTask, utcnow
from hybrid_runner.scheduler.policy import resolve_overlap_policy
from hybrid_runner.scheduler.store import TaskStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from hybrid_runner.scheduler.adapters import AlarmTrigger, DurableExecutor

logger = logging.getLogger(__name__)


class HybridRunner:
    """Registers named tasks and drives them through alarms and durable work.

    Args:
        store: Registry of task records.
        callbacks: Resolves callbacks to handles and back.
        alarms: Precise one-shot alarm primitive.
        executor: Durable work queue primitive.
        legacy: Reserved identity for the single-task ``start``/``stop`` API.
        immediate_delay: First-alarm delay when ``run_immediately`` is set.
    """

    def __init__(
        self,
        store: TaskStore,
        callbacks: CallbackRegistry,
        alarms: AlarmTrigger,
        executor: DurableExecutor,
        legacy: LegacySlot | None = None,
        immediate_delay: timedelta | None = None,
    ) -> None:
        self._store = store
        self._callbacks = callbacks
        self._alarms = alarms
        self._executor = executor
        self._legacy = legacy or LegacySlot()
        self._immediate_delay = immediate_delay or settings.immediate_delay
        self._initialized = False

    @classmethod
    def create(cls, db_path: Path | None = None) -> HybridRunner:
        """Build a runner with the SQLite/APScheduler adapters on one database."""
        kv = KeyValueStore(db_path)
        return cls(
            store=TaskStore(kv),
            callbacks=CallbackRegistry(kv),
            alarms=SchedulerAlarmTrigger(db_path),
            executor=SqliteWorkQueue(db_path),
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def legacy(self) -> LegacySlot:
        return self._legacy

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError

    # -- Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Wire the adapters to this runner and repair the schedule. Idempotent."""
        if self._initialized:
            logger.info("Already initialized")
            return

        logger.info("Initializing HybridRunner...")
        await self._alarms.start(self.handle_alarm)
        await self._executor.start(self.execute_work)
        self._initialized = True

        await self._migrate_legacy()
        await self.reconcile()
        logger.info("HybridRunner initialization complete")

    async def shutdown(self) -> None:
        """Stop both adapters. Registered tasks stay persisted."""
        await self._alarms.shutdown()
        await self._executor.shutdown()
        self._initialized = False
        logger.info("HybridRunner shut down")

    # -- Legacy single-task API ------------------------------------------------

    async def start(
        self,
        callback: Callable[[], Awaitable[bool]],
        interval: timedelta,
        overlap_policy: OverlapPolicy = OverlapPolicy.REPLACE,
        run_immediately: bool = False,
    ) -> RegisteredTask:
        """Run *callback* every *interval* under the reserved single-task slot."""
        self._ensure_initialized()
        logger.info("Starting single-task runner...")
        return await self._register(
            self._legacy.name,
            callback,
            interval,
            overlap_policy=overlap_policy,
            run_immediately=run_immediately,
            is_one_time=False,
            reserved_slot_id=self._legacy.slot_id,
        )

    async def stop(self) -> None:
        """Stop the single-task runner.

        The record is marked inactive before anything is cancelled, so a
        dispatch already in flight declines to reschedule.
        """
        self._ensure_initialized()
        logger.info("Stopping single-task runner...")
        await self._store.set_active(self._legacy.name, False)
        await self._alarms.cancel(self._legacy.slot_id)
        await self._executor.cancel_by_tag(self._legacy.tag)
        await self._store.remove(self._legacy.name)
        await self._store.clear_legacy()
        logger.info("Single-task runner stopped")

    async def is_active(self) -> bool:
        """Whether the single-task runner is registered and active."""
        self._ensure_initialized()
        task = await self._store.get(self._legacy.name)
        return task is not None and task.is_active

    async def loop_interval(self) -> timedelta | None:
        self._ensure_initialized()
        task = await self._store.get(self._legacy.name)
        return task.interval if task else None

    # -- Multi-task API --------------------------------------------------------

    async def register_task(
        self,
        name: str,
        callback: Callable[[], Awaitable[bool]],
        interval: timedelta,
        overlap_policy: OverlapPolicy = OverlapPolicy.REPLACE,
        run_immediately: bool = False,
        is_one_time: bool = False,
    ) -> RegisteredTask:
        """Register (or re-register) a named task and arm its first alarm.

        Raises:
            NotInitializedError: ``initialize()`` has not been called.
            InvalidCallbackError: *callback* is not a module-level async function.
            SchedulingError: the first alarm could not be armed.  The store
                write is rolled back in that case.
            ValueError: empty or reserved name, or non-positive interval.
        """
        self._ensure_initialized()
        if name == self._legacy.name:
            msg = f"Task name {name!r} is reserved"
            raise ValueError(msg)
        return await self._register(
            name,
            callback,
            interval,
            overlap_policy=overlap_policy,
            run_immediately=run_immediately,
            is_one_time=is_one_time,
        )

    async def get_registered_tasks(self) -> list[RegisteredTask]:
        """Snapshot of every registered task."""
        self._ensure_initialized()
        return await self._store.get_all()

    async def stop_task(self, name: str) -> bool:
        """Cancel and remove a task. Returns False if no such task exists."""
        self._ensure_initialized()
        task = await self._store.get(name)
        if task is None:
            logger.info("Task %s not found", name)
            return False

        await self._alarms.cancel(task.alarm_slot_id)
        await self._executor.cancel_by_tag(self._tag_for(name))
        await self._store.remove(name)
        logger.info("Task %s stopped and removed", name)
        return True

    async def stop_all_tasks(self) -> None:
        """Cancel every task, clear the store, and cancel the reserved slot."""
        self._ensure_initialized()
        logger.info("Stopping all tasks...")
        for task in await self._store.get_all():
            await self._alarms.cancel(task.alarm_slot_id)
            await self._executor.cancel_by_tag(self._tag_for(task.name))

        await self._store.clear_all()

        await self._alarms.cancel(self._legacy.slot_id)
        await self._executor.cancel_by_tag(self._legacy.tag)
        logger.info("All tasks stopped")

    async def set_task_active(self, name: str, active: bool) -> bool:
        """Pause or resume a task. Returns False if no such task exists.

        Pausing cancels the pending alarm; resuming arms a new one an interval
        from now.
        """
        self._ensure_initialized()
        task = await self._store.get(name)
        if task is None:
            return False
        if task.is_active == active:
            return True

        task = await self._store.set_active(name, active)
        if task is None:
            return False
        if active:
            await self._alarms.schedule_one_shot(task.interval, task.alarm_slot_id, AlarmOptions())
            if not task.is_one_time:
                await self._register_backup(task)
            logger.info("Task %s resumed", name)
        else:
            await self._alarms.cancel(task.alarm_slot_id)
            logger.info("Task %s paused", name)
        return True

    async def reconcile(self) -> int:
        """Arm alarms for active tasks that have none. Returns the repair count.

        Covers records left without an alarm by a crash, a failed backup
        registration, or alarms lost while the process was down.
        """
        self._ensure_initialized()
        repaired = 0
        now = utcnow()
        for task in await self._store.get_all():
            if not task.is_active:
                continue
            if not task.is_one_time:
                try:
                    await self._register_backup(task)
                except SchedulingError:
                    logger.exception("Could not register backup work for %s", task.name)
            if await self._alarms.is_scheduled(task.alarm_slot_id):
                continue
            if task.is_one_time:
                delay = max(task.registered_at + task.interval - now, self._immediate_delay)
            else:
                delay = task.interval
            try:
                await self._alarms.schedule_one_shot(delay, task.alarm_slot_id, AlarmOptions())
            except SchedulingError:
                logger.exception("Could not re-arm alarm for task %s", task.name)
                continue
            repaired += 1
            logger.info("Re-armed alarm for task %s in %s", task.name, delay)
        if repaired:
            logger.info("Reconciled %d task(s)", repaired)
        return repaired

    # -- Firing and dispatch ---------------------------------------------------

    async def handle_alarm(self, slot_id: int) -> None:
        """Alarm handler: enqueue durable work for the slot's task and return.

        Uses the task's own overlap policy.  Never runs task callbacks and
        never raises.
        """
        try:
            task = await self._store.get_by_slot_id(slot_id)
            if task is None:
                logger.warning("No registered task for alarm slot %d", slot_id)
                return
            if not task.is_active:
                logger.info("Alarm for inactive task %s ignored", task.name)
                return

            directive = resolve_overlap_policy(task.overlap_policy, task.name)
            logger.info(
                "Alarm for %s: policy=%s key=%s conflict=%s",
                task.name,
                task.overlap_policy.value,
                directive.slot_key,
                directive.on_conflict.value,
            )
            await self._executor.enqueue_one_off(
                directive.slot_key,
                directive.on_conflict,
                work_name=WORK_NAME,
                tag=self._tag_for(task.name),
                task_name=task.name,
            )
        except Exception:
            logger.exception("Failed to enqueue work for alarm slot %d", slot_id)

    async def execute_work(self, work_name: str, task_name: str | None = None) -> bool:
        """Durable work entry point. Unknown work names fail."""
        if work_name != WORK_NAME:
            logger.warning("Unknown work: %s", work_name)
            return False
        return await self.dispatch(task_name)

    async def dispatch(self, task_name: str | None = None) -> bool:
        """Run active tasks in sequence and advance their lifecycle.

        With *task_name*, only that task runs; otherwise every active task
        does.  Returns True only if every task that ran succeeded.  Never
        raises: any unexpected error becomes a False result.
        """
        try:
            return await self._dispatch(task_name)
        except Exception:
            logger.exception("Dispatch failed")
            return False

    async def _dispatch(self, task_name: str | None) -> bool:
        """Run the named task, or every active task when *task_name* is None.

        Alarm and backup work always carries its task name, so the named form
        is the normal path and each run of durable work executes one task.
        The unnamed form runs all active tasks in order; it exists for direct
        callers of ``dispatch()``.
        """
        tasks = await self._store.get_all()
        if task_name is not None:
            tasks = [t for t in tasks if t.name == task_name]
        if not tasks:
            logger.info("No registered tasks to run (requested: %s)", task_name or "all")
            return True

        logger.info("Dispatching %d task(s)", len(tasks))
        all_successful = True
        for task in tasks:
            if not task.is_active:
                logger.info("Skipping inactive task: %s", task.name)
                continue
            if not await self._run_task(task):
                all_successful = False
        return all_successful

    async def _run_task(self, task: RegisteredTask) -> bool:
        try:
            callback = await self._callbacks.lookup(task.callback_handle)
        except CallbackUnresolvableError:
            logger.warning("Failed to get callback for task: %s", task.name, exc_info=True)
            return False

        logger.info("Executing task: %s", task.name)
        try:
            result = bool(await callback())
        except Exception:
            logger.exception("Task %s raised", task.name)
            result = False
        logger.info("Task %s completed with result: %s", task.name, result)

        if task.is_one_time:
            # Only the registration that ran; a re-registration made meanwhile stays.
            if await self._store.remove(task.name, registered_at=task.registered_at):
                logger.info("Removed one-time task: %s", task.name)
            else:
                logger.info("One-time task %s was re-registered or stopped; keeping", task.name)
            return result
        return await self._reschedule(task) and result

    async def _reschedule(self, task: RegisteredTask) -> bool:
        # Re-read: the task may have been stopped, paused or re-registered
        # while its callback ran.
        current = await self._store.get(task.name)
        if current is None or not current.is_active:
            logger.info("Task %s is no longer active; not rescheduling", task.name)
            return True
        try:
            await self._alarms.schedule_one_shot(
                current.interval, current.alarm_slot_id, AlarmOptions()
            )
        except SchedulingError:
            logger.exception("Could not schedule next alarm for %s", task.name)
            return False
        logger.info("Next alarm for %s in %s", task.name, current.interval)
        return True

    # -- Internal --------------------------------------------------------------

    def _tag_for(self, name: str) -> str:
        if name == self._legacy.name:
            return self._legacy.tag
        return f"{WORK_TAG}_{name}"

    def _periodic_name_for(self, name: str) -> str:
        if name == self._legacy.name:
            return self._legacy.periodic_name
        return f"{WORK_NAME}_{name}_periodic"

    async def _register_backup(self, task: RegisteredTask) -> None:
        frequency = await self._executor.register_periodic(
            self._periodic_name_for(task.name),
            work_name=WORK_NAME,
            tag=self._tag_for(task.name),
            frequency=task.interval,
            task_name=task.name,
        )
        logger.info("Backup periodic work for %s every %s", task.name, frequency)

    async def _migrate_legacy(self) -> None:
        """Fold the old single-task keys into a record under the reserved name."""
        state = await self._store.load_legacy()
        if state is None:
            return

        if (
            state.is_active
            and state.callback_handle is not None
            and state.interval is not None
            and state.interval > timedelta(0)
            and await self._store.get(self._legacy.name) is None
        ):
            await self._store.save(
                RegisteredTask(
                    name=self._legacy.name,
                    callback_handle=state.callback_handle,
                    interval=state.interval,
                    alarm_slot_id=self._legacy.slot_id,
                    overlap_policy=state.overlap_policy,
                )
            )
            logger.info("Migrated single-task runner (interval %s)", state.interval)
        else:
            logger.info("Discarding inactive single-task runner state")
        await self._store.clear_legacy()

    async def _register(
        self,
        name: str,
        callback: Callable[[], Awaitable[bool]],
        interval: timedelta,
        *,
        overlap_policy: OverlapPolicy,
        run_immediately: bool,
        is_one_time: bool,
        reserved_slot_id: int | None = None,
    ) -> RegisteredTask:
        if not name or not name.strip():
            msg = "Task name must not be empty"
            raise ValueError(msg)
        if interval <= timedelta(0):
            msg = f"Interval must be positive, got {interval}"
            raise ValueError(msg)

        kind = "one-time" if is_one_time else "looping"
        logger.info("Registering %s task: %s", kind, name)

        handle = await self._callbacks.resolve(callback)

        existing = await self._store.get(name)
        if existing is not None:
            slot_id = existing.alarm_slot_id
        elif reserved_slot_id is not None:
            slot_id = reserved_slot_id
        else:
            slot_id = await self._store.next_slot_id()

        task = RegisteredTask(
            name=name,
            callback_handle=handle,
            interval=interval,
            alarm_slot_id=slot_id,
            overlap_policy=overlap_policy,
            is_active=True,
            is_one_time=is_one_time,
        )
        await self._store.save(task)
        logger.info(
            "Task %s registered with slot %d, interval %s, one-time %s",
            name,
            slot_id,
            interval,
            is_one_time,
        )

        delay = self._immediate_delay if run_immediately else interval
        try:
            await self._alarms.schedule_one_shot(delay, slot_id, AlarmOptions())
        except SchedulingError:
            logger.exception("First alarm for %s could not be scheduled; rolling back", name)
            if existing is None:
                await self._store.remove(name, registered_at=task.registered_at)
            else:
                await self._store.save(existing)
            raise

        if is_one_time:
            if existing is not None and not existing.is_one_time:
                await self._executor.cancel_by_tag(self._tag_for(name))
        else:
            try:
                await self._register_backup(task)
            except SchedulingError:
                # The alarm chain is live; reconcile() re-registers the backup.
                logger.exception("Backup periodic work for %s could not be registered", name)

        logger.info("Task %s registered successfully", name)
        return task
