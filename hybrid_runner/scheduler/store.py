"""TaskStore — durable registry of named tasks."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from hybrid_runner.config import settings
from hybrid_runner.scheduler.constants import (
    ACTIVE_STATUS_KEY,
    CALLBACK_HANDLE_KEY,
    LEGACY_KEYS,
    LOOP_INTERVAL_KEY,
    NEXT_SLOT_ID_KEY,
    OVERLAP_POLICY_KEY,
    REGISTERED_TASKS_KEY,
)
from hybrid_runner.scheduler.errors import StoreCorruptError
from hybrid_runner.scheduler.models import LegacyState, OverlapPolicy, RegisteredTask

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from hybrid_runner.scheduler.kvstore import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskStore:
    """Persists registered tasks as one JSON collection in a KeyValueStore.

    The whole collection is rewritten on every change.  Expected cardinality
    is tens of tasks, so a read-modify-write is simpler than a table and keeps
    the on-disk layout identical to the single-key format older installs use.
    """

    def __init__(self, kv: KeyValueStore, base_slot_id: int | None = None) -> None:
        self._kv = kv
        self._base_slot_id = settings.base_slot_id if base_slot_id is None else base_slot_id

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    # -- Internal helpers ------------------------------------------------------

    async def _modify(
        self, change: Callable[[list[RegisteredTask]], tuple[list[RegisteredTask] | None, T]]
    ) -> T:
        """Apply *change* to the collection inside one store transaction.

        *change* gets the current tasks and returns ``(new_tasks, result)``;
        ``new_tasks`` of ``None`` means nothing to write.
        """

        def mutate(raw: str | None) -> tuple[str | None, T]:
            tasks, result = change(self._load(raw))
            if tasks is None:
                return None, result
            return json.dumps([t.to_json() for t in tasks]), result

        return await self._kv.update(REGISTERED_TASKS_KEY, mutate)

    @classmethod
    def _load(cls, raw: str | None) -> list[RegisteredTask]:
        if not raw:
            return []
        try:
            return cls._decode(raw)
        except StoreCorruptError:
            logger.warning("Registered task collection is corrupt; treating as empty", exc_info=True)
            return []

    @staticmethod
    def _decode(raw: str) -> list[RegisteredTask]:
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"Task collection is not valid JSON: {exc}"
            raise StoreCorruptError(msg) from exc
        if not isinstance(items, list):
            msg = f"Task collection must be a list, got {type(items).__name__}"
            raise StoreCorruptError(msg)
        tasks = []
        for item in items:
            if not isinstance(item, dict):
                msg = f"Task record must be an object, got {type(item).__name__}"
                raise StoreCorruptError(msg)
            tasks.append(RegisteredTask.from_json(item))
        return tasks

    # -- CRUD ------------------------------------------------------------------

    async def get_all(self) -> list[RegisteredTask]:
        """Return every registered task, or ``[]`` if the collection is corrupt."""
        return self._load(await self._kv.get(REGISTERED_TASKS_KEY))

    async def save(self, task: RegisteredTask) -> RegisteredTask:
        """Insert or replace the task with the same name."""

        def upsert(tasks: list[RegisteredTask]) -> tuple[list[RegisteredTask], None]:
            return [t for t in tasks if t.name != task.name] + [task], None

        await self._modify(upsert)
        logger.debug("Saved task %s (slot %d)", task.name, task.alarm_slot_id)
        return task

    async def get(self, name: str) -> RegisteredTask | None:
        for task in await self.get_all():
            if task.name == name:
                return task
        return None

    async def get_by_slot_id(self, slot_id: int) -> RegisteredTask | None:
        for task in await self.get_all():
            if task.alarm_slot_id == slot_id:
                return task
        return None

    async def remove(self, name: str, *, registered_at: datetime | None = None) -> bool:
        """Delete the named task. Returns True if a record was removed.

        With *registered_at*, only the registration created at that instant
        is removed; a newer registration under the same name is kept.
        """

        def drop(tasks: list[RegisteredTask]) -> tuple[list[RegisteredTask] | None, bool]:
            remaining = [
                t
                for t in tasks
                if t.name != name or (registered_at is not None and t.registered_at != registered_at)
            ]
            if len(remaining) == len(tasks):
                return None, False
            return remaining, True

        removed = await self._modify(drop)
        if removed:
            logger.info("Removed task: %s", name)
        return removed

    async def set_active(self, name: str, active: bool) -> RegisteredTask | None:
        """Flip a task's active flag. Returns the updated task, or None if absent."""

        def flip(tasks: list[RegisteredTask]):
            for i, task in enumerate(tasks):
                if task.name == name:
                    updated = task.replace(is_active=active)
                    return [*tasks[:i], updated, *tasks[i + 1 :]], updated
            return None, None

        return await self._modify(flip)

    async def next_slot_id(self) -> int:
        """Allocate the next alarm slot id from the persisted counter."""
        return await self._kv.increment(NEXT_SLOT_ID_KEY, default=self._base_slot_id)

    async def clear_all(self) -> None:
        """Remove every task record and the legacy single-task keys.

        The slot counter is kept so ids are never handed out twice.
        """
        await self._kv.delete(REGISTERED_TASKS_KEY, *LEGACY_KEYS)
        logger.info("Cleared all registered tasks")

    # -- Legacy single-task keys -----------------------------------------------

    async def load_legacy(self) -> LegacyState | None:
        """Read the pre-registry single-task keys, or None if none are set."""
        handle = await self._kv.get_int(CALLBACK_HANDLE_KEY)
        interval_ms = await self._kv.get_int(LOOP_INTERVAL_KEY)
        active_raw = await self._kv.get(ACTIVE_STATUS_KEY)
        if handle is None and interval_ms is None and active_raw is None:
            return None
        try:
            policy = OverlapPolicy.from_code(await self._kv.get_int(OVERLAP_POLICY_KEY))
        except StoreCorruptError:
            logger.warning("Unknown legacy overlap policy; using REPLACE")
            policy = OverlapPolicy.REPLACE
        return LegacyState(
            is_active=await self._kv.get_bool(ACTIVE_STATUS_KEY),
            callback_handle=handle,
            interval=timedelta(milliseconds=interval_ms) if interval_ms is not None else None,
            overlap_policy=policy,
        )

    async def clear_legacy(self) -> None:
        await self._kv.delete(*LEGACY_KEYS)
