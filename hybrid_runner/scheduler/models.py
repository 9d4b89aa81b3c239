"""RegisteredTask data model and overlap policy."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from hybrid_runner.config import settings
from hybrid_runner.scheduler.constants import LEGACY_TASK_NAME, WORK_NAME, WORK_TAG
from hybrid_runner.scheduler.errors import StoreCorruptError


class OverlapPolicy(Enum):
    """What happens when a task fires while earlier work for it is outstanding."""

    REPLACE = "replace"
    SKIP_IF_RUNNING = "skip_if_running"
    PARALLEL = "parallel"

    def to_code(self) -> int:
        return _POLICY_CODES[self]

    @classmethod
    def from_code(cls, code: int | None) -> OverlapPolicy:
        """Decode a persisted policy code. ``None`` means the default (REPLACE)."""
        if code is None:
            return cls.REPLACE
        try:
            return _POLICY_BY_CODE[code]
        except (KeyError, TypeError):
            msg = f"Unknown overlap policy code: {code!r}"
            raise StoreCorruptError(msg) from None


# Version 1 of the persisted code table. Append new codes; never renumber.
_POLICY_CODES: dict[OverlapPolicy, int] = {
    OverlapPolicy.REPLACE: 0,
    OverlapPolicy.SKIP_IF_RUNNING: 1,
    OverlapPolicy.PARALLEL: 2,
}
_POLICY_BY_CODE = {code: policy for policy, code in _POLICY_CODES.items()}


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RegisteredTask:
    """A named unit of schedulable work.

    Attributes:
        name: Caller-assigned unique identifier.
        callback_handle: Opaque integer from ``CallbackRegistry.resolve``.
        interval: Spacing between runs; for one-time tasks, the delay
            before the single run.
        overlap_policy: How overlapping firings are enqueued.
        is_active: Inactive tasks stay registered but are skipped.
        is_one_time: Removed from the store after its single run.
        alarm_slot_id: Stable alarm identity, assigned once at registration.
        registered_at: Creation time (UTC).
    """

    name: str
    callback_handle: int
    interval: timedelta
    alarm_slot_id: int
    overlap_policy: OverlapPolicy = OverlapPolicy.REPLACE
    is_active: bool = True
    is_one_time: bool = False
    registered_at: datetime = field(default_factory=utcnow)

    def replace(self, **changes: Any) -> RegisteredTask:
        """Return a copy with *changes* applied."""
        return dataclasses.replace(self, **changes)

    # -- Serialization ---------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "callbackHandle": self.callback_handle,
            "intervalMs": int(self.interval / timedelta(milliseconds=1)),
            "overlapPolicyIndex": self.overlap_policy.to_code(),
            "isActive": self.is_active,
            "alarmId": self.alarm_slot_id,
            "registeredAt": self.registered_at.isoformat(),
            "isOneTime": self.is_one_time,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RegisteredTask:
        """Decode one persisted task. Raises ``StoreCorruptError`` on bad input."""
        try:
            registered_at = datetime.fromisoformat(data["registeredAt"])
            if registered_at.tzinfo is None:
                registered_at = registered_at.replace(tzinfo=UTC)
            return cls(
                name=str(data["name"]),
                callback_handle=int(data["callbackHandle"]),
                interval=timedelta(milliseconds=int(data["intervalMs"])),
                overlap_policy=OverlapPolicy.from_code(data.get("overlapPolicyIndex")),
                is_active=bool(data.get("isActive", True)),
                alarm_slot_id=int(data["alarmId"]),
                registered_at=registered_at,
                is_one_time=bool(data.get("isOneTime", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Invalid task record: {exc}"
            raise StoreCorruptError(msg) from exc

    def __str__(self) -> str:
        kind = "one-time" if self.is_one_time else "loop"
        minutes = int(self.interval.total_seconds() // 60)
        return (
            f"RegisteredTask(name: {self.name}, interval: {minutes}min, "
            f"type: {kind}, active: {self.is_active})"
        )


@dataclass(frozen=True)
class LegacySlot:
    """Reserved identity used by the single-task ``start``/``stop`` API."""

    name: str = LEGACY_TASK_NAME
    slot_id: int = field(default_factory=lambda: settings.legacy_slot_id)
    tag: str = WORK_TAG
    periodic_name: str = f"{WORK_NAME}_periodic"


@dataclass(frozen=True)
class LegacyState:
    """Values found under the old single-task storage keys."""

    is_active: bool
    callback_handle: int | None
    interval: timedelta | None
    overlap_policy: OverlapPolicy
