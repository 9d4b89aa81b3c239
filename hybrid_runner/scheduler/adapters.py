"""Protocols for the two platform primitives the runner composes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import timedelta

    from hybrid_runner.scheduler.policy import ConflictPolicy

    AlarmHandler = Callable[[int], Awaitable[None]]
    WorkDispatcher = Callable[[str, str | None], Awaitable[bool]]


@dataclass(frozen=True)
class AlarmOptions:
    """Delivery requirements for a one-shot alarm."""

    exact: bool = True
    wakeup: bool = True
    alarm_clock: bool = True
    rearm_on_reboot: bool = True


@runtime_checkable
class AlarmTrigger(Protocol):
    """Precise one-shot alarms addressed by an integer slot id."""

    async def start(self, on_fire: AlarmHandler) -> None:
        """Wire the handler invoked with the slot id when an alarm fires."""
        ...

    async def shutdown(self) -> None: ...

    async def schedule_one_shot(
        self,
        delay: timedelta,
        slot_id: int,
        options: AlarmOptions | None = None,
    ) -> None:
        """Fire once after *delay*, replacing any pending alarm for *slot_id*."""
        ...

    async def cancel(self, slot_id: int) -> None:
        """Cancel the pending alarm for *slot_id*. Unknown slots are ignored."""
        ...

    async def is_scheduled(self, slot_id: int) -> bool: ...


@runtime_checkable
class DurableExecutor(Protocol):
    """Guaranteed but imprecise execution of queued work."""

    async def start(self, dispatcher: WorkDispatcher) -> None:
        """Wire the entry point called as ``dispatcher(work_name, task_name)``."""
        ...

    async def shutdown(self) -> None: ...

    async def enqueue_one_off(
        self,
        slot_key: str,
        on_conflict: ConflictPolicy,
        *,
        work_name: str,
        tag: str,
        task_name: str | None = None,
    ) -> bool:
        """Queue one run. Returns False if dropped because of a KEEP conflict."""
        ...

    async def register_periodic(
        self,
        unique_name: str,
        *,
        work_name: str,
        tag: str,
        frequency: timedelta,
        task_name: str | None = None,
    ) -> timedelta:
        """Register a recurring fallback run. Returns the effective frequency."""
        ...

    async def cancel_by_tag(self, tag: str) -> None:
        """Drop queued and periodic work carrying *tag*."""
        ...
