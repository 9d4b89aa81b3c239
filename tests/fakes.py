"""In-memory adapters and module-level task callbacks for tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta

from hybrid_runner.scheduler.adapters import AlarmOptions
from hybrid_runner.scheduler.errors import SchedulingError

# Names of callbacks run so far, in order. Reset by an autouse fixture.
CALLS: list[str] = []


async def succeeding_task() -> bool:
    CALLS.append("succeeding")
    return True


async def failing_task() -> bool:
    CALLS.append("failing")
    return False


async def raising_task() -> bool:
    CALLS.append("raising")
    raise RuntimeError("boom")


# Runner used by self_stopping_task; set by the test that needs it.
RUNNER = None


async def self_stopping_task() -> bool:
    CALLS.append("self_stopping")
    await RUNNER.stop_task("self-stopping")
    return True


async def reregistering_task() -> bool:
    CALLS.append("reregistering")
    await RUNNER.register_task("once", succeeding_task, timedelta(minutes=30), is_one_time=True)
    return True


def sync_task() -> bool:
    return True


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll the async *predicate* until it returns True or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            msg = f"Condition not met within {timeout}s"
            raise AssertionError(msg)
        await asyncio.sleep(0.02)


class Holder:
    async def method(self) -> bool:
        return True

    @staticmethod
    async def static_task() -> bool:
        CALLS.append("static")
        return True


@dataclass
class ScheduledAlarm:
    slot_id: int
    delay: timedelta
    options: AlarmOptions


class FakeAlarms:
    """Records alarm requests instead of arming timers."""

    def __init__(self) -> None:
        self.on_fire = None
        self.pending: dict[int, ScheduledAlarm] = {}
        self.history: list[ScheduledAlarm] = []
        self.cancelled: list[int] = []
        self.fail = False
        self.started = False

    async def start(self, on_fire) -> None:
        self.on_fire = on_fire
        self.started = True

    async def shutdown(self) -> None:
        self.started = False

    async def schedule_one_shot(self, delay, slot_id, options=None) -> None:
        if self.fail:
            msg = "alarm primitive unavailable"
            raise SchedulingError(msg)
        alarm = ScheduledAlarm(slot_id, delay, options or AlarmOptions())
        self.pending[slot_id] = alarm
        self.history.append(alarm)

    async def cancel(self, slot_id) -> None:
        self.pending.pop(slot_id, None)
        self.cancelled.append(slot_id)

    async def is_scheduled(self, slot_id) -> bool:
        return slot_id in self.pending

    async def fire(self, slot_id: int) -> None:
        """Simulate the alarm going off."""
        self.pending.pop(slot_id, None)
        await self.on_fire(slot_id)


class FakeExecutor:
    """Queues work in a list and runs it on demand."""

    def __init__(self, periodic_floor: timedelta = timedelta(minutes=15)) -> None:
        self.dispatcher = None
        self.queue: list[dict] = []
        self.periodic: dict[str, dict] = {}
        self.cancelled_tags: list[str] = []
        self.periodic_floor = periodic_floor
        self.fail_periodic = False

    async def start(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    async def shutdown(self) -> None:
        pass

    async def enqueue_one_off(self, slot_key, on_conflict, *, work_name, tag, task_name=None):
        self.queue.append(
            {
                "slot_key": slot_key,
                "on_conflict": on_conflict,
                "work_name": work_name,
                "tag": tag,
                "task_name": task_name,
            }
        )
        return True

    async def register_periodic(self, unique_name, *, work_name, tag, frequency, task_name=None):
        if self.fail_periodic:
            msg = "periodic primitive unavailable"
            raise SchedulingError(msg)
        entry = self.periodic.setdefault(
            unique_name,
            {
                "work_name": work_name,
                "tag": tag,
                "frequency": max(frequency, self.periodic_floor),
                "task_name": task_name,
            },
        )
        return entry["frequency"]

    async def cancel_by_tag(self, tag) -> None:
        self.cancelled_tags.append(tag)
        self.queue = [w for w in self.queue if w["tag"] != tag]
        self.periodic = {k: v for k, v in self.periodic.items() if v["tag"] != tag}

    async def run_queued(self) -> list[bool]:
        """Run every queued unit of work through the wired dispatcher."""
        work, self.queue = self.queue, []
        return [await self.dispatcher(w["work_name"], w["task_name"]) for w in work]

    def periodic_for(self, task_name: str) -> dict | None:
        for entry in self.periodic.values():
            if entry["task_name"] == task_name:
                return entry
        return None
