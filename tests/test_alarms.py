"""Tests for the APScheduler-backed alarm trigger."""

from datetime import timedelta
from pathlib import Path

from fakes import wait_until

from hybrid_runner.scheduler.adapters import AlarmOptions, AlarmTrigger
from hybrid_runner.scheduler.alarms import SchedulerAlarmTrigger


def _trigger(db_path: Path) -> SchedulerAlarmTrigger:
    return SchedulerAlarmTrigger(db_path, timezone="UTC")


async def test_satisfies_protocol(db_path: Path) -> None:
    assert isinstance(_trigger(db_path), AlarmTrigger)


async def test_alarm_fires_once(db_path: Path) -> None:
    fired = []

    async def on_fire(slot_id):
        fired.append(slot_id)

    trigger = _trigger(db_path)
    await trigger.start(on_fire)
    try:
        await trigger.schedule_one_shot(timedelta(milliseconds=50), 10000)
        assert await trigger.is_scheduled(10000) is True

        async def has_fired():
            return fired == [10000]

        await wait_until(has_fired)
        assert await trigger.is_scheduled(10000) is False
    finally:
        await trigger.shutdown()


async def test_rescheduling_a_slot_replaces_the_alarm(db_path: Path) -> None:
    trigger = _trigger(db_path)
    await trigger.schedule_one_shot(timedelta(hours=1), 5)
    await trigger.schedule_one_shot(timedelta(hours=2), 5)

    assert await trigger.is_scheduled(5) is True


async def test_cancel_is_idempotent(db_path: Path) -> None:
    fired = []

    async def on_fire(slot_id):
        fired.append(slot_id)

    trigger = _trigger(db_path)
    await trigger.start(on_fire)
    try:
        await trigger.schedule_one_shot(timedelta(milliseconds=200), 7)
        await trigger.cancel(7)
        await trigger.cancel(7)
        await trigger.cancel(12345)
        assert await trigger.is_scheduled(7) is False
    finally:
        await trigger.shutdown()
    assert fired == []


async def test_handler_errors_are_contained(db_path: Path) -> None:
    fired = []

    async def on_fire(slot_id):
        fired.append(slot_id)
        raise RuntimeError("boom")

    trigger = _trigger(db_path)
    await trigger.start(on_fire)
    try:
        await trigger.schedule_one_shot(timedelta(milliseconds=20), 1)
        await trigger.schedule_one_shot(timedelta(milliseconds=60), 2)

        async def both_fired():
            return sorted(fired) == [1, 2]

        await wait_until(both_fired)
    finally:
        await trigger.shutdown()


async def test_restart_rearms_persisted_alarms(db_path: Path) -> None:
    before = _trigger(db_path)
    await before.schedule_one_shot(timedelta(hours=1), 1)
    await before.schedule_one_shot(
        timedelta(hours=1), 2, AlarmOptions(rearm_on_reboot=False)
    )

    after = _trigger(db_path)
    await after.start(lambda slot_id: None)
    try:
        assert await after.is_scheduled(1) is True
        assert await after.is_scheduled(2) is False
    finally:
        await after.shutdown()


async def test_overdue_alarm_fires_after_restart(db_path: Path) -> None:
    before = _trigger(db_path)
    await before.schedule_one_shot(timedelta(0), 3)

    fired = []

    async def on_fire(slot_id):
        fired.append(slot_id)

    after = _trigger(db_path)
    await after.start(on_fire)
    try:

        async def has_fired():
            return fired == [3]

        await wait_until(has_fired)
    finally:
        await after.shutdown()
