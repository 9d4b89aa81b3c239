"""Tests for RegisteredTask and OverlapPolicy."""

from datetime import UTC, datetime, timedelta

import pytest

from hybrid_runner.scheduler.errors import StoreCorruptError
from hybrid_runner.scheduler.models import LegacySlot, OverlapPolicy, RegisteredTask


def _task(**kwargs) -> RegisteredTask:
    defaults = {
        "name": "sync",
        "callback_handle": 42,
        "interval": timedelta(minutes=15),
        "alarm_slot_id": 10000,
        "registered_at": datetime(2025, 6, 1, 9, 0, tzinfo=UTC),
    }
    defaults.update(kwargs)
    return RegisteredTask(**defaults)


# -- OverlapPolicy codes -------------------------------------------------------


@pytest.mark.parametrize(
    ("policy", "code"),
    [
        (OverlapPolicy.REPLACE, 0),
        (OverlapPolicy.SKIP_IF_RUNNING, 1),
        (OverlapPolicy.PARALLEL, 2),
    ],
)
def test_policy_codes_are_stable(policy: OverlapPolicy, code: int) -> None:
    assert policy.to_code() == code
    assert OverlapPolicy.from_code(code) is policy


def test_missing_policy_code_defaults_to_replace() -> None:
    assert OverlapPolicy.from_code(None) is OverlapPolicy.REPLACE


@pytest.mark.parametrize("code", [3, -1, "x"])
def test_unknown_policy_code_is_corrupt(code) -> None:
    with pytest.raises(StoreCorruptError):
        OverlapPolicy.from_code(code)


# -- RegisteredTask serialization ----------------------------------------------


def test_to_json_layout() -> None:
    data = _task(overlap_policy=OverlapPolicy.PARALLEL, is_one_time=True).to_json()
    assert data == {
        "name": "sync",
        "callbackHandle": 42,
        "intervalMs": 900_000,
        "overlapPolicyIndex": 2,
        "isActive": True,
        "alarmId": 10000,
        "registeredAt": "2025-06-01T09:00:00+00:00",
        "isOneTime": True,
    }


def test_from_json_applies_defaults() -> None:
    task = RegisteredTask.from_json(
        {
            "name": "old",
            "callbackHandle": 1,
            "intervalMs": 60_000,
            "alarmId": 10001,
            "registeredAt": "2024-01-01T00:00:00",
        }
    )
    assert task.overlap_policy is OverlapPolicy.REPLACE
    assert task.is_active is True
    assert task.is_one_time is False
    assert task.interval == timedelta(minutes=1)
    # Naive timestamps are read as UTC
    assert task.registered_at.tzinfo is UTC


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"name": "x", "callbackHandle": 1, "intervalMs": 1000, "alarmId": 1},
        {
            "name": "x",
            "callbackHandle": "nope",
            "intervalMs": 1000,
            "alarmId": 1,
            "registeredAt": "2024-01-01T00:00:00",
        },
        {
            "name": "x",
            "callbackHandle": 1,
            "intervalMs": 1000,
            "alarmId": 1,
            "registeredAt": "yesterday",
        },
    ],
)
def test_from_json_rejects_bad_records(data: dict) -> None:
    with pytest.raises(StoreCorruptError):
        RegisteredTask.from_json(data)


def test_replace_returns_copy() -> None:
    task = _task()
    paused = task.replace(is_active=False)
    assert paused.is_active is False
    assert task.is_active is True
    assert paused.alarm_slot_id == task.alarm_slot_id


def test_str() -> None:
    assert str(_task(interval=timedelta(minutes=30), is_one_time=True)) == (
        "RegisteredTask(name: sync, interval: 30min, type: one-time, active: True)"
    )


def test_legacy_slot_defaults() -> None:
    legacy = LegacySlot()
    assert legacy.name == "__hybrid_legacy__"
    assert legacy.slot_id == 9999
    assert legacy.tag == "hybrid_runner_tag"
