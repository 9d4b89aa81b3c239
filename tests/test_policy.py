"""Tests for overlap policy resolution."""

from datetime import UTC, datetime

from hybrid_runner.scheduler.models import OverlapPolicy
from hybrid_runner.scheduler.policy import ConflictPolicy, resolve_overlap_policy, task_slot_key


def test_task_slot_key() -> None:
    assert task_slot_key("sync") == "hybridTask_sync"


def test_replace_uses_fixed_key() -> None:
    directive = resolve_overlap_policy(OverlapPolicy.REPLACE, "sync")
    assert directive.slot_key == "hybridTask_sync"
    assert directive.on_conflict is ConflictPolicy.REPLACE


def test_skip_if_running_keeps_existing() -> None:
    directive = resolve_overlap_policy(OverlapPolicy.SKIP_IF_RUNNING, "sync")
    assert directive.slot_key == "hybridTask_sync"
    assert directive.on_conflict is ConflictPolicy.KEEP


def test_parallel_key_is_timestamped() -> None:
    now = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)
    directive = resolve_overlap_policy(OverlapPolicy.PARALLEL, "sync", now=now)

    micros = int(now.timestamp() * 1_000_000)
    assert directive.slot_key.startswith(f"hybridTask_sync_{micros}_")
    assert directive.on_conflict is ConflictPolicy.KEEP


def test_parallel_keys_unique_at_same_instant() -> None:
    now = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)
    keys = {
        resolve_overlap_policy(OverlapPolicy.PARALLEL, "sync", now=now).slot_key
        for _ in range(50)
    }
    assert len(keys) == 50


def test_keys_differ_between_tasks() -> None:
    a = resolve_overlap_policy(OverlapPolicy.REPLACE, "a")
    b = resolve_overlap_policy(OverlapPolicy.REPLACE, "b")
    assert a.slot_key != b.slot_key
