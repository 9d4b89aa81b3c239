"""Overlap policy resolution — maps a firing to an enqueue directive."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from hybrid_runner.scheduler.constants import WORK_NAME
from hybrid_runner.scheduler.models import OverlapPolicy, utcnow


class ConflictPolicy(Enum):
    """What the work queue does when the slot key is already occupied."""

    KEEP = "keep"
    REPLACE = "replace"


@dataclass(frozen=True)
class EnqueueDirective:
    slot_key: str
    on_conflict: ConflictPolicy


def task_slot_key(task_name: str) -> str:
    """Fixed work-queue key shared by every firing of *task_name*."""
    return f"{WORK_NAME}_{task_name}"


def resolve_overlap_policy(
    policy: OverlapPolicy,
    task_name: str,
    now: datetime | None = None,
) -> EnqueueDirective:
    """Decide which work slot a firing of *task_name* goes into.

    REPLACE and SKIP_IF_RUNNING share a fixed per-task key and differ only in
    conflict handling.  PARALLEL always gets a fresh key, so it can never
    collide with outstanding work.
    """
    if policy is OverlapPolicy.SKIP_IF_RUNNING:
        return EnqueueDirective(task_slot_key(task_name), ConflictPolicy.KEEP)
    if policy is OverlapPolicy.PARALLEL:
        micros = int((now or utcnow()).timestamp() * 1_000_000)
        # Salt keeps keys distinct when two firings share a timestamp.
        key = f"{task_slot_key(task_name)}_{micros}_{uuid.uuid4().hex[:8]}"
        return EnqueueDirective(key, ConflictPolicy.KEEP)
    return EnqueueDirective(task_slot_key(task_name), ConflictPolicy.REPLACE)
