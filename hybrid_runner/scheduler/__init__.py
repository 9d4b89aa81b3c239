"""Hybrid task scheduling: alarms, durable work and the runner that joins them."""

from hybrid_runner.scheduler.adapters import AlarmOptions, AlarmTrigger, DurableExecutor
from hybrid_runner.scheduler.alarms import SchedulerAlarmTrigger
from hybrid_runner.scheduler.callbacks import CallbackRegistry
from hybrid_runner.scheduler.errors import (
    CallbackUnresolvableError,
    HybridRunnerError,
    InvalidCallbackError,
    NotInitializedError,
    SchedulingError,
    StoreCorruptError,
)
from hybrid_runner.scheduler.executor import SqliteWorkQueue
from hybrid_runner.scheduler.kvstore import KeyValueStore
from hybrid_runner.scheduler.models import LegacySlot, OverlapPolicy, RegisteredTask
from hybrid_runner.scheduler.policy import ConflictPolicy, EnqueueDirective, resolve_overlap_policy
from hybrid_runner.scheduler.runner import HybridRunner
from hybrid_runner.scheduler.store import TaskStore

__all__ = [
    "AlarmOptions",
    "AlarmTrigger",
    "CallbackRegistry",
    "CallbackUnresolvableError",
    "ConflictPolicy",
    "DurableExecutor",
    "EnqueueDirective",
    "HybridRunner",
    "HybridRunnerError",
    "InvalidCallbackError",
    "KeyValueStore",
    "LegacySlot",
    "NotInitializedError",
    "OverlapPolicy",
    "RegisteredTask",
    "SchedulerAlarmTrigger",
    "SchedulingError",
    "SqliteWorkQueue",
    "StoreCorruptError",
    "TaskStore",
    "resolve_overlap_policy",
]
