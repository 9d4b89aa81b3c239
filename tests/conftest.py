"""Shared test fixtures."""

from pathlib import Path

import fakes
import pytest

from hybrid_runner.scheduler.callbacks import CallbackRegistry
from hybrid_runner.scheduler.kvstore import KeyValueStore
from hybrid_runner.scheduler.runner import HybridRunner
from hybrid_runner.scheduler.store import TaskStore


@pytest.fixture(autouse=True)
def _reset_calls() -> None:
    fakes.CALLS.clear()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def kv(db_path: Path) -> KeyValueStore:
    return KeyValueStore(db_path)


@pytest.fixture
def store(kv: KeyValueStore) -> TaskStore:
    return TaskStore(kv, base_slot_id=10000)


@pytest.fixture
def callbacks(kv: KeyValueStore) -> CallbackRegistry:
    return CallbackRegistry(kv)


@pytest.fixture
def alarms() -> fakes.FakeAlarms:
    return fakes.FakeAlarms()


@pytest.fixture
def executor() -> fakes.FakeExecutor:
    return fakes.FakeExecutor()


@pytest.fixture
def runner(
    store: TaskStore,
    callbacks: CallbackRegistry,
    alarms: fakes.FakeAlarms,
    executor: fakes.FakeExecutor,
) -> HybridRunner:
    """A runner wired to in-memory adapters, not yet initialized."""
    return HybridRunner(store=store, callbacks=callbacks, alarms=alarms, executor=executor)


@pytest.fixture
async def started(runner: HybridRunner) -> HybridRunner:
    await runner.initialize()
    return runner
