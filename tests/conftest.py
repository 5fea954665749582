"""Pytest configuration and shared fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Set test environment
os.environ.setdefault("RELAY_LOG_TO_FILE", "false")
os.environ.setdefault("RELAY_LOG_LEVEL", "DEBUG")

from taskrelay.core.config import Settings, clear_settings_cache  # noqa: E402
from taskrelay.core.models import Task, TaskType  # noqa: E402
from taskrelay.core.orchestrator import ExecutionOrchestrator  # noqa: E402
from taskrelay.execution.decomposer import LongRunningDecomposer  # noqa: E402
from taskrelay.execution.executors import CancellationToken, ExecutorRegistry  # noqa: E402
from taskrelay.execution.registry import AsyncTaskRegistry  # noqa: E402
from taskrelay.execution.scheduler import ParallelScheduler  # noqa: E402
from taskrelay.execution.tracker import TaskStatusTracker  # noqa: E402
from taskrelay.storage.channel import DataChannel  # noqa: E402
from taskrelay.storage.file_store import FileStore  # noqa: E402
from taskrelay.storage.memory_store import MemoryStore  # noqa: E402


class ScriptedExecutor:
    """
    Executor whose behaviour is scripted per task id.

    ``delays`` (seconds) simulate work, ``failures`` raise, ``payloads``
    override the default ``{"task": <id>}`` payload.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self.delays: dict[str, float] = {}
        self.failures: dict[str, str] = {}
        self.payloads: dict[str, Any] = {}

    async def execute(self, task: Task, token: CancellationToken) -> Any:
        self.calls.append(task.id)
        try:
            delay = self.delays.get(task.id, 0)
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(task.id)
            raise
        if task.id in self.failures:
            raise RuntimeError(self.failures[task.id])
        return self.payloads.get(task.id, {"task": task.id})


@pytest.fixture
def settings(tmp_path: Path) -> Generator[Settings, None, None]:
    """Settings isolated from the environment's data directory."""
    clear_settings_cache()

    yield Settings(
        relay_data_dir=str(tmp_path / "data"),
        relay_storage_backend="memory",
        relay_log_to_file=False,
    )

    clear_settings_cache()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def file_store(tmp_path: Path) -> FileStore:
    return FileStore(tmp_path / "data")


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> MemoryStore | FileStore:
    """Both store backends, for contract tests."""
    if request.param == "memory":
        return MemoryStore()
    return FileStore(tmp_path / "store")


@pytest.fixture
def channel(memory_store: MemoryStore) -> DataChannel:
    return DataChannel(memory_store)


@pytest.fixture
def tracker(memory_store: MemoryStore) -> TaskStatusTracker:
    return TaskStatusTracker(memory_store)


@pytest.fixture
def scripted() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def executors(scripted: ScriptedExecutor) -> ExecutorRegistry:
    return ExecutorRegistry({task_type: scripted for task_type in TaskType})


@pytest_asyncio.fixture
async def scheduler(
    executors: ExecutorRegistry,
    tracker: TaskStatusTracker,
    channel: DataChannel,
    settings: Settings,
) -> AsyncGenerator[ParallelScheduler, None]:
    scheduler = ParallelScheduler(executors, tracker, channel, settings)

    yield scheduler

    await scheduler.shutdown()


@pytest.fixture
def decomposer(
    scheduler: ParallelScheduler,
    tracker: TaskStatusTracker,
    channel: DataChannel,
    settings: Settings,
) -> LongRunningDecomposer:
    return LongRunningDecomposer(scheduler, tracker, channel, settings)


@pytest_asyncio.fixture
async def registry(
    scheduler: ParallelScheduler,
    decomposer: LongRunningDecomposer,
    tracker: TaskStatusTracker,
    channel: DataChannel,
    settings: Settings,
) -> AsyncGenerator[AsyncTaskRegistry, None]:
    registry = AsyncTaskRegistry(scheduler, decomposer, tracker, channel, settings)

    yield registry

    await registry.shutdown()


@pytest_asyncio.fixture
async def orchestrator(
    executors: ExecutorRegistry,
    settings: Settings,
    memory_store: MemoryStore,
) -> AsyncGenerator[ExecutionOrchestrator, None]:
    orchestrator = ExecutionOrchestrator(executors, settings=settings, store=memory_store)

    yield orchestrator

    await orchestrator.shutdown()


@pytest.fixture
def make_task():
    """Factory for small tasks with sensible test defaults."""

    def _make(task_id: str, **overrides: Any) -> Task:
        fields: dict[str, Any] = {"id": task_id, "name": f"Task {task_id}", "timeout_ms": 5_000}
        fields.update(overrides)
        return Task(**fields)

    return _make
