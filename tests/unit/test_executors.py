"""Unit tests for executors and the executor registry."""

import asyncio

import pytest

from taskrelay.core.errors import ExecutorError
from taskrelay.core.models import Task, TaskType
from taskrelay.execution.executors import (
    CancellationToken,
    DryRunExecutor,
    ExecutorRegistry,
    FunctionExecutor,
    TaskExecutor,
    create_dry_run_registry,
)


@pytest.fixture
def task() -> Task:
    return Task(id="t1", name="Post update", type=TaskType.POST)


# =============================================================================
# REGISTRY TESTS
# =============================================================================


class TestExecutorRegistry:
    """Tests for ExecutorRegistry."""

    @pytest.mark.asyncio
    async def test_plain_function_is_adapted(self, task: Task) -> None:
        async def post(task: Task, token: CancellationToken) -> dict:
            return {"posted": task.id}

        registry = ExecutorRegistry()
        registry.register(TaskType.POST, post)

        assert isinstance(registry.get(TaskType.POST), FunctionExecutor)
        assert await registry.dispatch(task, CancellationToken()) == {"posted": "t1"}

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self, task: Task) -> None:
        with pytest.raises(ExecutorError, match="no executor registered"):
            await ExecutorRegistry().dispatch(task, CancellationToken())

    @pytest.mark.asyncio
    async def test_executor_exception_wrapped(self, task: Task) -> None:
        async def broken(task: Task, token: CancellationToken) -> None:
            raise ValueError("bad input")

        registry = ExecutorRegistry({TaskType.POST: FunctionExecutor(broken)})

        with pytest.raises(ExecutorError) as exc_info:
            await registry.dispatch(task, CancellationToken())

        assert isinstance(exc_info.value.cause, ValueError)
        assert exc_info.value.task_id == "t1"
        assert "bad input" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_dispatch(self, task: Task) -> None:
        calls = []

        async def post(task: Task, token: CancellationToken) -> None:
            calls.append(task.id)

        registry = ExecutorRegistry({TaskType.POST: post})
        token = CancellationToken()
        token.cancel("shutdown")

        with pytest.raises(asyncio.CancelledError):
            await registry.dispatch(task, token)

        assert calls == []
        assert token.reason == "shutdown"

    @pytest.mark.asyncio
    async def test_fallback_executor(self, task: Task) -> None:
        async def anything(task: Task, token: CancellationToken) -> str:
            return "fallback"

        registry = ExecutorRegistry()
        registry.set_fallback(anything)

        assert registry.supports(TaskType.POST)
        assert await registry.dispatch(task, CancellationToken()) == "fallback"

    def test_register_rejects_non_executor(self) -> None:
        with pytest.raises(TypeError):
            ExecutorRegistry().register(TaskType.POST, 42)  # type: ignore[arg-type]

    def test_unregister(self) -> None:
        registry = create_dry_run_registry()
        registry.unregister("post")

        assert not registry.supports(TaskType.POST)
        assert TaskType.COLLECT in registry.task_types


# =============================================================================
# DRY RUN TESTS
# =============================================================================


class TestDryRunExecutor:
    """Tests for DryRunExecutor."""

    def test_satisfies_protocol(self) -> None:
        assert isinstance(DryRunExecutor(), TaskExecutor)

    @pytest.mark.asyncio
    async def test_collect_returns_items_with_source(self) -> None:
        task = Task(id="c1", name="Collect", type=TaskType.COLLECT, config={"source": "rss"})

        payload = await DryRunExecutor(delay_ms=1).execute(task, CancellationToken())

        assert isinstance(payload, list)
        assert payload[0]["source"] == "rss"

    @pytest.mark.asyncio
    async def test_simulated_failure(self, task: Task) -> None:
        with pytest.raises(RuntimeError, match="Simulated failure"):
            await DryRunExecutor(delay_ms=1, success_rate=0.0).execute(task, CancellationToken())
