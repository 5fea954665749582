"""Integration tests for the execution orchestrator."""

import pytest

from taskrelay.core.errors import GroupExecutionError, StoreWriteError
from taskrelay.core.models import MessageType, TaskPriority, TaskType
from taskrelay.core.orchestrator import SENDER, ExecutionOrchestrator

pytestmark = pytest.mark.integration


async def statuses(orchestrator: ExecutionOrchestrator) -> list[str]:
    return [
        m.data["status"]
        for m in await orchestrator.channel.read_messages(message_type=MessageType.STATUS)
        if m.sender == SENDER
    ]


class TestWorkflow:
    """Tests for run_workflow."""

    @pytest.mark.asyncio
    async def test_workflow_announces_lifecycle(
        self, orchestrator: ExecutionOrchestrator, scripted, make_task
    ) -> None:
        scripted.failures["c"] = "boom"
        tasks = [
            make_task("a", priority=TaskPriority.LOW),
            make_task("b"),
            make_task("c"),
            make_task("d", dependencies=["a"]),
        ]

        results = await orchestrator.run_workflow(tasks)

        assert [r.task_id for r in results] == ["b", "c", "a", "d"]
        assert await statuses(orchestrator) == ["workflow_started", "workflow_completed"]

        completed = (await orchestrator.channel.read_messages(message_type=MessageType.STATUS))[-1]
        assert completed.data["successful_tasks"] == 3
        assert completed.data["failed_tasks"] == 1

    @pytest.mark.asyncio
    async def test_aborted_workflow_posts_error(
        self, orchestrator: ExecutionOrchestrator, scripted, make_task
    ) -> None:
        scripted.failures["a"] = "fatal"
        tasks = [make_task("a", priority=TaskPriority.HIGH), make_task("b", priority=TaskPriority.HIGH)]

        with pytest.raises(GroupExecutionError):
            await orchestrator.run_workflow(tasks)

        errors = await orchestrator.channel.read_messages(message_type=MessageType.ERROR)
        assert errors[-1].sender == SENDER
        assert errors[-1].data["tasks"] == ["a", "b"]
        assert "fatal" in errors[-1].data["error"]

    @pytest.mark.asyncio
    async def test_failed_error_broadcast_keeps_group_error(
        self, orchestrator: ExecutionOrchestrator, scripted, make_task, monkeypatch
    ) -> None:
        async def unwritable(*args, **kwargs):
            raise StoreWriteError("disk full")

        monkeypatch.setattr(orchestrator.channel, "notify_error", unwritable)
        scripted.failures["a"] = "fatal"

        with pytest.raises(GroupExecutionError):
            await orchestrator.run_workflow([make_task("a", priority=TaskPriority.HIGH)])

    @pytest.mark.asyncio
    async def test_create_announces_initialized(self, executors, settings, memory_store) -> None:
        orchestrator = await ExecutionOrchestrator.create(executors, settings, memory_store)
        try:
            assert await statuses(orchestrator) == ["initialized"]
        finally:
            await orchestrator.shutdown()


class TestRouting:
    """Tests for single-task and async routing."""

    @pytest.mark.asyncio
    async def test_long_task_is_decomposed(
        self, orchestrator: ExecutionOrchestrator, scripted
    ) -> None:
        task = orchestrator.create_long_running_task("Crawl", TaskType.COLLECT, 240_000)

        result = await orchestrator.execute_task(task)

        assert result.success
        assert scripted.calls == [f"{task.id}-subtask-0", f"{task.id}-subtask-1"]
        assert len(await orchestrator.decomposer.list_checkpoints(task.id)) == 2

    @pytest.mark.asyncio
    async def test_short_task_runs_directly(
        self, orchestrator: ExecutionOrchestrator, scripted, make_task
    ) -> None:
        result = await orchestrator.execute_task(make_task("a"))

        assert result.success
        assert scripted.calls == ["a"]

    @pytest.mark.asyncio
    async def test_async_batch(
        self, orchestrator: ExecutionOrchestrator, scripted, make_task
    ) -> None:
        scripted.delays["a"] = 0.05
        ids = await orchestrator.execute_async_batch([make_task("a"), make_task("b")])

        results = await orchestrator.wait_for_async_batch(ids, timeout_ms=5_000)

        assert [r.task_id for r in results] == ["a", "b"]
        started = [
            m
            for m in await orchestrator.channel.read_messages(message_type=MessageType.STATUS)
            if m.data["status"] == "async_batch_started"
        ]
        assert started[0].data["task_ids"] == ids
        assert started[0].data["batch_id"].startswith("batch-")

        status = await orchestrator.get_execution_status()
        assert status["async"]["total_tasks"] == 2
        assert status["async"]["completed"] == 2
        assert status["system"]["storage_backend"] == "memory"


class TestMaintenance:
    """Tests for maintenance and recovery."""

    @pytest.mark.asyncio
    async def test_maintenance_reports_counts(self, orchestrator: ExecutionOrchestrator) -> None:
        removed = await orchestrator.maintenance()

        assert set(removed) == {
            "messages",
            "intermediate_results",
            "contexts",
            "statuses",
            "cached_results",
        }
        assert "maintenance_completed" in await statuses(orchestrator)

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(
        self, orchestrator: ExecutionOrchestrator, monkeypatch
    ) -> None:
        async def broken(*args, **kwargs):
            raise OSError("disk unplugged")

        monkeypatch.setattr(orchestrator.channel, "cleanup_old_contexts", broken)

        removed = await orchestrator.maintenance()

        assert "contexts" not in removed
        assert removed["statuses"] == 0

    @pytest.mark.asyncio
    async def test_recover(self, orchestrator: ExecutionOrchestrator) -> None:
        await orchestrator.tracker.create("orphan")
        await orchestrator.tracker.mark_running("orphan")

        assert await orchestrator.recover() == ["orphan"]


class TestFactories:
    """Tests for the task factories."""

    def test_factory_defaults(self) -> None:
        collect = ExecutionOrchestrator.create_collection_task("Collect", source="rss")
        analyze = ExecutionOrchestrator.create_analysis_task("Analyze")
        post = ExecutionOrchestrator.create_posting_task("Post", "hello")
        strategy = ExecutionOrchestrator.create_strategy_task("Plan", TaskPriority.HIGH)

        assert (collect.timeout_ms, collect.config) == (60_000, {"source": "rss"})
        assert analyze.timeout_ms == 120_000
        assert (post.timeout_ms, post.config) == (30_000, {"content": "hello"})
        assert (strategy.timeout_ms, strategy.priority) == (180_000, TaskPriority.HIGH)
        assert collect.id.startswith("collect-")
        assert post.id.startswith("post-")

    def test_long_running_factory_pads_timeout(self) -> None:
        task = ExecutionOrchestrator.create_long_running_task("Crawl", TaskType.COLLECT, 600_000)

        assert task.timeout_ms == 660_000
        assert task.estimated_duration_ms == 600_000
        assert task.id.startswith("long-")
