"""Unit tests for long-running task decomposition."""

import asyncio

import pytest

from taskrelay.core.config import Settings
from taskrelay.core.errors import NotFoundError
from taskrelay.core.models import SubtaskOutcome, Task, TaskStatus, TaskType
from taskrelay.execution.decomposer import (
    LongRunningDecomposer,
    checkpoint_label,
    snapshot_id,
)
from taskrelay.execution.scheduler import ParallelScheduler


@pytest.fixture
def splitter(executors, tracker, channel, settings: Settings) -> LongRunningDecomposer:
    """Decomposer for tests that only plan subtasks."""
    scheduler = ParallelScheduler(executors, tracker, channel, settings)
    return LongRunningDecomposer(scheduler, tracker, channel, settings)


def outcome(index: int, result, duration_ms: int = 100) -> SubtaskOutcome:
    return SubtaskOutcome(
        subtask_id=f"p-subtask-{index}",
        parent_task_id="p",
        index=index,
        result=result,
        checkpoint=f"cp{index}",
        timestamp_ms=1_000 + index,
        duration_ms=duration_ms,
        progress=50,
    )


# =============================================================================
# DECOMPOSITION TESTS
# =============================================================================


class TestDecomposition:
    """Tests for deciding on and planning subtasks."""

    def test_is_long_running(self, splitter: LongRunningDecomposer) -> None:
        assert splitter.is_long_running(Task(name="big", timeout_ms=400_000))
        assert splitter.is_long_running(Task(name="estimated", estimated_duration_ms=10_000))
        assert splitter.is_long_running(Task(name="marked", checkpoints=[]))
        assert not splitter.is_long_running(Task(name="small", timeout_ms=300_000))

    def test_subtask_count_from_estimate(self, splitter: LongRunningDecomposer) -> None:
        task = Task(id="p", name="Crawl", timeout_ms=400_000, estimated_duration_ms=300_000)

        subtasks = splitter.divide_into_subtasks(task)

        assert len(subtasks) == 3
        assert [s.id for s in subtasks] == ["p-subtask-0", "p-subtask-1", "p-subtask-2"]
        assert all(s.timeout_ms == 120_000 for s in subtasks)

    def test_default_estimate(self, splitter: LongRunningDecomposer) -> None:
        assert splitter.subtask_count(Task(name="big", timeout_ms=400_000)) == 5

    def test_collect_phases(self, splitter: LongRunningDecomposer) -> None:
        task = Task(
            id="c",
            name="Collect",
            type=TaskType.COLLECT,
            estimated_duration_ms=240_000,
            config={"source": "rss"},
        )

        subtasks = splitter.divide_into_subtasks(task)

        assert [s.name for s in subtasks] == [
            "Collect - collection phase 1",
            "Collect - collection phase 2",
        ]
        assert subtasks[1].config == {"source": "rss", "phase": 2, "total_phases": 2}

    def test_analyze_capped_at_four_phases(self, splitter: LongRunningDecomposer) -> None:
        task = Task(name="Analyze", type=TaskType.ANALYZE, estimated_duration_ms=1_200_000)

        subtasks = splitter.divide_into_subtasks(task)

        assert [s.config["phase"] for s in subtasks] == [
            "data-prep",
            "basic-analysis",
            "deep-analysis",
            "integration",
        ]
        assert subtasks[2].config["step_number"] == 3

    def test_strategy_phases(self, splitter: LongRunningDecomposer) -> None:
        task = Task(name="Plan", type=TaskType.STRATEGY, estimated_duration_ms=240_000)

        subtasks = splitter.divide_into_subtasks(task)

        assert [s.name for s in subtasks] == ["Plan - assessment", "Plan - planning"]

    def test_default_parts(self, splitter: LongRunningDecomposer) -> None:
        task = Task(name="Export", estimated_duration_ms=360_000)

        subtasks = splitter.divide_into_subtasks(task)

        assert subtasks[0].name == "Export - part 1 of 3"
        assert subtasks[2].config == {"part_number": 3, "total_parts": 3}

    def test_predefined_subtasks_used_verbatim(self, splitter: LongRunningDecomposer) -> None:
        steps = [Task(id="s1", name="one"), Task(id="s2", name="two")]
        task = Task(name="Custom", predefined_subtasks=steps)

        assert splitter.divide_into_subtasks(task) == steps

    def test_checkpoint_label(self) -> None:
        subtask = Task(name="Crawl - collection phase 2")

        assert checkpoint_label(subtask, 1, 3) == "Crawl - collection phase 2_step_2_of_3_67%"
        assert snapshot_id(12) == "step-0012"


# =============================================================================
# EXECUTION TESTS
# =============================================================================


class TestExecution:
    """Tests for executing decomposed tasks."""

    @pytest.mark.asyncio
    async def test_collect_combines_items(
        self, decomposer: LongRunningDecomposer, scripted, tracker
    ) -> None:
        scripted.payloads["c-subtask-0"] = [{"source": "rss", "title": "a"}]
        scripted.payloads["c-subtask-1"] = [
            {"source": "api", "title": "b"},
            {"source": "rss", "title": "c"},
        ]
        task = Task(id="c", name="Collect", type=TaskType.COLLECT, estimated_duration_ms=240_000)

        result = await decomposer.execute(task)

        assert result.success
        combined = result.data["combined_data"]
        assert combined["total_items"] == 3
        assert combined["sources"] == ["rss", "api"]
        assert result.data["summary"]["success_rate"] == 100
        assert (await tracker.get("c")).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_checkpoints(
        self, decomposer: LongRunningDecomposer, scripted, tracker, channel
    ) -> None:
        """Test a failed subtask stops the loop but keeps completed work."""
        scripted.failures["job-subtask-2"] = "quota exceeded"
        task = Task(id="job", name="Job", estimated_duration_ms=480_000)

        result = await decomposer.execute(task)

        assert not result.success
        assert result.error.startswith("Subtask job-subtask-2 failed:")
        assert "job-subtask-3" not in scripted.calls
        assert len(await decomposer.list_checkpoints("job")) == 2

        record = await tracker.get("job")
        assert record.status == TaskStatus.FAILED
        assert record.progress == 50
        assert (await channel.load_task_result("job")).success is False

    @pytest.mark.asyncio
    async def test_resume_reports_last_checkpoint(
        self, decomposer: LongRunningDecomposer, scripted
    ) -> None:
        scripted.failures["job-subtask-2"] = "quota exceeded"
        task = Task(id="job", name="Job", estimated_duration_ms=480_000)
        await decomposer.execute(task)

        resumed = await decomposer.resume_from_checkpoint("job")

        assert resumed.success
        assert resumed.data["last_checkpoint"] == "Job - part 2 of 4_step_2_of_4_50%"
        assert resumed.data["progress"] == 50
        assert resumed.data["previous_result"]["subtask_id"] == "job-subtask-1"

    @pytest.mark.asyncio
    async def test_resume_without_snapshot_raises(
        self, decomposer: LongRunningDecomposer
    ) -> None:
        with pytest.raises(NotFoundError, match="Checkpoint not found"):
            await decomposer.resume_from_checkpoint("never-ran")

    @pytest.mark.asyncio
    async def test_continue_skips_completed_subtasks(
        self, decomposer: LongRunningDecomposer, scripted
    ) -> None:
        scripted.failures["job-subtask-2"] = "quota exceeded"
        task = Task(id="job", name="Job", estimated_duration_ms=480_000)
        await decomposer.execute(task)
        del scripted.failures["job-subtask-2"]
        scripted.calls.clear()

        result = await decomposer.continue_from_checkpoint(task)

        assert result.success
        assert scripted.calls == ["job-subtask-2", "job-subtask-3"]
        assert result.data["combined_data"]["parts"] == [
            {"task": f"job-subtask-{i}"} for i in range(4)
        ]

    @pytest.mark.asyncio
    async def test_progress_never_decreases(
        self, decomposer: LongRunningDecomposer, tracker, monkeypatch
    ) -> None:
        seen: list[int] = []
        save = tracker._save

        async def recording_save(record):
            if record.task_id == "job":
                seen.append(record.progress)
            return await save(record)

        monkeypatch.setattr(tracker, "_save", recording_save)

        await decomposer.execute(Task(id="job", name="Job", estimated_duration_ms=360_000))

        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert 33 in seen and 67 in seen

    @pytest.mark.asyncio
    async def test_concurrent_execution_rejected(
        self, decomposer: LongRunningDecomposer, scripted
    ) -> None:
        scripted.delays["job-subtask-0"] = 0.05
        task = Task(id="job", name="Job", estimated_duration_ms=120_000)

        first, second = await asyncio.gather(decomposer.execute(task), decomposer.execute(task))

        assert first.success
        assert "already running" in second.error


# =============================================================================
# COMBINATION TESTS
# =============================================================================


class TestCombination:
    """Tests for the static combine and summarize helpers."""

    def test_analysis_phases(self) -> None:
        combined = LongRunningDecomposer.combine(
            TaskType.ANALYZE, [outcome(0, {"score": 1}), outcome(1, {"score": 2})]
        )

        assert [p["phase"] for p in combined["analysis_phases"]] == ["cp0", "cp1"]
        assert combined["final_analysis"] == {"score": 2}

    def test_strategy_final(self) -> None:
        combined = LongRunningDecomposer.combine(TaskType.STRATEGY, [outcome(0, "ready")])

        assert combined["final_strategy"] == "ready"

    def test_summary(self) -> None:
        summary = LongRunningDecomposer.summarize(
            [outcome(0, {"ok": True}, 100), outcome(1, None, 300)]
        )

        assert summary["success_rate"] == 50
        assert summary["total_duration_ms"] == 400
        assert summary["average_subtask_duration_ms"] == 200
        assert summary["checkpoints"] == ["cp0", "cp1"]

    def test_empty_summary(self) -> None:
        assert LongRunningDecomposer.summarize([])["success_rate"] == 0
