"""
Long-running task decomposition.

A task that is too long for a single timeout budget is split into ordered
subtasks. Each subtask runs through the scheduler's timeout wrapper and is
checkpointed (intermediate result plus context snapshot) before the next one
starts, so a failure or restart never loses completed work.
"""

import asyncio
import math
import time
from typing import Any

from loguru import logger

from taskrelay.core.config import Settings, get_settings
from taskrelay.core.errors import ConcurrentExecutionError, NotFoundError
from taskrelay.core.models import (
    SubtaskOutcome,
    Task,
    TaskResult,
    TaskType,
    now_ms,
)
from taskrelay.execution.scheduler import ParallelScheduler, elapsed_ms
from taskrelay.execution.tracker import TaskStatusTracker
from taskrelay.storage.channel import DataChannel

ANALYSIS_PHASES = ["data-prep", "basic-analysis", "deep-analysis", "integration"]
STRATEGY_PHASES = ["assessment", "planning", "optimization", "readiness"]


def snapshot_id(index: int) -> str:
    """Snapshot id for subtask ``index``; zero padded so ids sort by index."""
    return f"step-{index:04d}"


def checkpoint_label(subtask: Task, index: int, total: int) -> str:
    """Human-readable checkpoint, e.g. ``Collect - phase 2_step_2_of_3_67%``."""
    return f"{subtask.name}_step_{index + 1}_of_{total}_{progress_after(index, total)}%"


def progress_after(index: int, total: int) -> int:
    return round((index + 1) / total * 100)


class LongRunningDecomposer:
    """
    Split, execute and checkpoint long-running tasks.

    Example:
        >>> decomposer = LongRunningDecomposer(scheduler, tracker, channel)
        >>> if decomposer.is_long_running(task):
        ...     result = await decomposer.execute(task)
        >>> await decomposer.list_checkpoints(task.id)
        ['Crawl - phase 1_step_1_of_3_33%', ...]
    """

    def __init__(
        self,
        scheduler: ParallelScheduler,
        tracker: TaskStatusTracker,
        channel: DataChannel,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.scheduler = scheduler
        self.tracker = tracker
        self.channel = channel
        self.long_running_threshold_ms = settings.relay_long_running_threshold_ms
        self.max_subtask_duration_ms = settings.relay_max_subtask_duration_ms
        self.default_estimated_duration_ms = settings.relay_default_estimated_duration_ms
        self._active: set[str] = set()

    # =========================================================================
    # DECOMPOSITION
    # =========================================================================

    def is_long_running(self, task: Task) -> bool:
        return (
            task.timeout_ms > self.long_running_threshold_ms
            or task.estimated_duration_ms is not None
            or bool(task.predefined_subtasks)
            or task.checkpoints is not None
        )

    def is_running(self, task_id: str) -> bool:
        return task_id in self._active

    def subtask_count(self, task: Task) -> int:
        estimated = task.estimated_duration_ms or self.default_estimated_duration_ms
        return max(1, math.ceil(estimated / self.max_subtask_duration_ms))

    def divide_into_subtasks(self, task: Task) -> list[Task]:
        """
        Ordered subtasks for ``task``.

        Predefined subtasks are used verbatim. Otherwise the count comes from
        the estimated duration and the names and config come from a
        per-type template.
        """
        if task.predefined_subtasks:
            return list(task.predefined_subtasks)

        n = self.subtask_count(task)

        if task.type == TaskType.COLLECT:
            specs = [
                (f"collection phase {i + 1}", {"phase": i + 1, "total_phases": n})
                for i in range(n)
            ]
        elif task.type == TaskType.ANALYZE:
            specs = [
                (phase, {"phase": phase, "step_number": i + 1})
                for i, phase in enumerate(ANALYSIS_PHASES[: min(n, len(ANALYSIS_PHASES))])
            ]
        elif task.type == TaskType.STRATEGY:
            specs = [
                (phase, {"phase": phase, "step_number": i + 1})
                for i, phase in enumerate(STRATEGY_PHASES[: min(n, len(STRATEGY_PHASES))])
            ]
        else:
            specs = [
                (f"part {i + 1} of {n}", {"part_number": i + 1, "total_parts": n})
                for i in range(n)
            ]

        return [
            Task(
                id=f"{task.id}-subtask-{i}",
                name=f"{task.name} - {label}",
                type=task.type,
                priority=task.priority,
                timeout_ms=self.max_subtask_duration_ms,
                config={**task.config, **extra},
            )
            for i, (label, extra) in enumerate(specs)
        ]

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, task: Task) -> TaskResult:
        """
        Run every subtask in order, checkpointing after each.

        Stops at the first failed subtask; checkpoints of the subtasks that
        completed before it stay persisted.
        """
        return await self._run(task, {})

    async def continue_from_checkpoint(self, task: Task) -> TaskResult:
        """
        Re-enter the subtask loop after an interruption.

        Subtasks that already have a snapshot are not executed again; their
        stored results are reused when combining.
        """
        subtasks = self.divide_into_subtasks(task)
        done: dict[int, SubtaskOutcome] = {}
        for snapshot in await self.channel.list_context_snapshots(task.id):
            state = snapshot.state
            index = state.get("index")
            if (
                not isinstance(index, int)
                or state.get("total") != len(subtasks)
                or index >= len(subtasks)
                or state.get("subtask_id") != subtasks[index].id
            ):
                logger.warning(f"Skipping stale snapshot {snapshot.id} of {task.id}")
                continue
            done[index] = SubtaskOutcome.model_validate(state)

        logger.info(f"Continuing {task.id}: {len(done)}/{len(subtasks)} subtasks already done")
        return await self._run(task, done, subtasks)

    async def _run(
        self,
        task: Task,
        done: dict[int, SubtaskOutcome],
        subtasks: list[Task] | None = None,
    ) -> TaskResult:
        if task.id in self._active:
            error = ConcurrentExecutionError(f"Task {task.id} is already running")
            logger.warning(str(error))
            return TaskResult.failure(task.id, error)

        self._active.add(task.id)
        started = time.monotonic()
        try:
            subtasks = subtasks if subtasks is not None else self.divide_into_subtasks(task)
            total = len(subtasks)

            record = await self.tracker.get(task.id)
            if record is None or record.status.is_terminal:
                await self.tracker.create(task.id)
            initial = round(len(done) / total * 100) if total else 0
            await self.tracker.mark_running(task.id, progress=initial)
            logger.info(f"Executing long-running task {task.id} as {total} subtask(s)")

            outcomes: list[SubtaskOutcome] = []
            for index, subtask in enumerate(subtasks):
                if index in done:
                    outcomes.append(done[index])
                    continue

                result = await self.scheduler.execute_with_timeout(subtask, subtask.timeout_ms)
                if not result.success:
                    error = f"Subtask {subtask.id} failed: {result.error}"
                    logger.error(f"{task.id} stopped at subtask {index + 1}/{total}: {result.error}")
                    await self.tracker.mark_failed(task.id, error)
                    failed = TaskResult.failure(task.id, error, elapsed_ms(started))
                    await self.channel.save_task_result(failed)
                    return failed

                outcome = await self._checkpoint(task, subtask, index, total, result)
                outcomes.append(outcome)

            data = await self.integrate_results(task, outcomes)
            await self.tracker.mark_completed(task.id)
            logger.info(f"Long-running task {task.id} completed")
            combined = TaskResult(
                task_id=task.id,
                success=True,
                data=data,
                duration_ms=elapsed_ms(started),
            )
            await self.channel.save_task_result(combined)
            return combined

        except asyncio.CancelledError:
            await self.tracker.mark_failed(task.id, "cancelled")
            raise
        finally:
            self._active.discard(task.id)

    async def _checkpoint(
        self,
        task: Task,
        subtask: Task,
        index: int,
        total: int,
        result: TaskResult,
    ) -> SubtaskOutcome:
        progress = progress_after(index, total)
        outcome = SubtaskOutcome(
            subtask_id=subtask.id,
            parent_task_id=task.id,
            index=index,
            result=result.data,
            checkpoint=checkpoint_label(subtask, index, total),
            duration_ms=result.duration_ms,
            progress=progress,
        )
        state = {**outcome.model_dump(mode="json"), "total": total}

        await self.channel.save_intermediate_result(
            task.id, state, result_id=snapshot_id(index)
        )
        await self.channel.save_context_snapshot(
            task.id,
            snapshot_id(index),
            state=state,
            checkpoint=outcome.checkpoint,
            progress=progress,
        )
        await self.tracker.mark_running(task.id, progress=progress)
        logger.debug(f"Checkpoint {outcome.checkpoint}")
        return outcome

    # =========================================================================
    # COMBINATION
    # =========================================================================

    async def integrate_results(
        self,
        task: Task,
        outcomes: list[SubtaskOutcome],
    ) -> dict[str, Any]:
        return {
            "task_id": task.id,
            "task_name": task.name,
            "task_type": task.type.value,
            "completed_at_ms": now_ms(),
            "total_subtasks": len(outcomes),
            "subtask_results": [
                {
                    "subtask_id": o.subtask_id,
                    "checkpoint": o.checkpoint,
                    "progress": o.progress,
                    "timestamp_ms": o.timestamp_ms,
                    "has_data": o.result is not None,
                }
                for o in outcomes
            ],
            "combined_data": self.combine(task.type, outcomes),
            "summary": self.summarize(outcomes),
        }

    @staticmethod
    def combine(task_type: TaskType, outcomes: list[SubtaskOutcome]) -> dict[str, Any]:
        """Merge subtask payloads according to the parent task type."""
        if task_type == TaskType.COLLECT:
            items: list[Any] = []
            for outcome in outcomes:
                if isinstance(outcome.result, list):
                    items.extend(outcome.result)
            sources = list(
                dict.fromkeys(
                    item["source"]
                    for item in items
                    if isinstance(item, dict) and item.get("source") is not None
                )
            )
            timestamps = [o.timestamp_ms for o in outcomes]
            return {
                "total_items": len(items),
                "items": items,
                "sources": sources,
                "time_range": {
                    "start": min(timestamps, default=None),
                    "end": max(timestamps, default=None),
                },
            }

        if task_type in (TaskType.ANALYZE, TaskType.STRATEGY):
            prefix = "analysis" if task_type == TaskType.ANALYZE else "strategy"
            final = "final_analysis" if task_type == TaskType.ANALYZE else "final_strategy"
            return {
                f"{prefix}_phases": [
                    {"phase": o.checkpoint, "result": o.result, "timestamp_ms": o.timestamp_ms}
                    for o in outcomes
                ],
                final: outcomes[-1].result if outcomes else None,
            }

        return {
            "parts": [o.result for o in outcomes],
            "metadata": {"total_parts": len(outcomes), "completed_at_ms": now_ms()},
        }

    @staticmethod
    def summarize(outcomes: list[SubtaskOutcome]) -> dict[str, Any]:
        total = len(outcomes)
        successful = sum(1 for o in outcomes if o.result is not None)
        total_duration = sum(o.duration_ms for o in outcomes)
        return {
            "total_subtasks": total,
            "successful_subtasks": successful,
            "failed_subtasks": total - successful,
            "success_rate": round(successful / total * 100) if total else 0,
            "total_duration_ms": total_duration,
            "average_subtask_duration_ms": round(total_duration / total) if total else 0,
            "checkpoints": [o.checkpoint for o in outcomes],
        }

    # =========================================================================
    # RESUME
    # =========================================================================

    async def resume_from_checkpoint(
        self,
        task_id: str,
        checkpoint: str | None = None,
    ) -> TaskResult:
        """
        Read-only view of the last persisted progress of ``task_id``.

        Raises:
            NotFoundError: If the task has no snapshot.
        """
        snapshot = await self.channel.load_context_snapshot(task_id)
        if snapshot is None:
            raise NotFoundError(f"Checkpoint not found: {task_id}:{checkpoint or 'latest'}")

        previous = await self.channel.load_latest_result(task_id)
        logger.info(f"Resumed {task_id} from {snapshot.checkpoint}")
        return TaskResult(
            task_id=task_id,
            success=True,
            data={
                "task_id": task_id,
                "resumed_from": checkpoint or snapshot.checkpoint,
                "timestamp_ms": now_ms(),
                "previous_result": previous,
                "last_checkpoint": snapshot.checkpoint,
                "progress": snapshot.progress,
            },
        )

    async def list_checkpoints(self, task_id: str) -> list[str]:
        """Checkpoint labels of ``task_id`` in subtask order."""
        snapshots = await self.channel.list_context_snapshots(task_id)
        snapshots.sort(key=lambda s: (s.state.get("index", 0), s.id))
        return [s.checkpoint for s in snapshots]
