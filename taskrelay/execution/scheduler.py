"""
Parallel scheduler for TaskRelay.

Splits a task list into priority groups of independent tasks (run
concurrently under a join strategy) and dependent tasks (run one at a time),
and provides the single-task timeout wrapper every other component uses.
"""

import asyncio
import time
from collections.abc import Callable

from loguru import logger
from pydantic_core import PydanticSerializationError, to_jsonable_python

from taskrelay.core.config import Settings, get_settings
from taskrelay.core.errors import (
    ConcurrentExecutionError,
    GroupExecutionError,
    TaskRelayError,
    TaskTimeoutError,
)
from taskrelay.core.models import (
    ExecutionPlan,
    JoinStrategy,
    ParallelTaskGroup,
    Task,
    TaskPriority,
    TaskResult,
    TaskStatus,
    now_ms,
)
from taskrelay.execution.executors import CancellationToken, ExecutorRegistry
from taskrelay.execution.tracker import TaskStatusTracker
from taskrelay.storage.channel import DataChannel

ExecutionCallback = Callable[[str, TaskResult], None]


class ParallelScheduler:
    """
    Execute task lists with priority groups, join strategies and timeouts.

    Groups run in priority order (high, medium, low); tasks inside a group
    run concurrently and their results keep input order. Dependent tasks run
    afterwards, strictly one at a time.

    Example:
        >>> scheduler = ParallelScheduler(executors, tracker, channel)
        >>> results = await scheduler.run(tasks)
        >>> [r.success for r in results]
        [True, True, False]
    """

    def __init__(
        self,
        executors: ExecutorRegistry,
        tracker: TaskStatusTracker,
        channel: DataChannel,
        settings: Settings | None = None,
    ) -> None:
        self.executors = executors
        self.tracker = tracker
        self.channel = channel
        self.settings = settings or get_settings()
        self._inflight: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._callbacks: list[ExecutionCallback] = []

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def add_callback(self, callback: ExecutionCallback) -> None:
        """Add a callback for task completion events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: ExecutionCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _emit_callback(self, task_id: str, result: TaskResult) -> None:
        for callback in self._callbacks:
            try:
                callback(task_id, result)
            except Exception as e:
                logger.warning(f"Callback error: {e}")

    # =========================================================================
    # PLANNING
    # =========================================================================

    @staticmethod
    def identify_parallel_tasks(tasks: list[Task]) -> tuple[list[Task], list[Task]]:
        """Split into (parallel-eligible, sequential) preserving input order."""
        parallel = [t for t in tasks if t.is_parallel_eligible]
        sequential = [t for t in tasks if not t.is_parallel_eligible]
        return parallel, sequential

    def create_parallel_groups(self, tasks: list[Task]) -> list[ParallelTaskGroup]:
        """At most one group per priority, ordered high to low."""
        groups = []
        stamp = now_ms()
        for priority in sorted(TaskPriority, key=lambda p: p.rank):
            members = [t for t in tasks if t.priority == priority]
            if not members:
                continue
            groups.append(
                ParallelTaskGroup(
                    id=f"{priority.value}-priority-{stamp}",
                    priority=priority,
                    tasks=members,
                    strategy=self.settings.group_strategy(priority),
                    timeout_ms=self.settings.group_timeout_ms(priority),
                )
            )
        return groups

    def plan(self, tasks: list[Task]) -> ExecutionPlan:
        """Advisory plan: max group timeout plus the sum of sequential timeouts."""
        parallel, sequential = self.identify_parallel_tasks(tasks)
        groups = self.create_parallel_groups(parallel)
        parallel_ms = max((g.timeout_ms for g in groups), default=0)
        sequential_ms = sum(t.timeout_ms for t in sequential)
        return ExecutionPlan(
            parallel_groups=groups,
            sequential_tasks=sequential,
            estimated_duration_ms=parallel_ms + sequential_ms,
        )

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def run(self, tasks: list[Task]) -> list[TaskResult]:
        """
        Execute all tasks and return their results in execution order.

        Raises:
            GroupExecutionError: A task failed inside an ``all`` group.
        """
        plan = self.plan(tasks)
        logger.info(
            f"Running {len(tasks)} tasks: {len(plan.parallel_groups)} parallel group(s), "
            f"{len(plan.sequential_tasks)} sequential"
        )

        results: list[TaskResult] = []
        for group in plan.parallel_groups:
            results.extend(await self.execute_group(group))

        for task in plan.sequential_tasks:
            results.append(await self.execute_with_timeout(task, task.timeout_ms))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Run complete: {succeeded} succeeded, {len(results) - succeeded} failed")
        return results

    async def execute_group(self, group: ParallelTaskGroup) -> list[TaskResult]:
        """Run one group under its join strategy."""
        logger.info(
            f"Executing group {group.id} ({group.strategy.value}) with {len(group.tasks)} tasks"
        )

        if group.strategy == JoinStrategy.ALL:
            return await self._join_all(group)
        if group.strategy == JoinStrategy.RACE:
            return await self._join_race(group)
        return await self._join_settled(group)

    def _group_timeout(self, task: Task, group: ParallelTaskGroup) -> int:
        return min(task.timeout_ms, group.timeout_ms)

    async def _join_all(self, group: ParallelTaskGroup) -> list[TaskResult]:
        async def _strict(task: Task) -> TaskResult:
            result = await self.execute_with_timeout(task, self._group_timeout(task, group))
            if not result.success:
                raise GroupExecutionError(group.id, result)
            return result

        futures = [asyncio.ensure_future(_strict(task)) for task in group.tasks]
        try:
            return list(await asyncio.gather(*futures))
        except GroupExecutionError as e:
            logger.error(f"Group {group.id} aborted: {e}")
            for future in futures:
                if not future.done():
                    future.cancel()
            # Let cancelled siblings record their own failed results.
            await asyncio.gather(*futures, return_exceptions=True)
            raise

    async def _join_race(self, group: ParallelTaskGroup) -> list[TaskResult]:
        futures = [
            asyncio.ensure_future(
                self.execute_with_timeout(task, self._group_timeout(task, group))
            )
            for task in group.tasks
        ]
        done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_COMPLETED)
        winner = next(f for f in futures if f in done)

        # Losers keep running; hold references so they are not garbage collected.
        for future in pending:
            self._background.add(future)
            future.add_done_callback(self._background.discard)

        return [winner.result()]

    async def _join_settled(self, group: ParallelTaskGroup) -> list[TaskResult]:
        outcomes = await asyncio.gather(
            *(
                self.execute_with_timeout(task, self._group_timeout(task, group))
                for task in group.tasks
            ),
            return_exceptions=True,
        )

        results = []
        for task, outcome in zip(group.tasks, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(f"Task {task.id} raised in settled group {group.id}: {outcome!r}")
                results.append(TaskResult.failure(task.id, outcome))
            else:
                results.append(outcome)
        return results

    async def execute_with_timeout(self, task: Task, timeout_ms: int | None = None) -> TaskResult:
        """
        Execute a single task raced against a timeout.

        Always converges to a TaskResult: timeouts and executor errors become
        failed results. The status record and the result are persisted
        before this returns. Outside cancellation is recorded as a failed
        result and then re-raised, unless the executor had already finished,
        in which case its own result is kept.

        Args:
            task: Task to execute.
            timeout_ms: Time budget (defaults to ``task.timeout_ms``).

        Returns:
            TaskResult for this attempt.
        """
        timeout = timeout_ms or task.timeout_ms
        if task.id in self._inflight:
            error = ConcurrentExecutionError(f"Task {task.id} is already running")
            logger.warning(str(error))
            return TaskResult.failure(task.id, error)

        self._inflight.add(task.id)
        token = CancellationToken()
        started = time.monotonic()
        recording: asyncio.Task | None = None
        try:
            record = await self.tracker.get(task.id)
            if record is None or record.status.is_terminal:
                await self.tracker.create(task.id)
            await self.tracker.mark_running(task.id)

            logger.info(f"Executing task: {task.id} - {task.name} (timeout {timeout}ms)")
            try:
                payload = await asyncio.wait_for(
                    self.executors.dispatch(task, token),
                    timeout=timeout / 1000,
                )
                result = TaskResult(
                    task_id=task.id,
                    success=True,
                    data=to_jsonable_python(payload),
                    duration_ms=elapsed_ms(started),
                )
            except asyncio.TimeoutError:
                token.cancel("timeout")
                error = TaskTimeoutError(f"Task timed out after {timeout}ms: {task.name}", timeout)
                logger.error(str(error))
                result = TaskResult.failure(task.id, error, elapsed_ms(started))
            except PydanticSerializationError as e:
                logger.error(f"Task {task.id} returned a non-serializable payload: {e}")
                result = TaskResult.failure(
                    task.id, f"Non-serializable payload: {e}", elapsed_ms(started)
                )
            except TaskRelayError as e:
                logger.error(f"Task {task.id} failed: {e}")
                result = TaskResult.failure(task.id, e, elapsed_ms(started))

            recording = asyncio.create_task(self._record(task, result))
            await asyncio.shield(recording)
            return result

        except asyncio.CancelledError:
            token.cancel()
            if recording is None:
                result = TaskResult.failure(
                    task.id, f"Task cancelled: {task.name}", elapsed_ms(started)
                )
                logger.warning(f"Task {task.id} cancelled")
                recording = asyncio.create_task(self._record(task, result))
            else:
                logger.warning(f"Task {task.id} cancelled after finishing, keeping its result")
            # One result per attempt; it lands even if the caller stops waiting.
            await asyncio.wait([recording])
            raise
        finally:
            self._inflight.discard(task.id)

    async def _record(self, task: Task, result: TaskResult) -> None:
        if result.success:
            await self.channel.save_intermediate_result(task.id, result.data)
            await self.tracker.mark_completed(task.id)
        else:
            await self.tracker.mark_failed(task.id, result.error or "unknown error")
        await self.channel.save_task_result(result)
        self._emit_callback(task.id, result)

    # =========================================================================
    # STATUS
    # =========================================================================

    def is_running(self, task_id: str) -> bool:
        return task_id in self._inflight

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._inflight)

    async def get_execution_status(self) -> dict[str, int]:
        """Counts of active (pending or running) tasks."""
        active = await self.tracker.list_active()
        running = sum(1 for r in active if r.status == TaskStatus.RUNNING)
        return {
            "active_tasks": running,
            "pending_tasks": len(active) - running,
            "total_tasks": len(active),
            "in_flight": len(self._inflight),
        }

    async def shutdown(self) -> None:
        """Cancel race losers still running in the background."""
        for future in list(self._background):
            future.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()


def elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))
