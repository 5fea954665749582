"""
Async task registry - fire, poll, wait and cancel background executions.

Every started task gets a handle id (``async-<ms>-<hex>``) with its own
status record and result. Completion is announced on the mailbox by a
monitor coroutine, which also evicts the handle.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from taskrelay.core.config import Settings, get_settings
from taskrelay.core.errors import (
    ExecutorError,
    NoValidTasksError,
    NotFoundError,
    StoreError,
    TaskRelayError,
    TaskTimeoutError,
)
from taskrelay.core.models import Task, TaskResult, TaskStatusRecord, generate_id, now_ms
from taskrelay.execution.decomposer import LongRunningDecomposer
from taskrelay.execution.executors import CancellationToken
from taskrelay.execution.scheduler import ParallelScheduler
from taskrelay.execution.tracker import TaskStatusTracker
from taskrelay.storage.channel import DataChannel

SENDER = "async-task-registry"

WaitStrategy = Literal["all", "any"]


@dataclass
class AsyncTaskHandle:
    """A background execution owned by the registry."""

    task_id: str
    task: Task
    future: asyncio.Task
    token: CancellationToken
    start_time_ms: int = field(default_factory=now_ms)

    @property
    def done(self) -> bool:
        return self.future.done()


@dataclass
class _Finished:
    task: Task
    result: TaskResult
    finished_at_ms: int = field(default_factory=now_ms)


class AsyncTaskRegistry:
    """
    Registry of background task executions.

    Example:
        >>> task_id = await registry.start(task)
        >>> await registry.get_progress(task_id)
        0
        >>> result = await registry.wait(task_id, timeout_ms=10_000)
    """

    def __init__(
        self,
        scheduler: ParallelScheduler,
        decomposer: LongRunningDecomposer,
        tracker: TaskStatusTracker,
        channel: DataChannel,
        settings: Settings | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.decomposer = decomposer
        self.tracker = tracker
        self.channel = channel
        self.settings = settings or get_settings()
        self._handles: dict[str, AsyncTaskHandle] = {}
        self._finished: dict[str, _Finished] = {}
        self._monitors: set[asyncio.Task] = set()

    # =========================================================================
    # START / CANCEL
    # =========================================================================

    async def start(self, task: Task) -> str:
        """Launch ``task`` in the background and return its handle id."""
        task_id = generate_id("async")
        await self.tracker.create(task_id)

        token = CancellationToken()
        future = asyncio.create_task(self._execute(task_id, task, token), name=task_id)
        handle = AsyncTaskHandle(task_id=task_id, task=task, future=future, token=token)
        self._handles[task_id] = handle

        monitor = asyncio.create_task(self._monitor(handle), name=f"monitor-{task_id}")
        self._monitors.add(monitor)
        monitor.add_done_callback(self._monitors.discard)

        logger.info(f"Started async task {task_id} for {task.id} - {task.name}")
        return task_id

    async def start_batch(self, tasks: list[Task]) -> list[str]:
        return [await self.start(task) for task in tasks]

    async def _execute(self, task_id: str, task: Task, token: CancellationToken) -> TaskResult:
        try:
            token.raise_if_cancelled()
            await self.tracker.mark_running(task_id)

            if self.decomposer.is_long_running(task):
                result = await self.decomposer.execute(task)
            else:
                result = await self.scheduler.execute_with_timeout(task, task.timeout_ms)

            token.raise_if_cancelled()
        except asyncio.CancelledError:
            await self.tracker.mark_failed(task_id, "cancelled")
            raise

        if result.success:
            await self.tracker.mark_completed(task_id)
        else:
            await self.tracker.mark_failed(task_id, result.error or "unknown error")
        await self.channel.save_task_result(result, task_id=task_id)

        if not result.success:
            raise ExecutorError(task.id, task.type.value, result.error or "unknown error")
        return result

    async def _monitor(self, handle: AsyncTaskHandle) -> None:
        task_id = handle.task_id
        try:
            result = await asyncio.shield(handle.future)
        except asyncio.CancelledError:
            if not handle.future.cancelled():
                raise
            self._finished[task_id] = _Finished(
                handle.task, TaskResult.failure(handle.task.id, "cancelled")
            )
            await self._notify_error(task_id, "cancelled")
        except Exception as e:
            error = e.cause if isinstance(e, ExecutorError) else e
            self._finished[task_id] = _Finished(
                handle.task, TaskResult.failure(handle.task.id, error)
            )
            logger.error(f"Async task {task_id} failed: {e}")
            await self._notify_error(task_id, str(e))
        else:
            self._finished[task_id] = _Finished(handle.task, result)
            logger.info(f"Async task {task_id} completed")
            try:
                await self.channel.notify_result(
                    SENDER,
                    "system",
                    {
                        "task_id": task_id,
                        "result": result.model_dump(mode="json"),
                        "completed_at_ms": now_ms(),
                    },
                )
            except StoreError as e:
                logger.error(f"Could not announce completion of {task_id}: {e}")
        finally:
            self._handles.pop(task_id, None)

    async def _notify_error(self, task_id: str, error: str) -> None:
        try:
            await self.channel.notify_error(SENDER, error, {"task_id": task_id})
        except StoreError as e:
            logger.error(f"Could not announce failure of {task_id}: {e}")

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a running task.

        Returns:
            True if a handle existed, False otherwise (nothing is changed).
        """
        handle = self._handles.get(task_id)
        if handle is None:
            return False

        handle.token.cancel("cancelled")
        handle.future.cancel()
        await self.tracker.mark_failed(task_id, "cancelled")
        self._handles.pop(task_id, None)
        logger.info(f"Cancelled async task {task_id}")
        return True

    # =========================================================================
    # WAITING
    # =========================================================================

    def _future_for(self, task_id: str) -> asyncio.Future | None:
        handle = self._handles.get(task_id)
        if handle is not None:
            return handle.future

        finished = self._finished.get(task_id)
        if finished is None:
            return None

        # Finished before anyone waited; replay the cached outcome.
        future = asyncio.get_running_loop().create_future()
        if finished.result.success:
            future.set_result(finished.result)
        else:
            future.set_exception(
                ExecutorError(
                    finished.task.id,
                    finished.task.type.value,
                    finished.result.error or "unknown error",
                )
            )
        return future

    @staticmethod
    def _outcome(future: asyncio.Future) -> TaskResult:
        # Only handle futures (asyncio.Task) can be cancelled; replayed ones never are.
        if future.cancelled():
            raise ExecutorError(future.get_name(), "async", "cancelled")
        return future.result()

    async def wait(self, task_id: str, timeout_ms: int | None = None) -> TaskResult:
        """
        Wait for one task.

        Raises:
            NotFoundError: Unknown handle id.
            TaskTimeoutError: ``timeout_ms`` elapsed first.
            ExecutorError: The task failed.
        """
        timeout = timeout_ms or self.settings.relay_wait_timeout_ms
        future = self._future_for(task_id)
        if future is None:
            raise NotFoundError(f"Task not found: {task_id}")

        done, _ = await asyncio.wait({future}, timeout=timeout / 1000)
        if not done:
            raise TaskTimeoutError(f"Timed out waiting for task {task_id}", timeout)
        return self._outcome(future)

    async def wait_many(
        self,
        task_ids: list[str],
        strategy: WaitStrategy = "all",
        timeout_ms: int | None = None,
    ) -> list[TaskResult]:
        """
        Wait for several tasks; unknown ids are skipped.

        ``all`` returns every result in input order and fails fast on the
        first failure. ``any`` returns a one-element list with the first
        task to settle.

        Raises:
            NoValidTasksError: None of the ids is known.
            TaskTimeoutError: ``timeout_ms`` elapsed first.
            ExecutorError: A task failed.
        """
        timeout = timeout_ms or self.settings.relay_wait_timeout_ms
        futures = [f for f in (self._future_for(i) for i in task_ids) if f is not None]
        if not futures:
            raise NoValidTasksError("No valid tasks found")

        if strategy == "any":
            done, _ = await asyncio.wait(
                futures, timeout=timeout / 1000, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                raise TaskTimeoutError("Timed out waiting for any task", timeout)
            winner = next(f for f in futures if f in done)
            return [self._outcome(winner)]

        done, pending = await asyncio.wait(
            futures, timeout=timeout / 1000, return_when=asyncio.FIRST_EXCEPTION
        )
        for future in futures:
            if future in done:
                # Surfaces the first failure in input order.
                self._outcome(future)
        if pending:
            raise TaskTimeoutError(
                f"Timed out waiting for {len(pending)} of {len(futures)} tasks", timeout
            )
        return [self._outcome(f) for f in futures]

    async def wait_batch(
        self,
        task_ids: list[str],
        strategy: WaitStrategy = "all",
        timeout_ms: int | None = None,
    ) -> list[TaskResult]:
        """``wait_many`` that falls back to whatever results are already available."""
        timeout = timeout_ms or self.settings.relay_batch_wait_timeout_ms
        try:
            return await self.wait_many(task_ids, strategy, timeout)
        except TaskRelayError as e:
            partial = []
            for task_id in task_ids:
                if await self.is_complete(task_id):
                    result = await self.get_result(task_id)
                    if result is not None:
                        partial.append(result)
            if not partial:
                raise
            logger.warning(
                f"Batch wait failed ({e}); returning {len(partial)}/{len(task_ids)} partial results"
            )
            return partial

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_status(self, task_id: str) -> TaskStatusRecord | None:
        return await self.tracker.get(task_id)

    async def get_progress(self, task_id: str) -> int:
        return await self.tracker.get_progress(task_id)

    async def is_complete(self, task_id: str) -> bool:
        return await self.tracker.is_complete(task_id)

    async def get_result(self, task_id: str) -> TaskResult | None:
        """Result from the in-memory cache, then from the store."""
        finished = self._finished.get(task_id)
        if finished is not None:
            return finished.result
        return await self.channel.load_task_result(task_id)

    def running_tasks(self) -> list[AsyncTaskHandle]:
        return list(self._handles.values())

    def is_tracking(self, task_id: str) -> bool:
        return task_id in self._handles

    def get_statistics(self) -> dict[str, int]:
        return {"running": len(self._handles), "finished_cached": len(self._finished)}

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def cleanup_completed(
        self,
        max_age_ms: int | None = None,
        now: int | None = None,
    ) -> int:
        """Drop cached results of tasks that finished more than ``max_age_ms`` ago."""
        max_age = max_age_ms or self.settings.relay_completed_task_max_age_ms
        current = now if now is not None else now_ms()
        expired = [
            task_id
            for task_id, finished in self._finished.items()
            if current - finished.finished_at_ms > max_age
        ]
        for task_id in expired:
            del self._finished[task_id]
        if expired:
            logger.debug(f"Dropped {len(expired)} cached async result(s)")
        return len(expired)

    async def recover_interrupted(self) -> list[str]:
        """
        Fail status records left active by a previous process.

        Returns:
            Ids of the records that were marked failed.
        """
        recovered = []
        for record in await self.tracker.list_active():
            task_id = record.task_id
            if (
                task_id in self._handles
                or self.scheduler.is_running(task_id)
                or self.decomposer.is_running(task_id)
            ):
                continue
            await self.tracker.mark_failed(task_id, "interrupted by restart")
            recovered.append(task_id)

        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted task(s) as failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every in-flight task and wait for the monitors to settle."""
        for task_id in list(self._handles):
            await self.cancel(task_id)
        if self._monitors:
            await asyncio.gather(*self._monitors, return_exceptions=True)
        logger.info("Async task registry shut down")
