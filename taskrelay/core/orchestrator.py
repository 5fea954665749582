"""Execution orchestrator - the single entry point for running tasks.

Wires the durable store, data channel, status tracker, scheduler,
decomposer and async registry together, and announces workflow lifecycle
events on the mailbox.
"""

import time
from pathlib import Path
from typing import Any

from loguru import logger

from taskrelay.core.config import Settings, get_settings
from taskrelay.core.models import (
    ExecutionPlan,
    Task,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    generate_id,
    now_ms,
)
from taskrelay.execution.decomposer import LongRunningDecomposer
from taskrelay.execution.executors import ExecutorRegistry
from taskrelay.execution.registry import AsyncTaskRegistry, WaitStrategy
from taskrelay.execution.scheduler import ParallelScheduler
from taskrelay.execution.tracker import TaskStatusTracker
from taskrelay.storage import create_store
from taskrelay.storage.base import DurableStore
from taskrelay.storage.channel import DataChannel

SENDER = "execution-orchestrator"
LONG_RUNNING_BUFFER_MS = 60_000


class ExecutionOrchestrator:
    """
    Main TaskRelay orchestrator.

    Routes each task to the right execution model:
    1. Short tasks run through the scheduler's timeout wrapper
    2. Long-running tasks are decomposed into checkpointed subtasks
    3. Task lists are scheduled as priority groups plus sequential tasks
    4. Background tasks are tracked by the async registry

    Example:
        >>> orchestrator = await ExecutionOrchestrator.create(executors=registry)
        >>> results = await orchestrator.run_workflow([
        ...     orchestrator.create_collection_task("Collect news", TaskPriority.HIGH),
        ...     orchestrator.create_analysis_task("Analyze trends"),
        ... ])
        >>> [r.success for r in results]
        [True, True]
    """

    def __init__(
        self,
        executors: ExecutorRegistry,
        settings: Settings | None = None,
        store: DurableStore | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            executors: Type-keyed task executors.
            settings: Optional settings override. Uses default if not provided.
            store: Optional store. Built from settings if not provided.
        """
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.executors = executors

        self.channel = DataChannel(
            self.store,
            intermediate_ttl_ms=self.settings.relay_intermediate_ttl_ms,
        )
        self.tracker = TaskStatusTracker(self.store)
        self.scheduler = ParallelScheduler(executors, self.tracker, self.channel, self.settings)
        self.decomposer = LongRunningDecomposer(
            self.scheduler, self.tracker, self.channel, self.settings
        )
        self.registry = AsyncTaskRegistry(
            self.scheduler, self.decomposer, self.tracker, self.channel, self.settings
        )

        self._started_at = time.monotonic()

    @classmethod
    async def create(
        cls,
        executors: ExecutorRegistry,
        settings: Settings | None = None,
        store: DurableStore | None = None,
    ) -> "ExecutionOrchestrator":
        """Build an orchestrator and announce it on the mailbox."""
        orchestrator = cls(executors, settings=settings, store=store)
        await orchestrator.channel.broadcast_status(
            SENDER, "initialized", {"timestamp_ms": now_ms()}
        )
        logger.info("Execution orchestrator initialized")
        return orchestrator

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def plan(self, tasks: list[Task]) -> ExecutionPlan:
        return self.scheduler.plan(tasks)

    async def execute_task(self, task: Task) -> TaskResult:
        """Execute one task, decomposing it when it is long-running."""
        if self.decomposer.is_long_running(task):
            return await self.decomposer.execute(task)
        return await self.scheduler.execute_with_timeout(task, task.timeout_ms)

    async def execute_tasks_in_parallel(self, tasks: list[Task]) -> list[TaskResult]:
        return await self.scheduler.run(tasks)

    async def execute_task_async(self, task: Task) -> str:
        """Start ``task`` in the background; returns the handle id."""
        return await self.registry.start(task)

    async def run_workflow(self, tasks: list[Task]) -> list[TaskResult]:
        """
        Plan and run a task list, announcing start and completion.

        Args:
            tasks: Tasks to execute.

        Returns:
            Results in execution order.

        Raises:
            GroupExecutionError: A task failed inside an ``all`` group. An
                ``error`` message is broadcast before re-raising.
        """
        try:
            plan = self.scheduler.plan(tasks)
            await self.channel.broadcast_status(
                SENDER,
                "workflow_started",
                {
                    "total_tasks": len(tasks),
                    "parallel_groups": len(plan.parallel_groups),
                    "sequential_tasks": len(plan.sequential_tasks),
                    "estimated_duration_ms": plan.estimated_duration_ms,
                },
            )

            results = await self.scheduler.run(tasks)

            succeeded = [r for r in results if r.success]
            await self.channel.broadcast_status(
                SENDER,
                "workflow_completed",
                {
                    "total_tasks": len(tasks),
                    "successful_tasks": len(succeeded),
                    "failed_tasks": len(results) - len(succeeded),
                    "results": [
                        {"task_id": r.task_id, "success": r.success, "duration_ms": r.duration_ms}
                        for r in results
                    ],
                },
            )
            return results

        except Exception as e:
            logger.error(f"Workflow failed: {e}")
            try:
                await self.channel.notify_error(
                    SENDER, str(e), {"tasks": [t.id for t in tasks]}
                )
            except Exception as notify_error:
                logger.error(f"Could not announce workflow failure: {notify_error}")
            raise

    async def execute_async_batch(self, tasks: list[Task]) -> list[str]:
        task_ids = await self.registry.start_batch(tasks)
        await self.channel.broadcast_status(
            SENDER,
            "async_batch_started",
            {
                "batch_id": generate_id("batch"),
                "task_ids": task_ids,
                "total_tasks": len(tasks),
            },
        )
        return task_ids

    async def wait_for_async_batch(
        self,
        task_ids: list[str],
        strategy: WaitStrategy = "all",
        timeout_ms: int | None = None,
    ) -> list[TaskResult]:
        return await self.registry.wait_batch(task_ids, strategy, timeout_ms)

    # =========================================================================
    # STATUS AND MAINTENANCE
    # =========================================================================

    async def get_execution_status(self) -> dict[str, Any]:
        """Scheduler counts, async task breakdown and system info."""
        scheduler_status = await self.scheduler.get_execution_status()

        async_records = [
            r for r in await self.tracker.list_all() if r.task_id.startswith("async-")
        ]
        breakdown = {status.value: 0 for status in TaskStatus}
        for record in async_records:
            breakdown[record.status.value] += 1

        return {
            "parallel": scheduler_status,
            "async": {
                "total_tasks": len(async_records),
                **breakdown,
                **self.registry.get_statistics(),
            },
            "system": {
                "storage_backend": self.settings.relay_storage_backend,
                "data_directory": str(Path(self.settings.relay_data_dir).resolve()),
                "uptime_ms": int((time.monotonic() - self._started_at) * 1000),
            },
        }

    async def maintenance(self) -> dict[str, int]:
        """
        Sweep aged records. Errors are logged and never raised.

        Returns:
            Number of records removed per sweep.
        """
        settings = self.settings
        sweeps = {
            "messages": lambda: self.channel.cleanup_old_messages(settings.relay_message_max_age_ms),
            "intermediate_results": lambda: self.channel.cleanup_expired_results(),
            "contexts": lambda: self.channel.cleanup_old_contexts(settings.relay_context_max_age_ms),
            "statuses": lambda: self.tracker.cleanup_terminal(settings.relay_status_max_age_ms),
            "cached_results": lambda: self.registry.cleanup_completed(
                settings.relay_completed_task_max_age_ms
            ),
        }

        removed: dict[str, int] = {}
        for name, sweep in sweeps.items():
            try:
                removed[name] = await sweep()
            except Exception as e:
                logger.error(f"Maintenance step '{name}' failed: {e}")

        try:
            await self.channel.broadcast_status(
                SENDER, "maintenance_completed", {"timestamp_ms": now_ms(), "removed": removed}
            )
        except Exception as e:
            logger.error(f"Could not announce maintenance: {e}")

        logger.info(f"Maintenance completed: {removed}")
        return removed

    async def recover(self) -> list[str]:
        """Fail tasks left running by a previous process."""
        return await self.registry.recover_interrupted()

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        await self.scheduler.shutdown()
        logger.info("Execution orchestrator shut down")

    # =========================================================================
    # TASK FACTORIES
    # =========================================================================

    @staticmethod
    def create_collection_task(
        name: str,
        priority: TaskPriority = TaskPriority.MEDIUM,
        **config: Any,
    ) -> Task:
        return Task(
            id=generate_id("collect"),
            name=name,
            type=TaskType.COLLECT,
            priority=priority,
            timeout_ms=60_000,
            config=config,
        )

    @staticmethod
    def create_analysis_task(
        name: str,
        priority: TaskPriority = TaskPriority.MEDIUM,
        **config: Any,
    ) -> Task:
        return Task(
            id=generate_id("analyze"),
            name=name,
            type=TaskType.ANALYZE,
            priority=priority,
            timeout_ms=120_000,
            config=config,
        )

    @staticmethod
    def create_posting_task(
        name: str,
        content: str,
        priority: TaskPriority = TaskPriority.MEDIUM,
    ) -> Task:
        return Task(
            id=generate_id("post"),
            name=name,
            type=TaskType.POST,
            priority=priority,
            timeout_ms=30_000,
            config={"content": content},
        )

    @staticmethod
    def create_strategy_task(
        name: str,
        priority: TaskPriority = TaskPriority.MEDIUM,
        **config: Any,
    ) -> Task:
        return Task(
            id=generate_id("strategy"),
            name=name,
            type=TaskType.STRATEGY,
            priority=priority,
            timeout_ms=180_000,
            config=config,
        )

    @staticmethod
    def create_long_running_task(
        name: str,
        task_type: TaskType,
        estimated_duration_ms: int,
        priority: TaskPriority = TaskPriority.MEDIUM,
        **config: Any,
    ) -> Task:
        """Task carrying an estimate, with a timeout padded by a fixed buffer."""
        return Task(
            id=generate_id("long"),
            name=name,
            type=task_type,
            priority=priority,
            estimated_duration_ms=estimated_duration_ms,
            timeout_ms=estimated_duration_ms + LONG_RUNNING_BUFFER_MS,
            config=config,
        )
