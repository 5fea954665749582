"""
Task executors - the boundary to content generation, scraping, posting and
analytics collaborators.

Executors are looked up by task type and receive a cancellation token they
may poll between steps of long operations.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from taskrelay.core.errors import ExecutorError
from taskrelay.core.models import Task, TaskType, now_ms


class CancellationToken:
    """Cooperative cancellation flag shared with an executor."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class TaskExecutor(Protocol):
    """Anything that can execute a task and return a JSON-serializable payload."""

    async def execute(self, task: Task, token: CancellationToken) -> Any: ...


ExecutorFunction = Callable[[Task, CancellationToken], Awaitable[Any]]


class FunctionExecutor:
    """Adapt a plain ``async def fn(task, token)`` to the executor protocol."""

    def __init__(self, func: ExecutorFunction, name: str | None = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    async def execute(self, task: Task, token: CancellationToken) -> Any:
        return await self.func(task, token)

    def __repr__(self) -> str:
        return f"FunctionExecutor({self.name})"


class ExecutorRegistry:
    """
    Map task types to executors.

    Example:
        >>> registry = ExecutorRegistry()
        >>> registry.register(TaskType.POST, posting_executor)
        >>> payload = await registry.dispatch(task, token)
    """

    def __init__(self, executors: dict[TaskType, TaskExecutor] | None = None) -> None:
        self._executors: dict[TaskType, TaskExecutor] = {}
        self._fallback: TaskExecutor | None = None
        for task_type, executor in (executors or {}).items():
            self.register(task_type, executor)

    def register(
        self,
        task_type: TaskType | str,
        executor: TaskExecutor | ExecutorFunction,
    ) -> None:
        """Register an executor (or async function) for a task type."""
        self._executors[TaskType(task_type)] = _adapt(executor)
        logger.debug(f"Registered executor for '{TaskType(task_type).value}'")

    def set_fallback(self, executor: TaskExecutor | ExecutorFunction | None) -> None:
        """Executor used for types without a dedicated one."""
        self._fallback = _adapt(executor) if executor is not None else None

    def unregister(self, task_type: TaskType | str) -> None:
        self._executors.pop(TaskType(task_type), None)

    def get(self, task_type: TaskType | str) -> TaskExecutor | None:
        return self._executors.get(TaskType(task_type), self._fallback)

    def supports(self, task_type: TaskType | str) -> bool:
        return self.get(task_type) is not None

    @property
    def task_types(self) -> list[TaskType]:
        return list(self._executors)

    async def dispatch(self, task: Task, token: CancellationToken) -> Any:
        """Run the executor for ``task.type``.

        Raises:
            ExecutorError: If no executor is registered or the executor raised.
        """
        executor = self.get(task.type)
        if executor is None:
            raise ExecutorError(task.id, task.type.value, "no executor registered")

        token.raise_if_cancelled()
        try:
            payload = await executor.execute(task, token)
        except (asyncio.CancelledError, ExecutorError):
            raise
        except Exception as e:
            raise ExecutorError(task.id, task.type.value, e) from e
        token.raise_if_cancelled()
        return payload


def _adapt(executor: TaskExecutor | ExecutorFunction) -> TaskExecutor:
    if isinstance(executor, TaskExecutor):
        return executor
    if callable(executor):
        return FunctionExecutor(executor)
    raise TypeError(f"Not an executor: {executor!r}")


# =============================================================================
# DRY RUN EXECUTOR
# =============================================================================


class DryRunExecutor:
    """
    Executor that simulates work without calling any collaborator.

    Useful for exercising scheduling, decomposition and persistence without
    network access.
    """

    def __init__(
        self,
        delay_ms: int = 100,
        success_rate: float = 1.0,
    ):
        """
        Initialize dry run executor.

        Args:
            delay_ms: Simulated work time per task.
            success_rate: Probability of task success (0.0 to 1.0).
        """
        self.delay_ms = delay_ms
        self.success_rate = success_rate

    async def execute(self, task: Task, token: CancellationToken) -> Any:
        await asyncio.sleep(self.delay_ms / 1000)
        token.raise_if_cancelled()

        if random.random() >= self.success_rate:
            raise RuntimeError(f"Simulated failure for {task.name}")

        if task.type == TaskType.COLLECT:
            return [
                {
                    "source": task.config.get("source", "dry-run"),
                    "title": f"Dry run item for {task.name}",
                    "collected_at_ms": now_ms(),
                }
            ]
        return {
            "task": task.name,
            "type": task.type.value,
            "output": f"Dry run output for {task.name}",
        }


def create_dry_run_registry(delay_ms: int = 100, success_rate: float = 1.0) -> ExecutorRegistry:
    """Registry routing every task type to a DryRunExecutor."""
    executor = DryRunExecutor(delay_ms=delay_ms, success_rate=success_rate)
    return ExecutorRegistry({task_type: executor for task_type in TaskType})
