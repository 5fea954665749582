"""Exception hierarchy for TaskRelay."""

from typing import Any


class TaskRelayError(Exception):
    """Base exception for TaskRelay errors."""

    pass


class TaskTimeoutError(TaskRelayError, TimeoutError):
    """A task or a wait exceeded its time budget."""

    def __init__(self, message: str, timeout_ms: int | None = None) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


class NotFoundError(TaskRelayError):
    """A status record, handle or snapshot does not exist."""

    pass


class NoValidTasksError(TaskRelayError):
    """A batch operation received no known task ids."""

    pass


class ExecutorError(TaskRelayError):
    """Wraps any exception raised by an external task executor."""

    def __init__(self, task_id: str, task_type: str, cause: BaseException | str) -> None:
        self.task_id = task_id
        self.task_type = task_type
        self.cause = cause
        super().__init__(f"Executor for '{task_type}' failed on task {task_id}: {cause}")


class GroupExecutionError(TaskRelayError):
    """A task failed inside an all-or-nothing parallel group."""

    def __init__(self, group_id: str, result: Any) -> None:
        self.group_id = group_id
        self.result = result
        super().__init__(
            f"Group {group_id} aborted: task {result.task_id} failed ({result.error})"
        )


class ConcurrentExecutionError(TaskRelayError):
    """A second execution was requested for a task id that is already running."""

    pass


class StoreError(TaskRelayError):
    """Durable store failure."""

    pass


class StoreWriteError(StoreError):
    """A record could not be written."""

    pass


class StoreCorruptionError(StoreError):
    """A record exists but cannot be decoded.

    Raised inside the storage backends only; readers downgrade it to "absent".
    """

    pass
