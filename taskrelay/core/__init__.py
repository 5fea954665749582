"""Core module - configuration, models and errors."""

from taskrelay.core.config import Settings, clear_settings_cache, get_settings
from taskrelay.core.errors import (
    ConcurrentExecutionError,
    ExecutorError,
    GroupExecutionError,
    NoValidTasksError,
    NotFoundError,
    StoreError,
    StoreWriteError,
    TaskRelayError,
    TaskTimeoutError,
)
from taskrelay.core.models import (
    ExecutionPlan,
    JoinStrategy,
    Message,
    MessageType,
    Task,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskStatusRecord,
    TaskType,
)

__all__ = [
    # Config
    "Settings",
    "clear_settings_cache",
    "get_settings",
    # Models
    "ExecutionPlan",
    "JoinStrategy",
    "Message",
    "MessageType",
    "Task",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "TaskStatusRecord",
    "TaskType",
    # Errors
    "ConcurrentExecutionError",
    "ExecutorError",
    "GroupExecutionError",
    "NoValidTasksError",
    "NotFoundError",
    "StoreError",
    "StoreWriteError",
    "TaskRelayError",
    "TaskTimeoutError",
]
