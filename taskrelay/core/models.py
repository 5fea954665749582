"""Pydantic models shared by the execution and storage layers.

All timestamps are integer epoch milliseconds so that records stay
human-inspectable and compare cheaply.
"""

import secrets
import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str | None = None) -> str:
    """Time-ordered unique id, e.g. ``async-1712345678901-3fa2c1d9``."""
    token = f"{now_ms()}-{secrets.token_hex(4)}"
    return f"{prefix}-{token}" if prefix else token


# =============================================================================
# ENUMS
# =============================================================================


class TaskType(str, Enum):
    """Kind of work a task performs; selects the executor."""

    COLLECT = "collect"
    ANALYZE = "analyze"
    POST = "post"
    STRATEGY = "strategy"
    CUSTOM = "custom"


class TaskPriority(str, Enum):
    """Scheduling priority of a task."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Execution order of priority groups (0 runs first)."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class JoinStrategy(str, Enum):
    """How outcomes of a concurrently executed group are combined."""

    ALL = "all"
    RACE = "race"
    SETTLED = "settled"


class TaskStatus(str, Enum):
    """Execution status of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.RUNNING)


class MessageType(str, Enum):
    """Mailbox message categories."""

    STATUS = "status"
    RESULT = "result"
    ERROR = "error"


# =============================================================================
# TASKS
# =============================================================================


class Task(BaseModel):
    """A unit of work submitted to the scheduler.

    Tasks are immutable once submitted. A task with dependencies is always
    executed sequentially, never inside a parallel group.

    Example:
        >>> task = Task(
        ...     id="collect-1",
        ...     name="Collect market news",
        ...     type=TaskType.COLLECT,
        ...     priority=TaskPriority.HIGH,
        ...     timeout_ms=60_000,
        ... )
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    name: str = Field(..., min_length=1)
    type: TaskType = TaskType.CUSTOM
    priority: TaskPriority = TaskPriority.MEDIUM
    timeout_ms: int = Field(default=30_000, gt=0)
    dependencies: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    estimated_duration_ms: int | None = Field(default=None, gt=0)
    predefined_subtasks: list["Task"] | None = None
    checkpoints: list[str] | None = None

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: list[str]) -> list[str]:
        """Drop duplicate dependency ids while preserving order."""
        return list(dict.fromkeys(v))

    @property
    def is_parallel_eligible(self) -> bool:
        return not self.dependencies


Task.model_rebuild()


class TaskResult(BaseModel):
    """Outcome of a single execution attempt. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    success: bool
    data: Any = None
    error: str | None = None
    timestamp_ms: int = Field(default_factory=now_ms)
    duration_ms: int = Field(default=0, ge=0)

    @classmethod
    def failure(
        cls,
        task_id: str,
        error: BaseException | str,
        duration_ms: int = 0,
    ) -> "TaskResult":
        """Build a failed result from an exception or message."""
        message = str(error) or type(error).__name__
        return cls(task_id=task_id, success=False, error=message, duration_ms=duration_ms)


class TaskStatusRecord(BaseModel):
    """Durable status of the current execution of a task."""

    model_config = ConfigDict(frozen=False)

    id: str = Field(default_factory=generate_id)
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    start_time_ms: int = Field(default_factory=now_ms)
    end_time_ms: int | None = None
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None


# =============================================================================
# DURABLE RECORDS
# =============================================================================


class IntermediateResult(BaseModel):
    """Partial output of a task, kept until ``expires_at_ms``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    task_id: str
    data: Any = None
    timestamp_ms: int = Field(default_factory=now_ms)
    expires_at_ms: int

    def is_expired(self, at_ms: int | None = None) -> bool:
        return (at_ms if at_ms is not None else now_ms()) > self.expires_at_ms


class ContextSnapshot(BaseModel):
    """State captured when a subtask completes; used to resume."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    timestamp_ms: int = Field(default_factory=now_ms)
    state: dict[str, Any] = Field(default_factory=dict)
    checkpoint: str
    progress: int = Field(default=0, ge=0, le=100)


class Message(BaseModel):
    """Append-only mailbox entry. ``to`` unset means broadcast."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=generate_id)
    type: MessageType
    sender: str = Field(..., alias="from")
    to: str | None = None
    data: Any = None
    timestamp_ms: int = Field(default_factory=now_ms)

    def is_for(self, recipient: str | None) -> bool:
        """Whether this message is visible to ``recipient``."""
        return recipient is None or self.to is None or self.to == recipient


class SubtaskOutcome(BaseModel):
    """Record of a completed subtask inside a decomposed task."""

    model_config = ConfigDict(frozen=True)

    subtask_id: str
    parent_task_id: str
    index: int = Field(ge=0)
    result: Any = None
    checkpoint: str
    timestamp_ms: int = Field(default_factory=now_ms)
    duration_ms: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0, le=100)


# =============================================================================
# PLANNING
# =============================================================================


class ParallelTaskGroup(BaseModel):
    """Tasks of one priority executed concurrently under a join strategy."""

    model_config = ConfigDict(frozen=True)

    id: str
    priority: TaskPriority
    tasks: list[Task]
    strategy: JoinStrategy
    timeout_ms: int = Field(gt=0)


class ExecutionPlan(BaseModel):
    """Advisory plan for a task list; durations are not enforced."""

    model_config = ConfigDict(frozen=True)

    parallel_groups: list[ParallelTaskGroup] = Field(default_factory=list)
    sequential_tasks: list[Task] = Field(default_factory=list)
    estimated_duration_ms: int = 0

    @property
    def total_tasks(self) -> int:
        return sum(len(g.tasks) for g in self.parallel_groups) + len(self.sequential_tasks)
