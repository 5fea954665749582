"""Execution - executors, status tracking, scheduling, decomposition and async tasks."""

from taskrelay.execution.decomposer import LongRunningDecomposer
from taskrelay.execution.executors import (
    CancellationToken,
    DryRunExecutor,
    ExecutorRegistry,
    FunctionExecutor,
    TaskExecutor,
    create_dry_run_registry,
)
from taskrelay.execution.registry import AsyncTaskHandle, AsyncTaskRegistry
from taskrelay.execution.scheduler import ParallelScheduler
from taskrelay.execution.tracker import TaskStatusTracker

__all__ = [
    # Executors
    "CancellationToken",
    "DryRunExecutor",
    "ExecutorRegistry",
    "FunctionExecutor",
    "TaskExecutor",
    "create_dry_run_registry",
    # Components
    "AsyncTaskHandle",
    "AsyncTaskRegistry",
    "LongRunningDecomposer",
    "ParallelScheduler",
    "TaskStatusTracker",
]
