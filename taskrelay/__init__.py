"""
TaskRelay - task execution and durable coordination layer.

Runs heterogeneous tasks concurrently under priority groups and timeouts,
decomposes long-running work into checkpointed subtasks, and keeps progress
in a durable store that survives process restarts.
"""

__version__ = "0.1.0"

from taskrelay.core.orchestrator import ExecutionOrchestrator

__all__ = ["ExecutionOrchestrator", "__version__"]
