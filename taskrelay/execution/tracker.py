"""Task status tracking - durable status records per task id."""

from typing import Any

from loguru import logger

from taskrelay.core.errors import NotFoundError
from taskrelay.core.models import DAY_MS, TaskStatus, TaskStatusRecord, now_ms
from taskrelay.storage.base import DurableStore
from taskrelay.storage.channel import STATUS_KIND, parse_record


class TaskStatusTracker:
    """
    CRUD over ``status-<taskId>`` records.

    Only the current attempt of a task has a record. Progress never moves
    backwards and terminal statuses are final for the record they are on;
    a new attempt starts over with ``create``.

    Example:
        >>> tracker = TaskStatusTracker(store)
        >>> await tracker.create("task-1")
        >>> await tracker.update("task-1", status=TaskStatus.RUNNING, progress=40)
        >>> await tracker.get_progress("task-1")
        40
    """

    def __init__(self, store: DurableStore) -> None:
        self.store = store

    @staticmethod
    def _key(task_id: str) -> str:
        return f"status-{task_id}"

    async def _save(self, record: TaskStatusRecord) -> TaskStatusRecord:
        await self.store.put(STATUS_KIND, self._key(record.task_id), record.model_dump(mode="json"))
        return record

    async def create(self, task_id: str) -> TaskStatusRecord:
        """Start a fresh pending record for a new execution attempt."""
        record = TaskStatusRecord(task_id=task_id)
        logger.debug(f"Status created for {task_id}")
        return await self._save(record)

    async def get(self, task_id: str) -> TaskStatusRecord | None:
        value = await self.store.get(STATUS_KIND, self._key(task_id))
        return parse_record(TaskStatusRecord, value, f"{STATUS_KIND}/{self._key(task_id)}")

    async def update(self, task_id: str, **changes: Any) -> TaskStatusRecord:
        """
        Merge ``changes`` into the existing record.

        Args:
            task_id: Task whose record to update.
            **changes: Field overrides (status, progress, error, end_time_ms).

        Returns:
            The stored record.

        Raises:
            NotFoundError: If no record exists for ``task_id``.
        """
        current = await self.get(task_id)
        if current is None:
            raise NotFoundError(f"No status record for task {task_id}")

        if current.status.is_terminal:
            logger.debug(
                f"Ignoring update for {task_id}: already {current.status.value}"
            )
            return current

        progress = changes.get("progress")
        if progress is not None and progress < current.progress:
            logger.debug(
                f"Ignoring progress regression for {task_id}: {progress} < {current.progress}"
            )
            changes.pop("progress")

        if "status" in changes:
            changes["status"] = TaskStatus(changes["status"])

        merged = current.model_copy(update=changes)
        # model_copy skips validation; re-validate the merged document.
        return await self._save(TaskStatusRecord.model_validate(merged.model_dump()))

    async def ensure(self, task_id: str) -> TaskStatusRecord:
        """The existing record, or a new pending one."""
        record = await self.get(task_id)
        return record if record is not None else await self.create(task_id)

    async def mark_running(self, task_id: str, progress: int | None = None) -> TaskStatusRecord:
        changes: dict[str, Any] = {"status": TaskStatus.RUNNING}
        if progress is not None:
            changes["progress"] = progress
        return await self.update(task_id, **changes)

    async def mark_completed(self, task_id: str) -> TaskStatusRecord:
        return await self.update(
            task_id,
            status=TaskStatus.COMPLETED,
            end_time_ms=now_ms(),
            progress=100,
        )

    async def mark_failed(self, task_id: str, error: str) -> TaskStatusRecord:
        return await self.update(
            task_id,
            status=TaskStatus.FAILED,
            end_time_ms=now_ms(),
            error=error,
        )

    async def list_all(self) -> list[TaskStatusRecord]:
        records = []
        for value in await self.store.list(STATUS_KIND, "status-"):
            record = parse_record(TaskStatusRecord, value, STATUS_KIND)
            if record is not None:
                records.append(record)
        return records

    async def list_active(self) -> list[TaskStatusRecord]:
        """Records whose status is pending or running."""
        return [r for r in await self.list_all() if r.status.is_active]

    async def get_progress(self, task_id: str) -> int:
        record = await self.get(task_id)
        return record.progress if record else 0

    async def is_complete(self, task_id: str) -> bool:
        record = await self.get(task_id)
        return record is not None and record.status == TaskStatus.COMPLETED

    async def cleanup_terminal(self, max_age_ms: int = DAY_MS, now: int | None = None) -> int:
        """Delete terminal records that started more than ``max_age_ms`` ago."""
        current = now if now is not None else now_ms()

        def _expired(value: Any) -> bool:
            status = TaskStatus(value.get("status", TaskStatus.PENDING.value))
            return status.is_terminal and current - int(value.get("start_time_ms", current)) > max_age_ms

        return await self.store.sweep_expired(STATUS_KIND, _expired, key_prefix="status-")
