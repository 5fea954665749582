"""
Data channel - typed records and mailbox on top of a DurableStore.

The channel owns the record naming scheme (``status-<taskId>``,
``intermediate-<taskId>-<resultId>``, ``context-<taskId>-<snapshotId>``,
``message-<id>``) and converts between pydantic models and stored documents.
"""

from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from taskrelay.core.models import (
    DAY_MS,
    ContextSnapshot,
    IntermediateResult,
    Message,
    MessageType,
    TaskResult,
    generate_id,
    now_ms,
)
from taskrelay.storage.base import DurableStore, validate_name

# =============================================================================
# RECORD KINDS
# =============================================================================


STATUS_KIND = "status"
INTERMEDIATE_KIND = "intermediate"
CONTEXT_KIND = "contexts"
MESSAGES_KIND = "messages"
RESULTS_KIND = "results"
SHARED_KIND = "shared"
SESSIONS_KIND = "parallel_sessions"
MERGED_KIND = "merged_results"

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_record(model: type[ModelT], value: Any, where: str) -> ModelT | None:
    """Validate a stored document; invalid documents are logged and skipped."""
    if value is None:
        return None
    try:
        return model.model_validate(value)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed {model.__name__} at {where}: {e.error_count()} error(s)")
        return None


def _record_name(name: str) -> str:
    for suffix in (".json", ".yaml", ".yml"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return validate_name(name, "record name")


# =============================================================================
# DATA CHANNEL
# =============================================================================


class DataChannel:
    """
    Shared data, intermediate results, snapshots and mailbox for all
    execution components.

    A channel created with ``session_id`` stores shared data in an isolated
    ``parallel_sessions/<session_id>`` namespace so that several parallel
    runs can later be merged.

    Example:
        >>> channel = DataChannel(MemoryStore())
        >>> await channel.broadcast_status("scheduler", "workflow_started")
        >>> [m.data["status"] for m in await channel.read_messages()]
        ['workflow_started']
    """

    def __init__(
        self,
        store: DurableStore,
        session_id: str | None = None,
        intermediate_ttl_ms: int = DAY_MS,
    ) -> None:
        self.store = store
        self.session_id = validate_name(session_id, "session id") if session_id else None
        self.intermediate_ttl_ms = intermediate_ttl_ms

    def for_session(self, session_id: str) -> "DataChannel":
        """A channel sharing this store but scoped to ``session_id``."""
        return DataChannel(self.store, session_id, self.intermediate_ttl_ms)

    # =========================================================================
    # MAILBOX
    # =========================================================================

    async def send_message(self, message: Message) -> Message:
        await self.store.append(MESSAGES_KIND, message.model_dump(mode="json", by_alias=True))
        return message

    async def read_messages(
        self,
        recipient: str | None = None,
        message_type: MessageType | None = None,
    ) -> list[Message]:
        """Messages addressed to ``recipient`` plus broadcasts, oldest first."""
        raw = await self.store.scan(
            MESSAGES_KIND,
            to=recipient,
            message_type=message_type.value if message_type else None,
        )
        messages = []
        for item in raw:
            message = parse_record(Message, item, MESSAGES_KIND)
            if message is not None:
                messages.append(message)
        return messages

    async def broadcast_status(
        self,
        sender: str,
        status: str,
        data: dict[str, Any] | None = None,
    ) -> Message:
        return await self.send_message(
            Message(type=MessageType.STATUS, sender=sender, data={"status": status, **(data or {})})
        )

    async def notify_result(self, sender: str, to: str, result: Any) -> Message:
        return await self.send_message(
            Message(type=MessageType.RESULT, sender=sender, to=to, data=result)
        )

    async def notify_error(
        self,
        sender: str,
        error: str,
        data: dict[str, Any] | None = None,
    ) -> Message:
        return await self.send_message(
            Message(type=MessageType.ERROR, sender=sender, data={"error": error, **(data or {})})
        )

    async def cleanup_old_messages(
        self,
        max_age_ms: int = DAY_MS,
        now: int | None = None,
    ) -> int:
        """Delete messages older than ``max_age_ms``."""
        current = now if now is not None else now_ms()

        def _expired(value: Any) -> bool:
            return current - int(value.get("timestamp_ms", current)) > max_age_ms

        return await self.store.sweep_expired(MESSAGES_KIND, _expired, key_prefix="message-")

    # =========================================================================
    # INTERMEDIATE RESULTS
    # =========================================================================

    async def save_intermediate_result(
        self,
        task_id: str,
        data: Any,
        ttl_ms: int | None = None,
        result_id: str | None = None,
    ) -> IntermediateResult:
        """Persist partial output for ``task_id`` with a TTL (24h by default)."""
        timestamp = now_ms()
        result = IntermediateResult(
            id=result_id or generate_id(),
            task_id=task_id,
            data=data,
            timestamp_ms=timestamp,
            expires_at_ms=timestamp + (ttl_ms if ttl_ms is not None else self.intermediate_ttl_ms),
        )
        await self.store.put(
            INTERMEDIATE_KIND,
            f"intermediate-{task_id}-{result.id}",
            result.model_dump(mode="json"),
        )
        return result

    async def read_intermediate_result(
        self,
        task_id: str,
        result_id: str | None = None,
    ) -> IntermediateResult | None:
        """A specific intermediate result, or the latest one for ``task_id``."""
        if result_id:
            value = await self.store.get(INTERMEDIATE_KIND, f"intermediate-{task_id}-{result_id}")
            return parse_record(IntermediateResult, value, INTERMEDIATE_KIND)
        results = await self.list_intermediate_results(task_id)
        return results[-1] if results else None

    async def list_intermediate_results(self, task_id: str) -> list[IntermediateResult]:
        """All intermediate results of ``task_id``, oldest first."""
        results = []
        for value in await self.store.list(INTERMEDIATE_KIND, f"intermediate-{task_id}-"):
            result = parse_record(IntermediateResult, value, INTERMEDIATE_KIND)
            # Prefix matching alone would also pick up ids like "<task_id>-subtask-0".
            if result is not None and result.task_id == task_id:
                results.append(result)
        return results

    async def load_latest_result(self, task_id: str) -> Any:
        """Data of the latest intermediate result, or None."""
        result = await self.read_intermediate_result(task_id)
        return result.data if result else None

    async def cleanup_expired_results(self, now: int | None = None) -> int:
        """Delete intermediate results whose ``expires_at_ms`` has passed."""
        current = now if now is not None else now_ms()

        def _expired(value: Any) -> bool:
            expires_at = value.get("expires_at_ms")
            return expires_at is not None and current > int(expires_at)

        return await self.store.sweep_expired(
            INTERMEDIATE_KIND, _expired, key_prefix="intermediate-"
        )

    async def merge_intermediate_results(self, task_ids: list[str]) -> dict[str, Any]:
        """Latest intermediate data of several tasks plus a summary."""
        merged: dict[str, Any] = {}
        for task_id in task_ids:
            data = await self.load_latest_result(task_id)
            if data is not None:
                merged[task_id] = data

        summary: dict[str, Any] = {
            "total_tasks": len(merged),
            "successful_tasks": 0,
            "failed_tasks": 0,
            "types": {},
        }
        for data in merged.values():
            if isinstance(data, dict) and data.get("success") is False:
                summary["failed_tasks"] += 1
            else:
                summary["successful_tasks"] += 1
            task_type = data.get("type", "unknown") if isinstance(data, dict) else "unknown"
            summary["types"][task_type] = summary["types"].get(task_type, 0) + 1

        return {
            "merged_at_ms": now_ms(),
            "tasks": task_ids,
            "results": merged,
            "summary": summary,
        }

    # =========================================================================
    # CONTEXT SNAPSHOTS
    # =========================================================================

    async def save_context_snapshot(
        self,
        task_id: str,
        snapshot_id: str,
        state: dict[str, Any],
        checkpoint: str,
        progress: int,
    ) -> ContextSnapshot:
        snapshot = ContextSnapshot(
            id=snapshot_id,
            task_id=task_id,
            state=state,
            checkpoint=checkpoint,
            progress=progress,
        )
        await self.store.put(
            CONTEXT_KIND,
            f"context-{task_id}-{snapshot_id}",
            snapshot.model_dump(mode="json"),
        )
        return snapshot

    async def load_context_snapshot(
        self,
        task_id: str,
        snapshot_id: str | None = None,
    ) -> ContextSnapshot | None:
        """A specific snapshot, or the latest one for ``task_id``."""
        if snapshot_id:
            value = await self.store.get(CONTEXT_KIND, f"context-{task_id}-{snapshot_id}")
            return parse_record(ContextSnapshot, value, CONTEXT_KIND)
        snapshots = await self.list_context_snapshots(task_id)
        return snapshots[-1] if snapshots else None

    async def list_context_snapshots(self, task_id: str) -> list[ContextSnapshot]:
        snapshots = []
        for value in await self.store.list(CONTEXT_KIND, f"context-{task_id}-"):
            snapshot = parse_record(ContextSnapshot, value, CONTEXT_KIND)
            if snapshot is not None and snapshot.task_id == task_id:
                snapshots.append(snapshot)
        return snapshots

    async def cleanup_old_contexts(
        self,
        max_age_ms: int = DAY_MS,
        now: int | None = None,
    ) -> int:
        current = now if now is not None else now_ms()

        def _expired(value: Any) -> bool:
            return current - int(value.get("timestamp_ms", current)) > max_age_ms

        return await self.store.sweep_expired(CONTEXT_KIND, _expired, key_prefix="context-")

    # =========================================================================
    # TASK RESULTS
    # =========================================================================

    async def save_task_result(self, result: TaskResult, task_id: str | None = None) -> None:
        """Persist the result of the latest attempt for ``task_id``."""
        await self.store.put(
            RESULTS_KIND,
            f"result-{task_id or result.task_id}",
            result.model_dump(mode="json"),
        )

    async def load_task_result(self, task_id: str) -> TaskResult | None:
        value = await self.store.get(RESULTS_KIND, f"result-{task_id}")
        return parse_record(TaskResult, value, RESULTS_KIND)

    async def delete_task_result(self, task_id: str) -> bool:
        return await self.store.delete(RESULTS_KIND, f"result-{task_id}")

    # =========================================================================
    # SHARED AND SESSION DATA
    # =========================================================================

    @property
    def _shared_kind(self) -> str:
        if self.session_id:
            return f"{SESSIONS_KIND}/{self.session_id}"
        return SHARED_KIND

    async def share_data(self, name: str, data: Any) -> None:
        await self.store.put(self._shared_kind, _record_name(name), data)

    async def read_shared_data(self, name: str) -> Any | None:
        return await self.store.get(self._shared_kind, _record_name(name))

    async def update_shared_data(self, name: str, updater: Callable[[Any], Any]) -> Any:
        """Read-modify-write of a shared record."""
        updated = updater(await self.read_shared_data(name))
        await self.share_data(name, updated)
        return updated

    async def get_all_session_results(self, name: str) -> list[dict[str, Any]]:
        """The named record from every parallel session that has one."""
        record = _record_name(name)
        results = []
        for session_id in await self.store.list_namespaces(SESSIONS_KIND):
            data = await self.store.get(f"{SESSIONS_KIND}/{session_id}", record)
            if data is not None:
                results.append({"session_id": session_id, "data": data})
        return results

    async def save_merged_result(self, name: str, data: Any) -> None:
        await self.store.put(MERGED_KIND, _record_name(name), data)

    async def load_merged_result(self, name: str) -> Any | None:
        return await self.store.get(MERGED_KIND, _record_name(name))

    async def merge_all_session_results(self, name: str, merge_name: str) -> dict[str, Any]:
        """Collect ``name`` across sessions and store the merge as ``merge_name``."""
        session_results = await self.get_all_session_results(name)
        merged = {
            "timestamp_ms": now_ms(),
            "total_sessions": len(session_results),
            "session_results": session_results,
            "merged_at_ms": now_ms(),
        }
        await self.save_merged_result(merge_name, merged)
        logger.info(f"Merged {len(session_results)} session result(s) into {merge_name}")
        return merged
