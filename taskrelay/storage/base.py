"""
Durable store interface for TaskRelay.

Every backend (file, memory) implements a handful of primitive operations;
the public contract (lenient reads, per-key write serialisation, "latest"
ordering, TTL sweeps, mailbox scans) lives here so that all backends behave
identically.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from taskrelay.core.errors import StoreCorruptionError


# =============================================================================
# RECORD ENVELOPE
# =============================================================================


@dataclass(frozen=True)
class StoredRecord:
    """A value plus the metadata the store needs to order versions."""

    key: str
    version: int
    written_at_ms: int
    value: Any

    @property
    def timestamp_ms(self) -> int:
        """Record timestamp, falling back to the write time."""
        if isinstance(self.value, dict):
            ts = self.value.get("timestamp_ms")
            if isinstance(ts, int) and not isinstance(ts, bool):
                return ts
        return self.written_at_ms

    def sort_key(self) -> tuple[int, int, str]:
        """Comparator for "latest": max timestamp, then version, then key."""
        return (self.timestamp_ms, self.version, self.key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "version": self.version,
            "written_at_ms": self.written_at_ms,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, key: str, payload: Any) -> "StoredRecord":
        """Decode an envelope; bare documents are accepted as version 0."""
        if isinstance(payload, dict) and {"version", "value"} <= payload.keys():
            return cls(
                key=key,
                version=int(payload["version"]),
                written_at_ms=int(payload.get("written_at_ms", 0)),
                value=payload["value"],
            )
        return cls(key=key, version=0, written_at_ms=0, value=payload)


def validate_name(name: str, what: str, allow_slash: bool = False) -> str:
    """Reject names that could escape the store namespace."""
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid {what}: {name!r}")
    parts = name.split("/") if allow_slash else [name]
    for part in parts:
        if not part or part in (".", "..") or "\\" in part or (not allow_slash and "/" in part):
            raise ValueError(f"Invalid {what}: {name!r}")
    return name


T = TypeVar("T")


@dataclass
class _KeyLock:
    """A per-key lock and the number of operations holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# =============================================================================
# ABSTRACT STORE
# =============================================================================


class DurableStore(ABC):
    """
    Persistence for status records, intermediate results, snapshots,
    mailbox messages and session data.

    Records are addressed by ``(kind, key)``. ``kind`` may be nested with
    ``/`` (``parallel_sessions/<session_id>``); keys may not.

    Example:
        >>> store = MemoryStore()
        >>> await store.put("status", "status-task-1", {"status": "pending"})
        >>> await store.get("status", "status-task-1")
        {'status': 'pending'}
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], _KeyLock] = {}
        self._last_version = 0

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _write(self, kind: str, record: StoredRecord) -> None:
        """Atomically replace a record. Raises StoreWriteError."""

    @abstractmethod
    async def _read(self, kind: str, key: str) -> StoredRecord | None:
        """Read a record. Raises StoreCorruptionError on undecodable data."""

    @abstractmethod
    async def _keys(self, kind: str, prefix: str) -> list[str]:
        """Keys under ``kind`` starting with ``prefix``."""

    @abstractmethod
    async def _remove(self, kind: str, key: str) -> bool:
        """Delete a record, returning whether it existed."""

    @abstractmethod
    async def _namespaces(self, kind: str) -> list[str]:
        """Names of nested kinds directly below ``kind``."""

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, kind: str, key: str) -> AsyncIterator[None]:
        """Serialise operations on one key; the entry is dropped once unused."""
        ident = (kind, key)
        entry = self._locks.get(ident)
        if entry is None:
            entry = self._locks[ident] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[ident]

    @staticmethod
    async def _hold(operation: Coroutine[Any, Any, T]) -> T:
        """Await a backend operation that completes even if the caller is cancelled."""
        task = asyncio.ensure_future(operation)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Keep the key locked until the backend call has landed.
            await asyncio.wait([task])
            raise

    def _next_version(self) -> int:
        # Seeded from the wall clock so versions keep increasing across restarts.
        self._last_version = max(time.time_ns(), self._last_version + 1)
        return self._last_version

    async def put(self, kind: str, key: str, value: Any) -> None:
        """Write a whole record, replacing any previous version."""
        validate_name(kind, "kind", allow_slash=True)
        validate_name(key, "key")
        async with self._locked(kind, key):
            record = StoredRecord(
                key=key,
                version=self._next_version(),
                written_at_ms=int(time.time() * 1000),
                value=value,
            )
            await self._hold(self._write(kind, record))

    async def get(self, kind: str, key: str) -> Any | None:
        """Read a record value; missing or corrupt records return None."""
        record = await self._safe_read(kind, key)
        return record.value if record else None

    async def list(self, kind: str, key_prefix: str = "") -> list[Any]:
        """Values under ``kind`` whose key starts with ``key_prefix``, oldest first."""
        return [r.value for r in await self._records(kind, key_prefix)]

    async def latest(self, kind: str, key_prefix: str = "") -> Any | None:
        """The most recent value among keys matching ``key_prefix``."""
        records = await self._records(kind, key_prefix)
        return records[-1].value if records else None

    async def delete(self, kind: str, key: str) -> bool:
        async with self._locked(kind, key):
            removed = await self._hold(self._remove(kind, key))
        return removed

    async def append(self, mailbox: str, message: dict[str, Any]) -> None:
        """Append a message; its ``id`` becomes the record key."""
        message_id = str(message.get("id") or "")
        if not message_id:
            raise ValueError("Mailbox messages require an id")
        await self.put(mailbox, f"message-{message_id}", message)

    async def scan(
        self,
        mailbox: str,
        to: str | None = None,
        message_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Messages visible to ``to`` (addressed or broadcast), oldest first."""
        messages = []
        for record in await self._records(mailbox, "message-"):
            message = record.value
            if not isinstance(message, dict):
                continue
            recipient = message.get("to")
            if to is not None and recipient is not None and recipient != to:
                continue
            if message_type is not None and message.get("type") != message_type:
                continue
            messages.append(message)
        return messages

    async def sweep_expired(
        self,
        kind: str,
        predicate: Callable[[Any], bool],
        key_prefix: str = "",
    ) -> int:
        """Delete every record for which ``predicate(value)`` is true."""
        removed = 0
        for key in await self._safe_keys(kind, key_prefix):
            record = await self._safe_read(kind, key)
            if record is None:
                continue
            try:
                expired = predicate(record.value)
            except Exception as e:
                logger.warning(f"Sweep predicate failed for {kind}/{key}: {e}")
                continue
            if expired and await self.delete(kind, key):
                removed += 1
        if removed:
            logger.debug(f"Swept {removed} record(s) from {kind}")
        return removed

    async def list_namespaces(self, kind: str) -> list[str]:
        """Nested kinds below ``kind`` (e.g. session ids), sorted."""
        validate_name(kind, "kind", allow_slash=True)
        try:
            return sorted(await self._namespaces(kind))
        except OSError as e:
            logger.warning(f"Could not list namespaces of {kind}: {e}")
            return []

    # -------------------------------------------------------------------------
    # Lenient read helpers
    # -------------------------------------------------------------------------

    async def _safe_read(self, kind: str, key: str) -> StoredRecord | None:
        try:
            return await self._read(kind, key)
        except StoreCorruptionError as e:
            logger.warning(f"Ignoring corrupt record {kind}/{key}: {e}")
        except OSError as e:
            logger.warning(f"Could not read {kind}/{key}: {e}")
        return None

    async def _safe_keys(self, kind: str, prefix: str) -> list[str]:
        try:
            return await self._keys(kind, prefix)
        except OSError as e:
            logger.warning(f"Could not list {kind}: {e}")
            return []

    async def _records(self, kind: str, prefix: str) -> list[StoredRecord]:
        records = []
        for key in await self._safe_keys(kind, prefix):
            record = await self._safe_read(kind, key)
            if record is not None:
                records.append(record)
        records.sort(key=StoredRecord.sort_key)
        return records
