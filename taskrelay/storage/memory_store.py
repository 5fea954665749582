"""In-memory durable store for tests and ephemeral runs."""

import json
from typing import Any

from taskrelay.core.errors import StoreWriteError
from taskrelay.storage.base import DurableStore, StoredRecord


class MemoryStore(DurableStore):
    """
    Durable store contract kept in process memory.

    Values are round-tripped through JSON on write, so callers get the same
    serialisation rules (and the same isolation from later mutation) as with
    the file backend.
    """

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, StoredRecord]] = {}

    async def _write(self, kind: str, record: StoredRecord) -> None:
        try:
            value = json.loads(json.dumps(record.value))
        except (TypeError, ValueError) as e:
            raise StoreWriteError(f"Record {kind}/{record.key} is not JSON-serializable: {e}") from e
        self._data.setdefault(kind, {})[record.key] = StoredRecord(
            key=record.key,
            version=record.version,
            written_at_ms=record.written_at_ms,
            value=value,
        )

    async def _read(self, kind: str, key: str) -> StoredRecord | None:
        record = self._data.get(kind, {}).get(key)
        if record is None:
            return None
        return StoredRecord(
            key=record.key,
            version=record.version,
            written_at_ms=record.written_at_ms,
            value=_copy(record.value),
        )

    async def _keys(self, kind: str, prefix: str) -> list[str]:
        return sorted(k for k in self._data.get(kind, {}) if k.startswith(prefix))

    async def _remove(self, kind: str, key: str) -> bool:
        return self._data.get(kind, {}).pop(key, None) is not None

    async def _namespaces(self, kind: str) -> list[str]:
        prefix = f"{kind}/"
        names = set()
        for existing in self._data:
            if existing.startswith(prefix) and self._data[existing]:
                names.add(existing[len(prefix):].split("/", 1)[0])
        return list(names)

    def clear(self) -> None:
        """Drop every record."""
        self._data.clear()


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))
