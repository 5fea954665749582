"""File-backed durable store.

Layout: ``<root>/<kind>/<key>.json``, one JSON envelope per record. Writes go
to a temporary file that is renamed over the target, so readers only ever see
complete documents.
"""

import asyncio
import json
import os
from pathlib import Path
from uuid import uuid4

from loguru import logger

from taskrelay.core.errors import StoreCorruptionError, StoreWriteError
from taskrelay.storage.base import DurableStore, StoredRecord

RECORD_SUFFIX = ".json"


class FileStore(DurableStore):
    """
    Durable store persisting each record as a human-readable JSON file.

    Blocking filesystem calls run in a worker thread so the event loop keeps
    driving other tasks.

    Example:
        >>> store = FileStore("data")
        >>> await store.put("status", "status-task-1", {"status": "running"})
        # -> data/status/status-task-1.json
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.debug(f"FileStore rooted at {self.root.resolve()}")

    def _dir(self, kind: str) -> Path:
        return self.root.joinpath(*kind.split("/"))

    def _path(self, kind: str, key: str) -> Path:
        return self._dir(kind) / f"{key}{RECORD_SUFFIX}"

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    async def _write(self, kind: str, record: StoredRecord) -> None:
        path = self._path(kind, record.key)
        try:
            payload = json.dumps(record.to_dict(), indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreWriteError(f"Record {kind}/{record.key} is not JSON-serializable: {e}") from e
        try:
            await asyncio.to_thread(self._write_sync, path, payload)
        except OSError as e:
            raise StoreWriteError(f"Could not write {path}: {e}") from e

    @staticmethod
    def _write_sync(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            temp_path.write_text(payload, encoding="utf-8")
            os.replace(temp_path, path)
        finally:
            if temp_path.exists():
                temp_path.unlink()

    async def _read(self, kind: str, key: str) -> StoredRecord | None:
        path = self._path(kind, key)
        content = await asyncio.to_thread(self._read_sync, path)
        if content is None:
            return None
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise StoreCorruptionError(f"{path}: {e}") from e
        return StoredRecord.from_dict(key, payload)

    @staticmethod
    def _read_sync(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise StoreCorruptionError(f"{path}: {e}") from e

    async def _keys(self, kind: str, prefix: str) -> list[str]:
        return await asyncio.to_thread(self._keys_sync, self._dir(kind), prefix)

    @staticmethod
    def _keys_sync(directory: Path, prefix: str) -> list[str]:
        if not directory.is_dir():
            return []
        keys = []
        for entry in directory.iterdir():
            name = entry.name
            if name.startswith(".") or not name.endswith(RECORD_SUFFIX) or not entry.is_file():
                continue
            key = name[: -len(RECORD_SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def _remove(self, kind: str, key: str) -> bool:
        path = self._path(kind, key)

        def _unlink() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        return await asyncio.to_thread(_unlink)

    async def _namespaces(self, kind: str) -> list[str]:
        directory = self._dir(kind)

        def _scan() -> list[str]:
            if not directory.is_dir():
                return []
            return [entry.name for entry in directory.iterdir() if entry.is_dir()]

        return await asyncio.to_thread(_scan)

    def __repr__(self) -> str:
        return f"FileStore(root={str(self.root)!r})"
