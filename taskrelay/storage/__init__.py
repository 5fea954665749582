"""Storage - durable records, mailbox and session data.

Backends:
- FileStore: one JSON document per record under a root directory
- MemoryStore: same contract in memory, for tests and ephemeral runs
"""

from taskrelay.core.config import Settings
from taskrelay.storage.base import DurableStore, StoredRecord
from taskrelay.storage.channel import (
    CONTEXT_KIND,
    INTERMEDIATE_KIND,
    MERGED_KIND,
    MESSAGES_KIND,
    RESULTS_KIND,
    SESSIONS_KIND,
    SHARED_KIND,
    STATUS_KIND,
    DataChannel,
)
from taskrelay.storage.file_store import FileStore
from taskrelay.storage.memory_store import MemoryStore


def create_store(settings: Settings) -> DurableStore:
    """Create the store backend selected by ``relay_storage_backend``."""
    if settings.relay_storage_backend == "memory":
        return MemoryStore()
    return FileStore(settings.relay_data_dir)


__all__ = [
    # Backends
    "DurableStore",
    "FileStore",
    "MemoryStore",
    "StoredRecord",
    "create_store",
    # Channel
    "DataChannel",
    # Kinds
    "CONTEXT_KIND",
    "INTERMEDIATE_KIND",
    "MERGED_KIND",
    "MESSAGES_KIND",
    "RESULTS_KIND",
    "SESSIONS_KIND",
    "SHARED_KIND",
    "STATUS_KIND",
]
