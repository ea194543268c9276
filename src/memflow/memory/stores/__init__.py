"""Storage and index backends."""

from typing import Optional

from memflow.core.config import Settings, StorageBackend, get_settings
from memflow.memory.storage import MemoryStorage
from memflow.memory.stores.in_memory import InMemoryIndex, InMemoryStorage
from memflow.memory.stores.sqlite import SQLiteMemoryStorage


def create_storage(settings: Optional[Settings] = None) -> MemoryStorage:
    """Build the storage backend named by ``settings.storage_backend``."""
    settings = settings or get_settings()
    if settings.storage_backend == StorageBackend.SQLITE:
        return SQLiteMemoryStorage(settings.sqlite_path)
    return InMemoryStorage()


__all__ = ["InMemoryStorage", "InMemoryIndex", "SQLiteMemoryStorage", "create_storage"]
