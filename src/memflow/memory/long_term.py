"""Long-term memory base and contextual memory."""

from typing import Optional

import structlog

from memflow.memory.base import AbstractMemory
from memflow.memory.cache import MemoryCache
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import LONG_TERM_TYPES, MemoryFilter, MemoryType, MemoryUnit

logger = structlog.get_logger()


class LongTermMemory(AbstractMemory):
    """Durable memory of one long-term type.

    Used directly as a plain sink for transitions out of working memory, and
    as the base for the episodic, semantic and contextual kinds.
    """

    memory_type = MemoryType.EPISODIC

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
        memory_type: Optional[MemoryType] = None,
    ):
        super().__init__(storage, index, cache)
        if memory_type is not None:
            if memory_type not in LONG_TERM_TYPES:
                raise ValueError(f"{memory_type.value} is not a long-term memory type")
            self.memory_type = memory_type

    async def retrieve_all(self) -> list[MemoryUnit]:
        return await self.retrieve_by_filter(MemoryFilter())

    async def cleanup(self) -> int:
        """Evict this type's units from the shared cache.

        Storage is durable, so nothing is deleted.
        """
        units = await self.list_units()
        for unit in units:
            self.cache.delete(unit.id)
        return 0


class ContextualMemory(LongTermMemory):
    """Durable snapshots of context key/value pairs."""

    memory_type = MemoryType.CONTEXTUAL

    async def latest_by_key(self) -> dict[str, MemoryUnit]:
        """Most recent unit per context key."""
        latest: dict[str, MemoryUnit] = {}
        units = sorted(await self.list_units(), key=lambda u: u.timestamp)
        for unit in units:
            key = unit.metadata.get("key")
            if key is not None:
                latest[key] = unit
        return latest

    async def clear(self) -> int:
        units = await self.list_units()
        for unit in units:
            await self.delete(unit.id)
        logger.debug("Contextual memory cleared", count=len(units))
        return len(units)
