"""Base class shared by every memory kind."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import uuid4

import structlog

from memflow.memory.cache import MemoryCache
from memflow.memory.scheduler import PeriodicTask
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import MemoryFilter, MemoryType, MemoryUnit

logger = structlog.get_logger()


class AbstractMemory(ABC):
    """Store, retrieve, update and delete units of one memory type.

    Reads go cache first, then storage. Every successful retrieval bumps
    the unit's access stats and writes them through. Mutations hit
    storage, index and cache in that order.

    Subclasses set ``memory_type`` and implement ``cleanup()``.
    """

    memory_type: MemoryType

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
    ):
        self.storage = storage
        self.index = index
        self.cache = cache or MemoryCache()
        self._cleanup_task: Optional[PeriodicTask] = None

    def generate_id(self) -> str:
        return str(uuid4())

    def build_unit(self, content: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        """Wrap content in a unit of this memory's type.

        An ``id`` key in metadata is used as the unit id; a ``type`` key is
        consumed since the type lives on the unit itself.
        """
        metadata = dict(metadata or {})
        unit_id = metadata.pop("id", None) or self.generate_id()
        metadata.pop("type", None)
        return MemoryUnit(
            id=str(unit_id),
            content=content,
            memory_type=self.memory_type,
            metadata=metadata,
        )

    async def store(self, content: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        unit = self.build_unit(content, metadata)
        await self.persist(unit)
        return unit

    async def persist(self, unit: MemoryUnit) -> None:
        """Write a prepared unit to storage, index and cache."""
        await self.storage.store(unit)
        await self.index.index(unit)
        self.cache.set(unit)

    async def batch_store(
        self, items: list[tuple[Any, Optional[dict[str, Any]]]]
    ) -> list[MemoryUnit]:
        return [await self.store(content, metadata) for content, metadata in items]

    async def retrieve(self, unit_id: str) -> Optional[MemoryUnit]:
        unit = self.cache.get(unit_id)
        if unit is None:
            unit = await self.storage.retrieve(unit_id)
        if unit is None or unit.memory_type != self.memory_type:
            return None
        await self._record_access(unit)
        return unit

    async def retrieve_by_filter(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        scoped = (filter or MemoryFilter()).model_copy(update={"types": [self.memory_type]})
        units = await self.storage.retrieve_by_filter(scoped)
        for unit in units:
            await self._record_access(unit)
        return units

    async def batch_retrieve(self, unit_ids: list[str]) -> list[Optional[MemoryUnit]]:
        """Retrieve concurrently; a failed lookup yields None in its slot."""
        results = await asyncio.gather(
            *(self.retrieve(unit_id) for unit_id in unit_ids),
            return_exceptions=True,
        )
        units: list[Optional[MemoryUnit]] = []
        for unit_id, result in zip(unit_ids, results):
            if isinstance(result, Exception):
                logger.warning("Batch retrieve failed", id=unit_id, error=str(result))
                units.append(None)
            else:
                units.append(result)
        return units

    async def list_units(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        """Units of this type without touching access stats."""
        scoped = (filter or MemoryFilter()).model_copy(update={"types": [self.memory_type]})
        return await self.storage.retrieve_by_filter(scoped)

    async def count(self) -> int:
        return len(await self.list_units())

    async def update(self, unit: MemoryUnit) -> None:
        await self.storage.update(unit)
        await self.index.update(unit)
        self.cache.set(unit)

    async def delete(self, unit_id: str) -> None:
        await self.storage.delete(unit_id)
        await self.index.remove(unit_id)
        self.cache.delete(unit_id)

    async def search(self, query: str, mode: str = "all") -> list[MemoryUnit]:
        """Resolve index hits to units of this type, in index order."""
        units = []
        for unit_id in await self.index.search(query, mode=mode):
            unit = await self.retrieve(unit_id)
            if unit is not None:
                units.append(unit)
        return units

    async def get_size(self) -> int:
        return await self.storage.get_size()

    async def get_capacity(self) -> Optional[int]:
        return await self.storage.get_capacity()

    @abstractmethod
    async def cleanup(self) -> int:
        """Apply this memory's retention policy; returns units removed."""
        pass

    def start_cleanup(self, interval: float) -> PeriodicTask:
        """Run ``cleanup()`` every ``interval`` seconds until stopped."""
        if self._cleanup_task is None:
            self._cleanup_task = PeriodicTask(
                f"{self.memory_type.value}-cleanup", self.cleanup, interval
            )
        self._cleanup_task.start()
        return self._cleanup_task

    def cancel_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            await self._cleanup_task.stop()

    async def _record_access(self, unit: MemoryUnit) -> None:
        unit.touch()
        await self.storage.store(unit)
        self.cache.set(unit)
