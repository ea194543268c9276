"""Symmetric associations between memory units."""

from typing import Optional

import structlog

from memflow.core.exceptions import MemoryNotFoundError
from memflow.memory.cache import MemoryCache
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import MemoryUnit

logger = structlog.get_logger()


class MemoryAssociator:
    """Maintains the association graph stored on the units themselves.

    Every edge is written to both endpoints; ``associate`` and
    ``dissociate`` are idempotent.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
    ):
        self.storage = storage
        self.index = index
        self.cache = cache

    async def _get(self, unit_id: str) -> MemoryUnit:
        unit = await self.storage.retrieve(unit_id)
        if unit is None:
            raise MemoryNotFoundError(unit_id)
        return unit

    async def _save(self, unit: MemoryUnit) -> None:
        await self.storage.update(unit)
        await self.index.update(unit)
        if self.cache is not None:
            self.cache.set(unit)

    async def associate(self, source_id: str, target_id: str) -> None:
        if source_id == target_id:
            raise ValueError("A memory cannot be associated with itself")
        source = await self._get(source_id)
        target = await self._get(target_id)

        source.associations.add(target_id)
        target.associations.add(source_id)
        await self._save(source)
        await self._save(target)
        logger.debug("Memories associated", source=source_id, target=target_id)

    async def dissociate(self, source_id: str, target_id: str) -> None:
        source = await self._get(source_id)
        target = await self._get(target_id)

        source.associations.discard(target_id)
        target.associations.discard(source_id)
        await self._save(source)
        await self._save(target)
        logger.debug("Memories dissociated", source=source_id, target=target_id)

    async def get_associations(self, unit_id: str) -> list[MemoryUnit]:
        """Directly associated units; ids that no longer resolve are skipped."""
        unit = await self._get(unit_id)
        related = []
        for other_id in sorted(unit.associations):
            other = await self.storage.retrieve(other_id)
            if other is not None:
                related.append(other)
        return related

    async def find_related_memories(
        self, unit_id: str, max_results: Optional[int] = None
    ) -> list[MemoryUnit]:
        """Direct associations first, then neighbours of neighbours.

        Second-degree results exclude the origin and anything already
        directly associated.
        """
        direct = await self.get_associations(unit_id)
        seen = {unit_id} | {u.id for u in direct}
        results = list(direct)

        for neighbour in direct:
            for second_id in sorted(neighbour.associations):
                if second_id in seen:
                    continue
                seen.add(second_id)
                second = await self.storage.retrieve(second_id)
                if second is not None:
                    results.append(second)

        if max_results is not None:
            results = results[:max_results]
        return results
