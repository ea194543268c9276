"""Storage and index contracts.

Backends are injected into every memory kind. Storage is the source of
truth; the index only maps search terms to unit ids.
"""

from abc import ABC, abstractmethod
from typing import Optional

from memflow.memory.types import MemoryFilter, MemoryUnit


class MemoryStorage(ABC):
    """Keyed store of memory units.

    Implementations hand out copies: mutating a returned unit never changes
    the stored record until it is written back with ``update``.
    """

    @abstractmethod
    async def store(self, unit: MemoryUnit) -> None:
        """Insert or overwrite a unit (last write wins)."""
        pass

    @abstractmethod
    async def retrieve(self, unit_id: str) -> Optional[MemoryUnit]:
        """Get one unit by id."""
        pass

    @abstractmethod
    async def retrieve_by_filter(self, filter: MemoryFilter) -> list[MemoryUnit]:
        """Get every unit matching a filter."""
        pass

    @abstractmethod
    async def update(self, unit: MemoryUnit) -> None:
        """Replace an existing unit; raises MemoryNotFoundError otherwise."""
        pass

    @abstractmethod
    async def delete(self, unit_id: str) -> None:
        """Remove a unit; unknown ids are ignored."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every unit."""
        pass

    @abstractmethod
    async def get_size(self) -> int:
        pass

    async def get_capacity(self) -> Optional[int]:
        """Maximum number of units, or None when unbounded."""
        return None

    async def batch_store(self, units: list[MemoryUnit]) -> None:
        for unit in units:
            await self.store(unit)

    async def batch_retrieve(self, unit_ids: list[str]) -> list[Optional[MemoryUnit]]:
        return [await self.retrieve(unit_id) for unit_id in unit_ids]

    async def close(self) -> None:
        """Release backend resources."""
        pass


class MemoryIndex(ABC):
    """Term index over unit content and metadata."""

    @abstractmethod
    async def index(self, unit: MemoryUnit) -> None:
        """Add a unit's terms."""
        pass

    @abstractmethod
    async def remove(self, unit_id: str) -> None:
        """Drop every posting for a unit id."""
        pass

    @abstractmethod
    async def search(self, query: str, mode: str = "all") -> list[str]:
        """Return ids matching a query.

        Args:
            query: Clauses joined by `` AND ``; ``field:value`` clauses match
                field terms, other clauses are tokenized.
            mode: ``all`` for the intersection of every term, ``any`` for the
                union ranked by matched term count.
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    async def add(self, unit: MemoryUnit) -> None:
        await self.index(unit)

    async def update(self, unit: MemoryUnit) -> None:
        await self.remove(unit.id)
        await self.index(unit)

    async def delete(self, unit_id: str) -> None:
        await self.remove(unit_id)

    async def batch_index(self, units: list[MemoryUnit]) -> None:
        for unit in units:
            await self.index(unit)
