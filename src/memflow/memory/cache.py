"""LRU cache in front of memory storage."""

from collections import OrderedDict
from typing import Optional

from memflow.memory.types import MemoryUnit


class MemoryCache:
    """Fixed-capacity LRU cache keyed by unit id.

    Advisory only: a miss always falls through to storage. Entries are copied
    in and out so a cached unit never aliases a caller's object.

    Example:
        ```python
        cache = MemoryCache(capacity=2)
        cache.set(a)
        cache.set(b)
        cache.get(a.id)  # a becomes most recently used
        cache.set(c)     # evicts b
        ```
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("Cache capacity must be positive")
        self.capacity = capacity
        self._entries: OrderedDict[str, MemoryUnit] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, unit_id: str) -> Optional[MemoryUnit]:
        unit = self._entries.get(unit_id)
        if unit is None:
            self.misses += 1
            return None
        self._entries.move_to_end(unit_id)
        self.hits += 1
        return unit.model_copy(deep=True)

    def set(self, unit: MemoryUnit) -> None:
        if unit.id in self._entries:
            self._entries.move_to_end(unit.id)
        elif len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
        self._entries[unit.id] = unit.model_copy(deep=True)

    def delete(self, unit_id: str) -> None:
        self._entries.pop(unit_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        """Ids from least to most recently used."""
        return list(self._entries)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
