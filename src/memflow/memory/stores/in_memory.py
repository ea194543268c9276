"""
In-process reference backends
=============================

Dict-backed storage and an inverted index. Neither survives a restart;
use ``SQLiteMemoryStorage`` for durability.
"""

import re
from collections import defaultdict
from typing import Any, Optional

from memflow.core.exceptions import MemoryNotFoundError, StorageBackendError
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import MemoryFilter, MemoryUnit

_TOKEN_SPLIT = re.compile(r"\W+")
_FIELD_CLAUSE = re.compile(r"^[\w.]+:\S")
_MIN_TOKEN_LENGTH = 3


def tokenize(text: str) -> list[str]:
    """Case-folded word tokens longer than two characters."""
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) >= _MIN_TOKEN_LENGTH]


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def extract_terms(unit: MemoryUnit) -> set[str]:
    """All index terms for a unit: word tokens plus ``field:value`` terms."""
    terms = set(tokenize(unit.text()))
    for tag in unit.tags:
        terms.update(tokenize(str(tag)))

    terms.add(f"type:{unit.memory_type.value}")

    if isinstance(unit.content, dict):
        for key, value in unit.content.items():
            if _is_scalar(value):
                terms.add(f"{key}:{value}".lower())

    for key, value in unit.metadata.items():
        if _is_scalar(value):
            terms.add(f"metadata.{key}:{value}".lower())

    return terms


def parse_query(query: str) -> list[str]:
    terms: list[str] = []
    for clause in query.split(" AND "):
        clause = clause.strip()
        if not clause:
            continue
        if _FIELD_CLAUSE.match(clause):
            terms.append(clause.lower())
        else:
            terms.extend(tokenize(clause))
    return terms


class InMemoryStorage(MemoryStorage):
    """Dict-backed storage.

    Units are deep-copied on the way in and on the way out so callers never
    share mutable state with the store.

    Example:
        ```python
        storage = InMemoryStorage()
        await storage.store(MemoryUnit(content="hello"))
        units = await storage.retrieve_by_filter(MemoryFilter(query="hell"))
        ```
    """

    def __init__(self, capacity: Optional[int] = None):
        self._units: dict[str, MemoryUnit] = {}
        self._capacity = capacity

    async def store(self, unit: MemoryUnit) -> None:
        if (
            self._capacity is not None
            and unit.id not in self._units
            and len(self._units) >= self._capacity
        ):
            raise StorageBackendError(
                "Storage capacity reached",
                details={"capacity": self._capacity, "id": unit.id},
            )
        self._units[unit.id] = unit.model_copy(deep=True)

    async def retrieve(self, unit_id: str) -> Optional[MemoryUnit]:
        unit = self._units.get(unit_id)
        return unit.model_copy(deep=True) if unit else None

    async def retrieve_by_filter(self, filter: MemoryFilter) -> list[MemoryUnit]:
        return [
            unit.model_copy(deep=True)
            for unit in self._units.values()
            if filter.matches(unit)
        ]

    async def update(self, unit: MemoryUnit) -> None:
        if unit.id not in self._units:
            raise MemoryNotFoundError(unit.id)
        self._units[unit.id] = unit.model_copy(deep=True)

    async def delete(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)

    async def clear(self) -> None:
        self._units.clear()

    async def get_size(self) -> int:
        return len(self._units)

    async def get_capacity(self) -> Optional[int]:
        return self._capacity


class InMemoryIndex(MemoryIndex):
    """Inverted index of term postings."""

    def __init__(self):
        self._postings: dict[str, set[str]] = defaultdict(set)
        self._terms_by_id: dict[str, set[str]] = {}

    async def index(self, unit: MemoryUnit) -> None:
        if unit.id in self._terms_by_id:
            await self.remove(unit.id)
        terms = extract_terms(unit)
        self._terms_by_id[unit.id] = terms
        for term in terms:
            self._postings[term].add(unit.id)

    async def remove(self, unit_id: str) -> None:
        for term in self._terms_by_id.pop(unit_id, set()):
            ids = self._postings.get(term)
            if ids is None:
                continue
            ids.discard(unit_id)
            if not ids:
                del self._postings[term]

    async def search(self, query: str, mode: str = "all") -> list[str]:
        terms = parse_query(query)
        if not terms:
            return []

        if mode == "all":
            result: Optional[set[str]] = None
            for term in terms:
                ids = self._postings.get(term, set())
                result = set(ids) if result is None else result & ids
                if not result:
                    return []
            return sorted(result or [])

        if mode == "any":
            hits: dict[str, int] = defaultdict(int)
            for term in terms:
                for unit_id in self._postings.get(term, ()):
                    hits[unit_id] += 1
            return sorted(hits, key=lambda unit_id: (-hits[unit_id], unit_id))

        raise ValueError(f"Unknown search mode: {mode}")

    async def clear(self) -> None:
        self._postings.clear()
        self._terms_by_id.clear()

    def __len__(self) -> int:
        return len(self._terms_by_id)
