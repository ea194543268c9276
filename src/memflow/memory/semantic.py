"""
Semantic memory
===============

Concepts and typed relations between them. Every stored concept updates an
in-memory concept graph; edges are walkable from both ends regardless of
which side declared them.
"""

from typing import Any, Optional

import structlog

from memflow.memory.cache import MemoryCache
from memflow.memory.long_term import LongTermMemory
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import MemoryType, MemoryUnit

logger = structlog.get_logger()


class ConceptGraph:
    """Concept graph with arena node storage.

    Labels map to integer node ids; adjacency is a list indexed by node id.
    Relation types are kept per declared (source, target) pair.
    """

    def __init__(self):
        self._ids: dict[str, int] = {}
        self._labels: list[str] = []
        self._adjacency: list[dict[int, None]] = []
        self._relations: dict[tuple[int, int], set[str]] = {}

    def add_concept(self, label: str) -> int:
        node = self._ids.get(label)
        if node is None:
            node = len(self._labels)
            self._ids[label] = node
            self._labels.append(label)
            self._adjacency.append({})
        return node

    def add_relation(self, source: str, relation_type: str, target: str) -> None:
        s = self.add_concept(source)
        t = self.add_concept(target)
        if s == t:
            return
        self._adjacency[s][t] = None
        self._adjacency[t][s] = None
        self._relations.setdefault((s, t), set()).add(relation_type)

    def neighbors(self, label: str) -> list[str]:
        node = self._ids.get(label)
        if node is None:
            return []
        return [self._labels[n] for n in self._adjacency[node]]

    def relations(self, label: str) -> dict[str, list[str]]:
        """Declared outgoing relations of a concept, grouped by type."""
        node = self._ids.get(label)
        if node is None:
            return {}
        grouped: dict[str, list[str]] = {}
        for target in self._adjacency[node]:
            for relation_type in sorted(self._relations.get((node, target), ())):
                grouped.setdefault(relation_type, []).append(self._labels[target])
        return grouped

    def edges(self) -> list[tuple[str, str, str]]:
        return [
            (self._labels[s], relation_type, self._labels[t])
            for (s, t), types in self._relations.items()
            for relation_type in sorted(types)
        ]

    def clear(self) -> None:
        self._ids.clear()
        self._labels.clear()
        self._adjacency.clear()
        self._relations.clear()

    def __contains__(self, label: str) -> bool:
        return label in self._ids

    def __len__(self) -> int:
        return len(self._labels)


class SemanticMemoryFactory:
    """Normalize raw content and metadata into a concept record."""

    @staticmethod
    def create_concept(content: Any, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        metadata = metadata or {}
        record = dict(content) if isinstance(content, dict) else {"concept": content}

        def pick(key: str, default: Any = None) -> Any:
            if record.get(key) is not None:
                return record[key]
            if metadata.get(key) is not None:
                return metadata[key]
            return default

        concept = pick("concept")
        if concept is None:
            raise ValueError("Semantic memory requires a concept")

        record["concept"] = str(concept)
        record["relations"] = {
            str(relation_type): [str(t) for t in targets]
            for relation_type, targets in dict(pick("relations", {})).items()
        }
        record["confidence"] = float(pick("confidence", 1.0))
        record["source"] = pick("source", "system")
        return record


class SemanticMemory(LongTermMemory):
    """Concept memory backed by a bidirectional concept graph.

    Example:
        ```python
        semantic = SemanticMemory(storage, index)
        await semantic.store({"concept": "cat", "relations": {"IS_A": ["mammal"]}})
        semantic.find_related_concepts("mammal")  # ["cat"]
        ```
    """

    memory_type = MemoryType.SEMANTIC

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
    ):
        super().__init__(storage, index, cache)
        self.factory = SemanticMemoryFactory()
        self.graph = ConceptGraph()

    async def store(self, content: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        record = self.factory.create_concept(content, metadata)
        metadata = {
            k: v for k, v in (metadata or {}).items()
            if k not in ("concept", "relations", "confidence", "source")
        }
        unit = await super().store(record, metadata)
        self._add_to_graph(record)
        return unit

    def _add_to_graph(self, record: dict[str, Any]) -> None:
        concept = record["concept"]
        self.graph.add_concept(concept)
        for relation_type, targets in record.get("relations", {}).items():
            for target in targets:
                self.graph.add_relation(concept, relation_type, target)

    def find_related_concepts(self, concept: str) -> list[str]:
        return self.graph.neighbors(concept)

    def get_relations(self, concept: str) -> dict[str, list[str]]:
        return self.graph.relations(concept)

    @staticmethod
    def build_query(
        concept: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        text: Optional[str] = None,
    ) -> str:
        """Compose a conjunctive index query, e.g. ``concept:cat AND metadata.domain:zoo``."""
        clauses = []
        if concept:
            clauses.append(f"concept:{concept}")
        for key, value in (metadata or {}).items():
            clauses.append(f"metadata.{key}:{value}")
        if text:
            clauses.append(text)
        return " AND ".join(clauses)

    async def search_concepts(
        self,
        concept: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        text: Optional[str] = None,
    ) -> list[MemoryUnit]:
        query = self.build_query(concept, metadata, text)
        if not query:
            return []
        return await self.search(query)

    async def get_concept(self, concept: str) -> Optional[MemoryUnit]:
        """Latest stored unit for a concept."""
        units = await self.search_concepts(concept=concept)
        if not units:
            return None
        return max(units, key=lambda u: u.timestamp)

    async def rebuild_concept_graph(self) -> int:
        """Replay stored concepts into a fresh graph."""
        self.graph.clear()
        units = sorted(await self.list_units(), key=lambda u: u.timestamp)
        for unit in units:
            if isinstance(unit.content, dict) and unit.content.get("concept"):
                self._add_to_graph(unit.content)
        logger.debug("Concept graph rebuilt", concepts=len(self.graph), units=len(units))
        return len(self.graph)

    async def delete(self, unit_id: str) -> None:
        await super().delete(unit_id)
        await self.rebuild_concept_graph()
