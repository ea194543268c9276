"""
Agent memory system
===================

Facade over every memory kind. Routes stores by memory type, merges the
session context into stored metadata, and owns the background
consolidation and cleanup tasks.
"""

from typing import Any, Iterable, Optional

import structlog

from memflow.core.config import MemorySystemConfig, Settings, get_settings
from memflow.memory.association import MemoryAssociator
from memflow.memory.base import AbstractMemory
from memflow.memory.cache import MemoryCache
from memflow.memory.consolidation import MemoryConsolidator, ScoringStrategies
from memflow.memory.context import SessionMemoryContextManager
from memflow.memory.episodic import EpisodicMemory
from memflow.memory.events import MemoryEvent, MemoryEventBus, MemoryEventHandler, MemoryEventType
from memflow.memory.long_term import ContextualMemory, LongTermMemory
from memflow.memory.scheduler import PeriodicTask
from memflow.memory.semantic import SemanticMemory
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.stores import InMemoryIndex, create_storage
from memflow.memory.types import LONG_TERM_TYPES, MemoryFilter, MemoryType, MemoryUnit
from memflow.memory.working import WorkingMemory

logger = structlog.get_logger()

STORE_EVENTS = {
    MemoryType.EPISODIC: MemoryEventType.EPISODIC_CREATE,
    MemoryType.SEMANTIC: MemoryEventType.SEMANTIC_UPDATE,
}


class AgentMemorySystem:
    """Layered memory for one agent.

    Nothing runs in the background until ``start()``; ``stop_all_timers()``
    or ``cleanup()`` stops it again.

    Example:
        ```python
        async with AgentMemorySystem(InMemoryStorage(), InMemoryIndex()) as memory:
            await memory.set_context("goal", "plan a trip")
            await memory.store_working_memory({"text": "prefers trains"}, {"priority": 0.6})
            units = await memory.retrieve(MemoryFilter(query="trains"))
        ```
    """

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        config: Optional[MemorySystemConfig] = None,
        scoring: Optional[ScoringStrategies] = None,
    ):
        self.config = config or MemorySystemConfig()
        self.storage = storage
        self.index = index
        self.cache = MemoryCache(self.config.cache_size)

        self.episodic = EpisodicMemory(storage, index, self.cache, self.config.episodic)
        self.semantic = SemanticMemory(storage, index, self.cache)
        self.contextual = ContextualMemory(storage, index, self.cache)
        self.working = WorkingMemory(
            storage, index, self.cache, self.config.working, long_term=self.episodic
        )

        self.context_manager = SessionMemoryContextManager(
            self.contextual,
            default_ttl=self.config.context_ttl,
            history_size=self.config.context_history_size,
        )
        self.consolidator = MemoryConsolidator(
            self.working, self.episodic, self.config.consolidation, scoring
        )
        self.associator = MemoryAssociator(storage, index, self.cache)
        self.events = MemoryEventBus()

        self._memories: dict[MemoryType, AbstractMemory] = {
            MemoryType.WORKING: self.working,
            MemoryType.EPISODIC: self.episodic,
            MemoryType.SEMANTIC: self.semantic,
            MemoryType.CONTEXTUAL: self.contextual,
        }
        self._consolidation_task: Optional[PeriodicTask] = None
        self._owns_storage = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AgentMemorySystem":
        """Build a system on the storage backend named by the environment settings.

        The system owns the storage it creates and closes it in ``cleanup()``.
        """
        settings = settings or get_settings()
        system = cls(
            create_storage(settings),
            InMemoryIndex(),
            MemorySystemConfig.from_settings(settings),
        )
        system._owns_storage = True
        return system

    def on_event(
        self,
        handler: MemoryEventHandler,
        types: Optional[Iterable[MemoryEventType]] = None,
    ) -> None:
        """Subscribe to lifecycle events, optionally only those in ``types``."""
        self.events.subscribe(handler, types)

    async def _emit(
        self, event_type: MemoryEventType, memory: Optional[MemoryUnit] = None, **metadata: Any
    ) -> None:
        await self.events.emit(MemoryEvent(type=event_type, memory=memory, metadata=metadata))

    def memory_for(self, memory_type: MemoryType) -> AbstractMemory:
        return self._memories[memory_type]

    def long_term_for(self, memory_type: MemoryType) -> LongTermMemory:
        if memory_type not in LONG_TERM_TYPES:
            raise ValueError(f"{memory_type.value} is not a long-term memory type")
        return self._memories[memory_type]

    # Store

    def _with_context(
        self, metadata: Optional[dict[str, Any]], context: Optional[dict[str, Any]]
    ) -> dict[str, Any]:
        merged = dict(metadata or {})
        ambient = context if context is not None else self.context_manager.ambient_metadata()
        for key, value in ambient.items():
            merged.setdefault(key, value)
        return merged

    async def store(
        self,
        content: Any,
        metadata: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> MemoryUnit:
        """Store content in the memory named by ``metadata["type"]``.

        Args:
            content: Payload to store.
            metadata: Unit metadata; ``type`` defaults to working memory and
                must name a known memory type.
            context: Context snapshot to merge into metadata. Defaults to the
                current session context. Explicit metadata always wins.
        """
        metadata = dict(metadata or {})
        memory_type = MemoryType.parse(metadata.pop("type", MemoryType.WORKING))
        merged = self._with_context(metadata, context)

        unit = await self.memory_for(memory_type).store(content, merged)
        if memory_type == MemoryType.WORKING:
            if not unit.is_expired():
                await self._emit(MemoryEventType.WORKING_ADD, unit)
            await self._sync_working_memory_size()
        elif memory_type in STORE_EVENTS:
            await self._emit(STORE_EVENTS[memory_type], unit)
        logger.debug("Memory stored", id=unit.id, memory_type=memory_type.value)
        return unit

    async def store_working_memory(
        self,
        content: Any,
        metadata: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> MemoryUnit:
        """Store in working memory, then run the consolidation check."""
        metadata = dict(metadata or {})
        metadata.setdefault("type", MemoryType.WORKING)
        if MemoryType.parse(metadata["type"]) == MemoryType.CONTEXTUAL:
            return await self._push_context(content, metadata)

        unit = await self.store(content, metadata, context)
        await self.check_consolidation()
        return unit

    async def store_long_term(
        self,
        content: Any,
        metadata: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> MemoryUnit:
        metadata = dict(metadata or {})
        memory_type = MemoryType.parse(metadata.get("type", MemoryType.EPISODIC))
        if memory_type not in LONG_TERM_TYPES:
            raise ValueError(f"{memory_type.value} is not a long-term memory type")
        if memory_type == MemoryType.CONTEXTUAL:
            return await self._push_context(content, metadata)
        metadata["type"] = memory_type
        return await self.store(content, metadata, context)

    async def store_episodic_memory(
        self, event: Any, metadata: Optional[dict[str, Any]] = None
    ) -> MemoryUnit:
        return await self.store(event, {**(metadata or {}), "type": MemoryType.EPISODIC})

    async def store_semantic_memory(
        self,
        concept: str,
        relations: Optional[dict[str, list[str]]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MemoryUnit:
        content = {"concept": concept, "relations": relations or {}}
        return await self.store(content, {**(metadata or {}), "type": MemoryType.SEMANTIC})

    async def _push_context(self, content: Any, metadata: dict[str, Any]) -> MemoryUnit:
        if isinstance(content, dict) and "key" in content:
            key, value = content["key"], content.get("value")
        else:
            key, value = metadata.get("context_key"), content
        if key is None:
            return await self.contextual.store(content, metadata)
        return await self.set_context(key, value)

    # Retrieve

    async def retrieve(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        """Filtered retrieval across every memory named in ``filter.types``."""
        filter = filter or MemoryFilter()
        types = filter.types or list(MemoryType)
        results: list[MemoryUnit] = []
        for memory_type in types:
            results.extend(await self.memory_for(memory_type).retrieve_by_filter(filter))
        return results

    async def retrieve_by_id(self, unit_id: str) -> Optional[MemoryUnit]:
        unit = await self.storage.retrieve(unit_id)
        if unit is None:
            return None
        return await self.memory_for(unit.memory_type).retrieve(unit_id)

    async def retrieve_working_memories(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        return await self.working.retrieve_by_filter(filter)

    async def retrieve_long_term(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        filter = filter or MemoryFilter()
        types = [t for t in (filter.types or list(MemoryType)) if t in LONG_TERM_TYPES]
        results: list[MemoryUnit] = []
        for memory_type in types:
            results.extend(await self.long_term_for(memory_type).retrieve_by_filter(filter))
        return results

    async def retrieve_episodic_memories(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        return await self.episodic.retrieve_by_filter(filter)

    async def update_working_memory(self, unit: MemoryUnit) -> None:
        await self.working.update(unit)

    async def find_similar_experiences(self, event: Any, limit: Optional[int] = None) -> list[MemoryUnit]:
        return await self.episodic.find_similar_experiences(event, limit)

    def find_related_concepts(self, concept: str) -> list[str]:
        return self.semantic.find_related_concepts(concept)

    # Context

    async def set_context(self, key: str, value: Any, ttl: Optional[float] = None) -> MemoryUnit:
        """Update the session context and count a context switch on working units."""
        unit = await self.context_manager.set_context(key, value, ttl=ttl)
        await self.events.emit(MemoryEvent(
            type=MemoryEventType.CONTEXT_CHANGE,
            memory=unit,
            context=self.context_manager.get_current_context(),
            metadata={"key": key},
        ))
        await self._count_context_switch()
        return unit

    async def _count_context_switch(self) -> None:
        for unit in await self.working.list_units():
            unit.metadata["context_switches"] = int(unit.metadata.get("context_switches", 0)) + 1
            try:
                await self.working.update(unit)
            except Exception as e:
                logger.warning("Context switch update failed", id=unit.id, error=str(e))
        await self.check_consolidation()

    async def get_context(self, key: str) -> Any:
        return await self.context_manager.get_context(key)

    async def clear_context(self) -> None:
        await self.context_manager.clear_context()

    async def load_context(self) -> int:
        return await self.context_manager.load_context_from_working_memory()

    async def store_context_as_episodic_memory(
        self, metadata: Optional[dict[str, Any]] = None
    ) -> MemoryUnit:
        """Snapshot the current context as an episodic event."""
        event_metadata = {
            "location": "system",
            "actors": ["system"],
            "actions": ["context_snapshot"],
            "snapshot_of": MemoryType.CONTEXTUAL.value,
            **(metadata or {}),
        }
        snapshot = {"context": self.context_manager.get_current_context()}
        return await self.episodic.store(snapshot, event_metadata)

    # Associations

    async def associate_memories(self, source_id: str, target_id: str) -> None:
        await self.associator.associate(source_id, target_id)

    async def dissociate_memories(self, source_id: str, target_id: str) -> None:
        await self.associator.dissociate(source_id, target_id)

    async def get_associated_memories(self, unit_id: str) -> list[MemoryUnit]:
        return await self.associator.get_associations(unit_id)

    async def find_related_memories(
        self, unit_id: str, max_results: Optional[int] = None
    ) -> list[MemoryUnit]:
        return await self.associator.find_related_memories(unit_id, max_results)

    # Consolidation

    async def check_consolidation(self) -> list[MemoryUnit]:
        """Move every working unit that fires a consolidation trigger."""
        await self.consolidator.sync_working_memory_size()
        moved = await self.consolidator.run()
        for unit in moved:
            await self._emit(
                MemoryEventType.WORKING_FORGET,
                unit,
                original_id=unit.metadata.get("original_id"),
                reason="consolidated",
            )
        return moved

    async def consolidate_to_episodic(self) -> list[MemoryUnit]:
        merged = await self.working.consolidate_to_episodic()
        await self.consolidator.sync_working_memory_size()
        for unit in merged:
            await self._emit(MemoryEventType.EPISODIC_CREATE, unit, reason="batch")
        return merged

    async def _sync_working_memory_size(self) -> None:
        size = await self.consolidator.sync_working_memory_size()
        fill_ratio = self.consolidator.fill_ratio
        if fill_ratio >= self.config.consolidation.capacity_threshold:
            logger.warning("Working memory near capacity", size=size, fill_ratio=fill_ratio)
            await self._emit(
                MemoryEventType.CAPACITY_WARNING,
                size=size,
                max_size=self.config.consolidation.max_working_memory_size,
                fill_ratio=fill_ratio,
            )

    async def optimize(self) -> list[MemoryUnit]:
        return await self.consolidator.optimize()

    async def run_consolidation_cycle(self) -> dict[str, Any]:
        """One background pass: expiry sweep, then both consolidation passes."""
        expired = await self.working.cleanup()
        await self._sync_working_memory_size()
        report = await self.consolidator.consolidate_all()
        report["expired_count"] = expired
        return report

    # Lifecycle

    def start(self) -> None:
        """Start background consolidation and working memory cleanup."""
        if self._consolidation_task is None:
            self._consolidation_task = PeriodicTask(
                "consolidation",
                self.run_consolidation_cycle,
                self.config.consolidation_interval,
            )
        self._consolidation_task.start()
        self.working.start_cleanup(self.config.working.cleanup_interval)
        logger.info("Memory system started", name=self.config.name)

    @property
    def running(self) -> bool:
        return self._consolidation_task is not None and self._consolidation_task.running

    def stop_all_timers(self) -> None:
        """Cancel every background timer; in-flight operations finish on their own."""
        if self._consolidation_task is not None:
            self._consolidation_task.cancel()
        for memory in self._memories.values():
            memory.cancel_cleanup()

    async def cleanup(self) -> None:
        """Stop background tasks and wait for any in-flight iteration."""
        if self._consolidation_task is not None:
            await self._consolidation_task.stop()
        for memory in self._memories.values():
            await memory.stop_cleanup()
        if self._owns_storage:
            await self.storage.close()
        logger.info("Memory system stopped", name=self.config.name)

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()
