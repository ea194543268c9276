"""
Working memory
==============

Short-lived, capacity-bounded memory for the current conversation.

Units leave working memory in three ways:
1. Expiry: the sweep removes units past ``expires_at``; units with enough
   access or relevance signal move to long-term memory first.
2. Overflow: past ``max_size`` the least relevant units move to long-term
   memory.
3. Batch consolidation: units sharing a ``context`` merge into a single
   long-term unit.
"""

from datetime import timedelta
from typing import Any, Hashable, Optional

import structlog

from memflow.core.config import WorkingMemoryConfig
from memflow.memory.base import AbstractMemory
from memflow.memory.cache import MemoryCache
from memflow.memory.long_term import LongTermMemory
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import (
    MemoryFilter,
    MemoryType,
    MemoryUnit,
    TransitionType,
    utcnow,
)

logger = structlog.get_logger()

WORKING_MEMORY_SOURCE = "working_memory"


class WorkingMemory(AbstractMemory):
    """TTL- and capacity-bounded memory.

    Example:
        ```python
        working = WorkingMemory(storage, index)
        unit = await working.store({"text": "user prefers aisle seats"},
                                   {"relevance": 0.9, "context": "travel"})
        await working.consolidate_to_episodic()
        ```
    """

    memory_type = MemoryType.WORKING

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
        config: Optional[WorkingMemoryConfig] = None,
        long_term: Optional[LongTermMemory] = None,
    ):
        super().__init__(storage, index, cache)
        self.config = config or WorkingMemoryConfig()
        self.long_term = long_term or LongTermMemory(
            storage, index, self.cache, memory_type=MemoryType.EPISODIC
        )

    async def store(
        self,
        content: Any,
        metadata: Optional[dict[str, Any]] = None,
        ephemeral: bool = False,
    ) -> MemoryUnit:
        """Store a unit.

        A unit whose ``expires_at`` has already passed is never persisted
        here; it goes straight to long-term memory when it carries enough
        signal and is discarded otherwise.
        """
        metadata = dict(metadata or {})
        if metadata.get("expires_at") is None:
            ttl = self.config.ephemeral_ttl if ephemeral else self.config.ttl
            metadata["expires_at"] = utcnow() + timedelta(seconds=ttl)

        unit = self.build_unit(content, metadata)

        if unit.is_expired():
            if self.has_transition_signal(unit):
                await self._transition(unit, TransitionType.IMMEDIATE)
            else:
                logger.debug("Expired working memory discarded", id=unit.id)
            return unit

        await self.persist(unit)
        await self._enforce_capacity()
        return unit

    async def store_ephemeral(self, content: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        return await self.store(content, metadata, ephemeral=True)

    async def retrieve(self, unit_id: str) -> Optional[MemoryUnit]:
        await self.cleanup()
        return await super().retrieve(unit_id)

    async def retrieve_by_filter(self, filter: Optional[MemoryFilter] = None) -> list[MemoryUnit]:
        await self.cleanup()
        return await super().retrieve_by_filter(filter)

    def has_transition_signal(self, unit: MemoryUnit) -> bool:
        return (
            unit.access_count >= self.config.transition_access_threshold
            or unit.relevance >= self.config.transition_relevance_threshold
        )

    async def cleanup(self) -> int:
        """Sweep expired units.

        Failures are isolated per unit.
        """
        now = utcnow()
        expired = [u for u in await self.list_units() if u.is_expired(now)]
        removed = 0

        for unit in expired:
            try:
                if self.has_transition_signal(unit):
                    await self._transition(unit, TransitionType.IMMEDIATE)
                await self.delete(unit.id)
                removed += 1
            except Exception as e:
                logger.error("Working memory expiry failed", id=unit.id, error=str(e))

        if removed:
            logger.debug("Working memory sweep", removed=removed)
        return removed

    async def _enforce_capacity(self) -> list[MemoryUnit]:
        units = await self.list_units()
        overflow = len(units) - self.config.max_size
        if overflow <= 0:
            return []

        victims = sorted(units, key=lambda u: (u.relevance, u.priority, u.timestamp))[:overflow]
        moved = []
        for unit in victims:
            try:
                moved.append(await self._transition(unit, TransitionType.IMMEDIATE))
                await self.delete(unit.id)
            except Exception as e:
                logger.error("Working memory eviction failed", id=unit.id, error=str(e))

        logger.info("Working memory over capacity", evicted=len(moved), max_size=self.config.max_size)
        return moved

    async def consolidate_to_episodic(self) -> list[MemoryUnit]:
        """Merge units sharing a ``context`` into one long-term unit per context."""
        groups: dict[Hashable, list[MemoryUnit]] = {}
        contexts: dict[Hashable, Any] = {}

        for unit in sorted(await self.list_units(), key=lambda u: u.timestamp):
            context = unit.metadata.get("context")
            if context is None:
                continue
            key = context if isinstance(context, Hashable) else repr(context)
            groups.setdefault(key, []).append(unit)
            contexts[key] = context

        created = []
        for key, members in groups.items():
            try:
                content = {
                    "memories": [
                        {"id": m.id, "content": m.content, "metadata": _carried_metadata(m)}
                        for m in members
                    ],
                }
                metadata = {
                    "transition_type": TransitionType.BATCH.value,
                    "context": contexts[key],
                    "source": WORKING_MEMORY_SOURCE,
                    "original_ids": [m.id for m in members],
                    "transitioned_at": utcnow(),
                    "priority": max(m.priority for m in members),
                    "relevance": max(m.relevance for m in members),
                }
                consolidated = await self.long_term.store(content, metadata)
                for member in members:
                    await self.delete(member.id)
                created.append(consolidated)
            except Exception as e:
                logger.error("Batch consolidation failed", context=contexts[key], error=str(e))

        if created:
            logger.info("Working memory consolidated", groups=len(created))
        return created

    async def _transition(self, unit: MemoryUnit, transition_type: TransitionType) -> MemoryUnit:
        metadata = _carried_metadata(unit)
        metadata.update(
            transition_type=transition_type.value,
            source=WORKING_MEMORY_SOURCE,
            original_id=unit.id,
            transitioned_at=utcnow(),
        )
        moved = self.long_term.build_unit(unit.content, metadata)
        moved.access_count = unit.access_count
        moved.associations = set(unit.associations)
        await self.long_term.persist(moved)
        logger.debug(
            "Working memory transitioned",
            id=unit.id,
            new_id=moved.id,
            transition_type=transition_type.value,
        )
        return moved


def _carried_metadata(unit: MemoryUnit) -> dict[str, Any]:
    return {k: v for k, v in unit.metadata.items() if k != "expires_at"}
