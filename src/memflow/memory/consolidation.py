"""
Memory consolidation
====================

Periodic promotion of working memory into long-term memory.

Two passes:
1. Transfer: any working unit that fires a trigger (access count, age,
   priority, context switches, working memory fill ratio, or an explicit
   ``consolidate`` flag) moves to long-term memory.
2. Optimize: stale, rarely used working units are grouped and merged into
   a single long-term unit when the group's aggregate relevance is high
   enough.
"""

from datetime import timedelta
from enum import Enum
from typing import Any, Optional

import structlog

from memflow.core.config import ConsolidationConfig
from memflow.memory.long_term import LongTermMemory
from memflow.memory.types import ConsolidationMetrics, MemoryType, MemoryUnit, utcnow
from memflow.memory.working import WORKING_MEMORY_SOURCE, WorkingMemory

logger = structlog.get_logger()


class ConsolidationTrigger(str, Enum):
    """Conditions that make a working unit eligible for consolidation."""
    ACCESS_COUNT = "access_count"
    AGE = "age"
    PRIORITY = "priority"
    CONTEXT_SWITCH = "context_switch"
    CAPACITY = "capacity"
    EXPLICIT = "explicit"


class ConsolidationStatus(str, Enum):
    UNCONSOLIDATED = "unconsolidated"
    IN_PROGRESS = "in_progress"
    CONSOLIDATED = "consolidated"


class ScoringStrategies:
    """Group scoring used by ``optimize()``.

    Similarity, overlap, proximity and reliability are fixed placeholders.
    Subclass and override to plug in real scoring.
    """

    def semantic_similarity(self, units: list[MemoryUnit]) -> float:
        return 0.8

    def contextual_overlap(self, units: list[MemoryUnit]) -> float:
        return 0.7

    def temporal_proximity(self, units: list[MemoryUnit]) -> float:
        return 0.6

    def source_reliability(self, units: list[MemoryUnit]) -> float:
        return 0.8

    def metrics(self, units: list[MemoryUnit]) -> ConsolidationMetrics:
        similarity = self.semantic_similarity(units)
        overlap = self.contextual_overlap(units)
        proximity = self.temporal_proximity(units)
        reliability = self.source_reliability(units)
        return ConsolidationMetrics(
            semantic_similarity=similarity,
            contextual_overlap=overlap,
            temporal_proximity=proximity,
            source_reliability=reliability,
            confidence=(similarity + reliability) / 2,
            importance=sum(u.priority for u in units) / len(units),
            relevance=0.4 * similarity + 0.3 * overlap + 0.3 * proximity,
            access_count=sum(u.access_count for u in units),
            last_accessed=max(u.last_accessed for u in units),
            created_at=min(u.timestamp for u in units),
        )


class MemoryConsolidator:
    """Moves and merges working memory into long-term memory.

    Tracks the working memory population in ``working_memory_size``;
    callers report stores through ``update_working_memory_size``.

    Example:
        ```python
        consolidator = MemoryConsolidator(working, episodic)
        report = await consolidator.consolidate_all()
        ```
    """

    def __init__(
        self,
        working: WorkingMemory,
        long_term: LongTermMemory,
        config: Optional[ConsolidationConfig] = None,
        scoring: Optional[ScoringStrategies] = None,
    ):
        self.working = working
        self.long_term = long_term
        self.config = config or ConsolidationConfig()
        self.scoring = scoring or ScoringStrategies()
        self.working_memory_size = 0

    @property
    def fill_ratio(self) -> float:
        return self.working_memory_size / self.config.max_working_memory_size

    def fired_triggers(self, unit: MemoryUnit) -> list[ConsolidationTrigger]:
        cfg = self.config
        fired = []
        if unit.access_count >= cfg.access_count_threshold:
            fired.append(ConsolidationTrigger.ACCESS_COUNT)
        if unit.age() >= timedelta(hours=cfg.age_threshold_hours):
            fired.append(ConsolidationTrigger.AGE)
        if unit.priority >= cfg.priority_threshold:
            fired.append(ConsolidationTrigger.PRIORITY)
        if int(unit.metadata.get("context_switches", 0)) >= cfg.context_switch_threshold:
            fired.append(ConsolidationTrigger.CONTEXT_SWITCH)
        if self.fill_ratio >= cfg.capacity_threshold:
            fired.append(ConsolidationTrigger.CAPACITY)
        if unit.metadata.get("consolidate") is True:
            fired.append(ConsolidationTrigger.EXPLICIT)
        return fired

    def check_triggers(self, unit: MemoryUnit) -> bool:
        return bool(self.fired_triggers(unit))

    async def get_consolidation_candidates(self) -> list[MemoryUnit]:
        units = await self.working.list_units()
        return [
            u for u in units
            if u.metadata.get("consolidation_status") != ConsolidationStatus.CONSOLIDATED.value
            and self.check_triggers(u)
        ]

    async def consolidate(self, unit: MemoryUnit) -> Optional[MemoryUnit]:
        """Move one working unit to long-term memory if a trigger fires."""
        if unit.memory_type != MemoryType.WORKING:
            return None
        triggers = self.fired_triggers(unit)
        if not triggers:
            return None

        unit.metadata["consolidation_status"] = ConsolidationStatus.IN_PROGRESS.value
        await self.working.update(unit)
        try:
            moved = await self._move_to_long_term(unit, triggers)
        except Exception:
            unit.metadata["consolidation_status"] = ConsolidationStatus.UNCONSOLIDATED.value
            try:
                await self.working.update(unit)
            except Exception as e:
                logger.error("Consolidation status reset failed", id=unit.id, error=str(e))
            raise

        await self.working.delete(unit.id)
        await self.update_working_memory_size(-1)
        return moved

    async def _move_to_long_term(
        self, unit: MemoryUnit, triggers: list[ConsolidationTrigger]
    ) -> MemoryUnit:
        metadata = {k: v for k, v in unit.metadata.items() if k != "expires_at"}
        metadata.update(
            source=WORKING_MEMORY_SOURCE,
            original_id=unit.id,
            consolidation_status=ConsolidationStatus.CONSOLIDATED.value,
            consolidation_timestamp=utcnow(),
            consolidation_triggers=[t.value for t in triggers],
        )
        moved = self.long_term.build_unit(unit.content, metadata)
        moved.access_count = unit.access_count
        moved.associations = set(unit.associations)
        moved.consolidation_metrics = unit.consolidation_metrics
        await self.long_term.persist(moved)
        logger.debug(
            "Memory consolidated",
            id=unit.id,
            new_id=moved.id,
            triggers=[t.value for t in triggers],
        )
        return moved

    async def run(self) -> list[MemoryUnit]:
        """Transfer every eligible working unit; failures are isolated."""
        moved = []
        for unit in await self.get_consolidation_candidates():
            try:
                result = await self.consolidate(unit)
                if result is not None:
                    moved.append(result)
            except Exception as e:
                logger.error("Consolidation failed", id=unit.id, error=str(e))
        return moved

    async def select_optimization_candidates(self) -> list[MemoryUnit]:
        """Mark stale, rarely used working units for merging.

        Units below the access ceiling and older than the age threshold are
        flagged ``optimized=True``; heavily used units are flagged
        ``optimized=False`` and excluded.
        """
        cfg = self.config
        min_age = timedelta(hours=cfg.age_threshold_hours)
        candidates = []
        for unit in await self.working.list_units():
            if unit.access_count >= cfg.optimize_exclude_access_count:
                if unit.metadata.get("optimized") is not False:
                    unit.metadata["optimized"] = False
                    await self.working.update(unit)
            elif unit.access_count < cfg.optimize_max_access_count and unit.age() > min_age:
                unit.metadata["optimized"] = True
                await self.working.update(unit)
                candidates.append(unit)
        return candidates

    async def optimize(self) -> list[MemoryUnit]:
        """Merge optimization candidates, one group per memory type."""
        groups: dict[MemoryType, list[MemoryUnit]] = {}
        for unit in await self.select_optimization_candidates():
            groups.setdefault(unit.memory_type, []).append(unit)

        merged = []
        for memory_type, members in groups.items():
            if len(members) < 2:
                continue
            try:
                unit = await self._merge_group(members)
                if unit is not None:
                    merged.append(unit)
            except Exception as e:
                logger.error(
                    "Group consolidation failed",
                    memory_type=memory_type.value,
                    size=len(members),
                    error=str(e),
                )
        return merged

    async def _merge_group(self, members: list[MemoryUnit]) -> Optional[MemoryUnit]:
        metrics = self.scoring.metrics(members)
        if metrics.relevance < self.config.consolidation_threshold / 10:
            logger.debug("Group below merge threshold", relevance=metrics.relevance, size=len(members))
            return None

        content: dict[str, Any] = {}
        for member in members:
            if isinstance(member.content, dict):
                content.update(member.content)
            else:
                content.setdefault("items", []).append(member.content)

        metadata: dict[str, Any] = {}
        for member in members:
            metadata.update(member.metadata)
        metadata.pop("expires_at", None)
        metadata.update(
            original_type=members[0].memory_type.value,
            optimized=any(m.metadata.get("optimized") for m in members),
            priority=sum(m.priority for m in members) / len(members),
            source=WORKING_MEMORY_SOURCE,
            consolidation_status=ConsolidationStatus.CONSOLIDATED.value,
            consolidation_timestamp=utcnow(),
        )

        unit = self.long_term.build_unit(content, metadata)
        unit.associations = {m.id for m in members}
        unit.consolidation_metrics = metrics
        await self.long_term.persist(unit)

        for member in members:
            await self.working.delete(member.id)
        await self.update_working_memory_size(-(len(members) - 1))

        logger.info("Working memories merged", new_id=unit.id, members=len(members))
        return unit

    async def consolidate_all(self) -> dict[str, Any]:
        """Run both passes.

        Returns:
            Consolidation report
        """
        merged = await self.optimize()
        moved = await self.run()
        report = {
            "merged_groups": len(merged),
            "transferred_count": len(moved),
            "working_memory_size": self.working_memory_size,
        }
        logger.info("Consolidation finished", **report)
        return report

    async def update_working_memory_size(self, delta: int) -> None:
        self.working_memory_size = max(0, self.working_memory_size + delta)

    async def sync_working_memory_size(self) -> int:
        """Reset the tracked size to the actual working memory population."""
        self.working_memory_size = await self.working.count()
        return self.working_memory_size
