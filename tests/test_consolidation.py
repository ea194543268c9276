"""Tests for memory consolidation."""

from datetime import timedelta

import pytest

from memflow.core.config import ConsolidationConfig
from memflow.memory.consolidation import (
    ConsolidationTrigger,
    MemoryConsolidator,
    ScoringStrategies,
)
from memflow.memory.types import MemoryFilter, MemoryType, MemoryUnit, utcnow


def working_unit(**metadata):
    metadata.setdefault("expires_at", utcnow() + timedelta(hours=1))
    return MemoryUnit(content={"text": "note"}, memory_type=MemoryType.WORKING, metadata=metadata)


@pytest.fixture
def consolidator(working, episodic):
    return MemoryConsolidator(working, episodic)


class LowScoring(ScoringStrategies):
    def semantic_similarity(self, units):
        return 0.1


class TestTriggers:
    """Tests for trigger evaluation."""

    def test_no_trigger(self, consolidator):
        """Test a fresh, unremarkable unit stays."""
        assert consolidator.fired_triggers(working_unit()) == []
        assert not consolidator.check_triggers(working_unit())

    def test_access_count(self, consolidator):
        """Test frequent access fires."""
        unit = working_unit()
        unit.access_count = 5

        assert consolidator.fired_triggers(unit) == [ConsolidationTrigger.ACCESS_COUNT]

    def test_age(self, consolidator):
        """Test old units fire."""
        unit = working_unit()
        unit.timestamp = utcnow() - timedelta(hours=25)

        assert ConsolidationTrigger.AGE in consolidator.fired_triggers(unit)

    def test_priority_and_explicit(self, consolidator):
        """Test high priority and the explicit flag fire."""
        unit = working_unit(priority=0.8, consolidate=True)

        assert consolidator.fired_triggers(unit) == [
            ConsolidationTrigger.PRIORITY,
            ConsolidationTrigger.EXPLICIT,
        ]

    def test_context_switches(self, consolidator):
        """Test repeated context switches fire."""
        unit = working_unit(context_switches=3)

        assert consolidator.fired_triggers(unit) == [ConsolidationTrigger.CONTEXT_SWITCH]

    def test_capacity(self, working, episodic):
        """Test a nearly full working memory fires for every unit."""
        consolidator = MemoryConsolidator(
            working, episodic, ConsolidationConfig(max_working_memory_size=10)
        )
        consolidator.working_memory_size = 8

        assert consolidator.fill_ratio == pytest.approx(0.8)
        assert consolidator.fired_triggers(working_unit()) == [ConsolidationTrigger.CAPACITY]


class TestTransfer:
    """Tests for moving working units to long-term memory."""

    @pytest.mark.asyncio
    async def test_consolidate_moves_unit(self, consolidator, working, episodic, storage):
        """Test a triggered unit moves and keeps its content."""
        unit = await working.store({"text": "promote me"}, {"priority": 0.9})
        consolidator.working_memory_size = 1

        moved = await consolidator.consolidate(unit)

        assert moved.memory_type == MemoryType.EPISODIC
        assert moved.content == {"text": "promote me"}
        assert moved.metadata["source"] == "working_memory"
        assert moved.metadata["original_id"] == unit.id
        assert moved.metadata["consolidation_status"] == "consolidated"
        assert moved.metadata["consolidation_triggers"] == ["priority"]
        assert "expires_at" not in moved.metadata
        assert await storage.retrieve(unit.id) is None
        assert consolidator.working_memory_size == 0

    @pytest.mark.asyncio
    async def test_consolidate_without_trigger(self, consolidator, working):
        """Test an untriggered unit is left alone."""
        unit = await working.store({"text": "stay"})

        assert await consolidator.consolidate(unit) is None
        assert await working.count() == 1

    @pytest.mark.asyncio
    async def test_run_isolates_failures(self, consolidator, working, episodic, monkeypatch):
        """Test one failing unit does not stop the others."""
        good = await working.store({"text": "good"}, {"priority": 0.9})
        bad = await working.store({"text": "bad"}, {"priority": 0.9})

        original = episodic.persist

        async def flaky(unit):
            if unit.metadata.get("original_id") == bad.id:
                raise RuntimeError("disk full")
            await original(unit)

        monkeypatch.setattr(episodic, "persist", flaky)

        moved = await consolidator.run()

        assert [u.metadata["original_id"] for u in moved] == [good.id]
        remaining = await working.list_units()
        assert [u.id for u in remaining] == [bad.id]
        assert remaining[0].metadata["consolidation_status"] == "unconsolidated"


class TestOptimize:
    """Tests for the merge pass."""

    async def _stale(self, working, storage, text, access_count=0):
        unit = await working.store({text: True})
        unit.timestamp = utcnow() - timedelta(hours=30)
        unit.access_count = access_count
        await storage.store(unit)
        return unit

    @pytest.mark.asyncio
    async def test_candidate_selection(self, consolidator, working, storage):
        """Test stale rarely used units are flagged and busy ones excluded."""
        stale = await self._stale(working, storage, "stale")
        busy = await self._stale(working, storage, "busy", access_count=12)
        await working.store({"fresh": True})

        candidates = await consolidator.select_optimization_candidates()

        assert [u.id for u in candidates] == [stale.id]
        assert (await storage.retrieve(stale.id)).metadata["optimized"] is True
        assert (await storage.retrieve(busy.id)).metadata["optimized"] is False

    @pytest.mark.asyncio
    async def test_merge(self, consolidator, working, storage):
        """Test candidates of one type merge into a single long-term unit."""
        a = await self._stale(working, storage, "alpha")
        b = await self._stale(working, storage, "beta")
        consolidator.working_memory_size = 2

        merged = await consolidator.optimize()

        assert len(merged) == 1
        unit = merged[0]
        assert unit.memory_type == MemoryType.EPISODIC
        assert unit.content == {"alpha": True, "beta": True}
        assert unit.associations == {a.id, b.id}
        assert unit.metadata["original_type"] == "working"
        assert unit.metadata["optimized"] is True
        assert unit.consolidation_metrics.relevance == pytest.approx(0.71)
        assert await working.count() == 0
        assert consolidator.working_memory_size == 1

    @pytest.mark.asyncio
    async def test_below_threshold(self, working, episodic, storage):
        """Test a low-scoring group is not merged."""
        consolidator = MemoryConsolidator(working, episodic, scoring=LowScoring())
        await self._stale(working, storage, "alpha")
        await self._stale(working, storage, "beta")

        assert await consolidator.optimize() == []
        assert await working.count() == 2

    @pytest.mark.asyncio
    async def test_consolidate_all(self, consolidator, working, storage):
        """Test the combined report."""
        await working.store({"text": "urgent"}, {"priority": 0.95})

        report = await consolidator.consolidate_all()

        assert report["transferred_count"] == 1
        assert report["merged_groups"] == 0
        episodic_units = await storage.retrieve_by_filter(
            MemoryFilter(types=[MemoryType.EPISODIC])
        )
        assert len(episodic_units) == 1


class TestWorkingMemorySize:
    """Tests for the tracked working memory size."""

    @pytest.mark.asyncio
    async def test_never_negative(self, consolidator):
        """Test the counter clamps at zero."""
        await consolidator.update_working_memory_size(-5)

        assert consolidator.working_memory_size == 0

    @pytest.mark.asyncio
    async def test_sync(self, consolidator, working):
        """Test resyncing from the actual population."""
        await working.store("one")
        await working.store("two")

        assert await consolidator.sync_working_memory_size() == 2
