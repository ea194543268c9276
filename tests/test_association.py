"""Tests for memory associations."""

import pytest

from memflow.core.exceptions import MemoryNotFoundError
from memflow.memory.association import MemoryAssociator
from memflow.memory.types import MemoryUnit


@pytest.fixture
def associator(storage, index, cache):
    return MemoryAssociator(storage, index, cache)


async def stored(storage, *contents):
    units = [MemoryUnit(content=content) for content in contents]
    await storage.batch_store(units)
    return units


class TestMemoryAssociator:
    """Tests for MemoryAssociator."""

    @pytest.mark.asyncio
    async def test_symmetric(self, associator, storage):
        """Test an edge is visible from both ends."""
        a, b = await stored(storage, "a", "b")

        await associator.associate(a.id, b.id)

        assert [u.id for u in await associator.get_associations(a.id)] == [b.id]
        assert [u.id for u in await associator.get_associations(b.id)] == [a.id]

    @pytest.mark.asyncio
    async def test_idempotent(self, associator, storage):
        """Test associating twice keeps a single edge."""
        a, b = await stored(storage, "a", "b")

        await associator.associate(a.id, b.id)
        await associator.associate(b.id, a.id)

        assert (await storage.retrieve(a.id)).associations == {b.id}

    @pytest.mark.asyncio
    async def test_dissociate(self, associator, storage):
        """Test removing an edge from both ends."""
        a, b = await stored(storage, "a", "b")
        await associator.associate(a.id, b.id)

        await associator.dissociate(a.id, b.id)

        assert await associator.get_associations(a.id) == []
        assert await associator.get_associations(b.id) == []

    @pytest.mark.asyncio
    async def test_unknown_ids(self, associator, storage):
        """Test unknown endpoints fail."""
        (a,) = await stored(storage, "a")

        with pytest.raises(MemoryNotFoundError):
            await associator.associate(a.id, "missing")
        with pytest.raises(MemoryNotFoundError):
            await associator.get_associations("missing")

    @pytest.mark.asyncio
    async def test_self_association(self, associator, storage):
        """Test a unit cannot be linked to itself."""
        (a,) = await stored(storage, "a")

        with pytest.raises(ValueError):
            await associator.associate(a.id, a.id)

    @pytest.mark.asyncio
    async def test_dangling_ids_skipped(self, associator, storage):
        """Test associations to deleted units are ignored."""
        a, b = await stored(storage, "a", "b")
        await associator.associate(a.id, b.id)
        await storage.delete(b.id)

        assert await associator.get_associations(a.id) == []

    @pytest.mark.asyncio
    async def test_find_related(self, associator, storage):
        """Test direct associations come before second-degree ones."""
        a, b, c, d = await stored(storage, "a", "b", "c", "d")
        await associator.associate(a.id, b.id)
        await associator.associate(b.id, c.id)
        await associator.associate(c.id, d.id)

        related = await associator.find_related_memories(a.id)

        assert [u.id for u in related] == [b.id, c.id]

    @pytest.mark.asyncio
    async def test_find_related_limit(self, associator, storage):
        """Test the result cap."""
        a, b, c = await stored(storage, "a", "b", "c")
        await associator.associate(a.id, b.id)
        await associator.associate(a.id, c.id)

        related = await associator.find_related_memories(a.id, max_results=1)

        assert len(related) == 1
