"""Tests for storage and index backends."""

import asyncio
from datetime import timedelta

import pytest

from memflow.core.config import Settings, StorageBackend, reset_settings
from memflow.core.exceptions import MemoryNotFoundError, StorageBackendError
from memflow.memory.stores import create_storage
from memflow.memory.stores.in_memory import InMemoryStorage, parse_query, tokenize
from memflow.memory.stores.sqlite import SQLiteMemoryStorage
from memflow.memory.types import DateRange, MemoryFilter, MemoryType, MemoryUnit, utcnow


def make_unit(content, memory_type=MemoryType.WORKING, **metadata):
    return MemoryUnit(content=content, memory_type=memory_type, metadata=metadata)


class TestMemoryFilter:
    """Tests for filter evaluation."""

    @pytest.mark.asyncio
    async def test_types(self, storage):
        """Test type membership."""
        await storage.store(make_unit("a", MemoryType.WORKING))
        await storage.store(make_unit("b", MemoryType.EPISODIC))

        result = await storage.retrieve_by_filter(MemoryFilter(types=[MemoryType.EPISODIC]))

        assert [u.content for u in result] == ["b"]

    @pytest.mark.asyncio
    async def test_metadata_filters_or_across_and_within(self, storage):
        """Test metadata filter entries are OR-ed and keys within one are AND-ed."""
        await storage.store(make_unit("a", source="chat", lang="en"))
        await storage.store(make_unit("b", source="chat", lang="de"))
        await storage.store(make_unit("c", source="email", lang="fr"))

        result = await storage.retrieve_by_filter(MemoryFilter(metadata_filters=[
            {"source": "chat", "lang": "en"},
            {"lang": "fr"},
        ]))

        assert sorted(u.content for u in result) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_query_matches_content_and_tags(self, storage):
        """Test case-insensitive substring query over content and tags."""
        await storage.store(make_unit({"text": "Flight to Paris"}))
        await storage.store(make_unit("hotel booking", tags=["Travel"]))
        await storage.store(make_unit("weather"))

        by_content = await storage.retrieve_by_filter(MemoryFilter(query="paris"))
        by_tag = await storage.retrieve_by_filter(MemoryFilter(query="travel"))

        assert [u.content for u in by_content] == [{"text": "Flight to Paris"}]
        assert [u.content for u in by_tag] == ["hotel booking"]

    @pytest.mark.asyncio
    async def test_priority_and_ids(self, storage):
        """Test priority bounds and id selection."""
        low = make_unit("low", priority=0.1)
        high = make_unit("high", priority=0.9)
        await storage.batch_store([low, high])

        result = await storage.retrieve_by_filter(MemoryFilter(min_priority=0.5))
        assert [u.id for u in result] == [high.id]

        result = await storage.retrieve_by_filter(MemoryFilter(ids=[low.id]))
        assert [u.id for u in result] == [low.id]

        result = await storage.retrieve_by_filter(MemoryFilter(id=high.id, max_priority=0.5))
        assert result == []

    @pytest.mark.asyncio
    async def test_date_range(self, storage):
        """Test date bounds on creation time."""
        old = make_unit("old")
        old.timestamp = utcnow() - timedelta(days=3)
        await storage.store(old)
        await storage.store(make_unit("new"))

        result = await storage.retrieve_by_filter(
            MemoryFilter(date_range=DateRange(start=utcnow() - timedelta(days=1)))
        )

        assert [u.content for u in result] == ["new"]


class TestInMemoryStorage:
    """Tests for InMemoryStorage."""

    @pytest.mark.asyncio
    async def test_returns_copies(self, storage):
        """Test that callers never share objects with the store."""
        unit = make_unit({"text": "original"})
        await storage.store(unit)
        unit.content["text"] = "mutated after store"

        fetched = await storage.retrieve(unit.id)
        fetched.content["text"] = "mutated after retrieve"

        again = await storage.retrieve(unit.id)
        assert again.content == {"text": "original"}

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, storage):
        """Test that updating a missing unit fails."""
        with pytest.raises(MemoryNotFoundError):
            await storage.update(make_unit("ghost"))

    @pytest.mark.asyncio
    async def test_last_write_wins(self, storage):
        """Test concurrent stores to the same id resolve to the last write."""
        first = MemoryUnit(id="shared", content="first")
        second = MemoryUnit(id="shared", content="second")

        await asyncio.gather(storage.store(first), storage.store(second))

        stored = await storage.retrieve("shared")
        assert stored.content == "second"
        assert await storage.get_size() == 1

    @pytest.mark.asyncio
    async def test_capacity(self):
        """Test bounded storage."""
        storage = InMemoryStorage(capacity=1)
        await storage.store(make_unit("one"))

        assert await storage.get_capacity() == 1
        with pytest.raises(StorageBackendError):
            await storage.store(make_unit("two"))

    @pytest.mark.asyncio
    async def test_batch_retrieve_and_delete(self, storage):
        """Test batch retrieval keeps slot order and missing ids yield None."""
        unit = make_unit("present")
        await storage.store(unit)

        result = await storage.batch_retrieve([unit.id, "missing"])
        assert result[0].id == unit.id
        assert result[1] is None

        await storage.delete(unit.id)
        assert await storage.retrieve(unit.id) is None


class TestInMemoryIndex:
    """Tests for InMemoryIndex."""

    def test_tokenize(self):
        """Test tokenization drops short words and case-folds."""
        assert tokenize("The Cat sat on a MAT!") == ["the", "cat", "sat", "mat"]

    def test_parse_query(self):
        """Test field clauses are kept whole."""
        assert parse_query("concept:Cat AND metadata.domain:zoo AND big cats") == [
            "concept:cat",
            "metadata.domain:zoo",
            "big",
            "cats",
        ]

    @pytest.mark.asyncio
    async def test_intersection_search(self, index):
        """Test that all terms must match by default."""
        a = make_unit("paris flight booking")
        b = make_unit("paris hotel booking")
        await index.batch_index([a, b])

        assert await index.search("paris booking") == sorted([a.id, b.id])
        assert await index.search("paris flight") == [a.id]
        assert await index.search("london") == []

    @pytest.mark.asyncio
    async def test_ranked_union_search(self, index):
        """Test ranked union mode orders by matched term count."""
        a = make_unit("paris flight booking")
        b = make_unit("paris hotel")
        await index.batch_index([a, b])

        assert await index.search("paris flight booking", mode="any") == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_field_terms(self, index):
        """Test content, metadata and type field terms."""
        unit = make_unit({"concept": "cat"}, MemoryType.SEMANTIC, domain="zoo")
        await index.add(unit)

        assert await index.search("concept:cat AND metadata.domain:zoo") == [unit.id]
        assert await index.search("type:semantic") == [unit.id]
        assert await index.search("type:working") == []

    @pytest.mark.asyncio
    async def test_update_and_remove(self, index):
        """Test re-indexing replaces old postings."""
        unit = make_unit("alpha")
        await index.index(unit)

        unit.content = "beta"
        await index.update(unit)
        assert await index.search("alpha") == []
        assert await index.search("beta") == [unit.id]

        await index.delete(unit.id)
        assert await index.search("beta") == []
        assert len(index) == 0

    @pytest.mark.asyncio
    async def test_unknown_mode(self, index):
        """Test invalid search modes are rejected."""
        with pytest.raises(ValueError):
            await index.search("anything", mode="fuzzy")


class TestSQLiteMemoryStorage:
    """Tests for SQLiteMemoryStorage."""

    @pytest.mark.asyncio
    async def test_store_and_retrieve(self, tmp_path):
        """Test a unit survives a round trip through SQLite."""
        async with SQLiteMemoryStorage(tmp_path / "memory.db") as storage:
            unit = make_unit({"text": "persisted"}, MemoryType.EPISODIC, priority=0.4)
            unit.associations.add("other")
            await storage.store(unit)

            fetched = await storage.retrieve(unit.id)

        assert fetched.content == {"text": "persisted"}
        assert fetched.memory_type == MemoryType.EPISODIC
        assert fetched.priority == 0.4
        assert fetched.associations == {"other"}

    @pytest.mark.asyncio
    async def test_durable_across_connections(self, tmp_path):
        """Test data outlives the connection."""
        path = tmp_path / "memory.db"
        unit = make_unit("durable")

        async with SQLiteMemoryStorage(path) as storage:
            await storage.store(unit)

        async with SQLiteMemoryStorage(path) as storage:
            assert (await storage.retrieve(unit.id)).content == "durable"
            assert await storage.get_size() == 1

    @pytest.mark.asyncio
    async def test_filter_semantics(self, tmp_path):
        """Test filters behave like the in-memory backend."""
        async with SQLiteMemoryStorage(tmp_path / "memory.db") as storage:
            await storage.store(make_unit("chat note", MemoryType.WORKING, source="chat"))
            await storage.store(make_unit("email note", MemoryType.WORKING, source="email"))
            await storage.store(make_unit("episode", MemoryType.EPISODIC, source="chat"))

            result = await storage.retrieve_by_filter(MemoryFilter(
                types=[MemoryType.WORKING],
                metadata_filters=[{"source": "chat"}],
            ))

        assert [u.content for u in result] == ["chat note"]

    @pytest.mark.asyncio
    async def test_update_and_delete(self, tmp_path):
        """Test update requires an existing row and delete removes it."""
        async with SQLiteMemoryStorage(tmp_path / "memory.db") as storage:
            with pytest.raises(MemoryNotFoundError):
                await storage.update(make_unit("ghost"))

            unit = make_unit("v1")
            await storage.store(unit)
            unit.content = "v2"
            await storage.update(unit)
            assert (await storage.retrieve(unit.id)).content == "v2"

            await storage.delete(unit.id)
            assert await storage.retrieve(unit.id) is None

    @pytest.mark.asyncio
    async def test_expiry_survives_serialization(self, tmp_path):
        """Test expires_at is still understood after a JSON round trip."""
        async with SQLiteMemoryStorage(tmp_path / "memory.db") as storage:
            unit = make_unit("stale", expires_at=utcnow() - timedelta(seconds=5))
            await storage.store(unit)
            fetched = await storage.retrieve(unit.id)

        assert fetched.is_expired()


class TestCreateStorage:
    """Tests for building storage from settings."""

    def test_memory_backend(self):
        """Test the default backend."""
        storage = create_storage(Settings(storage_backend=StorageBackend.MEMORY))

        assert isinstance(storage, InMemoryStorage)

    @pytest.mark.asyncio
    async def test_sqlite_backend(self, tmp_path):
        """Test the SQLite backend writes to the configured path."""
        path = tmp_path / "configured.db"
        storage = create_storage(Settings(storage_backend="sqlite", sqlite_path=str(path)))

        assert isinstance(storage, SQLiteMemoryStorage)
        await storage.store(make_unit("kept"))
        await storage.close()

        async with SQLiteMemoryStorage(path) as reopened:
            assert await reopened.get_size() == 1

    def test_env_selects_backend(self, monkeypatch, tmp_path):
        """Test the environment picks the backend through the global settings."""
        monkeypatch.setenv("MEMFLOW_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("MEMFLOW_SQLITE_PATH", str(tmp_path / "env.db"))
        reset_settings()
        try:
            assert isinstance(create_storage(), SQLiteMemoryStorage)
        finally:
            reset_settings()
