"""
SQLite storage backend
======================

Durable ``MemoryStorage`` on aiosqlite. Units are stored as JSON documents
next to a few indexed columns; filters are narrowed by type in SQL and
evaluated in Python so the semantics match ``InMemoryStorage``.
"""

from pathlib import Path
from typing import Optional

import aiosqlite
import structlog
from pydantic import ValidationError

from memflow.core.exceptions import MemoryNotFoundError, StorageBackendError
from memflow.memory.storage import MemoryStorage
from memflow.memory.types import MemoryFilter, MemoryUnit

logger = structlog.get_logger()


class SQLiteMemoryStorage(MemoryStorage):
    """SQLite storage backend.

    Example:
        ```python
        async with SQLiteMemoryStorage("memory.db") as storage:
            await storage.store(MemoryUnit(content="hello"))
        ```
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS memory_units (
        id TEXT PRIMARY KEY,
        memory_type TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_memory_units_type ON memory_units(memory_type);
    CREATE INDEX IF NOT EXISTS idx_memory_units_created ON memory_units(created_at);
    """

    def __init__(self, path: str | Path = "memflow.db", capacity: Optional[int] = None):
        self.path = str(path)
        self._capacity = capacity
        self._conn: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open the connection and create tables."""
        if self._conn is not None:
            return
        self._conn = await aiosqlite.connect(self.path)
        await self._conn.executescript(self.SCHEMA)
        await self._conn.commit()
        logger.debug("SQLite storage initialized", path=self.path)

    async def _ensure_initialized(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.init()
        return self._conn

    def _load(self, data: str) -> MemoryUnit:
        try:
            return MemoryUnit.model_validate_json(data)
        except ValidationError as e:
            raise StorageBackendError("Corrupt memory row", details={"error": str(e)}) from e

    async def store(self, unit: MemoryUnit) -> None:
        conn = await self._ensure_initialized()
        if self._capacity is not None:
            async with conn.execute(
                "SELECT 1 FROM memory_units WHERE id = ?", (unit.id,)
            ) as cursor:
                exists = await cursor.fetchone() is not None
            if not exists and await self.get_size() >= self._capacity:
                raise StorageBackendError(
                    "Storage capacity reached",
                    details={"capacity": self._capacity, "id": unit.id},
                )

        try:
            data = unit.model_dump_json()
        except (TypeError, ValueError) as e:
            raise StorageBackendError(
                "Memory unit is not JSON serializable",
                details={"id": unit.id, "error": str(e)},
            ) from e

        await conn.execute(
            """
            INSERT OR REPLACE INTO memory_units (id, memory_type, created_at, data)
            VALUES (?, ?, ?, ?)
            """,
            (unit.id, unit.memory_type.value, unit.timestamp.isoformat(), data),
        )
        await conn.commit()

    async def retrieve(self, unit_id: str) -> Optional[MemoryUnit]:
        conn = await self._ensure_initialized()
        async with conn.execute(
            "SELECT data FROM memory_units WHERE id = ?", (unit_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._load(row[0]) if row else None

    async def retrieve_by_filter(self, filter: MemoryFilter) -> list[MemoryUnit]:
        conn = await self._ensure_initialized()
        sql = "SELECT data FROM memory_units"
        params: list[str] = []
        if filter.types:
            placeholders = ", ".join("?" for _ in filter.types)
            sql += f" WHERE memory_type IN ({placeholders})"
            params.extend(t.value for t in filter.types)
        sql += " ORDER BY created_at"

        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()

        units = [self._load(row[0]) for row in rows]
        return [unit for unit in units if filter.matches(unit)]

    async def update(self, unit: MemoryUnit) -> None:
        conn = await self._ensure_initialized()
        async with conn.execute(
            "SELECT 1 FROM memory_units WHERE id = ?", (unit.id,)
        ) as cursor:
            if await cursor.fetchone() is None:
                raise MemoryNotFoundError(unit.id)
        await self.store(unit)

    async def delete(self, unit_id: str) -> None:
        conn = await self._ensure_initialized()
        await conn.execute("DELETE FROM memory_units WHERE id = ?", (unit_id,))
        await conn.commit()

    async def clear(self) -> None:
        conn = await self._ensure_initialized()
        await conn.execute("DELETE FROM memory_units")
        await conn.commit()

    async def get_size(self) -> int:
        conn = await self._ensure_initialized()
        async with conn.execute("SELECT COUNT(*) FROM memory_units") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_capacity(self) -> Optional[int]:
        return self._capacity

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
