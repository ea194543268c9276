"""Core memory data model.

Every memory kind stores ``MemoryUnit`` records. The unit's owning
subsystem is ``memory_type``; everything else is either bookkeeping
(timestamps, access stats, associations) or the open ``metadata`` bag.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from memflow.core.exceptions import InvalidMemoryTypeError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_datetime(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp into an aware datetime.

    Accepts datetimes, ISO-8601 strings (as produced by JSON backends) and
    epoch milliseconds.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


class MemoryType(str, Enum):
    """Owning subsystem of a memory unit."""
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    CONTEXTUAL = "contextual"

    @classmethod
    def parse(cls, value: Any) -> "MemoryType":
        """Resolve a type tag, accepting enum members and case-insensitive names."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.lower())
            except ValueError:
                pass
        raise InvalidMemoryTypeError(value)


LONG_TERM_TYPES = frozenset({MemoryType.EPISODIC, MemoryType.SEMANTIC, MemoryType.CONTEXTUAL})


class TransitionType(str, Enum):
    """How a unit left working memory."""
    IMMEDIATE = "immediate"
    BATCH = "batch"


class ConsolidationMetrics(BaseModel):
    """Scores used to decide promotion and merging."""

    semantic_similarity: float = 0.0
    contextual_overlap: float = 0.0
    temporal_proximity: float = 0.0
    source_reliability: float = 0.0
    confidence: float = 0.0
    importance: float = 0.0
    relevance: float = 0.0
    access_count: int = 0
    last_accessed: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class MemoryUnit(BaseModel):
    """The atomic stored record.

    Example:
        ```python
        unit = MemoryUnit(
            content={"text": "User asked about flights"},
            memory_type=MemoryType.WORKING,
            metadata={"priority": 0.6, "context": "travel"},
        )
        ```
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    content: Any = None
    memory_type: MemoryType = MemoryType.WORKING
    metadata: dict[str, Any] = Field(default_factory=dict)

    timestamp: datetime = Field(default_factory=utcnow)
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime = Field(default_factory=utcnow)

    associations: set[str] = Field(default_factory=set)
    consolidation_metrics: Optional[ConsolidationMetrics] = None

    @property
    def priority(self) -> float:
        return float(self.metadata.get("priority", 0.0) or 0.0)

    @property
    def relevance(self) -> float:
        return float(self.metadata.get("relevance", 0.0) or 0.0)

    @property
    def tags(self) -> list[str]:
        return list(self.metadata.get("tags") or [])

    @property
    def expires_at(self) -> Optional[datetime]:
        return as_datetime(self.metadata.get("expires_at"))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return expires_at <= (now or utcnow())

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.timestamp

    def touch(self) -> None:
        """Record an access.

        ``last_accessed`` strictly increases even when two accesses land
        within the clock's resolution.
        """
        now = utcnow()
        if now <= self.last_accessed:
            now = self.last_accessed + timedelta(microseconds=1)
        self.access_count += 1
        self.last_accessed = now

    def text(self) -> str:
        """Flatten content to text for search and filtering."""
        return content_text(self.content)


def content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return " ".join(content_text(v) for v in content.values())
    if isinstance(content, (list, tuple, set)):
        return " ".join(content_text(v) for v in content)
    return str(content)


class DateRange(BaseModel):
    """Inclusive bounds on a unit's creation timestamp."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        if self.start and moment < self.start:
            return False
        if self.end and moment > self.end:
            return False
        return True


class MemoryFilter(BaseModel):
    """Selection descriptor for filtered retrieval.

    ``metadata_filters`` entries are OR-ed; keys inside one entry are AND-ed.
    """

    id: Optional[str] = None
    ids: Optional[list[str]] = None
    types: Optional[list[MemoryType]] = None
    metadata_filters: Optional[list[dict[str, Any]]] = None
    query: Optional[str] = None
    min_priority: Optional[float] = None
    max_priority: Optional[float] = None
    date_range: Optional[DateRange] = None

    def matches(self, unit: MemoryUnit) -> bool:
        if self.types and unit.memory_type not in self.types:
            return False

        if self.id is not None and unit.id != self.id:
            return False
        if self.ids is not None and unit.id not in self.ids:
            return False

        if self.metadata_filters:
            if not any(
                all(unit.metadata.get(k) == v for k, v in entry.items())
                for entry in self.metadata_filters
            ):
                return False

        if self.query:
            needle = self.query.lower()
            haystacks = [unit.text().lower()] + [str(t).lower() for t in unit.tags]
            if not any(needle in h for h in haystacks):
                return False

        if self.min_priority is not None and unit.priority < self.min_priority:
            return False
        if self.max_priority is not None and unit.priority > self.max_priority:
            return False

        if self.date_range and not self.date_range.contains(unit.timestamp):
            return False

        return True
