"""
Memory context management
=========================

Tracks the agent's evolving session context (goals, domain facts, recent
interactions, emotions, topics, preferences and conversation phase) and
durably snapshots every change as a CONTEXTUAL memory unit so the state
can be replayed after a restart.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from memflow.core.exceptions import ListenerError
from memflow.memory.long_term import ContextualMemory
from memflow.memory.types import ConsolidationMetrics, MemoryUnit, utcnow

logger = structlog.get_logger()

ContextListener = Callable[[dict[str, Any]], None]


class InteractionPhase(str, Enum):
    """Conversation phase."""
    INTRODUCTION = "introduction"
    MAIN = "main"
    CONCLUSION = "conclusion"


class EmotionalState(BaseModel):
    """A single emotional reading."""

    valence: float = Field(default=0.0, ge=-1.0, le=1.0)  # negative to positive
    arousal: float = Field(default=0.0, ge=0.0, le=1.0)  # calm to excited
    dominance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    category: Optional[str] = None  # joy, sadness, anger, ...


class EmotionalTrendEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    emotion: EmotionalState


class EmotionalContext:
    """Bounded emotion history with a running aggregate."""

    def __init__(self, max_history: int = 10):
        self.max_history = max_history
        self._entries: deque[EmotionalTrendEntry] = deque(maxlen=max_history)

    def add_emotion(self, emotion: EmotionalState) -> None:
        self._entries.append(EmotionalTrendEntry(emotion=emotion))

    @property
    def current_emotion(self) -> Optional[EmotionalState]:
        return self._entries[-1].emotion if self._entries else None

    @property
    def trends(self) -> list[EmotionalTrendEntry]:
        return list(self._entries)

    def trend(self, start: datetime, end: datetime) -> list[EmotionalTrendEntry]:
        return [e for e in self._entries if start <= e.timestamp <= end]

    def average(self) -> Optional[EmotionalState]:
        """Mean valence and arousal over the history."""
        if not self._entries:
            return None
        n = len(self._entries)
        return EmotionalState(
            valence=sum(e.emotion.valence for e in self._entries) / n,
            arousal=sum(e.emotion.arousal for e in self._entries) / n,
            category=self._entries[-1].emotion.category,
        )


@dataclass
class SessionContext:
    """In-memory session state."""

    history_size: int = 10
    user_goals: dict[str, None] = field(default_factory=dict)
    domain_context: dict[str, Any] = field(default_factory=dict)
    interaction_history: deque = field(init=False)
    emotional_trends: deque = field(init=False)
    topic_history: deque = field(init=False)
    emotional_state: EmotionalContext = field(init=False)
    user_preferences: dict[str, Any] = field(default_factory=dict)
    interaction_phase: InteractionPhase = InteractionPhase.INTRODUCTION
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.interaction_history = deque(maxlen=self.history_size)
        self.emotional_trends = deque(maxlen=self.history_size)
        self.topic_history = deque(maxlen=self.history_size)
        self.emotional_state = EmotionalContext(self.history_size)

    def snapshot(self) -> dict[str, Any]:
        average = self.emotional_state.average()
        return {
            "goals": list(self.user_goals),
            "domain": dict(self.domain_context),
            "interactions": list(self.interaction_history),
            "emotions": [e.model_dump(mode="json") for e in self.emotional_trends],
            "emotional_state": average.model_dump(mode="json") if average else None,
            "topics": list(self.topic_history),
            "preferences": dict(self.user_preferences),
            "phase": self.interaction_phase.value,
            **self.extra,
        }


# Keys accepted by set_context and the read key each one populates.
FIELD_FOR_KEY = {
    "goal": "goals",
    "domain": "domain",
    "interaction": "interactions",
    "emotion": "emotions",
    "topic": "topics",
    "preference": "preferences",
    "phase": "phase",
}


def _key_value(value: Any) -> dict[str, Any]:
    if isinstance(value, dict) and "key" in value:
        return {value["key"]: value.get("value")}
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return {value[0]: value[1]}
    if isinstance(value, dict):
        return dict(value)
    raise ValueError(f"Expected a key/value pair, got {value!r}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    return value


class MemoryContextManager:
    """Session context backed by contextual memory.

    Example:
        ```python
        manager = MemoryContextManager(ContextualMemory(storage, index))
        await manager.set_context("goal", "book a flight")
        await manager.set_context("domain", {"key": "airline", "value": "KLM"})
        await manager.get_context("goals")  # ["book a flight"]
        ```
    """

    def __init__(self, contextual_memory: ContextualMemory, history_size: int = 10):
        self.memory = contextual_memory
        self.history_size = history_size
        self.context = SessionContext(history_size=history_size)
        self._listeners: list[ContextListener] = []

    async def set_context(self, key: str, value: Any) -> MemoryUnit:
        """Update one context field, persist the change and notify listeners."""
        self._apply(key, value)
        unit = await self._persist(key, value)
        self._notify(key)
        return unit

    def _apply(self, key: str, value: Any) -> None:
        ctx = self.context
        if key == "goal":
            ctx.user_goals[str(value)] = None
        elif key == "domain":
            ctx.domain_context.update(_key_value(value))
        elif key == "interaction":
            ctx.interaction_history.append(value)
        elif key == "emotion":
            emotion = value if isinstance(value, EmotionalState) else EmotionalState.model_validate(value)
            ctx.emotional_state.add_emotion(emotion)
            ctx.emotional_trends.append(EmotionalTrendEntry(emotion=emotion))
        elif key == "topic":
            ctx.topic_history.append(value)
        elif key == "preference":
            ctx.user_preferences.update(_key_value(value))
        elif key == "phase":
            ctx.interaction_phase = InteractionPhase(value)
        else:
            ctx.extra[key] = value

    async def _persist(self, key: str, value: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        unit = self.memory.build_unit(
            {"key": key, "value": _jsonable(value)},
            {"key": key, "priority": 1.0, "recorded_at": utcnow(), **(metadata or {})},
        )
        unit.consolidation_metrics = ConsolidationMetrics(importance=1.0, relevance=1.0)
        await self.memory.persist(unit)
        return unit

    async def get_context(self, key: str) -> Any:
        """Read a context field.

        ``all`` returns the full snapshot; unknown keys read free-form
        entries set under that key.
        """
        ctx = self.context
        if key == "goals":
            return list(ctx.user_goals)
        if key == "domain":
            return dict(ctx.domain_context)
        if key == "interactions":
            return list(ctx.interaction_history)
        if key == "emotions":
            return ctx.emotional_state.trends
        if key == "topics":
            return list(ctx.topic_history)
        if key == "preferences":
            return dict(ctx.user_preferences)
        if key == "phase":
            return ctx.interaction_phase.value
        if key == "all":
            return ctx.snapshot()
        return ctx.extra.get(key)

    async def clear_context(self) -> None:
        """Reset all fields and delete every contextual unit."""
        self.context = SessionContext(history_size=self.history_size)
        await self.memory.clear()
        self._notify("clear")

    async def load_context_from_working_memory(self) -> int:
        """Replay stored contextual units in chronological order.

        Nothing is re-persisted. Returns the number of units replayed.
        """
        units = sorted(await self.memory.list_units(), key=lambda u: u.timestamp)
        replayed = 0
        for unit in units:
            if not self._replayable(unit):
                continue
            content = unit.content if isinstance(unit.content, dict) else {}
            key = unit.metadata.get("key") or content.get("key")
            if key is None:
                continue
            try:
                self._apply(key, content.get("value"))
                self._replayed(key, unit)
                replayed += 1
            except (ValueError, TypeError) as e:
                logger.warning("Skipping unreadable context unit", id=unit.id, key=key, error=str(e))
        if replayed:
            self._notify("load")
        logger.info("Context loaded", replayed=replayed)
        return replayed

    def _replayable(self, unit: MemoryUnit) -> bool:
        return True

    def _replayed(self, key: str, unit: MemoryUnit) -> None:
        pass

    def on_context_change(self, listener: ContextListener) -> None:
        self._listeners.append(listener)

    def _notify(self, key: str) -> None:
        snapshot = self.get_current_context()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                error = ListenerError(key, e)
                logger.error("Context listener failed", key=key, error=str(error))

    def get_current_context(self) -> dict[str, Any]:
        return self.context.snapshot()

    def ambient_metadata(self) -> dict[str, Any]:
        """Context entries merged into the metadata of stored memories."""
        ctx = self.context
        ambient: dict[str, Any] = {"interaction_phase": ctx.interaction_phase.value}
        if ctx.user_goals:
            ambient["goals"] = list(ctx.user_goals)
        if ctx.topic_history:
            ambient["topic"] = ctx.topic_history[-1]
        if ctx.domain_context:
            ambient["domain"] = dict(ctx.domain_context)
        current = ctx.emotional_state.current_emotion
        if current is not None and current.category:
            ambient["emotion"] = current.category
        ambient.update(ctx.extra)
        return ambient


class SessionMemoryContextManager(MemoryContextManager):
    """Context manager whose entries can expire.

    Expiry is enforced when reading: an expired field reads as empty while
    its stored unit stays in contextual memory until the context is cleared.
    """

    def __init__(
        self,
        contextual_memory: ContextualMemory,
        default_ttl: Optional[float] = None,
        history_size: int = 10,
    ):
        super().__init__(contextual_memory, history_size)
        self.default_ttl = default_ttl
        self._expires: dict[str, datetime] = {}

    async def set_context(self, key: str, value: Any, ttl: Optional[float] = None) -> MemoryUnit:
        ttl = ttl if ttl is not None else self.default_ttl
        field_name = FIELD_FOR_KEY.get(key, key)
        metadata: dict[str, Any] = {}
        if ttl is not None:
            expires_at = utcnow() + timedelta(seconds=ttl)
            self._expires[field_name] = expires_at
            metadata["expires_at"] = expires_at
        else:
            self._expires.pop(field_name, None)

        self._apply(key, value)
        unit = await self._persist(key, value, metadata)
        self._notify(key)
        return unit

    def is_expired(self, field_name: str) -> bool:
        expires_at = self._expires.get(field_name)
        return expires_at is not None and expires_at <= utcnow()

    async def get_context(self, key: str) -> Any:
        if key == "all":
            return self.get_current_context()
        if self.is_expired(key):
            return _empty_value(key)
        return await super().get_context(key)

    def get_current_context(self) -> dict[str, Any]:
        snapshot = super().get_current_context()
        for field_name in list(self._expires):
            if self.is_expired(field_name) and field_name in snapshot:
                snapshot[field_name] = _empty_value(field_name)
                if field_name == "emotions":
                    snapshot["emotional_state"] = None
        return snapshot

    def ambient_metadata(self) -> dict[str, Any]:
        ambient = super().ambient_metadata()
        expired_ambient = {
            "goals": "goals",
            "topics": "topic",
            "domain": "domain",
            "emotions": "emotion",
        }
        for field_name, ambient_key in expired_ambient.items():
            if self.is_expired(field_name):
                ambient.pop(ambient_key, None)
        if self.is_expired("phase"):
            ambient["interaction_phase"] = InteractionPhase.INTRODUCTION.value
        for key in list(ambient):
            if key not in FIELD_FOR_KEY.values() and self.is_expired(key):
                ambient.pop(key, None)
        return ambient

    async def clear_context(self) -> None:
        self._expires.clear()
        await super().clear_context()

    def _replayable(self, unit: MemoryUnit) -> bool:
        return not unit.is_expired()

    def _replayed(self, key: str, unit: MemoryUnit) -> None:
        # Latest write wins.
        field_name = FIELD_FOR_KEY.get(key, key)
        expires_at = unit.expires_at
        if expires_at is not None:
            self._expires[field_name] = expires_at
        else:
            self._expires.pop(field_name, None)


def _empty_value(field_name: str) -> Any:
    if field_name in ("goals", "interactions", "emotions", "topics"):
        return []
    if field_name in ("domain", "preferences"):
        return {}
    if field_name == "phase":
        return InteractionPhase.INTRODUCTION.value
    return None
