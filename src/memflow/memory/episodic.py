"""
Episodic memory
===============

Events with a temporal sequence: where it happened, who took part, what
was done and how it felt.

Each stored unit is annotated with:
- ``importance_score``: structural richness plus peak emotion, in [0, 1]
- ``emotional_significance``: mean emotion intensity

Both feed the retention policy in ``cleanup()``.
"""

from datetime import timedelta
from typing import Any, Optional

import structlog

from memflow.core.config import EpisodicMemoryConfig
from memflow.memory.cache import MemoryCache
from memflow.memory.long_term import LongTermMemory
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.types import DateRange, MemoryFilter, MemoryType, MemoryUnit, as_datetime, utcnow

logger = structlog.get_logger()

EVENT_FIELDS = ("time_sequence", "location", "actors", "actions", "emotions", "timestamp")


class EpisodicMemoryFactory:
    """Normalize raw content and metadata into an episodic event."""

    @staticmethod
    def create_event(content: Any, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        metadata = metadata or {}
        event = dict(content) if isinstance(content, dict) else {"text": content}

        def pick(key: str, default: Any = None) -> Any:
            if event.get(key) is not None:
                return event[key]
            if metadata.get(key) is not None:
                return metadata[key]
            return default

        event["time_sequence"] = list(pick("time_sequence", []))
        event["location"] = pick("location")
        event["actors"] = list(pick("actors", []))
        event["actions"] = list(pick("actions", []))
        emotions = pick("emotions", {})
        event["emotions"] = (
            {str(k): float(v) for k, v in emotions.items()} if isinstance(emotions, dict) else {}
        )
        event["timestamp"] = as_datetime(pick("timestamp")) or utcnow()
        return event

    @staticmethod
    def importance_score(event: dict[str, Any]) -> float:
        score = 0.0
        if event.get("actors"):
            score += 0.2
        if event.get("actions"):
            score += 0.2
        if event.get("location"):
            score += 0.1
        emotions = event.get("emotions") or {}
        if emotions:
            score += 0.2
            score += max(emotions.values()) * 0.3
        return min(score, 1.0)

    @staticmethod
    def emotional_significance(event: dict[str, Any]) -> float:
        emotions = event.get("emotions") or {}
        if not emotions:
            return 0.0
        return sum(emotions.values()) / len(emotions)


def _event_of(unit: MemoryUnit) -> dict[str, Any]:
    content = unit.content if isinstance(unit.content, dict) else {}
    return {
        "location": content.get("location"),
        "actors": list(content.get("actors") or []),
        "actions": list(content.get("actions") or []),
        "emotions": dict(content.get("emotions") or {}),
        "timestamp": as_datetime(content.get("timestamp")) or unit.timestamp,
    }


def similarity(a: dict[str, Any], b: dict[str, Any]) -> float:
    """Weighted overlap of location (0.4), actors (0.3) and actions (0.3)."""
    score = 0.0
    if a.get("location") and a.get("location") == b.get("location"):
        score += 0.4

    actors_a, actors_b = set(a.get("actors") or []), set(b.get("actors") or [])
    if actors_a and actors_b:
        score += 0.3 * len(actors_a & actors_b) / max(len(actors_a), len(actors_b))

    actions_a, actions_b = set(a.get("actions") or []), set(b.get("actions") or [])
    if actions_a | actions_b:
        score += 0.3 * len(actions_a & actions_b) / len(actions_a | actions_b)

    return score


class EpisodicMemory(LongTermMemory):
    """Temporal event memory with similarity search and retention scoring."""

    memory_type = MemoryType.EPISODIC

    def __init__(
        self,
        storage: MemoryStorage,
        index: MemoryIndex,
        cache: Optional[MemoryCache] = None,
        config: Optional[EpisodicMemoryConfig] = None,
    ):
        super().__init__(storage, index, cache)
        self.config = config or EpisodicMemoryConfig()
        self.factory = EpisodicMemoryFactory()

    async def store(self, content: Any, metadata: Optional[dict[str, Any]] = None) -> MemoryUnit:
        """Store an event; content is normalized to the event shape."""
        event = self.factory.create_event(content, metadata)
        metadata = {k: v for k, v in (metadata or {}).items() if k not in EVENT_FIELDS}
        return await super().store(event, metadata)

    async def persist(self, unit: MemoryUnit) -> None:
        event = _event_of(unit)
        unit.metadata.setdefault("importance_score", self.factory.importance_score(event))
        unit.metadata.setdefault("emotional_significance", self.factory.emotional_significance(event))
        await super().persist(unit)

    async def find_similar_experiences(self, event: Any, limit: Optional[int] = None) -> list[MemoryUnit]:
        """Events similar to ``event``, most similar first.

        Similar means same location with at least one common action, or an
        overall score above 0.3.
        """
        probe = _event_of(MemoryUnit(content=self.factory.create_event(event)))
        scored: list[tuple[float, MemoryUnit]] = []

        for unit in await self.list_units():
            candidate = _event_of(unit)
            score = similarity(probe, candidate)
            same_place = bool(probe["location"]) and probe["location"] == candidate["location"]
            common_action = bool(set(probe["actions"]) & set(candidate["actions"]))
            if (same_place and common_action) or score > 0.3:
                scored.append((score, unit))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        units = [unit for _, unit in scored]
        return units[:limit] if limit is not None else units

    async def get_timeline(self, date_range: Optional[DateRange] = None) -> list[MemoryUnit]:
        """Events in chronological order of their event timestamp."""
        units = await self.list_units()
        timeline = sorted(units, key=lambda u: _event_of(u)["timestamp"])
        if date_range is not None:
            timeline = [u for u in timeline if date_range.contains(_event_of(u)["timestamp"])]
        return timeline

    async def consolidate_similar(self, window: Optional[timedelta] = None) -> list[MemoryUnit]:
        """Merge near-duplicate events.

        Events with the same location, actors and actions whose timestamps
        fall within ``window`` of the cluster's first event become one unit
        with averaged emotion intensities. Originals are deleted.
        """
        window = window or timedelta(seconds=self.config.duplicate_window_seconds)
        units = sorted(await self.list_units(), key=lambda u: _event_of(u)["timestamp"])

        clusters: list[list[MemoryUnit]] = []
        open_clusters: dict[tuple, list[MemoryUnit]] = {}
        for unit in units:
            event = _event_of(unit)
            if not (event["location"] or event["actors"] or event["actions"]):
                continue
            key = (event["location"], frozenset(event["actors"]), frozenset(event["actions"]))
            cluster = open_clusters.get(key)
            if cluster and event["timestamp"] - _event_of(cluster[0])["timestamp"] <= window:
                cluster.append(unit)
            else:
                cluster = [unit]
                open_clusters[key] = cluster
                clusters.append(cluster)

        merged = []
        for cluster in clusters:
            if len(cluster) < 2:
                continue
            try:
                merged.append(await self._merge_cluster(cluster))
            except Exception as e:
                logger.error("Episodic merge failed", ids=[u.id for u in cluster], error=str(e))

        if merged:
            logger.info("Episodic duplicates merged", merged=len(merged))
        return merged

    async def _merge_cluster(self, cluster: list[MemoryUnit]) -> MemoryUnit:
        first = cluster[0]
        totals: dict[str, float] = {}
        counts: dict[str, int] = {}
        for unit in cluster:
            for name, intensity in _event_of(unit)["emotions"].items():
                totals[name] = totals.get(name, 0.0) + intensity
                counts[name] = counts.get(name, 0) + 1

        content = dict(first.content) if isinstance(first.content, dict) else {}
        content["emotions"] = {name: totals[name] / counts[name] for name in totals}
        content["time_sequence"] = [
            step
            for unit in cluster
            if isinstance(unit.content, dict)
            for step in (unit.content.get("time_sequence") or [])
        ]

        metadata = dict(first.metadata)
        metadata.pop("importance_score", None)
        metadata.pop("emotional_significance", None)
        metadata["merged_from"] = [u.id for u in cluster]

        unit = self.build_unit(content, metadata)
        unit.access_count = sum(u.access_count for u in cluster)
        unit.associations = set().union(*(u.associations for u in cluster)) - {u.id for u in cluster}
        await self.persist(unit)
        for original in cluster:
            await self.delete(original.id)
        return unit

    def should_retain(self, unit: MemoryUnit) -> bool:
        if unit.access_count >= self.config.min_access_count:
            return True
        if unit.metadata.get("consolidated"):
            return True
        if float(unit.metadata.get("importance_score", 0.0)) > self.config.min_importance:
            return True
        if float(unit.metadata.get("emotional_significance", 0.0)) > self.config.min_emotional_significance:
            return True
        return unit.age() <= timedelta(days=self.config.max_age_days)

    async def cleanup(self) -> int:
        """Prune low-access, old, low-significance events."""
        pruned = 0
        for unit in await self.list_units():
            if self.should_retain(unit):
                continue
            try:
                await self.delete(unit.id)
                pruned += 1
            except Exception as e:
                logger.error("Episodic cleanup failed", id=unit.id, error=str(e))
        if pruned:
            logger.info("Episodic memory pruned", pruned=pruned)
        return pruned

    async def retrieve_by_location(self, location: str) -> list[MemoryUnit]:
        units = await self.retrieve_by_filter(MemoryFilter())
        return [u for u in units if _event_of(u)["location"] == location]
