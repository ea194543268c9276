"""Memory system for memflow.

Memory layers
=============

1. Working memory (WorkingMemory) - current context, TTL and capacity bounded
2. Episodic memory (EpisodicMemory) - events and experiences
3. Semantic memory (SemanticMemory) - concepts and their relations
4. Contextual memory (ContextualMemory) - durable session context snapshots

Around the layers:
- MemoryContextManager / SessionMemoryContextManager - session context
- MemoryConsolidator - working to long-term promotion and merging
- MemoryAssociator - symmetric association graph
- MemoryEventBus - lifecycle events for subscribers
- AgentMemorySystem - facade over everything above
"""

from memflow.memory.types import (
    ConsolidationMetrics,
    DateRange,
    MemoryFilter,
    MemoryType,
    MemoryUnit,
    TransitionType,
)
from memflow.memory.storage import MemoryIndex, MemoryStorage
from memflow.memory.cache import MemoryCache
from memflow.memory.base import AbstractMemory
from memflow.memory.working import WorkingMemory
from memflow.memory.long_term import ContextualMemory, LongTermMemory
from memflow.memory.episodic import EpisodicMemory, EpisodicMemoryFactory
from memflow.memory.semantic import ConceptGraph, SemanticMemory, SemanticMemoryFactory
from memflow.memory.context import (
    EmotionalContext,
    EmotionalState,
    InteractionPhase,
    MemoryContextManager,
    SessionContext,
    SessionMemoryContextManager,
)
from memflow.memory.consolidation import (
    ConsolidationTrigger,
    MemoryConsolidator,
    ScoringStrategies,
)
from memflow.memory.events import MemoryEvent, MemoryEventBus, MemoryEventType
from memflow.memory.association import MemoryAssociator
from memflow.memory.scheduler import PeriodicTask
from memflow.memory.system import AgentMemorySystem

__all__ = [
    # Data model
    "ConsolidationMetrics",
    "DateRange",
    "MemoryFilter",
    "MemoryType",
    "MemoryUnit",
    "TransitionType",
    # Backends
    "MemoryIndex",
    "MemoryStorage",
    "MemoryCache",
    # Memory kinds
    "AbstractMemory",
    "WorkingMemory",
    "LongTermMemory",
    "ContextualMemory",
    "EpisodicMemory",
    "EpisodicMemoryFactory",
    "SemanticMemory",
    "SemanticMemoryFactory",
    "ConceptGraph",
    # Context
    "EmotionalContext",
    "EmotionalState",
    "InteractionPhase",
    "MemoryContextManager",
    "SessionContext",
    "SessionMemoryContextManager",
    # Consolidation and association
    "ConsolidationTrigger",
    "MemoryConsolidator",
    "ScoringStrategies",
    "MemoryAssociator",
    # Events
    "MemoryEvent",
    "MemoryEventBus",
    "MemoryEventType",
    "PeriodicTask",
    "AgentMemorySystem",
]
