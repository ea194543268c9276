"""
memflow - layered memory engine for LLM agents.

This package provides:
- Working memory with TTL and capacity bounds
- Episodic, semantic and contextual long-term memory
- Session context management with durable replay
- Trigger-based consolidation and symmetric associations
- Pluggable storage and index backends (in-process and SQLite)
"""

from memflow.core.config import (
    MemorySystemConfig,
    Settings,
    WorkingMemoryConfig,
    ConsolidationConfig,
    EpisodicMemoryConfig,
    get_settings,
)
from memflow.core.exceptions import (
    MemflowError,
    MemoryNotFoundError,
    InvalidMemoryTypeError,
    StorageBackendError,
)
from memflow.memory.types import MemoryFilter, MemoryType, MemoryUnit
from memflow.memory.events import MemoryEvent, MemoryEventType
from memflow.memory.stores import InMemoryIndex, InMemoryStorage, SQLiteMemoryStorage, create_storage
from memflow.memory.system import AgentMemorySystem

__version__ = "0.1.0"
__all__ = [
    # Config
    "MemorySystemConfig",
    "Settings",
    "WorkingMemoryConfig",
    "ConsolidationConfig",
    "EpisodicMemoryConfig",
    "get_settings",
    # Errors
    "MemflowError",
    "MemoryNotFoundError",
    "InvalidMemoryTypeError",
    "StorageBackendError",
    # Memory
    "MemoryFilter",
    "MemoryType",
    "MemoryUnit",
    "AgentMemorySystem",
    "MemoryEvent",
    "MemoryEventType",
    # Backends
    "InMemoryStorage",
    "InMemoryIndex",
    "SQLiteMemoryStorage",
    "create_storage",
]
