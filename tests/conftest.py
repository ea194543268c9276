"""Test configuration for memflow."""

from datetime import timedelta

import pytest

from memflow.core.config import MemorySystemConfig, WorkingMemoryConfig
from memflow.memory.cache import MemoryCache
from memflow.memory.episodic import EpisodicMemory
from memflow.memory.long_term import ContextualMemory
from memflow.memory.semantic import SemanticMemory
from memflow.memory.stores.in_memory import InMemoryIndex, InMemoryStorage
from memflow.memory.system import AgentMemorySystem
from memflow.memory.types import utcnow
from memflow.memory.working import WorkingMemory


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def index():
    return InMemoryIndex()


@pytest.fixture
def cache():
    return MemoryCache(capacity=1000)


@pytest.fixture
def episodic(storage, index, cache):
    return EpisodicMemory(storage, index, cache)


@pytest.fixture
def working(storage, index, cache, episodic):
    return WorkingMemory(storage, index, cache, WorkingMemoryConfig(), long_term=episodic)


@pytest.fixture
def semantic(storage, index, cache):
    return SemanticMemory(storage, index, cache)


@pytest.fixture
def contextual(storage, index, cache):
    return ContextualMemory(storage, index, cache)


@pytest.fixture
def memory_system(storage, index):
    """A memory system whose background tasks are never started."""
    system = AgentMemorySystem(storage, index, MemorySystemConfig())
    yield system
    system.stop_all_timers()


@pytest.fixture
def future():
    """Expiry timestamp comfortably in the future."""
    return utcnow() + timedelta(minutes=10)


@pytest.fixture
def past():
    """Expiry timestamp two seconds in the past."""
    return utcnow() - timedelta(seconds=2)
