"""
Memory lifecycle events
=======================

The memory system publishes an event whenever a unit enters or leaves a
memory, the session context changes, or working memory nears capacity.
Handlers are plain callables or coroutine functions; a failing handler is
logged and never reaches the operation that emitted the event.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from memflow.memory.types import MemoryUnit, utcnow

logger = structlog.get_logger()


class MemoryEventType(str, Enum):
    """Lifecycle event kinds, named ``<memory>:<verb>:<object>``."""
    WORKING_ADD = "working:add:item"
    WORKING_FORGET = "working:forget:item"
    EPISODIC_CREATE = "episodic:create:entry"
    SEMANTIC_UPDATE = "semantic:updated:items"
    CAPACITY_WARNING = "system:warn:capacity"
    CONTEXT_CHANGE = "system:change:context"


class MemoryEvent(BaseModel):
    """One published event.

    ``memory`` is None for system events such as capacity warnings.
    """

    type: MemoryEventType
    memory: Optional[MemoryUnit] = None
    context: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


MemoryEventHandler = Callable[[MemoryEvent], Any]


class MemoryEventBus:
    """Fan-out of memory events to subscribed handlers, in subscription order.

    Example:
        ```python
        bus = MemoryEventBus()
        bus.subscribe(print, [MemoryEventType.CAPACITY_WARNING])
        await bus.emit(MemoryEvent(type=MemoryEventType.CAPACITY_WARNING))
        ```
    """

    def __init__(self):
        self._handlers: list[tuple[MemoryEventHandler, Optional[frozenset[MemoryEventType]]]] = []

    def subscribe(
        self,
        handler: MemoryEventHandler,
        types: Optional[Iterable[MemoryEventType]] = None,
    ) -> None:
        """Register ``handler`` for ``types``, or for every event when omitted."""
        wanted = frozenset(MemoryEventType(t) for t in types) if types is not None else None
        self._handlers.append((handler, wanted))

    def unsubscribe(self, handler: MemoryEventHandler) -> None:
        self._handlers = [(h, t) for h, t in self._handlers if h != handler]

    async def emit(self, event: MemoryEvent) -> int:
        """Deliver ``event``; returns how many handlers accepted it."""
        log = logger.bind(event_type=event.type.value)
        if event.memory is not None:
            log = log.bind(memory_id=event.memory.id)
        log.debug("Memory event")

        delivered = 0
        for handler, wanted in list(self._handlers):
            if wanted is not None and event.type not in wanted:
                continue
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                log.error("Memory event handler failed", error=str(e))
        return delivered

    def __len__(self) -> int:
        return len(self._handlers)
