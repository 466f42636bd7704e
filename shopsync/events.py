"""
Lifecycle events for the sync engine.

A small publish/subscribe bus that lets the orchestrator, monitor and
cleanup manager announce what happened without knowing who listens
(log shippers, alerting hooks, tests).

Usage:
    from shopsync.events import EventBus, SyncEvent

    bus = EventBus()

    @bus.on(SyncEvent.SYNC_FAILED)
    async def page_operator(data: dict):
        ...

    await bus.emit(SyncEvent.SYNC_FAILED, {"cycle_id": 3, "error": "timeout"})
"""
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional

from shopsync.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    """Events emitted by engine components."""

    # Sync lifecycle
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_SKIPPED = "sync.skipped"
    SYNC_FAILURE_ESCALATED = "sync.failure_escalated"

    # Cache
    CACHE_CLEARED = "cache.cleared"

    # Health
    HEALTH_DEGRADED = "health.degraded"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "engine"


@dataclass
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus.

    Handlers for one event run concurrently; a failing handler is logged
    and does not affect the others or the emitter.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[SyncEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: Deque[Event] = deque(maxlen=max_history)

    def on(
        self, event_type: Optional[SyncEvent] = None
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to register an event handler.

        Args:
            event_type: Event type to subscribe to, or None for all events
        """

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
            logger.debug(f"Registered wildcard handler: {handler.__name__}")
        else:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug(f"Registered handler {handler.__name__} for {event_type.value}")

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        """
        Unsubscribe a handler from an event.

        Returns:
            True if handler was found and removed
        """
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "engine",
    ) -> Event:
        """
        Emit an event to all subscribed handlers.

        Args:
            event_type: Type of event to emit
            data: Event payload
            source: Component emitting the event

        Returns:
            The emitted Event object
        """
        event = Event(
            type=event_type,
            data=data or {},
            metadata=EventMetadata(source=source),
        )
        self._history.append(event)

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(
        self, event_type: Optional[SyncEvent] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Most recent events, oldest first, optionally filtered by type."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    def clear_handlers(self) -> None:
        self._handlers.clear()
        self._wildcard_handlers.clear()
