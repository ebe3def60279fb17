"""
Publish/subscribe events for the sync pipeline.

Decouples the orchestrator and preloader from whatever reacts to them
(coupon alerts, notifications, audit trails).

Usage:
    bus = EventBus()

    @bus.on(PipelineEvent.COUPON_BLEEDING)
    async def alert(data: dict):
        notify(data["codes"])

    await bus.emit(PipelineEvent.COUPON_BLEEDING, {"codes": ["SAVE50"]})
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from storesync.observability import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class PipelineEvent(Enum):
    """Events emitted by the sync pipeline."""

    # Sync lifecycle
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_SKIPPED = "sync.skipped"
    PHASE_COMPLETED = "sync.phase_completed"

    # Derived signals
    COUPON_BLEEDING = "coupons.bleeding"

    # Cache / preloader
    CACHE_INVALIDATED = "cache.invalidated"
    STATS_PRELOADED = "preloader.completed"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "sync_service"


@dataclass
class Event:
    """Wrapper for event data with metadata."""

    type: PipelineEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/serialization."""
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

    - Multiple handlers per event, plus wildcard handlers
    - Handlers run concurrently; one failing handler is logged and does not
      affect the others or the emitter
    - Bounded history for debugging
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[PipelineEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(self, event_type: Optional[PipelineEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of `subscribe`. `None` subscribes to every event."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[PipelineEvent], handler: EventHandler) -> None:
        """Register an async handler for an event type (or all events)."""
        if event_type is None:
            self._wildcard_handlers.append(handler)
            logger.debug(f"Registered wildcard handler: {handler.__name__}")
        else:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug(f"Registered handler {handler.__name__} for {event_type.value}")

    def unsubscribe(self, event_type: Optional[PipelineEvent], handler: EventHandler) -> bool:
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
        event_type: PipelineEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "sync_service",
    ) -> Event:
        """
        Emit an event to all subscribed handlers.

        Returns:
            The emitted Event object
        """
        event = Event(
            type=event_type,
            data=data or {},
            metadata=EventMetadata(source=source),
        )

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            logger.debug(f"No handlers for event {event_type.value}")
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

    def get_history(self, event_type: Optional[PipelineEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent event history, newest last."""
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def get_handlers(self) -> Dict[str, int]:
        """Handler counts per event type ("*" for wildcard handlers)."""
        counts = {event.value: len(self._handlers.get(event, [])) for event in PipelineEvent}
        counts["*"] = len(self._wildcard_handlers)
        return counts

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
