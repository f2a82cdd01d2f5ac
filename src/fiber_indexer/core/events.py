"""
Operational event bus for the indexer.

The bus records operational signals as they happen: a snapshot was ingested,
materialized, confirmed or orphaned, peers disagree about a height, a rejection
was recorded. These are signals for operators and tests. The snapshot store
stays the source of truth.

THE CONTRACT
============
1. Events are immutable facts. Once emitted, they are in the log.
2. Each event carries a monotonic sequence number assigned at emit time.
3. Handlers run in registration order. A handler error is logged and never
   reaches the emitter, so a broken subscriber cannot stall a poller.
4. The log is bounded; the oldest events fall off first.

Usage:
    from fiber_indexer.core.events import bus, Events

    bus.emit(Events.SNAPSHOT_CONFIRMED, {"ordinal": 100}, source="confirmations")
    unsub = bus.on(Events.FORK_DETECTED, alert)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# EVENT TYPES
# =============================================================================


class Events:
    """Event type names emitted by the indexer."""

    SNAPSHOT_INGESTED = "snapshot:ingested"
    SNAPSHOT_COMPETING = "snapshot:competing"
    SNAPSHOT_MATERIALIZED = "snapshot:materialized"
    SNAPSHOT_CONFIRMED = "snapshot:confirmed"
    SNAPSHOT_ORPHANED = "snapshot:orphaned"
    FORK_DETECTED = "fork:detected"
    REJECTION_RECORDED = "rejection:recorded"


# =============================================================================
# EVENT STRUCTURE
# =============================================================================


@dataclass(frozen=True)
class EventMetadata:
    """
    Metadata attached to every event at emit time.

    Attributes:
        timestamp: Unix timestamp (seconds since epoch) when emitted.
        sequence: Monotonic counter assigned by the bus.
        source: Component that emitted the event.
    """

    timestamp: float
    sequence: int
    source: str

    @classmethod
    def create(cls, source: str, sequence: int) -> EventMetadata:
        return cls(timestamp=time.time(), sequence=sequence, source=source)


@dataclass(frozen=True)
class IndexerEvent:
    """An immutable operational event."""

    type: str
    detail: dict[str, Any] = field(default_factory=dict)
    _meta: EventMetadata = field(default_factory=lambda: EventMetadata.create("unknown", 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "detail": dict(self.detail),
            "timestamp": self._meta.timestamp,
            "sequence": self._meta.sequence,
            "source": self._meta.source,
        }


# =============================================================================
# TYPE ALIASES
# =============================================================================

SyncHandler = Callable[[IndexerEvent], None]
AsyncHandler = Callable[[IndexerEvent], Awaitable[None]]
EventHandler = SyncHandler | AsyncHandler
Unsubscribe = Callable[[], None]


# =============================================================================
# THE BUS
# =============================================================================


class IndexerEventBus:
    """In-process bus with a bounded, ordered event log."""

    MAX_EVENT_LOG_SIZE = 1000

    def __init__(self, max_log_size: int | None = None) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._event_log: deque[IndexerEvent] = deque(
            maxlen=max_log_size or self.MAX_EVENT_LOG_SIZE
        )
        self._sequence = 0
        self._handler_tasks: set[asyncio.Task[None]] = set()

    def emit(
        self,
        event_type: str,
        detail: dict[str, Any] | None = None,
        *,
        source: str = "indexer",
    ) -> IndexerEvent:
        """Commit an event to the log and notify subscribers."""
        self._sequence += 1
        event = IndexerEvent(
            type=event_type,
            detail=detail if detail is not None else {},
            _meta=EventMetadata.create(source, self._sequence),
        )
        self._event_log.append(event)
        self._notify_handlers(event)
        return event

    def _notify_handlers(self, event: IndexerEvent) -> None:
        for handler in list(self._handlers.get(event.type, ())):
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            except Exception as e:
                # The event is committed regardless of handler errors
                logger.error(f"Handler error for '{event.type}': {e}", exc_info=True)

    def _schedule_async_handler(self, handler: AsyncHandler, event: IndexerEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(handler(event))
            return
        task = loop.create_task(handler(event))
        self._handler_tasks.add(task)
        task.add_done_callback(lambda done: self._handler_done(done, event))

    def _handler_done(self, task: asyncio.Task[None], event: IndexerEvent) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Handler error for '{event.type}': {error}", exc_info=error)

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """
        Subscribe to an event type.

        Returns:
            An unsubscribe function.
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            """Remove this handler from the subscription list."""
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def get_event_log(
        self, limit: int | None = None, *, event_type: str | None = None
    ) -> list[IndexerEvent]:
        """Events oldest first, optionally filtered and capped to the last ``limit``."""
        events = list(self._event_log)
        if event_type is not None:
            events = [event for event in events if event.type == event_type]
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def get_sequence(self) -> int:
        return self._sequence

    def clear_event_log(self) -> None:
        """Erase the event log. Intended for tests."""
        self._event_log.clear()


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

# Usage: from fiber_indexer.core.events import bus
bus = IndexerEventBus()
