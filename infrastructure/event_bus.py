"""
ASTRYON EVENT BUS - Universe Change Notifications

Every store mutation and every orchestrator milestone is announced here, so
renderers, progress views and logs can follow a universe without the core
ever calling them.

    EntityStore ------+
    GapOrchestrator --+--> EventBus --> [renderer, CLI progress, audit log]
    ConnectionExplorer+
    DoctrinalGenerator+

Rules:
- A listener can never break the publisher: sync listener errors are logged
  and skipped, async listeners run as tracked tasks whose errors are logged
  when they finish
- Delivery order is subscription order; wildcard listeners run after the
  typed ones
- Publishing with no running loop skips async listeners with a warning

Usage:
    bus = EventBus()
    store = EntityStore(event_bus=bus)
    bus.subscribe(EventType.NODE_CREATED, lambda e: print(e.payload["entity_id"]))
    bus.subscribe_all(audit_log.append)
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import msgspec

logger = logging.getLogger("astryon.event_bus")

Listener = Callable[["GraphEvent"], Any]


class EventType(str, Enum):
    """Everything the engine announces."""
    # Entity store
    NEXUS_CREATED = "nexus_created"
    NODE_CREATED = "node_created"
    NODE_UPDATED = "node_updated"
    NODE_REPARENTED = "node_reparented"
    UNIVERSE_LOADED = "universe_loaded"
    # Orchestrators
    BATCH_MERGED = "batch_merged"
    ORCHESTRATOR_ERROR = "orchestrator_error"
    PHASE_CHANGED = "phase_changed"
    DIALOGUE_TURN_ADDED = "dialogue_turn_added"


class GraphEvent(msgspec.Struct, kw_only=True, frozen=True):
    """One announcement: what happened, who said so, and the details."""
    type: EventType
    source: str
    payload: Dict[str, Any] = msgspec.field(default_factory=dict)
    timestamp: float = msgspec.field(default_factory=time.time)


class Subscription(msgspec.Struct, frozen=True):
    listener: Listener
    is_async: bool


class EventBus:
    """
    Per-universe (or process-wide) publish/subscribe hub.

    NOT thread-safe: publish() is only called from the event loop that owns
    the store.
    """

    def __init__(self):
        self._typed: Dict[EventType, List[Subscription]] = {}
        self._wildcard: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def subscribe(self, event_type: EventType, listener: Listener) -> None:
        """Register a plain callable for one event type (idempotent)."""
        self._add(self._typed.setdefault(event_type, []), listener, False)

    def subscribe_async(self, event_type: EventType, listener: Listener) -> None:
        """Register a coroutine function for one event type (idempotent)."""
        self._add(self._typed.setdefault(event_type, []), listener, True)

    def subscribe_all(self, listener: Listener) -> None:
        """Register a plain callable for every event type."""
        self._add(self._wildcard, listener, False)

    def unsubscribe(self, event_type: Optional[EventType], listener: Listener) -> None:
        """Remove a listener; event_type None removes a wildcard listener."""
        entries = self._wildcard if event_type is None else self._typed.get(event_type, [])
        entries[:] = [s for s in entries if s.listener != listener]

    def clear_subscribers(self, event_type: Optional[EventType] = None) -> None:
        if event_type is None:
            self._typed.clear()
            self._wildcard.clear()
        else:
            self._typed.pop(event_type, None)

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """Listeners for one type, or every listener (wildcards included)."""
        if event_type is not None:
            return len(self._typed.get(event_type, []))
        return sum(len(entries) for entries in self._typed.values()) + len(self._wildcard)

    @staticmethod
    def _add(entries: List[Subscription], listener: Listener, is_async: bool) -> None:
        if any(s.listener == listener for s in entries):
            return
        entries.append(Subscription(listener, is_async))

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def publish(self, event: GraphEvent) -> None:
        """Deliver an event to its typed listeners, then to wildcards."""
        logger.debug(f"{event.source} -> {event.type.value} {sorted(event.payload)}")
        for subscription in self._typed.get(event.type, []) + self._wildcard:
            if subscription.is_async:
                self._schedule(subscription.listener, event)
                continue
            try:
                subscription.listener(event)
            except Exception as e:
                logger.error(f"Listener failed on {event.type.value}: {e}", exc_info=True)

    def emit(self, event_type: EventType, source: str, **payload: Any) -> None:
        """Shorthand for publish(GraphEvent(...))."""
        self.publish(GraphEvent(type=event_type, source=source, payload=payload))

    def _schedule(self, listener: Listener, event: GraphEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop; async listener skipped for {event.type.value}")
            return
        task = loop.create_task(listener(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async listener failed: {error}", exc_info=error)


# =============================================================================
# PROCESS-WIDE BUS
# =============================================================================

_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Forget the process-wide bus (tests)."""
    global _event_bus
    _event_bus = None
