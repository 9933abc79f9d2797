"""
Kernel - Event Bus

In-process publish/subscribe hub that lets collaborators (log sinks,
telemetry, UI refresh) observe kernel state without the kernel depending on
them.

Features:
- Listeners for all events, for one type, or for a ``prefix:*`` wildcard
- One-shot listeners cleared after their first delivery
- Bounded FIFO history
- Sync or async listeners; async ones are scheduled on the running loop
- ``wait_for`` with timeout that never leaves a dangling subscription

Usage:
    bus = EventBus(history_size=100)

    sub = bus.on_type("service:*", lambda event: print(event.type))
    bus.emit(KernelEvents.SERVICE_STARTED, {"name": "indexer"})
    sub.dispose()

    event = await bus.wait_for(KernelEvents.LIFECYCLE_ACTIVATED, timeout=5.0)
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from core.errors import EventTimeoutError
from core.types import Subscription

logger = logging.getLogger("kernel.events")

Listener = Callable[["KernelEvent"], Any]

DEFAULT_HISTORY_SIZE = 100


class KernelEvents:
    """Event types emitted by the kernel."""

    # Service registry
    SERVICE_REGISTERED = "service:registered"
    SERVICE_UNREGISTERED = "service:unregistered"
    SERVICE_STATE_CHANGED = "service:stateChanged"
    SERVICE_STARTED = "service:started"
    SERVICE_STOPPED = "service:stopped"
    SERVICE_RESTARTED = "service:restarted"
    SERVICE_FAILED = "service:failed"
    SERVICE_HEALTH_CHANGED = "service:healthChanged"

    # Lifecycle manager
    PHASE_STARTED = "lifecycle:phaseStarted"
    PHASE_COMPLETED = "lifecycle:phaseCompleted"
    PHASE_FAILED = "lifecycle:phaseFailed"
    LIFECYCLE_ACTIVATED = "lifecycle:activated"
    LIFECYCLE_DEACTIVATING = "lifecycle:deactivating"
    LIFECYCLE_DEACTIVATED = "lifecycle:deactivated"
    RELOAD_REQUESTED = "lifecycle:reloadRequested"

    # Health monitor
    HEALTH_CHECK = "health:check"
    HEALTH_DEGRADED = "health:degraded"
    GC_REQUESTED = "health:gcRequested"

    # Recovery
    RECOVERY_ATTEMPT = "recovery:attempt"
    RECOVERY_SUCCEEDED = "recovery:succeeded"
    RECOVERY_FAILED = "recovery:failed"

    # Collaborator errors use "error:<kind>"
    ERROR_PREFIX = "error:"


@dataclass(frozen=True)
class KernelEvent:
    """A single event delivered through the bus."""

    type: str
    payload: Any = None
    source: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "event_id": self.event_id,
        }


def matches(pattern: Optional[str], event_type: str) -> bool:
    """Match an event type against an exact type or a trailing ``*`` wildcard."""
    if pattern is None or pattern == "*":
        return True
    if pattern.endswith("*"):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


@dataclass(eq=False)
class _ListenerEntry:
    pattern: Optional[str]
    callback: Listener


class EventBus:
    """
    Typed publish/subscribe hub with bounded history.

    ``emit`` runs listeners synchronously in subscription order, records the
    event in history, then fires and clears the one-shot listeners for that
    type. A listener that raises is logged and does not stop delivery.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        if history_size < 0:
            raise ValueError("history_size must be >= 0")
        self._listeners: List[_ListenerEntry] = []
        self._once: List[_ListenerEntry] = []
        self._history: Deque[KernelEvent] = deque(maxlen=history_size)
        self._pending: Set[asyncio.Future] = set()
        self._disposed = False

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def _subscribe(self, bucket: List[_ListenerEntry], pattern: Optional[str], listener: Listener) -> Subscription:
        entry = _ListenerEntry(pattern, listener)
        bucket.append(entry)

        def remove() -> None:
            if entry in bucket:
                bucket.remove(entry)

        return Subscription(remove)

    def on(self, listener: Listener) -> Subscription:
        """Subscribe to every event."""
        return self._subscribe(self._listeners, None, listener)

    def on_type(self, event_type: str, listener: Listener) -> Subscription:
        """Subscribe to one event type, or to ``prefix:*``."""
        return self._subscribe(self._listeners, event_type, listener)

    def once(self, event_type: str, listener: Listener) -> Subscription:
        """Subscribe for the next matching event only."""
        return self._subscribe(self._once, event_type, listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners) + len(self._once)

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def emit(
        self,
        event: Union[KernelEvent, str],
        payload: Any = None,
        *,
        source: Optional[str] = None,
    ) -> KernelEvent:
        """
        Emit an event.

        Accepts either a ready ``KernelEvent`` or a type string plus payload.
        Emitting on a disposed bus is a no-op.
        """
        if not isinstance(event, KernelEvent):
            event = KernelEvent(type=event, payload=payload, source=source)

        if self._disposed:
            return event

        for entry in list(self._listeners):
            if matches(entry.pattern, event.type):
                self._deliver(entry.callback, event)

        self._history.append(event)

        fired = [entry for entry in self._once if matches(entry.pattern, event.type)]
        if fired:
            self._once[:] = [entry for entry in self._once if entry not in fired]
            for entry in fired:
                self._deliver(entry.callback, event)

        return event

    async def emit_async(
        self,
        event: Union[KernelEvent, str],
        payload: Any = None,
        *,
        source: Optional[str] = None,
    ) -> KernelEvent:
        """Emit, then yield once so async listeners get to begin."""
        emitted = self.emit(event, payload, source=source)
        await asyncio.sleep(0)
        return emitted

    def _deliver(self, listener: Listener, event: KernelEvent) -> None:
        try:
            result = listener(event)
        except Exception as e:
            logger.error(f"Error in listener for {event.type}: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            self._schedule(result, event)

    def _schedule(self, awaitable: Any, event: KernelEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop to host the async listener
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(f"Dropped async listener for {event.type}: no running event loop")
            return

        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)

        def done(fut: asyncio.Future) -> None:
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error(f"Error in async listener for {event.type}: {exc}")

        future.add_done_callback(done)

    async def wait_for(
        self,
        event_type: str,
        timeout: Optional[float] = None,
        predicate: Optional[Callable[[KernelEvent], bool]] = None,
    ) -> KernelEvent:
        """
        Wait for the next event of ``event_type``.

        Raises:
            EventTimeoutError: no matching event arrived within ``timeout`` seconds
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def resolve(event: KernelEvent) -> None:
            if future.done():
                return
            if predicate is not None and not predicate(event):
                return
            future.set_result(event)

        subscription = self.on_type(event_type, resolve)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise EventTimeoutError(event_type, timeout) from None
        finally:
            subscription.dispose()

    # -------------------------------------------------------------------------
    # History / teardown
    # -------------------------------------------------------------------------

    def get_history(self, limit: Optional[int] = None) -> List[KernelEvent]:
        """Recorded events, oldest first; ``limit`` keeps only the newest N."""
        history = list(self._history)
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Detach all listeners and clear history."""
        self._listeners.clear()
        self._once.clear()
        self._history.clear()
        self._disposed = True
        logger.debug("Event bus disposed")


__all__ = [
    "EventBus",
    "KernelEvent",
    "KernelEvents",
    "Listener",
    "matches",
]
