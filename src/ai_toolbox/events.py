"""Typed event channel: config changes and sync run notifications.

The engine publishes; any number of consumers subscribe and iterate. Each
subscriber has its own queue, so a slow consumer never blocks publishing.
Closing the bus ends every subscription's iteration.

    bus = EventBus()
    sub = bus.subscribe(SyncProgress, SyncCompleted)
    for event in sub:
        ...
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

logger = logging.getLogger("ai_toolbox.events")


class ChangeOrigin(str, Enum):
    """Who triggered a config change."""

    UI = "ui"
    CLI = "cli"
    TRAY = "tray"
    SYNC = "sync"
    EXTERNAL = "external"


class SyncPhase(str, Enum):
    CONNECTING = "connecting"
    LISTING = "listing"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ConfigChanged:
    """A store, common config or SSH config changed. ``tool`` is ``"ssh"`` for the latter."""

    tool: str
    origin: ChangeOrigin
    at: str = field(default_factory=_now)


@dataclass(frozen=True)
class SyncProgress:
    run_id: str
    phase: SyncPhase
    mapping_id: str | None = None
    bytes_transferred: int = 0
    total_bytes: int | None = None


@dataclass(frozen=True)
class SyncWarning:
    run_id: str
    mapping_id: str
    message: str


@dataclass(frozen=True)
class SyncCompleted:
    run_id: str
    result: Any


_CLOSED = object()


class Subscription:
    """An ordered stream of events for one consumer."""

    def __init__(self, bus: EventBus, kinds: tuple[type, ...]):
        self._bus = bus
        self._kinds = kinds
        self._queue: queue.Queue = queue.Queue()
        self.closed = False

    def wants(self, event: object) -> bool:
        return not self._kinds or isinstance(event, self._kinds)

    def _put(self, item: object) -> None:
        self._queue.put(item)

    def get(self, timeout: float | None = None):
        """Next event, or None once the subscription is closed.

        Raises queue.Empty when ``timeout`` expires first.
        """
        if self.closed and self._queue.empty():
            return None
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def drain(self) -> list:
        """Return every event queued so far without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self.closed = True
                return events
            events.append(item)

    def __iter__(self) -> Iterator:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Fan-out of typed events to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []
        self.closed = False

    def subscribe(self, *kinds: type) -> Subscription:
        """Subscribe to ``kinds`` (every event when none given)."""
        sub = Subscription(self, kinds)
        with self._lock:
            if self.closed:
                sub._put(_CLOSED)
            else:
                self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
                sub._put(_CLOSED)

    def publish(self, event: object) -> None:
        with self._lock:
            if self.closed:
                logger.debug("Dropping %s: bus is closed", type(event).__name__)
                return
            for sub in self._subscribers:
                if sub.wants(event):
                    sub._put(event)

    def close(self) -> None:
        with self._lock:
            self.closed = True
            subscribers, self._subscribers = self._subscribers, []
        for sub in subscribers:
            sub._put(_CLOSED)
