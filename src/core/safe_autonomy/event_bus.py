"""
Safe Autonomy: Event Bus

Managers publish typed events (lock.locked, consensus.vetoed, task.retry,
...) and listeners such as the audit trail or a dashboard bridge subscribe
to them. Managers never hold references to their listeners.

Thread-safe: publishers run on whatever thread drove the transition, and
delivery is synchronous so a subscriber has seen the event before the
publishing call returns.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A single event emitted by a safe-autonomy component.

    type is "<entity kind>.<transition>", e.g. "lock.unlocked".
    """
    type: str
    payload: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def kind(self) -> str:
        return self.type.split(".", 1)[0]

    @property
    def transition(self) -> str:
        return self.type.split(".", 1)[-1]

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[Event], None]


class EventBus:
    """Simple in-memory pub/sub event bus."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._global_subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Subscribe to a specific event type."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        """Subscribe to all events."""
        with self._lock:
            self._global_subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        """Remove a callback from every subscription it holds."""
        with self._lock:
            if callback in self._global_subscribers:
                self._global_subscribers.remove(callback)
            for callbacks in self._subscribers.values():
                if callback in callbacks:
                    callbacks.remove(callback)

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            callbacks = list(self._global_subscribers)
            callbacks.extend(self._subscribers.get(event.type, []))

        for cb in callbacks:
            try:
                cb(event)
            except Exception as exc:
                logger.error("Event subscriber error for %s: %s", event.type, exc)

    def emit(self, event_type: str, **payload) -> Event:
        """Build and publish an event in one call."""
        event = Event(type=event_type, payload=payload)
        self.publish(event)
        return event
