"""
Output events of spawn jobs.

Workflows emit a completion event per job and, optionally, a lore-boost
follow-up for a downstream narrative generator. The sink is injectable; the
default keeps events in memory and lets callers subscribe handlers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

NODES_SPAWNED = "nodes.spawned"
LORE_BOOST = "lore.boost"
SURGE_SPAWNED = "surge.spawned"


@dataclass
class Event:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


class EventSink:
    """List-backed event sink with optional per-name handlers."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._handlers: dict[str, list[Callable[[Event], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Callable[[Event], None]) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def emit(self, name: str, data: dict[str, Any]) -> Event:
        event = Event(name=name, data=dict(data))
        with self._lock:
            self.events.append(event)
        logger.debug("Event %s emitted", name)
        for handler in self._handlers.get(name, []):
            handler(event)
        return event

    def of(self, name: str) -> list[Event]:
        with self._lock:
            return [e for e in self.events if e.name == name]
