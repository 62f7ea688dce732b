"""
Event Bus — lifecycle notifications for the memory system

Components publish named events (``pruning_started``, ``entry_removed``,
``memory_created`` ...) onto a bus they are handed at construction time.
Consumers subscribe with a callback and receive an ``Event``. There is no
module-level bus: one instance is shared through the MemorySystem handle.

Listener failures are logged and never propagate to the emitter.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from docmemory.types import _now_iso

logger = logging.getLogger(__name__)

WILDCARD = "*"

Listener = Callable[["Event"], None]


@dataclass
class Event:
    """A named notification with a payload."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: str = field(default_factory=_now_iso)


class EventBus:
    """Synchronous observer registry."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, callback: Listener) -> Callable[[], None]:
        """Register a callback for an event name (``"*"`` for all).

        Returns a handle that unsubscribes the callback when called.
        """
        with self._lock:
            self._listeners.setdefault(name, []).append(callback)
        logger.debug(f"Subscriber registered for {name}: {getattr(callback, '__name__', callback)}")

        def _unsubscribe() -> None:
            self.unsubscribe(name, callback)

        return _unsubscribe

    def unsubscribe(self, name: str, callback: Listener) -> bool:
        with self._lock:
            listeners = self._listeners.get(name, [])
            if callback in listeners:
                listeners.remove(callback)
                return True
        return False

    def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Deliver an event to its listeners and the wildcard listeners."""
        event = Event(name=name, payload=dict(payload or {}))
        with self._lock:
            targets = list(self._listeners.get(name, [])) + list(
                self._listeners.get(WILDCARD, [])
            )
        logger.debug(f"Event emitted: {name}")
        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Subscriber error ({getattr(callback, '__name__', callback)}) "
                    f"on {name}: {e}",
                    exc_info=True,
                )
        return event

    def subscriber_count(self, name: Optional[str] = None) -> int:
        with self._lock:
            if name is not None:
                return len(self._listeners.get(name, []))
            return sum(len(v) for v in self._listeners.values())
