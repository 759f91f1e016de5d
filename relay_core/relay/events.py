"""
Explicit event channel for relay state transitions.

Components publish named events (``request_completed``, ``services_changed``,
``connected``, ...) and consumers register callbacks for the ones they care
about. A failing callback is logged and does not affect other listeners or
the publisher.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Event names
REQUEST_COMPLETED = "request_completed"
REQUEST_FAILED = "request_failed"
SERVICES_CHANGED = "services_changed"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
TOOL_SERVER_EXITED = "tool_server_exited"

EventCallback = Callable[[Dict[str, Any]], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event name."""

    def __init__(self):
        self._listeners: Dict[str, List[EventCallback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for ``event``; returns an unsubscribe function."""
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

        def _unsubscribe():
            with self._lock:
                listeners = self._listeners.get(event, [])
                if callback in listeners:
                    listeners.remove(callback)

        return _unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"event_listener_failed: event={event}")
