"""
Minimal observer hub.  Emitters never know who is listening.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]


class EventEmitter:
    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: str, payload: dict[str, Any] | None = None):
        payload = payload or {}
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                # An observer must never break the import it is watching
                logger.exception("Listener failed for event %s", event)
