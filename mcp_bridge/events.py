"""
Publish/subscribe fan-out for transport events.

A transport emits three events:
  - "message": every decoded JSON-RPC message read from the process
  - "error":   process-level failures (spawn failure, fatal diagnostics)
  - "exit":    process termination, with its code/signal

Each in-flight request, each open SSE stream and the correlation bridge
itself may subscribe at the same time, so there is no hard listener cap.
Past SUBSCRIBER_WARN_THRESHOLD listeners on one event a warning is logged
once, since that many usually means someone forgot to unsubscribe.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

SUBSCRIBER_WARN_THRESHOLD = 1000


class EventFanout:
    """Registry of listeners keyed by a subscription token."""

    def __init__(self, events: tuple[str, ...] = ("message", "error", "exit")):
        self._listeners: dict[str, dict[int, Listener]] = {e: {} for e in events}
        self._tokens = itertools.count(1)
        self._warned: set[str] = set()

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for an event.

        Returns:
            A callable that removes the listener. Calling it more than
            once is harmless.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown event: '{event}'")

        token = next(self._tokens)
        listeners = self._listeners[event]
        listeners[token] = listener

        if len(listeners) > SUBSCRIBER_WARN_THRESHOLD and event not in self._warned:
            self._warned.add(event)
            logger.warning(
                f"{len(listeners)} listeners registered for '{event}'; "
                "possible subscription leak"
            )

        def unsubscribe() -> None:
            listeners.pop(token, None)

        return unsubscribe

    def emit(self, event: str, payload: Any = None) -> int:
        """
        Deliver a payload to every listener of an event.

        A listener that raises is logged and skipped; the rest still run.
        Returns the number of listeners invoked.
        """
        # Snapshot: listeners may unsubscribe while being called
        listeners = list(self._listeners[event].values())
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Listener for '{event}' raised")
        return len(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners[event])

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
