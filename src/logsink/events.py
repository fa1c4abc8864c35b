"""Minimal event emitter shared by transports and log streams."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Named-event fan-out to synchronous listeners.

    Listeners run in registration order on the caller's thread. A listener that
    raises is logged and skipped so the remaining listeners still see the event.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Listener:
        """Register `listener` for `event` and return it."""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """Register `listener` for the next `event` only."""

        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a previously registered listener (missing listeners are ignored)."""
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for `event`; return whether any were registered."""
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:  # noqa: BLE001 - one bad listener must not starve the rest
                logger.exception("Listener for %r event failed", event)
        return bool(listeners)
