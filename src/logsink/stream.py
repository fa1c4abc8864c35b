"""Push-style stream of newly inserted log records."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from .events import EventEmitter

_END = object()


class LogStream(EventEmitter):
    """Event stream handed out by `LogSinkTransport.stream()`.

    Events: `"log"` (record dict), `"error"` (exception), `"end"`, `"close"`.
    A stream stays inert until its transport attaches it to the change feed.
    """

    def __init__(self) -> None:
        super().__init__()
        self.destroyed = False
        self._on_destroy: Callable[[LogStream], None] | None = None

    def destroy(self) -> None:
        """End the stream and release its hold on the change feed.

        Safe to call multiple times.
        """
        if self.destroyed:
            return
        self.destroyed = True
        self.emit("end")
        on_destroy, self._on_destroy = self._on_destroy, None
        if on_destroy is not None:
            on_destroy(self)

    async def records(self) -> AsyncIterator[dict[str, Any]]:
        """Yield `"log"` records until the stream ends.

        A `"error"` event is raised from the iterator.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def _push(item: Any = _END) -> None:
            queue.put_nowait(item)

        listeners = {"log": _push, "error": _push, "end": _push, "close": _push}
        for event, listener in listeners.items():
            self.on(event, listener)
        try:
            while not self.destroyed or not queue.empty():
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            for event, listener in listeners.items():
                self.off(event, listener)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self.records()
