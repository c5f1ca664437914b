"""
Event subscriptions for gateway ``event`` frames.

The handshake consumes ``connect.challenge`` itself; every other event is
forwarded here untouched and handed to subscribers.

:meth:`EventManager.emit` is called from the socket reader and never
blocks it. Plain handlers run inline; a coroutine returned by a handler is
scheduled as its own task, so an async handler may ``await client.call(...)``
and receive the response through the same reader.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from openclaw_bridge.types import EventFrame

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[EventFrame], Coroutine[Any, Any, None] | None]

# Subscription key matching every forwarded event
ANY_EVENT: str | None = None


class EventManager:
    """Fans gateway events out to registered handlers in subscription order."""

    def __init__(self) -> None:
        self._subscriptions: list[tuple[str | None, EventHandler]] = []
        self._running: set[asyncio.Task[None]] = set()

    def subscribe(self, event_name: str | None, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_name``, or for every event with :data:`ANY_EVENT`."""
        self._subscriptions.append((event_name, handler))

    def unsubscribe(self, event_name: str | None, handler: EventHandler | None = None) -> int:
        """Drop ``handler`` (or every handler) registered under ``event_name``.

        Returns the number of subscriptions removed.
        """
        kept = [
            (name, h)
            for name, h in self._subscriptions
            if name != event_name or (handler is not None and h is not handler)
        ]
        removed = len(self._subscriptions) - len(kept)
        self._subscriptions = kept
        return removed

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return [h for name, h in self._subscriptions if name is ANY_EVENT or name == event_name]

    def emit(self, event: EventFrame) -> int:
        """Hand ``event`` to every matching handler without waiting on them.

        A handler that raises, synchronously or from its task, is logged
        and does not affect the others. Returns the number of handlers hit.
        """
        handlers = self.handlers_for(event.event)
        if not handlers:
            logger.debug("No subscribers for gateway event %s", event.event)
            return 0

        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception("Error in event handler for %s", event.event)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(self._run(event.event, result))
                self._running.add(task)
                task.add_done_callback(self._running.discard)
        return len(handlers)

    async def drain(self) -> None:
        """Wait until every async handler started so far has finished.

        The calling task is skipped, so a handler may drain the others.
        """
        current = asyncio.current_task()
        while others := [t for t in self._running if t is not current]:
            await asyncio.gather(*others, return_exceptions=True)

    def cancel(self) -> int:
        """Cancel async handlers still running, except the calling task."""
        current = asyncio.current_task()
        cancelled = 0
        for task in list(self._running):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    @staticmethod
    async def _run(event_name: str, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Error in event handler for %s", event_name)
