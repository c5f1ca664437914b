"""
Correlation table: in-flight requests keyed by correlation id.

Each entry owns an ``asyncio.Future`` and a deadline timer. An entry is
completed exactly once, by whichever comes first of a matching response,
its deadline, or bulk cancellation; the timer is always cancelled before
the future is completed. Late or duplicate completions are no-ops.

All methods must be called from the event loop thread that owns the
futures; confinement to that loop is what makes the table atomic.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from openclaw_bridge.errors import GatewayError, RequestTimeout
from openclaw_bridge.scheduling import LoopScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

TimeoutErrorFactory = Callable[[], GatewayError]


@dataclass
class PendingRequest:
    id: str
    method: str
    future: asyncio.Future[Any]
    timer: TimerHandle | None = None


class CorrelationTable:
    """Tracks every request awaiting a response."""

    def __init__(self, scheduler: Scheduler | None = None) -> None:
        self._scheduler = scheduler or LoopScheduler()
        self._pending: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def ids(self) -> Iterator[str]:
        return iter(list(self._pending))

    def get(self, request_id: str) -> PendingRequest | None:
        return self._pending.get(request_id)

    def register(
        self,
        request_id: str,
        timeout: float,
        *,
        method: str = "",
        timeout_error: TimeoutErrorFactory | None = None,
    ) -> asyncio.Future[Any]:
        """Create a pending entry and return the future a caller awaits.

        Args:
            request_id: Correlation id; must not already be registered.
            timeout: Seconds until the entry expires.
            method: Method name, used in the default timeout message.
            timeout_error: Builds the exception set on expiry. Defaults to
                :class:`RequestTimeout`.

        Raises:
            ValueError: If ``request_id`` is already pending.
        """
        if request_id in self._pending:
            raise ValueError(f"request id already pending: {request_id}")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        entry = PendingRequest(id=request_id, method=method, future=future)
        self._pending[request_id] = entry

        def _expire() -> None:
            if self._pending.get(request_id) is not entry:
                return
            del self._pending[request_id]
            entry.timer = None
            if timeout_error is not None:
                error = timeout_error()
            else:
                label = method or request_id
                error = RequestTimeout(f"Request timeout: {label} ({int(timeout * 1000)}ms)")
            logger.debug("Request %s expired", request_id)
            if not future.done():
                future.set_exception(error)

        entry.timer = self._scheduler.call_later(timeout, _expire)
        future.add_done_callback(lambda f: self._forget_cancelled(request_id, entry, f))
        return future

    def resolve(self, request_id: str, payload: Any) -> bool:
        """Complete the entry with ``payload``. Returns False if not pending."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(payload)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        """Fail the entry with ``error``. Returns False if not pending."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def cancel_all(self, error: BaseException) -> int:
        """Fail every pending entry with ``error`` and clear the table."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            self._stop_timer(entry)
            if not entry.future.done():
                entry.future.set_exception(error)
        if entries:
            logger.debug("Cancelled %d pending request(s): %s", len(entries), error)
        return len(entries)

    # ---- Internal ----

    def _take(self, request_id: str) -> PendingRequest | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            self._stop_timer(entry)
        return entry

    @staticmethod
    def _stop_timer(entry: PendingRequest) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _forget_cancelled(
        self, request_id: str, entry: PendingRequest, future: asyncio.Future[Any]
    ) -> None:
        # Caller gave up on its own await; drop only that entry.
        if future.cancelled() and self._pending.get(request_id) is entry:
            del self._pending[request_id]
            self._stop_timer(entry)
