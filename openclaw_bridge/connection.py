"""
A single WebSocket to the gateway.

:class:`ConnectionSession` owns one socket for its whole life: it opens it,
runs the reader task, serialises writes, and reports the close exactly
once. A new connection attempt always gets a new session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import websockets

from openclaw_bridge.codec import encode_frame
from openclaw_bridge.errors import TransportError
from openclaw_bridge.types import Frame

logger = logging.getLogger(__name__)

# Type aliases for the session callbacks
MessageHandler = Callable[[str], Awaitable[None]]
CloseHandler = Callable[[int, str], None]
ErrorHandler = Callable[[BaseException], None]
Connector = Callable[[str], Awaitable[Any]]

ABNORMAL_CLOSURE = 1006


async def default_connector(url: str) -> Any:
    return await websockets.connect(url, max_size=2**24)


class ConnectionSession:
    """One physical WebSocket: open, read, send, close."""

    def __init__(
        self,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_error: ErrorHandler | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error
        self._connector = connector or default_connector
        self._ws: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, timeout: float | None = None) -> None:
        """Connect to ``url`` and start reading.

        Raises:
            TransportError: If the socket cannot be established.
        """
        if self._ws is not None or self._closed:
            raise TransportError("session already used")
        try:
            if timeout is None:
                ws = await self._connector(url)
            else:
                ws = await asyncio.wait_for(self._connector(url), timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {url}") from e
        except (OSError, websockets.WebSocketException) as e:
            raise TransportError(f"Cannot connect to {url}: {e}") from e

        if self._closed:
            # close() raced the open; do not leak the socket
            await _quiet_close(ws)
            raise TransportError("session closed while connecting")

        self._ws = ws
        self._open = True
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def send(self, frame: Frame | str) -> bool:
        """Write one frame, or its already encoded text.

        Returns False if the socket is not open.
        """
        if not self._open or self._ws is None:
            logger.debug("Dropping outbound frame: socket not open")
            return False
        text = frame if isinstance(frame, str) else encode_frame(frame)
        async with self._send_lock:
            if not self._open:
                return False
            try:
                await self._ws.send(text)
            except (OSError, websockets.WebSocketException) as e:
                logger.warning("Gateway send failed: %s", e)
                return False
        return True

    async def close(self) -> None:
        """Close the socket without emitting any further callbacks."""
        if self._closed:
            return
        self._closed = True
        self._open = False
        ws, self._ws = self._ws, None
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        if ws is not None:
            await _quiet_close(ws)

    # ---- Internal ----

    async def _read_loop(self, ws: Any) -> None:
        code, reason = ABNORMAL_CLOSURE, ""
        try:
            async for raw in ws:
                await self._on_message(raw if isinstance(raw, str) else raw.decode("utf-8", "replace"))
            code = getattr(ws, "close_code", None) or code
            reason = getattr(ws, "close_reason", None) or ""
        except websockets.ConnectionClosed as e:
            frame = e.rcvd
            if frame is not None:
                code, reason = frame.code, frame.reason
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Gateway reader failed: %s", e)
            reason = str(e)
            if self._on_error is not None and not self._closed:
                self._on_error(e)
        finally:
            self._open = False

        if not self._closed:
            self._closed = True
            self._ws = None
            self._on_close(code, reason)


async def _quiet_close(ws: Any) -> None:
    try:
        await ws.close()
    except (OSError, websockets.WebSocketException) as e:
        logger.debug("Ignoring error while closing socket: %s", e)
