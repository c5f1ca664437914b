"""
In-memory stand-ins for the gateway socket and the timer scheduler.

``FakeGateway.connect`` is injected as the client's connector, the same
way the HTTP transport is swapped out for a mock in the SDK tests: no
real gateway is required.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

TOKEN = "test-gateway-token"

Responder = Callable[[dict[str, Any]], "dict[str, Any] | None"]


def challenge(nonce: str = "abc", ts: int = 1000) -> dict[str, Any]:
    return {"type": "event", "event": "connect.challenge", "payload": {"nonce": nonce, "ts": ts}}


def ok(request_id: str, payload: Any = None) -> dict[str, Any]:
    return {"type": "res", "id": request_id, "ok": True, "payload": payload if payload is not None else {}}


def error(request_id: str, detail: Any) -> dict[str, Any]:
    return {"type": "res", "id": request_id, "ok": False, "error": detail}


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


class FakeSocket:
    """Quacks like a ``websockets`` client connection."""

    def __init__(self, gateway: "FakeGateway") -> None:
        self._gateway = gateway
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason = ""

    async def send(self, text: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        frame = json.loads(text)
        self.sent.append(frame)
        reply = self._gateway.reply_to(frame)
        if reply is not None:
            self.push(reply)

    def push(self, frame: dict[str, Any] | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Peer-side close: the client's reader sees the stream end."""
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.close_code = 1000
            self._inbox.put_nowait(None)

    def requests(self, method: str | None = None) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == "req" and (method is None or f["method"] == method)]

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeGateway:
    """Connector that hands out :class:`FakeSocket` objects.

    By default each socket opens with a ``connect.challenge`` and the
    ``connect`` request is accepted.
    """

    def __init__(
        self,
        *,
        nonce: str = "abc",
        send_challenge: bool = True,
        accept_connect: bool = True,
        reject_connect: Any = None,
        responder: Responder | None = None,
    ) -> None:
        self.nonce = nonce
        self.send_challenge = send_challenge
        self.accept_connect = accept_connect
        self.reject_connect = reject_connect
        self.responder = responder
        self.refuse = False
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]

    async def connect(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.refuse:
            raise ConnectionRefusedError(111, "Connection refused")
        sock = FakeSocket(self)
        if self.send_challenge:
            sock.push(challenge(self.nonce))
        self.sockets.append(sock)
        return sock

    def reply_to(self, frame: dict[str, Any]) -> dict[str, Any] | None:
        if frame.get("method") == "connect":
            if self.reject_connect is not None:
                return error(frame["id"], self.reject_connect)
            if self.accept_connect:
                return ok(frame["id"], {"type": "hello-ok", "protocol": 3})
            return None
        if self.responder is not None:
            return self.responder(frame)
        return None


class ManualTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers only run when a test fires them."""

    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def active(self, delay: float | None = None) -> list[ManualTimer]:
        return [
            t
            for t in self.timers
            if not t.cancelled and not t.fired and (delay is None or t.delay == delay)
        ]

    def fire(self, delay: float) -> int:
        due = self.active(delay)
        for timer in due:
            timer.fired = True
            timer.callback()
        return len(due)
