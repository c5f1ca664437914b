"""
OpenClaw gateway RPC client.

Persistent, authenticated WebSocket client for the OpenClaw gateway,
built on ``websockets`` for the transport, ``cryptography`` for the
Ed25519 device handshake and ``pydantic`` for the wire models.

Usage::

    from openclaw_bridge import GatewayClient, GatewayConfig

    client = GatewayClient(GatewayConfig(host="127.0.0.1", port=18790, token="..."))
    await client.connect()
    nodes = await client.call("node.list")
    await client.disconnect()

Lifecycle::

    IDLE -> CONNECTING -> AUTHENTICATING -> READY -> (CLOSED | ERRORED)
         -> RECONNECT_PENDING -> CONNECTING -> ...

Once a socket has reached READY, losing it schedules one reconnect after
the fixed reconnect interval, repeated until a reconnect succeeds or
:meth:`GatewayClient.disconnect` is called. Failures of an attempt that
never authenticated are raised to whoever called :meth:`GatewayClient.connect`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Callable, Coroutine

from pydantic import ValidationError

from openclaw_bridge.codec import decode_frame, encode_frame
from openclaw_bridge.connection import ABNORMAL_CLOSURE, ConnectionSession, Connector
from openclaw_bridge.errors import (
    Disconnected,
    FrameDecodeError,
    FrameEncodeError,
    GatewayError,
    NotConnected,
    RemoteError,
    TransportError,
)
from openclaw_bridge.events import ANY_EVENT, EventHandler, EventManager
from openclaw_bridge.handshake import CHALLENGE_EVENT, Handshake
from openclaw_bridge.identity import DeviceIdentity
from openclaw_bridge.pending import CorrelationTable
from openclaw_bridge.scheduling import LoopScheduler, Scheduler, TimerHandle
from openclaw_bridge.types import (
    ChallengePayload,
    ConnectionState,
    EventFrame,
    GatewayConfig,
    GatewayStatus,
    RequestFrame,
    ResponseFrame,
)

logger = logging.getLogger(__name__)


class GatewayClient:
    """
    RPC client for one OpenClaw gateway.

    All state lives on the instance and is confined to the event loop the
    client is used from; any number of clients can coexist.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        identity: DeviceIdentity | None = None,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._identity = identity or DeviceIdentity.generate()
        self._connector = connector
        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock

        self._pending = CorrelationTable(self._scheduler)
        self._events = EventManager()
        self._ids = itertools.count(1)

        # State
        self._session: ConnectionSession | None = None
        self._handshake: Handshake | None = None
        self._attempt: asyncio.Future[None] | None = None
        self._connected = False
        self._authenticated = False
        self._state = ConnectionState.IDLE
        self._stopped = False
        self._reconnect_handle: TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> "GatewayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def device_id(self) -> str:
        """Fingerprint the gateway knows this client by."""
        return self._identity.device_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether a transport socket is currently open."""
        return self._connected

    @property
    def is_authenticated(self) -> bool:
        """Whether calls are currently allowed (socket open and handshake done)."""
        return self._connected and self._authenticated

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> GatewayStatus:
        """Snapshot of the connection for health reporting."""
        return GatewayStatus(
            url=self._config.url,
            state=self._state,
            connected=self._connected,
            authenticated=self.is_authenticated,
            pending_requests=len(self._pending),
            device_id=self.device_id,
        )

    # ---- Connection lifecycle ----

    async def connect(self) -> None:
        """
        Open a socket and complete the device handshake.

        Concurrent callers share the attempt already in flight. Returns
        immediately if the client is already authenticated.

        Raises:
            TransportError: The socket could not be opened, or closed
                before authentication completed.
            HandshakeTimeout: No challenge or confirmation in time.
            HandshakeRejected: The gateway refused the ``connect`` request.
            Disconnected: :meth:`disconnect` was called mid-attempt.
        """
        if self.is_authenticated:
            return
        self._stopped = False
        if self._attempt is None or self._attempt.done():
            self._attempt = asyncio.ensure_future(self._connect_once())
            self._attempt.add_done_callback(_consume_exception)
        await asyncio.shield(self._attempt)

    async def disconnect(self) -> None:
        """
        Stop reconnecting, close the socket and fail everything in flight.

        Safe to call repeatedly.
        """
        self._stopped = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        session, self._session = self._session, None
        handshake, self._handshake = self._handshake, None
        was_connected = self._connected
        self._connected = False
        self._authenticated = False

        error = Disconnected("Client disconnected")
        if handshake is not None:
            handshake.fail(error)
        self._pending.cancel_all(error)
        cancelled = self._events.cancel()
        self._set_state(ConnectionState.IDLE)

        if session is not None:
            await session.close()
        if cancelled:
            logger.debug("Cancelled %d running event handlers", cancelled)
            await self._events.drain()
        if was_connected:
            logger.info("Disconnected from gateway")

    # ---- Calls ----

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        """
        Invoke ``method`` on the gateway and return its payload.

        Args:
            method: Remote method name, e.g. ``"node.list"``.
            params: Opaque params object, sent as-is.
            timeout_ms: Per-call deadline; defaults to the configured
                request timeout.

        Raises:
            NotConnected: The client is not authenticated. Nothing is sent.
            RequestTimeout: No response before the deadline.
            RemoteError: The gateway answered with an error.
            Disconnected: The connection went away while waiting.
            FrameEncodeError: ``params`` is not a JSON object or holds values
                JSON cannot represent. Nothing is registered or sent.
        """
        session = self._session
        if session is None or not self.is_authenticated:
            raise NotConnected("Not connected to Gateway")

        request_id = self._next_id()
        try:
            frame = RequestFrame(id=request_id, method=method, params=params if params is not None else {})
        except ValidationError as e:
            raise FrameEncodeError(f"Params for {method} must be an object, got {type(params).__name__}") from e
        # Encoded up front: a frame that cannot be sent never enters the table.
        text = encode_frame(frame)

        timeout = (timeout_ms if timeout_ms is not None else self._config.request_timeout_ms) / 1000.0
        future = self._pending.register(request_id, timeout, method=method)
        logger.debug("-> %s %s", request_id, method)
        if not await session.send(text):
            self._pending.reject(request_id, Disconnected(f"Connection lost before {method} was sent"))
        return await future

    # ---- Events ----

    def on(self, event_name: str, handler: EventHandler) -> None:
        """Subscribe to a gateway event (anything but the connect challenge)."""
        self._events.subscribe(event_name, handler)

    def on_any(self, handler: EventHandler) -> None:
        self._events.subscribe(ANY_EVENT, handler)

    def off(self, event_name: str, handler: EventHandler | None = None) -> None:
        """Unsubscribe from a gateway event."""
        self._events.unsubscribe(event_name, handler)

    # ---- Internal: attempts ----

    async def _connect_once(self) -> None:
        if self._session is not None:
            stale, self._session = self._session, None
            await stale.close()

        url = self._config.url
        self._connected = False
        self._authenticated = False
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to gateway at %s...", url)

        session = ConnectionSession(
            on_message=lambda raw: self._handle_message(session, raw),
            on_close=lambda code, reason: self._handle_close(session, code, reason),
            on_error=lambda exc: self._handle_error(session, exc),
            connector=self._connector,
        )
        handshake = Handshake(
            self._config,
            self._identity,
            self._pending,
            session.send,
            self._next_id,
            self._scheduler,
            clock=self._clock,
        )
        self._session = session
        self._handshake = handshake

        try:
            await session.open(url, timeout=self._config.open_timeout_ms / 1000.0)
        except TransportError as e:
            if self._session is not session:
                raise Disconnected("Client disconnected") from e
            self._session = None
            self._handshake = None
            self._set_state(ConnectionState.ERRORED)
            logger.warning("Gateway connection failed: %s", e)
            raise

        if self._session is not session:
            await session.close()
            raise Disconnected("Client disconnected")

        self._connected = True
        self._set_state(ConnectionState.AUTHENTICATING)
        logger.info("WebSocket open, waiting for challenge...")
        handshake.start()

        try:
            await handshake.wait()
        except GatewayError:
            if self._session is session:
                self._session = None
                self._handshake = None
                self._connected = False
                self._set_state(ConnectionState.ERRORED)
                await session.close()
            raise

        if self._session is not session:
            raise TransportError("WebSocket closed during authentication")

        self._handshake = None
        self._authenticated = True
        self._set_state(ConnectionState.READY)
        logger.info("Authenticated as %s (device %s)", self._config.role, self.device_id[:16])

    # ---- Internal: inbound ----

    async def _handle_message(self, session: ConnectionSession, raw: str) -> None:
        if session is not self._session:
            return
        try:
            frame = decode_frame(raw)
        except FrameDecodeError as e:
            logger.warning("Discarding malformed gateway frame (%s): %s", e, raw[:200])
            return

        if isinstance(frame, ResponseFrame):
            self._handle_response(frame)
        elif isinstance(frame, EventFrame):
            if frame.event == CHALLENGE_EVENT:
                self._handle_challenge(frame)
            else:
                self._events.emit(frame)
        elif frame is None:
            logger.debug("Ignoring gateway frame of unknown type: %s", raw[:200])
        else:
            logger.debug("Ignoring inbound request frame %s", frame.method)

    def _handle_response(self, frame: ResponseFrame) -> None:
        entry = self._pending.get(frame.id)
        if entry is None:
            logger.debug("Discarding response for unknown request %s", frame.id)
            return
        if frame.is_error:
            self._pending.reject(frame.id, RemoteError(entry.method, frame.error_detail))
        else:
            self._pending.resolve(frame.id, frame.payload)

    def _handle_challenge(self, frame: EventFrame) -> None:
        handshake = self._handshake
        if handshake is None or handshake.done:
            logger.debug("Ignoring connect challenge outside of a handshake")
            return
        try:
            challenge = ChallengePayload.model_validate(frame.payload)
        except ValidationError:
            logger.warning("Discarding malformed connect challenge")
            return
        # Runs beside the reader: the confirmation arrives through it.
        self._spawn(handshake.handle_challenge(challenge))

    def _handle_error(self, session: ConnectionSession, exc: BaseException) -> None:
        if session is self._session:
            logger.error("Gateway connection error: %s", exc)

    def _handle_close(self, session: ConnectionSession, code: int, reason: str) -> None:
        if session is not self._session:
            return
        was_ready = self._authenticated
        self._session = None
        self._connected = False
        self._authenticated = False
        logger.warning("Disconnected from gateway: %s %s", code, reason)

        handshake, self._handshake = self._handshake, None
        if handshake is not None:
            handshake.fail(TransportError(f"WebSocket closed before authentication: {code}"))
        self._pending.cancel_all(Disconnected(f"WebSocket disconnected: {code} {reason}".rstrip()))

        self._set_state(ConnectionState.ERRORED if code == ABNORMAL_CLOSURE else ConnectionState.CLOSED)
        if was_ready:
            self._schedule_reconnect()

    # ---- Internal: reconnection ----

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._reconnect_handle is not None:
            return
        delay = self._config.reconnect_interval_ms / 1000.0
        logger.info("Reconnecting to gateway in %.1fs", delay)
        self._set_state(ConnectionState.RECONNECT_PENDING)
        self._reconnect_handle = self._scheduler.call_later(delay, self._reconnect_due)

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        if self._stopped:
            return
        self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        if self._stopped:
            return
        try:
            await self.connect()
        except GatewayError as e:
            logger.warning("Reconnect failed (%s), will retry...", e)
            self._schedule_reconnect()

    # ---- Internal: helpers ----

    def _next_id(self) -> str:
        return f"bridge-{next(self._ids)}"

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("Gateway state %s -> %s", self._state.value, state.value)
            self._state = state

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Gateway background task failed: %s", task.exception())


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # A reconnect attempt may fail with nobody left awaiting it.
    if not future.cancelled():
        future.exception()
