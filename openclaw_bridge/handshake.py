"""
Challenge-response handshake that authenticates a fresh socket.

After the socket opens, the gateway sends a ``connect.challenge`` event
carrying a nonce. The client signs a canonical, pipe-delimited payload
binding its device fingerprint, descriptor, scopes, signing time, the
shared token and that nonce, then sends a ``connect`` request with the
public key and signature. The gateway recomputes the same string to
verify, so :func:`build_signing_payload` must stay byte-exact.

States::

    AWAITING_CHALLENGE -> SIGNING -> AWAITING_CONFIRMATION -> AUTHENTICATED
                                                            \\-> FAILED
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from openclaw_bridge.errors import (
    GatewayError,
    HandshakeRejected,
    HandshakeTimeout,
    RemoteError,
    TransportError,
)
from openclaw_bridge.identity import DeviceIdentity, b64url_encode
from openclaw_bridge.pending import CorrelationTable
from openclaw_bridge.scheduling import Scheduler, TimerHandle
from openclaw_bridge.types import (
    AuthInfo,
    ChallengePayload,
    ClientInfo,
    ConnectParams,
    DeviceAuth,
    GatewayConfig,
    RequestFrame,
)

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v2"
PROTOCOL_VERSION = 3
CHALLENGE_EVENT = "connect.challenge"
CONNECT_METHOD = "connect"

SendFrame = Callable[[RequestFrame], Awaitable[bool]]


class HandshakeState(str, Enum):
    AWAITING_CHALLENGE = "awaiting_challenge"
    SIGNING = "signing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def build_signing_payload(
    *,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: Sequence[str],
    signed_at_ms: int,
    token: str,
    nonce: str,
) -> str:
    """Canonical string the device signs.

    Format: ``v2|deviceId|clientId|clientMode|role|scopes|signedAtMs|token|nonce``
    with scopes comma-joined.
    """
    return "|".join(
        [
            SIGNATURE_VERSION,
            device_id,
            client_id,
            client_mode,
            role,
            ",".join(scopes),
            str(signed_at_ms),
            token,
            nonce,
        ]
    )


def build_connect_params(
    config: GatewayConfig,
    identity: DeviceIdentity,
    nonce: str,
    signed_at_ms: int,
) -> ConnectParams:
    """Sign the challenge and assemble the ``connect`` request params."""
    payload = build_signing_payload(
        device_id=identity.device_id,
        client_id=config.client_id,
        client_mode=config.client_mode,
        role=config.role,
        scopes=config.scopes,
        signed_at_ms=signed_at_ms,
        token=config.token,
        nonce=nonce,
    )
    signature = identity.sign(payload.encode("utf-8"))
    return ConnectParams(
        min_protocol=PROTOCOL_VERSION,
        max_protocol=PROTOCOL_VERSION,
        client=ClientInfo(
            id=config.client_id,
            version=config.client_version,
            platform=sys.platform,
            mode=config.client_mode,
        ),
        role=config.role,
        scopes=list(config.scopes),
        auth=AuthInfo(token=config.token),
        locale=config.locale,
        user_agent=config.user_agent,
        device=DeviceAuth(
            id=identity.device_id,
            public_key=identity.public_key_b64url,
            signature=b64url_encode(signature),
            signed_at=signed_at_ms,
            nonce=nonce,
        ),
    )


class Handshake:
    """Drives one socket from open to authenticated (or failed).

    Created per connection attempt. :meth:`wait` completes when the
    gateway confirms the ``connect`` request and raises the specific
    failure otherwise.
    """

    def __init__(
        self,
        config: GatewayConfig,
        identity: DeviceIdentity,
        table: CorrelationTable,
        send: SendFrame,
        next_id: Callable[[], str],
        scheduler: Scheduler,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._identity = identity
        self._table = table
        self._send = send
        self._next_id = next_id
        self._scheduler = scheduler
        self._clock = clock
        self._timeout = config.handshake_timeout_ms / 1000.0

        self.state = HandshakeState.AWAITING_CHALLENGE
        self.request_id: str | None = None
        self._result: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._challenge_timer: TimerHandle | None = None

    @property
    def done(self) -> bool:
        return self._result.done()

    def start(self) -> None:
        """Arm the challenge deadline. Call once the socket is open."""
        self._challenge_timer = self._scheduler.call_later(self._timeout, self._challenge_expired)

    async def wait(self) -> Any:
        """Wait for the outcome; returns the gateway's ``connect`` payload."""
        return await asyncio.shield(self._result)

    async def handle_challenge(self, challenge: ChallengePayload) -> None:
        """Sign the challenge, send ``connect`` and await confirmation."""
        if self.state is not HandshakeState.AWAITING_CHALLENGE:
            logger.warning("Ignoring unexpected connect challenge in state %s", self.state.value)
            return
        self._cancel_challenge_timer()

        self.state = HandshakeState.SIGNING
        signed_at_ms = int(self._clock() * 1000)
        params = build_connect_params(self._config, self._identity, challenge.nonce, signed_at_ms)

        request_id = self._next_id()
        self.request_id = request_id
        confirmation = self._table.register(
            request_id,
            self._timeout,
            method=CONNECT_METHOD,
            timeout_error=lambda: HandshakeTimeout("Connect handshake timeout"),
        )
        self.state = HandshakeState.AWAITING_CONFIRMATION
        frame = RequestFrame(
            id=request_id,
            method=CONNECT_METHOD,
            params=params.model_dump(by_alias=True),
        )
        if not await self._send(frame):
            self._table.reject(request_id, TransportError("Socket closed before connect was sent"))

        try:
            payload = await confirmation
        except RemoteError as e:
            self.fail(HandshakeRejected(e.detail))
        except GatewayError as e:
            self.fail(e)
        else:
            if not self._result.done():
                self.state = HandshakeState.AUTHENTICATED
                self._result.set_result(payload)

    def fail(self, error: GatewayError) -> None:
        """Fail the attempt unless it already finished."""
        self._cancel_challenge_timer()
        if self._result.done():
            return
        self.state = HandshakeState.FAILED
        logger.warning("Gateway handshake failed: %s", error)
        self._result.set_exception(error)
        # Nobody may await a handshake that was abandoned (e.g. on disconnect).
        self._result.add_done_callback(lambda f: f.exception())

    # ---- Internal ----

    def _challenge_expired(self) -> None:
        self._challenge_timer = None
        if self.state is HandshakeState.AWAITING_CHALLENGE:
            self.fail(HandshakeTimeout("Connect challenge not received"))

    def _cancel_challenge_timer(self) -> None:
        if self._challenge_timer is not None:
            self._challenge_timer.cancel()
            self._challenge_timer = None
