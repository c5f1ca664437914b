"""
Exception hierarchy for the OpenClaw gateway bridge.

Every failure a caller can observe from :class:`~openclaw_bridge.client.GatewayClient`
derives from :class:`GatewayError`, so a single ``except GatewayError``
covers the whole client. Raw ``websockets`` / ``OSError`` exceptions are
wrapped in :class:`TransportError` before they leave the package.
"""

from __future__ import annotations

import json
from typing import Any


class GatewayError(RuntimeError):
    """Base exception for all gateway client errors."""


class TransportError(GatewayError):
    """Socket-level failure: refused, reset, DNS, or closed before authentication."""


class FrameDecodeError(GatewayError):
    """Raised when an inbound frame is not a valid envelope."""


class FrameEncodeError(GatewayError, ValueError):
    """Raised when an outbound frame cannot be serialised to JSON."""


class HandshakeError(GatewayError):
    """Base class for connect handshake failures."""


class HandshakeTimeout(HandshakeError, TimeoutError):
    """Challenge or confirmation not received within the handshake deadline."""


class HandshakeRejected(HandshakeError):
    """The gateway answered the ``connect`` request with an error."""

    def __init__(self, detail: Any) -> None:
        self.detail = detail
        super().__init__(f"Gateway rejected connect: {_render(detail)}")


class NotConnected(GatewayError):
    """A call was attempted while the client is not authenticated."""


class RequestTimeout(GatewayError, TimeoutError):
    """An individual call exceeded its deadline."""


class Disconnected(GatewayError):
    """The call was in flight when the connection went away."""


class RemoteError(GatewayError):
    """The gateway answered a request with an explicit error payload."""

    def __init__(self, method: str, detail: Any) -> None:
        self.method = method
        self.detail = detail
        prefix = f"RPC error ({method})" if method else "RPC error"
        super().__init__(f"{prefix}: {_render(detail)}")


def _render(detail: Any) -> str:
    if isinstance(detail, str):
        return detail
    try:
        return json.dumps(detail)
    except (TypeError, ValueError):
        return repr(detail)
