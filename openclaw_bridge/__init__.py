"""
OpenClaw gateway bridge for Python.

Provides a persistent, async-first RPC client for the OpenClaw gateway:
Ed25519 device handshake, correlated request/response calls with
per-call deadlines, and automatic reconnection once a session has been
established.

Example::

    from openclaw_bridge import GatewayClient, GatewayConfig

    client = GatewayClient(GatewayConfig.from_env())

    await client.connect()
    print(f"Connected as device {client.device_id}")

    # Invoke a remote method
    nodes = await client.call("node.list")

    # Clean up
    await client.disconnect()
"""

__version__ = "0.1.0"

from openclaw_bridge.client import GatewayClient
from openclaw_bridge.errors import (
    GatewayError,
    TransportError,
    FrameDecodeError,
    FrameEncodeError,
    HandshakeError,
    HandshakeTimeout,
    HandshakeRejected,
    NotConnected,
    RequestTimeout,
    Disconnected,
    RemoteError,
)
from openclaw_bridge.identity import DeviceIdentity
from openclaw_bridge.types import (
    GatewayConfig,
    GatewayStatus,
    ConnectionState,
    RequestFrame,
    ResponseFrame,
    EventFrame,
)

__all__ = [
    "GatewayClient",
    "GatewayConfig",
    "GatewayStatus",
    "ConnectionState",
    "DeviceIdentity",
    "RequestFrame",
    "ResponseFrame",
    "EventFrame",
    "GatewayError",
    "TransportError",
    "FrameDecodeError",
    "FrameEncodeError",
    "HandshakeError",
    "HandshakeTimeout",
    "HandshakeRejected",
    "NotConnected",
    "RequestTimeout",
    "Disconnected",
    "RemoteError",
]
