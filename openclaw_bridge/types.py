"""
Pydantic models for the OpenClaw gateway bridge.

Wire models keep the gateway's camelCase names as aliases while exposing
snake_case attributes, so frames can be built from and dumped to the exact
JSON the gateway speaks.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from openclaw_bridge import __version__


# ============================================================
#  Configuration
# ============================================================


DEFAULT_SCOPES = ["operator.read", "operator.write", "operator.admin"]


class GatewayConfig(BaseModel):
    """Connection settings for one gateway client."""

    host: str = "127.0.0.1"
    port: int = 18790
    token: str
    reconnect_interval_ms: int = 5000
    request_timeout_ms: int = 60000
    handshake_timeout_ms: int = 10000
    open_timeout_ms: int = 10000

    client_id: str = "cli"
    client_mode: str = "cli"
    client_version: str = __version__
    role: str = "operator"
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    locale: str = "en-US"
    user_agent: str = f"openclaw-bridge/{__version__}"

    @field_validator("token")
    @classmethod
    def _token_required(cls, value: str) -> str:
        if not value:
            raise ValueError("gateway token is required")
        return value

    @field_validator(
        "reconnect_interval_ms",
        "request_timeout_ms",
        "handshake_timeout_ms",
        "open_timeout_ms",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("intervals and timeouts must be positive")
        return value

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @classmethod
    def from_env(cls, **overrides: Any) -> "GatewayConfig":
        """Build a config from ``OPENCLAW_GATEWAY_*`` environment variables.

        Keyword overrides win over the environment.
        """
        values: dict[str, Any] = {}
        if "OPENCLAW_GATEWAY_HOST" in os.environ:
            values["host"] = os.environ["OPENCLAW_GATEWAY_HOST"]
        if "OPENCLAW_GATEWAY_PORT" in os.environ:
            values["port"] = int(os.environ["OPENCLAW_GATEWAY_PORT"])
        values["token"] = os.environ.get("OPENCLAW_GATEWAY_TOKEN", "")
        values.update(overrides)
        return cls(**values)


# ============================================================
#  Frames
# ============================================================


class RequestFrame(BaseModel):
    """Outbound ``req`` envelope."""

    type: Literal["req"] = "req"
    id: str
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class ResponseFrame(BaseModel):
    """Inbound ``res`` envelope."""

    type: Literal["res"] = "res"
    id: str
    ok: bool | None = None
    error: Any = None
    payload: Any = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def is_error(self) -> bool:
        return self.ok is False or self.error is not None

    @property
    def error_detail(self) -> Any:
        """Server-supplied error detail, falling back to the payload."""
        return self.error if self.error is not None else self.payload


class EventFrame(BaseModel):
    """Inbound ``event`` envelope."""

    type: Literal["event"] = "event"
    event: str
    payload: Any = None
    seq: int | None = None


Frame = RequestFrame | ResponseFrame | EventFrame


class ChallengePayload(BaseModel):
    """Payload of the ``connect.challenge`` event."""

    nonce: str
    ts: int | float | None = None


# ============================================================
#  Connect handshake
# ============================================================


class ClientInfo(BaseModel):
    """Client descriptor sent with ``connect``."""

    id: str
    version: str
    platform: str
    mode: str


class AuthInfo(BaseModel):
    token: str


class DeviceAuth(BaseModel):
    """Device proof block: public key, signature and the signed nonce."""

    id: str
    public_key: str = Field(alias="publicKey")
    signature: str
    signed_at: int = Field(alias="signedAt")
    nonce: str

    model_config = {"populate_by_name": True}


class ConnectParams(BaseModel):
    """Params of the ``connect`` request."""

    min_protocol: int = Field(alias="minProtocol")
    max_protocol: int = Field(alias="maxProtocol")
    client: ClientInfo
    role: str
    scopes: list[str]
    caps: list[str] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    permissions: dict[str, Any] = Field(default_factory=dict)
    auth: AuthInfo
    locale: str
    user_agent: str = Field(alias="userAgent")
    device: DeviceAuth

    model_config = {"populate_by_name": True}


# ============================================================
#  Status
# ============================================================


class ConnectionState(str, Enum):
    """Lifecycle of the gateway connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"
    ERRORED = "errored"
    RECONNECT_PENDING = "reconnect_pending"


class GatewayStatus(BaseModel):
    """Point-in-time snapshot of a client, for health endpoints."""

    url: str
    state: ConnectionState
    connected: bool
    authenticated: bool
    pending_requests: int = Field(alias="pendingRequests")
    device_id: str = Field(alias="deviceId")

    model_config = {"populate_by_name": True}
