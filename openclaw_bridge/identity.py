"""
Device identity for the gateway handshake.

An Ed25519 keypair generated in-process. The gateway knows the device by
the SHA-256 fingerprint of the raw 32-byte public key; the private key is
only ever used to sign handshake payloads and is never exported.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 without ``=`` padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    """Inverse of :func:`b64url_encode`; tolerates missing padding."""
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class DeviceIdentity:
    """Ed25519 signing identity for one client instance."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key: Ed25519PublicKey = private_key.public_key()
        self._public_raw = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._device_id = hashlib.sha256(self._public_raw).hexdigest()

    @classmethod
    def generate(cls) -> "DeviceIdentity":
        """Create a fresh identity with a newly generated keypair."""
        return cls(Ed25519PrivateKey.generate())

    @property
    def device_id(self) -> str:
        """Lowercase hex SHA-256 of the raw public key."""
        return self._device_id

    def fingerprint(self) -> str:
        return self._device_id

    @property
    def public_key_raw(self) -> bytes:
        return self._public_raw

    @property
    def public_key_b64url(self) -> str:
        return b64url_encode(self._public_raw)

    def sign(self, payload: bytes) -> bytes:
        """Detached signature over exactly ``payload``."""
        return self._private_key.sign(payload)

    def verify(self, payload: bytes, signature: bytes) -> bool:
        try:
            self._public_key.verify(signature, payload)
        except InvalidSignature:
            return False
        return True

    def __repr__(self) -> str:
        return f"DeviceIdentity(device_id={self._device_id[:16]}...)"
