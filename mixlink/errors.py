"""
mixlink error types.

Every error below except ConfigError and SessionStateError is fatal to the
session that raised it: key material is wiped before the exception reaches
the caller, and the only way forward is a fresh session and a fresh
handshake.
"""

from __future__ import annotations


class MixLinkError(Exception):
    """Base class for all mixlink errors."""


class ConfigError(MixLinkError):
    """Session configuration is invalid."""


class SessionStateError(MixLinkError):
    """Operation is not legal in the session's current state."""

    def __init__(self, operation: str, state: object) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"{operation} is not allowed in state {state}")


class HandshakeFailed(MixLinkError):
    """Prologue mismatch, AEAD/DH/KEM failure, or malformed handshake message."""


class Unauthorized(MixLinkError):
    """The peer authenticator rejected cryptographically valid credentials."""


class DecryptError(MixLinkError):
    """A transport frame failed AEAD authentication."""


class FramingError(MixLinkError):
    """Length field out of bounds, truncated frame, or oversize payload."""


class NonceExhausted(MixLinkError):
    """A cipher state ran out of nonces; rekeying is not supported."""
