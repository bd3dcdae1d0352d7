"""
Session configuration.

A SessionConfig is built once, validated on construction, and never changes
for the lifetime of the session that uses it.
"""

from __future__ import annotations

import enum
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from mixlink.auth import PeerAuthenticator, as_authenticator
from mixlink.constants import (
    DEFAULT_MAX_FRAME_LENGTH,
    MAX_ADDITIONAL_DATA_SIZE,
    MAX_FRAME_LENGTH_LIMIT,
    MIN_FRAME_LENGTH,
)
from mixlink.crypto import Keypair, RandomSource
from mixlink.errors import ConfigError


class Role(enum.Enum):
    """Which side of the handshake a session plays."""

    INITIATOR = "initiator"
    RESPONDER = "responder"

    @property
    def peer(self) -> Role:
        return Role.RESPONDER if self is Role.INITIATOR else Role.INITIATOR

    @classmethod
    def from_string(cls, value: str) -> Role:
        """Parse a role name; "client" and "server" are accepted as aliases."""
        aliases = {"client": cls.INITIATOR, "server": cls.RESPONDER}
        normalized = value.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigError(f"Unknown role: {value!r}") from None


@dataclass(frozen=True)
class SessionConfig:
    """Everything a Session needs besides the stream.

    Attributes:
        role: Initiator dials and writes message 1; responder answers.
        local_static_key: Long-term X25519 keypair.
        authenticator: Decides whether the peer's credentials are acceptable.
        local_associated_data: Up to 255 bytes sent to the peer during the handshake.
        random_bytes: Randomness source for ephemeral keys and KEM encapsulation.
        max_frame_length: Largest sealed frame accepted or produced.
        rekey_per_frame: Ratchet each direction's key after every frame.
        clock: Wall-clock source, seconds since the epoch.
    """

    role: Role
    local_static_key: Keypair
    authenticator: PeerAuthenticator | Callable
    local_associated_data: bytes = b""
    random_bytes: RandomSource = os.urandom
    max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH
    rekey_per_frame: bool = True
    clock: Callable[[], float] = field(default=time.time, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            raise ConfigError(f"role must be a Role, got {self.role!r}")
        if not isinstance(self.local_static_key, Keypair):
            raise ConfigError("local_static_key must be a Keypair")
        if len(self.local_associated_data) > MAX_ADDITIONAL_DATA_SIZE:
            raise ConfigError(
                f"Associated data too large: {len(self.local_associated_data)} > "
                f"{MAX_ADDITIONAL_DATA_SIZE}"
            )
        if not MIN_FRAME_LENGTH < self.max_frame_length <= MAX_FRAME_LENGTH_LIMIT:
            raise ConfigError(
                f"max_frame_length must be in ({MIN_FRAME_LENGTH}, {MAX_FRAME_LENGTH_LIMIT}], "
                f"got {self.max_frame_length}"
            )
        if not callable(self.random_bytes):
            raise ConfigError("random_bytes must be callable")
        if not callable(self.clock):
            raise ConfigError("clock must be callable")
        try:
            authenticator = as_authenticator(self.authenticator)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        object.__setattr__(self, "authenticator", authenticator)
        object.__setattr__(self, "local_associated_data", bytes(self.local_associated_data))

    @property
    def is_initiator(self) -> bool:
        return self.role is Role.INITIATOR
