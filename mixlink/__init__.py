"""
mixlink: authenticated, encrypted point-to-point links between mix network nodes.

Sessions run a hybrid post-quantum Noise XXhfs handshake (X25519 plus
ML-KEM-1024) over a connected byte stream, then exchange length-prefixed
ChaCha20-Poly1305 frames.
"""

from mixlink.aio import AsyncSession
from mixlink.auth import (
    ClientAuthenticator,
    PeerAuthenticator,
    PeerCredentials,
    ProviderAuthenticator,
    ServerAuthenticator,
)
from mixlink.config import Role, SessionConfig
from mixlink.crypto import Keypair, generate_keypair, keypair_from_private
from mixlink.errors import (
    ConfigError,
    DecryptError,
    FramingError,
    HandshakeFailed,
    MixLinkError,
    NonceExhausted,
    SessionStateError,
    Unauthorized,
)
from mixlink.session import Session, SessionState

__version__ = "0.1.0"

__all__ = [
    "AsyncSession",
    "ClientAuthenticator",
    "ConfigError",
    "DecryptError",
    "FramingError",
    "HandshakeFailed",
    "Keypair",
    "MixLinkError",
    "NonceExhausted",
    "PeerAuthenticator",
    "PeerCredentials",
    "ProviderAuthenticator",
    "Role",
    "ServerAuthenticator",
    "Session",
    "SessionConfig",
    "SessionState",
    "Unauthorized",
    "generate_keypair",
    "keypair_from_private",
]
