"""
Peer authentication.

The session layer asks exactly one question of an authenticator: are these
credentials acceptable? Policy lives entirely behind that single method, so
any object with ``is_peer_valid`` (or a plain callable) will do.

Key comparisons are constant time, and membership checks look at every
stored key instead of stopping at the first match.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

from mixlink.constants import MAX_ADDITIONAL_DATA_SIZE, PUBLIC_KEY_SIZE

log = structlog.get_logger()


@dataclass(frozen=True, eq=False)
class PeerCredentials:
    """The identity a peer revealed during the handshake."""

    additional_data: bytes
    public_key: bytes

    def __post_init__(self) -> None:
        if len(self.public_key) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
        if len(self.additional_data) > MAX_ADDITIONAL_DATA_SIZE:
            raise ValueError(f"Associated data must be at most {MAX_ADDITIONAL_DATA_SIZE} bytes")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PeerCredentials):
            return NotImplemented
        same_key = hmac.compare_digest(self.public_key, other.public_key)
        same_ad = hmac.compare_digest(self.additional_data, other.additional_data)
        return same_key & same_ad

    def __hash__(self) -> int:
        return hash((self.public_key, self.additional_data))


@runtime_checkable
class PeerAuthenticator(Protocol):
    """Decides whether a peer may complete the handshake."""

    def is_peer_valid(self, credentials: PeerCredentials) -> bool: ...


class _CallableAuthenticator:
    def __init__(self, func: Callable[[PeerCredentials], bool]) -> None:
        self._func = func

    def is_peer_valid(self, credentials: PeerCredentials) -> bool:
        return bool(self._func(credentials))

    def __repr__(self) -> str:
        return f"CallableAuthenticator({self._func!r})"


def as_authenticator(value: PeerAuthenticator | Callable[[PeerCredentials], bool]) -> PeerAuthenticator:
    """Accept an authenticator object or a bare predicate."""
    if isinstance(value, PeerAuthenticator):
        return value
    if callable(value):
        return _CallableAuthenticator(value)
    raise TypeError(f"authenticator must provide is_peer_valid() or be callable, got {value!r}")


def key_in(public_key: bytes, keys: Iterable[bytes]) -> bool:
    """Constant-time membership test over every candidate key."""
    found = False
    for candidate in keys:
        found |= hmac.compare_digest(public_key, candidate)
    return found


# =============================================================================
# Authenticators for the three kinds of mix network node
# =============================================================================


class ClientAuthenticator:
    """A client dialing a provider: accept exactly the provider's key."""

    def __init__(self, peer_public_key: bytes) -> None:
        self.peer_public_key = bytes(peer_public_key)

    def is_peer_valid(self, credentials: PeerCredentials) -> bool:
        return hmac.compare_digest(self.peer_public_key, credentials.public_key)


class ServerAuthenticator:
    """A mix: accept any key of the mix set."""

    def __init__(self, mix_keys: Iterable[bytes]) -> None:
        self.mix_keys = frozenset(bytes(k) for k in mix_keys)

    def is_peer_valid(self, credentials: PeerCredentials) -> bool:
        return key_in(credentials.public_key, self.mix_keys)


class ProviderAuthenticator:
    """A provider: accepts mixes and its own clients, and remembers which it saw.

    One instance belongs to one session, since ``from_client``/``from_mix``
    describe the peer of that session.
    """

    def __init__(self, mix_keys: Iterable[bytes] = (), client_keys: Iterable[bytes] = ()) -> None:
        self.mix_keys = frozenset(bytes(k) for k in mix_keys)
        self.client_keys = frozenset(bytes(k) for k in client_keys)
        self.from_client = False
        self.from_mix = False

    def is_peer_valid(self, credentials: PeerCredentials) -> bool:
        is_mix = key_in(credentials.public_key, self.mix_keys)
        is_client = key_in(credentials.public_key, self.client_keys)
        if is_mix:
            self.from_mix = True
            return True
        if is_client:
            self.from_client = True
            return True
        log.info("peer_rejected", authenticator="provider", peer_key=credentials.public_key[:4].hex())
        return False
