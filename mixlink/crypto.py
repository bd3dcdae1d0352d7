"""
Cryptographic primitives for the mixlink handshake and transport.

X25519 comes from libsodium (PyNaCl), ChaCha20-Poly1305 from ``cryptography``,
BLAKE2b and HMAC from the standard library, ML-KEM-1024 from ``kyber-py``.
Nothing here keeps process-wide state: every caller passes in the randomness
source it wants to draw from.
"""

from __future__ import annotations

import copy
import hashlib
import hmac
import os
import struct
from collections.abc import Callable
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from kyber_py.ml_kem import ML_KEM_1024
from nacl.bindings import crypto_scalarmult, crypto_scalarmult_base
from nacl.encoding import RawEncoder
from nacl.exceptions import CryptoError
from nacl.hash import blake2b

from mixlink.constants import (
    HASH_SIZE,
    KEM_CIPHERTEXT_SIZE,
    KEM_PUBLIC_KEY_SIZE,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
)
from mixlink.errors import HandshakeFailed

RandomSource = Callable[[int], bytes]

__all__ = [
    "InvalidTag",
    "KEM",
    "Keypair",
    "RandomSource",
    "aead_decrypt",
    "aead_encrypt",
    "deterministic_bytes",
    "deterministic_keypair",
    "deterministic_random",
    "dh",
    "generate_keypair",
    "hash_bytes",
    "hkdf",
    "hmac_hash",
    "keypair_from_private",
    "wipe",
]


# =============================================================================
# X25519
# =============================================================================


@dataclass(frozen=True)
class Keypair:
    """An X25519 keypair. The private half never appears in repr()."""

    private_key: bytes = field(repr=False)
    public_key: bytes

    def __post_init__(self) -> None:
        if len(self.private_key) != PRIVATE_KEY_SIZE:
            raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes")
        if len(self.public_key) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Public key must be {PUBLIC_KEY_SIZE} bytes")


def _clamp(private_key: bytes) -> bytes:
    clamped = bytearray(private_key)
    clamped[0] &= 248
    clamped[31] &= 127
    clamped[31] |= 64
    return bytes(clamped)


def keypair_from_private(private_key: bytes) -> Keypair:
    """Build a keypair from 32 private key bytes (clamped as X25519 requires)."""
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(private_key)}")
    private = _clamp(private_key)
    return Keypair(private_key=private, public_key=crypto_scalarmult_base(private))


def generate_keypair(random_bytes: RandomSource = os.urandom) -> Keypair:
    """Generate a fresh X25519 keypair from the given randomness source."""
    return keypair_from_private(random_bytes(PRIVATE_KEY_SIZE))


def dh(private_key: bytes, public_key: bytes) -> bytes:
    """X25519 Diffie-Hellman.

    Raises:
        HandshakeFailed: If the peer key is malformed or of low order.
    """
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise HandshakeFailed(f"DH public key must be {PUBLIC_KEY_SIZE} bytes")
    try:
        shared = crypto_scalarmult(private_key, public_key)
    except CryptoError as e:
        raise HandshakeFailed("DH produced an invalid shared secret") from e
    if not any(shared):
        raise HandshakeFailed("DH produced an all-zero shared secret")
    return shared


# =============================================================================
# Hashing and key derivation (Noise BLAKE2b)
# =============================================================================


def hash_bytes(data: bytes) -> bytes:
    """BLAKE2b-512."""
    return hashlib.blake2b(data, digest_size=HASH_SIZE).digest()


def hmac_hash(key: bytes, data: bytes) -> bytes:
    """HMAC-BLAKE2b (128-byte block, 64-byte output)."""
    return hmac.new(key, data, hashlib.blake2b).digest()


def hkdf(chaining_key: bytes, input_key_material: bytes, num_outputs: int) -> tuple[bytes, ...]:
    """Noise HKDF: two or three HASH_SIZE outputs chained off one HMAC key.

    Args:
        chaining_key: Current chaining key (HMAC key for extraction)
        input_key_material: Zero-length, 32 bytes or DHLEN bytes
        num_outputs: 2 or 3

    Returns:
        Tuple of num_outputs derived values
    """
    if num_outputs not in (2, 3):
        raise ValueError(f"HKDF produces 2 or 3 outputs, not {num_outputs}")

    temp_key = hmac_hash(chaining_key, input_key_material)
    output1 = hmac_hash(temp_key, b"\x01")
    output2 = hmac_hash(temp_key, output1 + b"\x02")
    if num_outputs == 2:
        return output1, output2
    output3 = hmac_hash(temp_key, output2 + b"\x03")
    return output1, output2, output3


# =============================================================================
# ChaCha20-Poly1305 (Noise ChaChaPoly nonce layout)
# =============================================================================


def _nonce_bytes(nonce: int) -> bytes:
    # 32 bits of zeros followed by the little-endian 64-bit counter
    return b"\x00\x00\x00\x00" + struct.pack("<Q", nonce)


def aead_encrypt(key: bytes | bytearray, nonce: int, ad: bytes, plaintext: bytes) -> bytes:
    """Seal plaintext; returns ciphertext with the 16-byte tag appended."""
    return ChaCha20Poly1305(bytes(key)).encrypt(_nonce_bytes(nonce), plaintext, ad)


def aead_decrypt(key: bytes | bytearray, nonce: int, ad: bytes, ciphertext: bytes) -> bytes:
    """Open a sealed message.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails
    """
    return ChaCha20Poly1305(bytes(key)).decrypt(_nonce_bytes(nonce), ciphertext, ad)


# =============================================================================
# ML-KEM-1024
# =============================================================================


class KEM:
    """ML-KEM-1024 bound to a caller-supplied randomness source.

    Each instance carries its own copy of the parameter set, so pointing it
    at a session's randomness source leaves the module-level instance alone.
    """

    public_key_size = KEM_PUBLIC_KEY_SIZE
    ciphertext_size = KEM_CIPHERTEXT_SIZE

    def __init__(self, random_bytes: RandomSource = os.urandom) -> None:
        self._kem = copy.copy(ML_KEM_1024)
        self._kem.random_bytes = random_bytes

    def generate_keypair(self) -> tuple[bytes, bytes]:
        """Return (public_key, private_key)."""
        return self._kem.keygen()

    def encapsulate(self, public_key: bytes) -> tuple[bytes, bytes]:
        """Return (shared_secret, ciphertext) for the peer's public key.

        Raises:
            HandshakeFailed: If the public key does not decode.
        """
        if len(public_key) != KEM_PUBLIC_KEY_SIZE:
            raise HandshakeFailed(f"KEM public key must be {KEM_PUBLIC_KEY_SIZE} bytes")
        try:
            return self._kem.encaps(public_key)
        except ValueError as e:
            raise HandshakeFailed("KEM encapsulation rejected the peer key") from e

    def decapsulate(self, private_key: bytes, ciphertext: bytes) -> bytes:
        """Recover the shared secret.

        ML-KEM rejects implicitly: a tampered ciphertext yields an unrelated
        secret, which the next AEAD check in the handshake then catches.
        """
        if len(ciphertext) != KEM_CIPHERTEXT_SIZE:
            raise HandshakeFailed(f"KEM ciphertext must be {KEM_CIPHERTEXT_SIZE} bytes")
        try:
            return self._kem.decaps(private_key, ciphertext)
        except ValueError as e:
            raise HandshakeFailed("KEM decapsulation failed") from e


# =============================================================================
# Secret hygiene
# =============================================================================


def wipe(buffer: bytearray | None) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if buffer:
        buffer[:] = bytes(len(buffer))


# =============================================================================
# Deterministic material (tests and vectors only)
# =============================================================================


def deterministic_bytes(seed: str, length: int) -> bytes:
    """Generate deterministic bytes from seed.

    Uses BLAKE2b with a counter to generate arbitrary-length output.

    Args:
        seed: Seed string
        length: Number of bytes to generate

    Returns:
        Deterministic bytes
    """
    result = b""
    counter = 0
    while len(result) < length:
        result += blake2b(f"{seed}:{counter}".encode(), digest_size=32, encoder=RawEncoder)
        counter += 1
    return result[:length]


def deterministic_keypair(seed: str) -> Keypair:
    """X25519 keypair derived from a seed string. Not for production keys."""
    return keypair_from_private(blake2b(seed.encode(), digest_size=32, encoder=RawEncoder))


def deterministic_random(seed: str) -> RandomSource:
    """Randomness source that replays a seeded stream, for reproducible handshakes."""
    position = 0

    def random_bytes(length: int) -> bytes:
        nonlocal position
        chunk = deterministic_bytes(f"{seed}@{position}", length)
        position += 1
        return chunk

    return random_bytes
