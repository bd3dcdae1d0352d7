"""
Noise symmetric state objects: CipherState and SymmetricState.

These follow the Noise Protocol Framework (rev 34) processing rules with the
ChaChaPoly cipher and BLAKE2b hash. Keys live in bytearrays so they can be
overwritten when a session ends.
"""

from __future__ import annotations

from mixlink.constants import HASH_SIZE, KEY_SIZE, MAC_SIZE, MAX_NONCE
from mixlink.crypto import (
    InvalidTag,
    aead_decrypt,
    aead_encrypt,
    hash_bytes,
    hkdf,
    wipe,
)
from mixlink.errors import DecryptError, NonceExhausted

_ZERO_KEY = bytes(KEY_SIZE)


class CipherState:
    """An AEAD key and its strictly increasing 64-bit nonce counter."""

    def __init__(self, key: bytes | None = None, nonce: int = 0) -> None:
        self._key: bytearray | None = None
        self.n = nonce
        if key is not None:
            self.initialize_key(key)

    def initialize_key(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Cipher key must be {KEY_SIZE} bytes, got {len(key)}")
        wipe(self._key)
        self._key = bytearray(key)
        self.n = 0

    def has_key(self) -> bool:
        return self._key is not None

    def _next_nonce(self) -> int:
        if self.n >= MAX_NONCE:
            raise NonceExhausted(f"nonce counter reached {self.n}")
        return self.n

    def encrypt_with_ad(self, ad: bytes, plaintext: bytes) -> bytes:
        """Seal under the current nonce, then advance it.

        With no key set this is the identity, as Noise requires for the first
        handshake message.

        Raises:
            NonceExhausted: If every usable nonce has been consumed
        """
        if self._key is None:
            return plaintext
        nonce = self._next_nonce()
        ciphertext = aead_encrypt(self._key, nonce, ad, plaintext)
        self.n = nonce + 1
        return ciphertext

    def decrypt_with_ad(self, ad: bytes, ciphertext: bytes) -> bytes:
        """Open under the current nonce; the nonce only advances on success.

        Raises:
            DecryptError: If authentication fails
            NonceExhausted: If every usable nonce has been consumed
        """
        if self._key is None:
            return ciphertext
        nonce = self._next_nonce()
        if len(ciphertext) < MAC_SIZE:
            raise DecryptError("ciphertext shorter than the authentication tag")
        try:
            plaintext = aead_decrypt(self._key, nonce, ad, ciphertext)
        except InvalidTag as e:
            raise DecryptError("authentication tag mismatch") from e
        self.n = nonce + 1
        return plaintext

    def rekey(self) -> None:
        """Replace the key with ENCRYPT(k, maxnonce, zerolen, zeros)[:32].

        The nonce counter is left alone.
        """
        if self._key is None:
            return
        new_key = aead_encrypt(self._key, MAX_NONCE, b"", _ZERO_KEY)[:KEY_SIZE]
        wipe(self._key)
        self._key[:] = new_key

    def wipe(self) -> None:
        wipe(self._key)
        self._key = None

    def __repr__(self) -> str:
        return f"CipherState(has_key={self.has_key()}, n={self.n})"


class SymmetricState:
    """Chaining key, transcript hash and the handshake cipher state."""

    def __init__(self, protocol_name: bytes) -> None:
        if len(protocol_name) <= HASH_SIZE:
            h = protocol_name.ljust(HASH_SIZE, b"\x00")
        else:
            h = hash_bytes(protocol_name)
        self.h = bytearray(h)
        self.ck = bytearray(h)
        self.cipher = CipherState()

    def mix_key(self, input_key_material: bytes) -> None:
        ck, temp_k = hkdf(bytes(self.ck), input_key_material, 2)
        self.ck[:] = ck
        self.cipher.initialize_key(temp_k[:KEY_SIZE])

    def mix_hash(self, data: bytes) -> None:
        self.h[:] = hash_bytes(bytes(self.h) + data)

    def encrypt_and_hash(self, plaintext: bytes) -> bytes:
        ciphertext = self.cipher.encrypt_with_ad(bytes(self.h), plaintext)
        self.mix_hash(ciphertext)
        return ciphertext

    def decrypt_and_hash(self, ciphertext: bytes) -> bytes:
        plaintext = self.cipher.decrypt_with_ad(bytes(self.h), ciphertext)
        self.mix_hash(ciphertext)
        return plaintext

    def handshake_hash(self) -> bytes:
        return bytes(self.h)

    def split(self) -> tuple[CipherState, CipherState]:
        """Derive the two transport cipher states and drop the transcript."""
        temp_k1, temp_k2 = hkdf(bytes(self.ck), b"", 2)
        first = CipherState(temp_k1[:KEY_SIZE])
        second = CipherState(temp_k2[:KEY_SIZE])
        self.wipe()
        return first, second

    def wipe(self) -> None:
        wipe(self.ck)
        wipe(self.h)
        self.cipher.wipe()
