"""
Handshake engine for the hybrid Noise XXhfs pattern.

    -> (prologue), e, e1
    <- e, ee, ekem1, s, es, (auth)
    -> s, se, (auth)

The initiator sends its ephemeral X25519 key and an ephemeral ML-KEM-1024
public key. The responder mixes in the ephemeral DH, encapsulates to the KEM
key and mixes the shared secret, then reveals its static key. The initiator
reveals its static key last. The token order above is part of the protocol
identity: a peer that mixes in a different order derives different keys.

The engine is strictly sequential. Each step may run once, in order, from the
right role; any failure poisons the engine so no later step can run.
"""

from __future__ import annotations

import contextlib
import hmac
import os
import struct
from collections.abc import Iterator
from dataclasses import dataclass

import structlog

from mixlink.config import Role
from mixlink.constants import (
    AUTH_MESSAGE_SIZE,
    CLASSIC_PROLOGUE,
    CLASSIC_PROTOCOL_NAME,
    KEM_CIPHERTEXT_SIZE,
    KEM_PUBLIC_KEY_SIZE,
    MAC_SIZE,
    MAX_ADDITIONAL_DATA_SIZE,
    NOISE_PROTOCOL_NAME,
    PROLOGUE,
    PUBLIC_KEY_SIZE,
)
from mixlink.crypto import KEM, Keypair, RandomSource, dh, generate_keypair, wipe
from mixlink.errors import DecryptError, HandshakeFailed
from mixlink.noise import CipherState, SymmetricState

log = structlog.get_logger()


# =============================================================================
# Patterns
# =============================================================================


@dataclass(frozen=True)
class HandshakePattern:
    """Protocol name, prologue byte and whether the KEM tokens are present."""

    protocol_name: bytes
    prologue: bytes
    hybrid: bool

    def message_size(self, number: int, payload_size: int = 0) -> int:
        """Wire size of handshake message 1, 2 or 3 for a given payload size."""
        if number == 1:
            kem = KEM_PUBLIC_KEY_SIZE if self.hybrid else 0
            return len(self.prologue) + PUBLIC_KEY_SIZE + kem + payload_size
        if number == 2:
            kem = KEM_CIPHERTEXT_SIZE + MAC_SIZE if self.hybrid else 0
            return PUBLIC_KEY_SIZE + kem + PUBLIC_KEY_SIZE + MAC_SIZE + payload_size + MAC_SIZE
        if number == 3:
            return PUBLIC_KEY_SIZE + MAC_SIZE + payload_size + MAC_SIZE
        raise ValueError(f"XX has three messages, not {number}")


HYBRID_XX = HandshakePattern(NOISE_PROTOCOL_NAME, PROLOGUE, hybrid=True)
# Previous revision, kept for interoperability checks against plain Noise XX.
CLASSIC_XX = HandshakePattern(CLASSIC_PROTOCOL_NAME, CLASSIC_PROLOGUE, hybrid=False)


# =============================================================================
# Authentication payload
# =============================================================================


@dataclass(frozen=True)
class AuthenticateMessage:
    """Encrypted payload of messages 2 and 3.

    Layout:
    - AD length (1 byte)
    - AD, zero padded (255 bytes)
    - Unix time in seconds (8 bytes, BE64)
    """

    additional_data: bytes
    unix_time: int = 0

    def to_bytes(self) -> bytes:
        if len(self.additional_data) > MAX_ADDITIONAL_DATA_SIZE:
            raise ValueError(
                f"Associated data too large: {len(self.additional_data)} > {MAX_ADDITIONAL_DATA_SIZE}"
            )
        return (
            bytes([len(self.additional_data)])
            + self.additional_data.ljust(MAX_ADDITIONAL_DATA_SIZE, b"\x00")
            + struct.pack(">Q", self.unix_time)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> AuthenticateMessage:
        if len(data) != AUTH_MESSAGE_SIZE:
            raise HandshakeFailed(f"Auth payload must be {AUTH_MESSAGE_SIZE} bytes, got {len(data)}")
        ad_len = data[0]
        unix_time = struct.unpack_from(">Q", data, 1 + MAX_ADDITIONAL_DATA_SIZE)[0]
        return cls(additional_data=bytes(data[1 : 1 + ad_len]), unix_time=unix_time)


# =============================================================================
# Engine
# =============================================================================


class _MessageReader:
    def __init__(self, message: bytes) -> None:
        self._data = memoryview(bytes(message))
        self._offset = 0

    def take(self, size: int) -> bytes:
        if len(self._data) - self._offset < size:
            raise HandshakeFailed(
                f"Handshake message truncated: need {size} more bytes, "
                f"have {len(self._data) - self._offset}"
            )
        chunk = bytes(self._data[self._offset : self._offset + size])
        self._offset += size
        return chunk

    def rest(self) -> bytes:
        chunk = bytes(self._data[self._offset :])
        self._offset = len(self._data)
        return chunk


class HandshakeEngine:
    """Drives one run of the XXhfs handshake for one side.

    Example:
        initiator = HandshakeEngine(Role.INITIATOR, client_keys)
        responder = HandshakeEngine(Role.RESPONDER, server_keys)
        responder.read_message_1(initiator.write_message_1())
        initiator.read_message_2(responder.write_message_2(auth))
        responder.read_message_3(initiator.write_message_3(auth))
        send, recv = initiator.split()
    """

    def __init__(
        self,
        role: Role,
        local_static: Keypair,
        random_bytes: RandomSource = os.urandom,
        pattern: HandshakePattern = HYBRID_XX,
    ) -> None:
        self.role = role
        self.pattern = pattern
        self._s = local_static
        self._random_bytes = random_bytes
        self._kem = KEM(random_bytes) if pattern.hybrid else None
        self._symmetric: SymmetricState | None = SymmetricState(pattern.protocol_name)
        self._symmetric.mix_hash(pattern.prologue)

        self._e_private: bytearray | None = None
        self._e1_private: bytearray | None = None
        self._re: bytes | None = None
        self._re1: bytes | None = None
        self._rs: bytes | None = None

        self._completed = 0
        self._failed = False
        self.handshake_hash: bytes | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def remote_static(self) -> bytes | None:
        """Peer static key, once the message carrying it has been read."""
        return self._rs

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def finished(self) -> bool:
        """True once all three messages have been processed."""
        return self._completed >= 3 and not self._failed

    # -------------------------------------------------------------------------
    # Step bookkeeping
    # -------------------------------------------------------------------------

    @contextlib.contextmanager
    def _step(self, number: int, writer: Role, writing: bool) -> Iterator[SymmetricState]:
        if self._failed:
            raise HandshakeFailed("Handshake already failed")
        acting = writer if writing else writer.peer
        verb = "write" if writing else "read"
        if self.role is not acting or self._completed != number - 1 or self._symmetric is None:
            self._fail()
            raise HandshakeFailed(f"{self.role.value} cannot {verb} message {number} now")
        try:
            yield self._symmetric
        except DecryptError as e:
            self._fail()
            raise HandshakeFailed(f"Message {number} failed authentication") from e
        except BaseException:
            self._fail()
            raise
        self._completed = number
        log.debug("handshake_step", role=self.role.value, message=number, action=verb)

    def _fail(self) -> None:
        self._failed = True
        self.wipe()

    def _sealed(self, symmetric: SymmetricState, size: int) -> int:
        return size + MAC_SIZE if symmetric.cipher.has_key() else size

    def _new_ephemeral(self) -> bytes:
        ephemeral = generate_keypair(self._random_bytes)
        self._e_private = bytearray(ephemeral.private_key)
        return ephemeral.public_key

    # -------------------------------------------------------------------------
    # -> (prologue), e, e1
    # -------------------------------------------------------------------------

    def write_message_1(self, payload: bytes = b"") -> bytes:
        with self._step(1, Role.INITIATOR, writing=True) as ss:
            out = bytearray(self.pattern.prologue)

            e_public = self._new_ephemeral()
            out += e_public
            ss.mix_hash(e_public)

            if self._kem is not None:
                e1_public, e1_private = self._kem.generate_keypair()
                self._e1_private = bytearray(e1_private)
                out += ss.encrypt_and_hash(e1_public)

            out += ss.encrypt_and_hash(payload)
            return bytes(out)

    def read_message_1(self, message: bytes) -> bytes:
        with self._step(1, Role.INITIATOR, writing=False) as ss:
            reader = _MessageReader(message)

            prologue = reader.take(len(self.pattern.prologue))
            if not hmac.compare_digest(prologue, self.pattern.prologue):
                raise HandshakeFailed("Prologue mismatch")

            self._re = reader.take(PUBLIC_KEY_SIZE)
            ss.mix_hash(self._re)

            if self._kem is not None:
                self._re1 = ss.decrypt_and_hash(reader.take(self._sealed(ss, KEM_PUBLIC_KEY_SIZE)))

            return ss.decrypt_and_hash(reader.rest())

    # -------------------------------------------------------------------------
    # <- e, ee, ekem1, s, es, (auth)
    # -------------------------------------------------------------------------

    def write_message_2(self, payload: bytes = b"") -> bytes:
        with self._step(2, Role.RESPONDER, writing=True) as ss:
            out = bytearray()

            e_public = self._new_ephemeral()
            out += e_public
            ss.mix_hash(e_public)

            ss.mix_key(dh(bytes(self._e_private), self._re))  # ee

            if self._kem is not None:
                shared, ciphertext = self._kem.encapsulate(self._re1)
                out += ss.encrypt_and_hash(ciphertext)
                ss.mix_key(shared)  # ekem1

            out += ss.encrypt_and_hash(self._s.public_key)
            ss.mix_key(dh(self._s.private_key, self._re))  # es

            out += ss.encrypt_and_hash(payload)
            return bytes(out)

    def read_message_2(self, message: bytes) -> bytes:
        with self._step(2, Role.RESPONDER, writing=False) as ss:
            reader = _MessageReader(message)

            self._re = reader.take(PUBLIC_KEY_SIZE)
            ss.mix_hash(self._re)

            ss.mix_key(dh(bytes(self._e_private), self._re))  # ee

            if self._kem is not None:
                ciphertext = ss.decrypt_and_hash(reader.take(self._sealed(ss, KEM_CIPHERTEXT_SIZE)))
                ss.mix_key(self._kem.decapsulate(bytes(self._e1_private), ciphertext))  # ekem1
                wipe(self._e1_private)
                self._e1_private = None

            self._rs = ss.decrypt_and_hash(reader.take(self._sealed(ss, PUBLIC_KEY_SIZE)))
            ss.mix_key(dh(bytes(self._e_private), self._rs))  # es

            return ss.decrypt_and_hash(reader.rest())

    # -------------------------------------------------------------------------
    # -> s, se, (auth)
    # -------------------------------------------------------------------------

    def write_message_3(self, payload: bytes = b"") -> bytes:
        with self._step(3, Role.INITIATOR, writing=True) as ss:
            out = bytearray()

            out += ss.encrypt_and_hash(self._s.public_key)
            ss.mix_key(dh(self._s.private_key, self._re))  # se

            out += ss.encrypt_and_hash(payload)
            return bytes(out)

    def read_message_3(self, message: bytes) -> bytes:
        with self._step(3, Role.INITIATOR, writing=False) as ss:
            reader = _MessageReader(message)

            self._rs = ss.decrypt_and_hash(reader.take(self._sealed(ss, PUBLIC_KEY_SIZE)))
            ss.mix_key(dh(bytes(self._e_private), self._rs))  # se

            return ss.decrypt_and_hash(reader.rest())

    # -------------------------------------------------------------------------
    # Split
    # -------------------------------------------------------------------------

    def split(self) -> tuple[CipherState, CipherState]:
        """Return (send, recv) cipher states and discard the transcript.

        The initiator sends with the first derived key and receives with the
        second; the responder does the opposite.
        """
        if self._failed or self._completed != 3 or self._symmetric is None:
            self._fail()
            raise HandshakeFailed("Cannot split before all three messages are processed")

        self.handshake_hash = self._symmetric.handshake_hash()
        first, second = self._symmetric.split()
        self._symmetric = None
        self._drop_ephemerals()
        self._completed = 4

        if self.role is Role.INITIATOR:
            return first, second
        return second, first

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def _drop_ephemerals(self) -> None:
        wipe(self._e_private)
        wipe(self._e1_private)
        self._e_private = None
        self._e1_private = None
        self._re1 = None

    def wipe(self) -> None:
        """Drop every secret the engine still holds."""
        self._drop_ephemerals()
        if self._symmetric is not None:
            self._symmetric.wipe()
            self._symmetric = None
