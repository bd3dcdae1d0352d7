"""
Transport frame codec.

Frame layout:
- Length (4 bytes, BE32): size of the sealed body, authenticated as AD
- Sealed body: ChaCha20-Poly1305(plaintext) || tag (16 bytes)

Nonces come from the direction's CipherState, so frames must be sealed and
opened in stream order. The length field is validated against the configured
maximum before anything proportional to it is read or allocated.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from typing import Protocol

from mixlink.constants import (
    DEFAULT_MAX_FRAME_LENGTH,
    FRAME_LENGTH_SIZE,
    MAC_SIZE,
    MIN_FRAME_LENGTH,
)
from mixlink.errors import DecryptError, FramingError
from mixlink.noise import CipherState


class Stream(Protocol):
    """The blocking byte stream a Session runs over (socket.socket fits)."""

    def sendall(self, data: bytes, /) -> None: ...

    def recv(self, size: int, /) -> bytes: ...


def read_exactly(stream: Stream, size: int) -> bytes:
    """Read size bytes, waiting through short reads.

    Returns fewer than size bytes only if the stream ends first.
    """
    buffer = bytearray()
    while len(buffer) < size:
        chunk = stream.recv(size - len(buffer))
        if not chunk:
            break
        buffer += chunk
    return bytes(buffer)


# =============================================================================
# Encoding
# =============================================================================


def encode_frame(
    plaintext: bytes,
    cipher: CipherState,
    max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH,
    *,
    rekey: bool = False,
) -> bytes:
    """Seal plaintext into one contiguous frame.

    Args:
        plaintext: Opaque command payload
        cipher: Send-direction cipher state (its nonce advances by one)
        max_frame_length: Largest sealed body allowed
        rekey: Ratchet the cipher key after sealing

    Returns:
        Length field followed by the sealed body

    Raises:
        FramingError: If the sealed body would exceed max_frame_length
        NonceExhausted: If the send direction has no nonces left
    """
    sealed_length = len(plaintext) + MAC_SIZE
    if sealed_length > max_frame_length:
        raise FramingError(f"Payload too large: sealed size {sealed_length} > {max_frame_length}")
    if not cipher.has_key():
        raise FramingError("Send cipher state has no key")

    header = struct.pack(">I", sealed_length)
    body = cipher.encrypt_with_ad(header, plaintext)
    if rekey:
        cipher.rekey()
    return header + body


# =============================================================================
# Decoding
# =============================================================================


def parse_length(header: bytes, max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH) -> int:
    """Validate a frame length field.

    Raises:
        FramingError: If the field is short or the length is out of bounds
    """
    if len(header) != FRAME_LENGTH_SIZE:
        raise FramingError(f"Length field must be {FRAME_LENGTH_SIZE} bytes, got {len(header)}")
    (length,) = struct.unpack(">I", header)
    if length < MIN_FRAME_LENGTH:
        raise FramingError(f"Frame length {length} shorter than the tag")
    if length > max_frame_length:
        raise FramingError(f"Frame length {length} exceeds maximum {max_frame_length}")
    return length


def open_frame(header: bytes, body: bytes, cipher: CipherState, *, rekey: bool = False) -> bytes:
    """Authenticate and decrypt a frame body.

    Raises:
        DecryptError: If authentication fails (no plaintext is returned)
    """
    if not cipher.has_key():
        raise DecryptError("Receive cipher state has no key")
    plaintext = cipher.decrypt_with_ad(header, body)
    if rekey:
        cipher.rekey()
    return plaintext


def read_frame(
    stream: Stream,
    cipher: CipherState,
    max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH,
    *,
    rekey: bool = False,
) -> bytes | None:
    """Read and open one frame from a blocking stream.

    Returns:
        The plaintext, or None if the stream ended cleanly between frames

    Raises:
        FramingError: Bad length field, or the stream ended inside a frame
        DecryptError: If authentication fails
    """
    header = read_exactly(stream, FRAME_LENGTH_SIZE)
    if not header:
        return None
    if len(header) < FRAME_LENGTH_SIZE:
        raise FramingError(f"Stream ended inside a length field ({len(header)} bytes)")

    length = parse_length(header, max_frame_length)
    body = read_exactly(stream, length)
    if len(body) < length:
        raise FramingError(f"Frame truncated: have {len(body)} of {length} bytes")

    return open_frame(header, body, cipher, rekey=rekey)


class FrameDecoder:
    """Incremental decoder for callers that receive bytes in arbitrary chunks.

    ``next_frame()`` returns None while a frame is incomplete; that is a
    suspension point, not an error. Feed more bytes and call it again.
    """

    def __init__(
        self,
        cipher: CipherState,
        max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH,
        *,
        rekey: bool = False,
    ) -> None:
        self.cipher = cipher
        self.max_frame_length = max_frame_length
        self.rekey = rekey
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed as frames."""
        return len(self._buffer)

    @property
    def at_boundary(self) -> bool:
        return not self._buffer

    def feed(self, data: bytes) -> None:
        self._buffer += data

    def next_frame(self) -> bytes | None:
        if len(self._buffer) < FRAME_LENGTH_SIZE:
            return None
        header = bytes(self._buffer[:FRAME_LENGTH_SIZE])
        length = parse_length(header, self.max_frame_length)

        end = FRAME_LENGTH_SIZE + length
        if len(self._buffer) < end:
            return None
        body = bytes(self._buffer[FRAME_LENGTH_SIZE:end])
        del self._buffer[:end]
        return open_frame(header, body, self.cipher, rekey=self.rekey)

    def frames(self) -> Iterator[bytes]:
        """Yield every complete frame currently buffered."""
        while (frame := self.next_frame()) is not None:
            yield frame

    def clear(self) -> None:
        self._buffer.clear()
