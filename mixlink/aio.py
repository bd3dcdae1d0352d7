"""
asyncio flavour of the mixlink session.

Same state machine and handshake as ``mixlink.session.Session``; I/O goes
through an ``asyncio.StreamReader``/``StreamWriter`` pair and suspends only at
stream reads and writes. Cancelling a task that is inside ``initialize``,
``send_command`` or ``recv_command`` fails the session.
"""

from __future__ import annotations

import asyncio
import contextlib
from types import TracebackType

from mixlink.codec import FrameDecoder, encode_frame
from mixlink.config import SessionConfig
from mixlink.errors import FramingError, HandshakeFailed, MixLinkError
from mixlink.session import SessionCore, SessionState, _Send

READ_CHUNK_SIZE = 65536


class AsyncSession(SessionCore):
    """A mixlink session over asyncio streams.

    Example:
        reader, writer = await asyncio.open_connection(host, port)
        async with AsyncSession(config, reader, writer) as session:
            await session.initialize()
            await session.send_command(b"PING")
            reply = await session.recv_command()
    """

    def __init__(
        self,
        config: SessionConfig,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        super().__init__(config)
        self._reader = reader
        self._writer = writer
        self._send_lock = asyncio.Lock()
        self._recv_lock = asyncio.Lock()
        self._decoder: FrameDecoder | None = None

    async def initialize(self) -> None:
        """Run the handshake to completion.

        Raises:
            SessionStateError: If the session was already initialized
            HandshakeFailed: On any protocol, crypto or stream failure
            Unauthorized: If the authenticator rejected the peer
        """
        self._begin_handshake()
        flow = self._handshake_flow()
        reply: bytes | None = None
        try:
            while True:
                try:
                    request = flow.send(reply)
                except StopIteration:
                    break
                if isinstance(request, _Send):
                    self._writer.write(request.data)
                    await self._writer.drain()
                    reply = None
                else:
                    reply = await self._reader.readexactly(request.size)
        except asyncio.IncompleteReadError as e:
            error = HandshakeFailed(
                f"Stream ended during handshake: {len(e.partial)} of {e.expected} bytes"
            )
            await self._fail(error)
            raise error from e
        except OSError as e:
            error = HandshakeFailed(f"Stream error during handshake: {e}")
            await self._fail(error)
            raise error from e
        except BaseException as e:
            await self._fail(e)
            raise

        self._decoder = FrameDecoder(
            self._recv_cipher,
            self.config.max_frame_length,
            rekey=self.config.rekey_per_frame,
        )

    async def send_command(self, payload: bytes) -> None:
        """Seal and write one command (see Session.send_command)."""
        error: BaseException | None = None
        async with self._send_lock:
            self._require("send_command", SessionState.ESTABLISHED)
            try:
                frame = encode_frame(
                    payload,
                    self._send_cipher,
                    self.config.max_frame_length,
                    rekey=self.config.rekey_per_frame,
                )
                self._writer.write(frame)
                await self._writer.drain()
            except (MixLinkError, OSError, asyncio.CancelledError) as e:
                error = e
        if error is not None:
            await self._fail(error)
            raise error

    async def recv_command(self) -> bytes | None:
        """Read and open one command; None when the peer closed between frames."""
        error: BaseException | None = None
        payload: bytes | None = None
        async with self._recv_lock:
            self._require("recv_command", SessionState.ESTABLISHED)
            try:
                payload = await self._read_frame()
            except (MixLinkError, OSError, asyncio.CancelledError) as e:
                error = e
        if error is not None:
            await self._fail(error)
            raise error
        if payload is None:
            self._log.info("peer_closed")
            await self.close()
        return payload

    async def _read_frame(self) -> bytes | None:
        decoder = self._decoder
        while True:
            frame = decoder.next_frame()
            if frame is not None:
                return frame
            chunk = await self._reader.read(READ_CHUNK_SIZE)
            if not chunk:
                if decoder.at_boundary:
                    return None
                raise FramingError(f"Stream ended inside a frame ({decoder.pending} bytes buffered)")
            decoder.feed(chunk)

    async def close(self) -> None:
        """Wipe key material and close the writer. Safe to call repeatedly."""
        if self._mark_closed():
            await self._teardown()

    async def _fail(self, error: BaseException) -> None:
        if self._mark_failed(error):
            await self._teardown()

    async def _teardown(self) -> None:
        self._wipe_secrets()
        if self._decoder is not None:
            self._decoder.clear()
            self._decoder = None
        self._writer.close()
        with contextlib.suppress(OSError):
            await self._writer.wait_closed()

    async def __aenter__(self) -> AsyncSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
