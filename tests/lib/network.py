"""
Loopback utilities for mixlink protocol tests.

This module provides:
- Session configuration helpers for the standard test identities
- A runner that handshakes two blocking Sessions over a socketpair
- In-memory stream pairs that only offer sendall/recv
- An asyncio runner for AsyncSession pairs over a loopback TCP listener
"""

from __future__ import annotations

import asyncio
import queue
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from mixlink.aio import AsyncSession
from mixlink.auth import ClientAuthenticator, ServerAuthenticator
from mixlink.config import Role, SessionConfig
from mixlink.crypto import Keypair, deterministic_keypair
from mixlink.session import Session

log = structlog.get_logger()

SOCKET_TIMEOUT = 30.0

CLIENT_SEED = "mixlink-test-client-static"
SERVER_SEED = "mixlink-test-server-static"


@dataclass(frozen=True)
class TestKeyPairs:
    """Well-known test identities. Never use these outside tests."""

    __test__ = False

    client: Keypair
    server: Keypair


def get_test_keypairs() -> TestKeyPairs:
    return TestKeyPairs(
        client=deterministic_keypair(CLIENT_SEED),
        server=deterministic_keypair(SERVER_SEED),
    )


def client_config(keys: TestKeyPairs, **overrides: Any) -> SessionConfig:
    """Initiator that only accepts the test server key."""
    options: dict[str, Any] = {
        "role": Role.INITIATOR,
        "local_static_key": keys.client,
        "authenticator": ClientAuthenticator(keys.server.public_key),
        "local_associated_data": b"test-client",
    }
    options.update(overrides)
    return SessionConfig(**options)


def server_config(keys: TestKeyPairs, **overrides: Any) -> SessionConfig:
    """Responder that only accepts the test client key."""
    options: dict[str, Any] = {
        "role": Role.RESPONDER,
        "local_static_key": keys.server,
        "authenticator": ServerAuthenticator([keys.client.public_key]),
        "local_associated_data": b"test-server",
    }
    options.update(overrides)
    return SessionConfig(**options)


# =============================================================================
# Blocking pairs
# =============================================================================


@dataclass
class SessionPair:
    """Both ends of a handshake and whatever each side raised."""

    initiator: Session
    responder: Session
    initiator_error: BaseException | None = None
    responder_error: BaseException | None = None
    initiator_socket: socket.socket | None = None
    responder_socket: socket.socket | None = None

    @property
    def established(self) -> bool:
        return self.initiator.is_established and self.responder.is_established

    def close(self) -> None:
        self.initiator.close()
        self.responder.close()
        for sock in (self.initiator_socket, self.responder_socket):
            if sock is not None:
                sock.close()


StreamWrapper = Callable[[socket.socket], Any]


def handshake_pair(
    initiator_config: SessionConfig,
    responder_config: SessionConfig,
    wrap_initiator: StreamWrapper | None = None,
    wrap_responder: StreamWrapper | None = None,
) -> SessionPair:
    """Run both handshakes concurrently and collect the outcome.

    Errors are captured, not raised, so tests can assert on each side.
    """
    initiator_sock, responder_sock = socket.socketpair()
    initiator_sock.settimeout(SOCKET_TIMEOUT)
    responder_sock.settimeout(SOCKET_TIMEOUT)

    initiator_stream = wrap_initiator(initiator_sock) if wrap_initiator else initiator_sock
    responder_stream = wrap_responder(responder_sock) if wrap_responder else responder_sock

    pair = SessionPair(
        initiator=Session(initiator_config, initiator_stream),
        responder=Session(responder_config, responder_stream),
        initiator_socket=initiator_sock,
        responder_socket=responder_sock,
    )
    return _run_handshakes(pair)


def handshake_streams(
    initiator_config: SessionConfig,
    responder_config: SessionConfig,
    initiator_stream: Any,
    responder_stream: Any,
) -> SessionPair:
    """Like handshake_pair, over streams the caller already connected."""
    pair = SessionPair(
        initiator=Session(initiator_config, initiator_stream),
        responder=Session(responder_config, responder_stream),
    )
    return _run_handshakes(pair)


def _run_handshakes(pair: SessionPair) -> SessionPair:
    def run_responder() -> None:
        try:
            pair.responder.initialize()
        except Exception as e:
            pair.responder_error = e

    thread = threading.Thread(target=run_responder, daemon=True)
    thread.start()
    try:
        pair.initiator.initialize()
    except Exception as e:
        pair.initiator_error = e
    thread.join(SOCKET_TIMEOUT * 2)
    if thread.is_alive():
        raise RuntimeError("Responder handshake did not finish")

    log.debug(
        "handshake_pair_done",
        initiator=pair.initiator.state.value,
        responder=pair.responder.state.value,
    )
    return pair


# =============================================================================
# In-memory streams
# =============================================================================


class QueueStream:
    """One end of an in-memory byte pipe with only sendall() and recv().

    There is no shutdown(), so nothing but new bytes or close_write() on the
    other end ever wakes a blocked recv().
    """

    def __init__(self, incoming: queue.Queue[bytes], outgoing: queue.Queue[bytes]) -> None:
        self._incoming = incoming
        self._outgoing = outgoing
        self._buffer = bytearray()
        self._eof = False
        self.waiting = threading.Event()

    def sendall(self, data: bytes) -> None:
        if data:
            self._outgoing.put(bytes(data))

    def recv(self, size: int) -> bytes:
        if not self._buffer and not self._eof:
            self.waiting.set()
            chunk = self._incoming.get()
            self.waiting.clear()
            if chunk:
                self._buffer += chunk
            else:
                self._eof = True
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def close_write(self) -> None:
        """Signal EOF to the other end."""
        self._outgoing.put(b"")


def queue_stream_pair() -> tuple[QueueStream, QueueStream]:
    forward: queue.Queue[bytes] = queue.Queue()
    backward: queue.Queue[bytes] = queue.Queue()
    return QueueStream(backward, forward), QueueStream(forward, backward)


# =============================================================================
# Asyncio pairs
# =============================================================================


async def async_handshake_pair(
    initiator_config: SessionConfig,
    responder_config: SessionConfig,
) -> tuple[AsyncSession, AsyncSession, asyncio.Server]:
    """Connect two AsyncSessions over loopback TCP and handshake both."""
    accepted: asyncio.Future[AsyncSession] = asyncio.get_running_loop().create_future()

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = AsyncSession(responder_config, reader, writer)
        try:
            await session.initialize()
        except Exception as e:
            accepted.set_exception(e)
        else:
            accepted.set_result(session)

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    initiator = AsyncSession(initiator_config, reader, writer)
    await initiator.initialize()
    responder = await asyncio.wait_for(accepted, SOCKET_TIMEOUT)
    return initiator, responder, server
