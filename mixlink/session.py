"""
mixlink session state machine.

    UNINITIALIZED -> HANDSHAKING -> ESTABLISHED -> CLOSED
                          |              |
                          +--> FAILED <--+

A session is bound to one connected byte stream and used for one handshake.
ESTABLISHED is the only state in which commands move. CLOSED and FAILED are
terminal: key material is wiped on the way in, and reconnecting means a new
Session and a new handshake.

The handshake orchestration is written once, as a generator that yields I/O
requests, and driven by the blocking Session here and by AsyncSession in
``mixlink.aio``.
"""

from __future__ import annotations

import contextlib
import enum
import socket
import threading
from collections.abc import Generator
from dataclasses import dataclass
from types import TracebackType

import structlog

from mixlink.auth import PeerCredentials, ProviderAuthenticator
from mixlink.codec import Stream, encode_frame, read_exactly, read_frame
from mixlink.config import Role, SessionConfig
from mixlink.constants import AUTH_MESSAGE_SIZE
from mixlink.errors import (
    HandshakeFailed,
    MixLinkError,
    SessionStateError,
    Unauthorized,
)
from mixlink.handshake import HYBRID_XX, AuthenticateMessage, HandshakeEngine
from mixlink.noise import CipherState

log = structlog.get_logger()


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class _Send:
    data: bytes


@dataclass(frozen=True)
class _Recv:
    size: int


HandshakeFlow = Generator["_Send | _Recv", "bytes | None", None]


class SessionCore:
    """State, secrets and handshake logic shared by the blocking and asyncio sessions."""

    def __init__(self, config: SessionConfig) -> None:
        self.config = config
        self._state = SessionState.UNINITIALIZED
        self._engine: HandshakeEngine | None = HandshakeEngine(
            config.role,
            config.local_static_key,
            config.random_bytes,
            HYBRID_XX,
        )
        self._send_cipher: CipherState | None = None
        self._recv_cipher: CipherState | None = None
        self._peer_credentials: PeerCredentials | None = None
        self._pending_credentials: PeerCredentials | None = None
        self.handshake_hash: bytes | None = None
        self.clock_skew = 0
        self.error: BaseException | None = None
        self._log = log.bind(role=config.role.value)

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def role(self) -> Role:
        return self.config.role

    @property
    def peer_credentials(self) -> PeerCredentials | None:
        """Identity the peer proved during the handshake (set once, on establishment)."""
        return self._peer_credentials

    @property
    def is_established(self) -> bool:
        return self._state is SessionState.ESTABLISHED

    def is_peer_client(self) -> bool:
        """Whether a provider's peer authenticated as a client rather than a mix."""
        self._require("is_peer_client", SessionState.ESTABLISHED)
        authenticator = self.config.authenticator
        return isinstance(authenticator, ProviderAuthenticator) and authenticator.from_client

    # -------------------------------------------------------------------------
    # State bookkeeping
    # -------------------------------------------------------------------------

    def _require(self, operation: str, *states: SessionState) -> None:
        if self._state not in states:
            raise SessionStateError(operation, self._state.value)

    def _begin_handshake(self) -> None:
        self._require("initialize", SessionState.UNINITIALIZED)
        self._state = SessionState.HANDSHAKING
        self._log.debug("handshake_started")

    def _mark_failed(self, error: BaseException) -> bool:
        """Record a fatal error. Returns False if the session was already terminal."""
        if self._terminal:
            return False
        self.error = error
        self._state = SessionState.FAILED
        self._log.warning("session_failed", error=type(error).__name__, reason=str(error))
        return True

    def _mark_closed(self) -> bool:
        if self._terminal:
            return False
        self._state = SessionState.CLOSED
        self._log.info("session_closed")
        return True

    @property
    def _terminal(self) -> bool:
        return self._state in (SessionState.CLOSED, SessionState.FAILED)

    def _wipe_handshake(self) -> None:
        if self._engine is not None:
            self._engine.wipe()
            self._engine = None
        self._pending_credentials = None

    def _wipe_secrets(self) -> None:
        self._wipe_handshake()
        if self._send_cipher is not None:
            self._send_cipher.wipe()
            self._send_cipher = None
        if self._recv_cipher is not None:
            self._recv_cipher.wipe()
            self._recv_cipher = None

    # -------------------------------------------------------------------------
    # Handshake orchestration
    # -------------------------------------------------------------------------

    def _local_auth_payload(self) -> bytes:
        # Initiators send a zero timestamp so they never leak their clock.
        unix_time = 0 if self.role is Role.INITIATOR else max(int(self.config.clock()), 0)
        return AuthenticateMessage(self.config.local_associated_data, unix_time).to_bytes()

    def _authenticate_peer(self, payload: bytes) -> None:
        auth = AuthenticateMessage.from_bytes(payload)
        credentials = PeerCredentials(
            additional_data=auth.additional_data,
            public_key=self._engine.remote_static,
        )
        if self.role is Role.INITIATOR:
            self.clock_skew = int(self.config.clock()) - auth.unix_time

        if not self.config.authenticator.is_peer_valid(credentials):
            raise Unauthorized(f"Peer key {credentials.public_key[:4].hex()}... rejected")
        self._pending_credentials = credentials
        self._log.debug("peer_authenticated", peer_key=credentials.public_key[:4].hex())

    def _handshake_flow(self) -> HandshakeFlow:
        """Role-ordered handshake; yields the I/O it needs and receives read results."""
        engine = self._engine
        pattern = engine.pattern

        if self.role is Role.INITIATOR:
            yield _Send(engine.write_message_1())

            message = yield _Recv(pattern.message_size(2, AUTH_MESSAGE_SIZE))
            self._authenticate_peer(engine.read_message_2(message))

            yield _Send(engine.write_message_3(self._local_auth_payload()))
        else:
            message = yield _Recv(pattern.message_size(1))
            engine.read_message_1(message)

            yield _Send(engine.write_message_2(self._local_auth_payload()))

            message = yield _Recv(pattern.message_size(3, AUTH_MESSAGE_SIZE))
            self._authenticate_peer(engine.read_message_3(message))

        self._establish()

    def _establish(self) -> None:
        engine = self._engine
        self._send_cipher, self._recv_cipher = engine.split()
        self.handshake_hash = engine.handshake_hash
        self._engine = None
        self._peer_credentials = self._pending_credentials
        self._pending_credentials = None
        self._state = SessionState.ESTABLISHED
        self._log.info(
            "session_established",
            peer_key=self._peer_credentials.public_key[:4].hex(),
            clock_skew=self.clock_skew,
        )


class Session(SessionCore):
    """A blocking mixlink session over a socket-like stream.

    Example:
        with Session(config, sock) as session:
            session.initialize()
            session.send_command(b"PING")
            reply = session.recv_command()
    """

    def __init__(self, config: SessionConfig, stream: Stream) -> None:
        super().__init__(config)
        self._stream = stream
        self._send_lock = threading.RLock()
        self._recv_lock = threading.RLock()

    def initialize(self) -> None:
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
                    self._stream.sendall(request.data)
                    reply = None
                else:
                    reply = read_exactly(self._stream, request.size)
                    if len(reply) < request.size:
                        raise HandshakeFailed(
                            f"Stream ended during handshake: {len(reply)} of {request.size} bytes"
                        )
        except OSError as e:
            error = HandshakeFailed(f"Stream error during handshake: {e}")
            self._fail(error)
            raise error from e
        except BaseException as e:
            self._fail(e)
            raise

    def send_command(self, payload: bytes) -> None:
        """Seal and write one command.

        Raises:
            SessionStateError: If the session is not established
            FramingError: If the payload exceeds the maximum frame length
            NonceExhausted: If the send direction ran out of nonces
            OSError: If the stream write failed
        """
        error: BaseException | None = None
        with self._send_lock:
            self._require("send_command", SessionState.ESTABLISHED)
            try:
                frame = encode_frame(
                    payload,
                    self._send_cipher,
                    self.config.max_frame_length,
                    rekey=self.config.rekey_per_frame,
                )
                self._stream.sendall(frame)
            except (MixLinkError, OSError) as e:
                error = e
        self._after_io(self._send_lock, "_send_cipher")
        if error is not None:
            self._fail(error)
            raise error

    def recv_command(self) -> bytes | None:
        """Read and open one command.

        Returns:
            The payload, or None if the peer closed the stream between frames
            (the session is then closed)

        Raises:
            SessionStateError: If the session is not established
            DecryptError: If the frame failed authentication
            FramingError: Bad length field or truncated frame
            NonceExhausted: If the receive direction ran out of nonces
        """
        error: BaseException | None = None
        payload: bytes | None = None
        with self._recv_lock:
            self._require("recv_command", SessionState.ESTABLISHED)
            try:
                payload = read_frame(
                    self._stream,
                    self._recv_cipher,
                    self.config.max_frame_length,
                    rekey=self.config.rekey_per_frame,
                )
            except (MixLinkError, OSError) as e:
                error = e
        self._after_io(self._recv_lock, "_recv_cipher")
        if error is not None:
            self._fail(error)
            raise error
        if payload is None:
            self._log.info("peer_closed")
            self.close()
        return payload

    def close(self) -> None:
        """Wipe key material and shut the stream down. Safe to call repeatedly."""
        if self._mark_closed():
            self._teardown()

    def _fail(self, error: BaseException) -> None:
        if self._mark_failed(error):
            self._teardown()

    def _teardown(self) -> None:
        # Shutting the stream down first unblocks a reader waiting in recv().
        shutdown = getattr(self._stream, "shutdown", None)
        if shutdown is not None:
            with contextlib.suppress(OSError):
                shutdown(socket.SHUT_RDWR)
        self._wipe_handshake()
        self._wipe_direction(self._send_lock, "_send_cipher")
        self._wipe_direction(self._recv_lock, "_recv_cipher")

    def _wipe_direction(self, lock: threading.RLock, attribute: str) -> None:
        # Never waits: a thread still inside send/recv holds the lock and wipes
        # its own direction once it lets go of it.
        if not lock.acquire(blocking=False):
            return
        try:
            cipher = getattr(self, attribute)
            if cipher is not None:
                cipher.wipe()
                setattr(self, attribute, None)
        finally:
            lock.release()

    def _after_io(self, lock: threading.RLock, attribute: str) -> None:
        if self._terminal:
            self._wipe_direction(lock, attribute)

    def __enter__(self) -> Session:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
