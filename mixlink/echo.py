"""
mixlink echo server and client.

The server answers every handshake as responder and writes each received
command straight back. It also exposes /health, /status and /ready over HTTP
so orchestration can tell when it is accepting sessions.

Configuration comes from the environment:

    MIXLINK_BIND_ADDR           server listen address (host:port)
    MIXLINK_SERVER_ADDR         client target (host:port)
    MIXLINK_HEALTH_PORT         HTTP port for health checks, 0 disables
    MIXLINK_PRIVATE_KEY         base64 X25519 private key (random if unset)
    MIXLINK_SERVER_PUBLIC_KEY   base64 key the client expects from the server
    MIXLINK_CLIENT_PUBLIC_KEYS  comma-separated base64 keys the server accepts
    MIXLINK_LOG_LEVEL           log level name
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
import signal
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field

import structlog
from aiohttp import web

from mixlink.aio import AsyncSession
from mixlink.auth import ClientAuthenticator, PeerCredentials, ProviderAuthenticator
from mixlink.config import Role, SessionConfig
from mixlink.constants import PRIVATE_KEY_SIZE, PUBLIC_KEY_SIZE
from mixlink.crypto import Keypair, generate_keypair, keypair_from_private
from mixlink.errors import ConfigError, MixLinkError
from mixlink.log import configure_logging

log = structlog.get_logger()

DEFAULT_ADDR = "127.0.0.1:29483"
SERVER_ASSOCIATED_DATA = b"mixlink-echo"


# =============================================================================
# Settings
# =============================================================================


def _decode_key(name: str, value: str, size: int) -> bytes:
    try:
        key = base64.b64decode(value.strip(), validate=True)
    except binascii.Error as e:
        raise ConfigError(f"{name} is not valid base64") from e
    if len(key) != size:
        raise ConfigError(f"{name} must decode to {size} bytes, got {len(key)}")
    return key


def split_addr(addr: str) -> tuple[str, int]:
    """Split "host:port" into its parts."""
    host, sep, port_str = addr.rpartition(":")
    if not sep or not port_str.isdigit():
        raise ConfigError(f"Address must be host:port, got {addr!r}")
    return host or "0.0.0.0", int(port_str)


@dataclass
class EchoSettings:
    """Echo tool settings, normally read from MIXLINK_* variables."""

    bind_addr: str = DEFAULT_ADDR
    server_addr: str = DEFAULT_ADDR
    health_port: int = 8080
    private_key: bytes | None = field(default=None, repr=False)
    server_public_key: bytes | None = None
    client_public_keys: tuple[bytes, ...] = ()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EchoSettings:
        env = os.environ if environ is None else environ

        private_key = None
        if env.get("MIXLINK_PRIVATE_KEY"):
            private_key = _decode_key(
                "MIXLINK_PRIVATE_KEY", env["MIXLINK_PRIVATE_KEY"], PRIVATE_KEY_SIZE
            )

        server_public_key = None
        if env.get("MIXLINK_SERVER_PUBLIC_KEY"):
            server_public_key = _decode_key(
                "MIXLINK_SERVER_PUBLIC_KEY", env["MIXLINK_SERVER_PUBLIC_KEY"], PUBLIC_KEY_SIZE
            )

        client_keys = tuple(
            _decode_key("MIXLINK_CLIENT_PUBLIC_KEYS", item, PUBLIC_KEY_SIZE)
            for item in env.get("MIXLINK_CLIENT_PUBLIC_KEYS", "").split(",")
            if item.strip()
        )

        health_port = env.get("MIXLINK_HEALTH_PORT", "8080")
        if not health_port.isdigit():
            raise ConfigError(f"MIXLINK_HEALTH_PORT must be a port number, got {health_port!r}")

        return cls(
            bind_addr=env.get("MIXLINK_BIND_ADDR", DEFAULT_ADDR),
            server_addr=env.get("MIXLINK_SERVER_ADDR", DEFAULT_ADDR),
            health_port=int(health_port),
            private_key=private_key,
            server_public_key=server_public_key,
            client_public_keys=client_keys,
        )

    def keypair(self) -> Keypair:
        if self.private_key is None:
            return generate_keypair()
        return keypair_from_private(self.private_key)


# =============================================================================
# Server
# =============================================================================


def _accept_any(credentials: PeerCredentials) -> bool:
    return True


class EchoServer:
    """Responder that echoes every command back to its peer."""

    def __init__(self, settings: EchoSettings, keypair: Keypair | None = None) -> None:
        self.settings = settings
        self.keypair = keypair or settings.keypair()
        self.running = False
        self.server: asyncio.Server | None = None
        self.sessions_established = 0
        self.sessions_failed = 0
        self.commands_echoed = 0

    def session_config(self) -> SessionConfig:
        """Fresh configuration per connection (provider authenticators hold per-peer state)."""
        if self.settings.client_public_keys:
            authenticator = ProviderAuthenticator(client_keys=self.settings.client_public_keys)
        else:
            authenticator = _accept_any
        return SessionConfig(
            role=Role.RESPONDER,
            local_static_key=self.keypair,
            authenticator=authenticator,
            local_associated_data=SERVER_ASSOCIATED_DATA,
        )

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        async with AsyncSession(self.session_config(), reader, writer) as session:
            try:
                await session.initialize()
            except MixLinkError as e:
                self.sessions_failed += 1
                log.warning("handshake_rejected", peer=str(peer), error=type(e).__name__)
                return

            self.sessions_established += 1
            log.info("session_accepted", peer=str(peer))
            try:
                while (command := await session.recv_command()) is not None:
                    await session.send_command(command)
                    self.commands_echoed += 1
                    log.debug("command_echoed", peer=str(peer), size=len(command))
            except (MixLinkError, OSError) as e:
                log.warning("session_aborted", peer=str(peer), error=type(e).__name__)

    async def start(self) -> int:
        """Start listening; returns the bound port."""
        host, port = split_addr(self.settings.bind_addr)
        self.server = await asyncio.start_server(self.handle_connection, host, port)
        self.running = True
        bound_port = self.server.sockets[0].getsockname()[1]
        log.info(
            "echo_server_started",
            bind=f"{host}:{bound_port}",
            public_key=base64.b64encode(self.keypair.public_key).decode(),
        )
        return bound_port

    async def stop(self) -> None:
        self.running = False
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    # -------------------------------------------------------------------------
    # Health endpoints
    # -------------------------------------------------------------------------

    def health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/status", self.status_handler)
        app.router.add_get("/ready", self.ready_handler)
        return app

    async def health_handler(self, _request: web.Request) -> web.Response:
        return web.Response(text="OK", status=200)

    async def status_handler(self, _request: web.Request) -> web.Response:
        status = {
            "running": self.running,
            "sessions_established": self.sessions_established,
            "sessions_failed": self.sessions_failed,
            "commands_echoed": self.commands_echoed,
            "public_key": base64.b64encode(self.keypair.public_key).decode(),
        }
        return web.Response(text=json.dumps(status), status=200, content_type="application/json")

    async def ready_handler(self, _request: web.Request) -> web.Response:
        if self.running and self.server is not None:
            return web.Response(text="READY", status=200)
        return web.Response(text="NOT READY", status=503)

    async def start_health_server(self) -> web.AppRunner:
        runner = web.AppRunner(self.health_app())
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.settings.health_port)
        await site.start()
        log.info("health_server_started", port=self.settings.health_port)
        return runner

    async def run(self) -> None:
        """Serve until SIGINT or SIGTERM."""
        health_runner = None
        if self.settings.health_port:
            health_runner = await self.start_health_server()
        await self.start()

        stop_event = asyncio.Event()

        def signal_handler() -> None:
            log.info("shutdown_signal_received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        log.info("shutting_down")
        await self.stop()
        if health_runner is not None:
            await health_runner.cleanup()
        log.info("shutdown_complete")


# =============================================================================
# Client
# =============================================================================


class EchoClient:
    """Dials the echo server and sends one command per connection."""

    def __init__(self, settings: EchoSettings, keypair: Keypair | None = None) -> None:
        if settings.server_public_key is None:
            raise ConfigError("MIXLINK_SERVER_PUBLIC_KEY is required to authenticate the server")
        self.settings = settings
        self.keypair = keypair or settings.keypair()
        self.commands_sent = 0
        self.replies_received = 0

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            role=Role.INITIATOR,
            local_static_key=self.keypair,
            authenticator=ClientAuthenticator(self.settings.server_public_key),
        )

    async def echo(self, message: bytes) -> bytes | None:
        """Handshake, send message and return the echo (None if the server hung up)."""
        host, port = split_addr(self.settings.server_addr)
        reader, writer = await asyncio.open_connection(host, port)
        async with AsyncSession(self.session_config(), reader, writer) as session:
            await session.initialize()
            log.info("connected", server=self.settings.server_addr, clock_skew=session.clock_skew)
            await session.send_command(message)
            self.commands_sent += 1
            reply = await session.recv_command()
            if reply is not None:
                self.replies_received += 1
            return reply


# =============================================================================
# Entry points
# =============================================================================


def main_server() -> None:
    configure_logging()
    server = EchoServer(EchoSettings.from_env())
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        sys.exit(0)


def main_client() -> None:
    configure_logging()
    message = " ".join(sys.argv[1:]).encode() or b"hello"
    try:
        reply = asyncio.run(EchoClient(EchoSettings.from_env()).echo(message))
    except KeyboardInterrupt:
        sys.exit(0)
    except (MixLinkError, OSError) as e:
        log.error("echo_failed", error=type(e).__name__, reason=str(e))
        sys.exit(1)
    print(reply.decode(errors="replace") if reply is not None else "<connection closed>")


if __name__ == "__main__":
    main_server()
