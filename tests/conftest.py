"""
Pytest configuration and fixtures for mixlink tests.

This module provides:
- Structured logging setup for test output
- Deterministic keypair fixtures for reproducible handshakes
- Session configuration fixtures for the standard client/server identities
- A fixture that hands back an established blocking session pair

Test modules import helpers from ``lib`` (tests/ is on the pytest path).
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
import structlog
from hypothesis import settings

from lib.network import (
    SessionPair,
    TestKeyPairs,
    client_config,
    get_test_keypairs,
    handshake_pair,
    server_config,
)
from mixlink.config import SessionConfig

# Configure structlog for tests
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
)
log = structlog.get_logger()

# Every handshake runs ML-KEM-1024 in pure Python, so per-example deadlines
# are meaningless here.
settings.register_profile("mixlink", deadline=None)
settings.register_profile("ci", deadline=None, max_examples=10)
settings.load_profile(os.environ.get("MIXLINK_HYPOTHESIS_PROFILE", "mixlink"))


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: tests that run many full handshakes")
    config.addinivalue_line("markers", "adversarial: tampering and replay tests")
    config.addinivalue_line("markers", "network: tests that open loopback sockets")
    config.addinivalue_line("markers", "interop: tests against an independent Noise implementation")


# =============================================================================
# Session-scoped fixtures (shared across all tests)
# =============================================================================


@pytest.fixture(scope="session")
def test_keypairs() -> TestKeyPairs:
    """Deterministic keypairs for reproducible tests.

    These are well-known test keys that should NEVER be used in production.
    """
    return get_test_keypairs()


# =============================================================================
# Function-scoped fixtures
# =============================================================================


@pytest.fixture
def initiator_config(test_keypairs: TestKeyPairs) -> SessionConfig:
    return client_config(test_keypairs)


@pytest.fixture
def responder_config(test_keypairs: TestKeyPairs) -> SessionConfig:
    return server_config(test_keypairs)


@pytest.fixture
def session_pair(
    initiator_config: SessionConfig, responder_config: SessionConfig
) -> Iterator[SessionPair]:
    """An established blocking session pair over a socketpair.

    Both sessions and sockets are closed after the test.
    """
    pair = handshake_pair(initiator_config, responder_config)
    if not pair.established:
        pair.close()
        pytest.fail(
            f"Handshake failed: initiator={pair.initiator_error!r} "
            f"responder={pair.responder_error!r}"
        )
    yield pair
    pair.close()
