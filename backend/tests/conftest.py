import socket

import pytest

from icyrelay.config.settings import RelaySettings


@pytest.fixture
def settings() -> RelaySettings:
    """Settings with short timeouts so stall tests finish quickly."""
    return RelaySettings(
        user_agents=("TestAgent/1.0",),
        idle_timeout_ms=200,
        connect_timeout_ms=1000,
        probe_timeout_ms=300,
    )


@pytest.fixture
def unused_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
