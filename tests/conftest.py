"""
Shared test fixtures for tmuxlink tests.

This module provides common fixtures used across all test types:
- Connection pools backed by fake SSH connections
- A fake tmux executor for streaming tests
- Streaming settings tuned for fast, quiet tests
- Temporary config and ssh config files
"""

import pytest

from tests.fakes import FakeConnection, FakeExecutor
from tmuxlink.ssh.connection import SSHHostConfig
from tmuxlink.ssh.connection_pool import ConnectionPool
from tmuxlink.streaming.settings import StreamingSettings

# ============================================================================
# SSH FIXTURES
# ============================================================================


@pytest.fixture
def fake_connections():
    """Connections created by the fake_pool fixture, keyed by host id."""
    return {}


@pytest.fixture
def fake_pool(fake_connections):
    """ConnectionPool whose factory builds FakeConnection objects."""

    def factory(host_id: str, config: SSHHostConfig) -> FakeConnection:
        conn = FakeConnection(config, host_id=host_id)
        fake_connections[host_id] = conn
        return conn

    pool = ConnectionPool(connection_factory=factory)
    yield pool
    pool.shutdown()


@pytest.fixture
def build_host():
    return SSHHostConfig(host="10.0.0.5", user="dev")


# ============================================================================
# STREAMING FIXTURES
# ============================================================================


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def quiet_settings():
    """Streaming settings with the status poller effectively disabled."""
    return StreamingSettings(status_interval=30.0)


# ============================================================================
# FILE FIXTURES
# ============================================================================


@pytest.fixture
def config_file(tmp_path):
    """Path of a (not yet existing) tmuxlink config file."""
    return tmp_path / "tmuxlink" / "config.toml"


@pytest.fixture
def ssh_config_file(tmp_path):
    """A small ~/.ssh/config with one aliased host."""
    path = tmp_path / "ssh_config"
    path.write_text(
        "Host devbox\n"
        "    HostName 10.1.1.1\n"
        "    User alice\n"
        "    Port 2222\n"
        "    IdentityFile ~/.ssh/dev_key\n"
        "    ProxyJump bastion.example.com\n"
    )
    return path


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep the user's TMUXLINK_* environment out of every test."""
    monkeypatch.delenv("TMUXLINK_CONFIG", raising=False)
    monkeypatch.delenv("TMUXLINK_PTY_STREAMING", raising=False)
