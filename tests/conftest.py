"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import socket
from collections.abc import Iterator

import pytest

from forge_login.config import Config, LogLevel
from forge_login.logging_config import reset_logging


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def login_config() -> Config:
    """Create a configuration with client IDs for every provider."""
    return Config(
        log_level=LogLevel.DEBUG,
        preferred_ports=[],
        github_client_id="abc",
        gitlab_client_id="gitlab-client",
        gitlab_url="https://gitlab.example.com",
        azure_client_id="azure-client",
        azure_tenant="contoso",
        bitbucket_client_id="bitbucket-client",
        bitbucket_client_secret="bitbucket-secret",
    )


@pytest.fixture
def occupied_port() -> Iterator[int]:
    """Hold a listening socket on an ephemeral loopback port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


@pytest.fixture
def free_port() -> int:
    """Return a loopback port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Undo logging setup done by CLI invocations."""
    yield
    reset_logging()
