"""Pytest configuration and shared fixtures."""

import pytest

from fakes import FakeEngine, QueueTransport
from sim_remote.config import ServerConfig
from sim_remote.protocol.version import PROTOCOL_VERSION


@pytest.fixture
def version():
    """The current protocol version."""
    return PROTOCOL_VERSION


@pytest.fixture
def engine():
    """A clean engine that reports no faults."""
    return FakeEngine()


@pytest.fixture
def transport():
    """An in-memory transport."""
    return QueueTransport()


@pytest.fixture
def server_config():
    """Server config bound to an ephemeral local port."""
    return ServerConfig(address="127.0.0.1", port=0)
