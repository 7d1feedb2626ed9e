"""sim-remote SDK - Client for driving a remote engine server."""

from .client import ClientState, EngineClient

__all__ = [
    "ClientState",
    "EngineClient",
]
