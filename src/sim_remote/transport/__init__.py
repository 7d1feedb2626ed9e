"""Transport layer.

- Transport: per-peer message channel interface
- RouterSocket: the server's bound ZeroMQ ROUTER socket
- PeerChannel: one peer's channel over the shared ROUTER socket
"""

from .base import Transport
from .zmq_router import PeerChannel, RouterSocket

__all__ = [
    "Transport",
    "PeerChannel",
    "RouterSocket",
]
