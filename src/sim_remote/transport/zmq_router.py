"""ZeroMQ transport.

The server binds one ROUTER socket; clients connect with REQ sockets.
ROUTER prefixes every incoming message with the sender's identity, which
lets one socket serve several peers while each peer still gets its own
PeerChannel (and so its own session and engine).

Wire shape of a REQ message seen by ROUTER:
    [identity, b"", payload]
Replies go back with the same envelope:
    [identity, b"", reply]
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import zmq
import zmq.asyncio

from ..errors import BindFailed, ConnectionClosed, ReceiveTimeout
from .base import Transport

logger = logging.getLogger(__name__)

SendFn = Callable[[list[bytes]], Awaitable[None]]


class RouterSocket:
    """The server's bound ROUTER socket.

    Usage:
        router = RouterSocket("tcp://127.0.0.1:5555")
        router.bind()
        envelope, payload = await router.recv()
        await router.send([*envelope, reply])
        router.close()
    """

    def __init__(self, endpoint: str, context: zmq.asyncio.Context | None = None) -> None:
        self._requested_endpoint = endpoint
        self._owns_context = context is None
        self._context = context or zmq.asyncio.Context()
        self._socket: zmq.asyncio.Socket | None = None
        self._endpoint: str | None = None

    @property
    def endpoint(self) -> str:
        """The bound endpoint (ephemeral ports resolved)."""
        return self._endpoint or self._requested_endpoint

    @property
    def is_bound(self) -> bool:
        return self._socket is not None

    def bind(self) -> str:
        """Bind the socket.

        Raises:
            BindFailed: If the address is invalid or already in use
        """
        socket = self._context.socket(zmq.ROUTER)
        socket.setsockopt(zmq.LINGER, 0)
        # Raise instead of silently dropping replies to peers that went away
        socket.setsockopt(zmq.ROUTER_MANDATORY, 1)
        try:
            socket.bind(self._requested_endpoint)
        except zmq.ZMQError as e:
            socket.close(linger=0)
            raise BindFailed(f"Cannot bind {self._requested_endpoint}: {e}") from e

        self._socket = socket
        self._endpoint = socket.getsockopt(zmq.LAST_ENDPOINT).decode()
        logger.info(f"Listening on {self._endpoint}")
        return self._endpoint

    async def recv(self) -> tuple[list[bytes], bytes]:
        """Receive one message as (envelope, payload)."""
        socket = self._require_socket()
        try:
            frames = await socket.recv_multipart()
        except zmq.ZMQError as e:
            raise ConnectionClosed(f"Router socket failed: {e}") from e
        return frames[:-1], frames[-1]

    async def send(self, frames: list[bytes]) -> None:
        socket = self._require_socket()
        try:
            await socket.send_multipart(frames)
        except zmq.ZMQError as e:
            raise ConnectionClosed(f"Cannot reach peer: {e}") from e

    def close(self) -> None:
        """Close the socket (and the context if we created it). Idempotent."""
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
        if self._owns_context and not self._context.closed:
            self._context.term()

    def _require_socket(self) -> zmq.asyncio.Socket:
        if self._socket is None:
            raise ConnectionClosed("Router socket is not bound")
        return self._socket


class PeerChannel(Transport):
    """One peer's slice of the shared ROUTER socket.

    The server's receive loop hands this channel every message from its
    peer via `deliver()`; the session reads them with `receive()`.
    Replies reuse the envelope of the latest request.
    """

    def __init__(
        self,
        peer_id: bytes,
        send_fn: SendFn,
        receive_timeout: float | None = None,
    ) -> None:
        self.peer_id = peer_id
        self._send_fn = send_fn
        self._receive_timeout = receive_timeout
        self._inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._envelope: list[bytes] = [peer_id, b""]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def peer_name(self) -> str:
        return self.peer_id.hex()

    def deliver(self, envelope: list[bytes], payload: bytes) -> bool:
        """Queue a message from the peer. Returns False if the channel is closed."""
        if self._closed:
            return False
        self._envelope = envelope
        self._inbox.put_nowait(payload)
        return True

    async def receive(self) -> bytes:
        if self._closed:
            raise ConnectionClosed(f"Channel to {self.peer_name} is closed")

        if self._receive_timeout is None:
            item = await self._inbox.get()
        else:
            try:
                item = await asyncio.wait_for(self._inbox.get(), self._receive_timeout)
            except TimeoutError:
                raise ReceiveTimeout(self._receive_timeout) from None

        if item is None:
            raise ConnectionClosed(f"Channel to {self.peer_name} was closed")
        return item

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionClosed(f"Channel to {self.peer_name} is closed")
        await self._send_fn([*self._envelope, data])

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a receive() that is already waiting
        self._inbox.put_nowait(None)
