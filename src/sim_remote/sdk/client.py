"""SDK client for driving a remote engine server.

Usage:
    async with EngineClient(ClientConfig(port=5555)) as client:
        response = await client.run("[Clock].StartDate = 2001-01-01")
        if not response.ok:
            print(response.report.describe())

The client uses a ZeroMQ REQ socket, so it is strictly one request, one
reply: `run()` returns only after the server has answered.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import zmq
import zmq.asyncio

from ..config import ClientConfig
from ..errors import ConnectionClosed, ConnectionRefused, ReceiveTimeout
from ..protocol.codec import (
    FrameKind,
    encode_bye,
    encode_command,
    encode_hello,
    expect_kind,
    raise_rejection,
    response_from_frame,
    unpack_frame,
)
from ..protocol.commands import Command
from ..protocol.responses import Failure, Success
from ..protocol.version import PROTOCOL_VERSION, ProtocolVersion

logger = logging.getLogger(__name__)

# How long close() waits for the server to acknowledge BYE
BYE_TIMEOUT = 1.0


class ClientState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CLOSED = "closed"


class EngineClient:
    """Client side of an engine session."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        version: ProtocolVersion = PROTOCOL_VERSION,
        context: zmq.asyncio.Context | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.local_version = version
        self._owns_context = context is None
        self._context = context or zmq.asyncio.Context()
        self._socket: zmq.asyncio.Socket | None = None
        self.state = ClientState.DISCONNECTED
        self.session_id: str | None = None
        self.version: ProtocolVersion | None = None

    @property
    def is_connected(self) -> bool:
        return self.state == ClientState.CONNECTED

    async def connect(self) -> str:
        """Open the socket and perform the version handshake.

        Returns:
            The session ID assigned by the server

        Raises:
            ConnectionRefused: If the server does not answer in time
            UnsupportedVersion: If the server speaks another major version
            SessionRejected: If the server refuses the session
        """
        if self.state != ClientState.DISCONNECTED:
            raise RuntimeError(f"Cannot connect a client in state {self.state.value}")

        socket = self._context.socket(zmq.REQ)
        socket.setsockopt(zmq.LINGER, 0)
        socket.connect(self.config.endpoint)
        self._socket = socket

        try:
            await socket.send(encode_hello(self.local_version, self.config.client_name))
            try:
                reply = await self._recv(self.config.connect_timeout)
            except ReceiveTimeout:
                timeout = self.config.connect_timeout
                raise ConnectionRefused(
                    f"No answer from {self.config.endpoint} within {timeout:g}s"
                ) from None

            frame = unpack_frame(reply, self.local_version)
            if frame.kind == FrameKind.REJECT:
                raise_rejection(frame)
            expect_kind(frame, FrameKind.WELCOME)
        except BaseException:
            self._teardown()
            raise

        self.session_id = str(frame.body.get("session_id", ""))
        self.version = frame.version
        self.state = ClientState.CONNECTED
        logger.info(
            f"Connected to {self.config.endpoint} (session {self.session_id}, v{frame.version})"
        )
        return self.session_id

    async def run(self, *overrides: str) -> Success | Failure:
        """Send one command built from `overrides` and wait for its response."""
        return await self.send(Command.create(*overrides))

    async def send(self, command: Command) -> Success | Failure:
        """Send a command and wait for its response.

        Raises:
            ConnectionClosed: If the client is not connected
            ReceiveTimeout: If `receive_timeout` expires (the client is closed)
            SessionRejected: If the server ended the session instead of answering
        """
        socket = self._require_socket()
        version = self.version or self.local_version
        try:
            await socket.send(encode_command(command, version))
            reply = await self._recv(self.config.receive_timeout)
            frame = unpack_frame(reply, version)
            response = response_from_frame(frame)
        except BaseException:
            # REQ sockets cannot recover from a lost reply; nor can the session
            # survive a rejection
            self._teardown()
            raise

        if response.command_id not in (None, command.id):
            logger.warning(
                f"Response for {response.command_id} does not match command {command.id}"
            )
        return response

    async def close(self) -> None:
        """Say goodbye to the server and release the socket. Idempotent."""
        if self.state == ClientState.CLOSED:
            return
        if self.state == ClientState.CONNECTED and self._socket is not None:
            try:
                await self._socket.send(encode_bye(self.version or self.local_version))
                await self._recv(BYE_TIMEOUT)
            except (ReceiveTimeout, ConnectionClosed, zmq.ZMQError) as e:
                logger.debug(f"Server did not acknowledge goodbye: {e}")
        self._teardown()

    async def __aenter__(self) -> EngineClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _recv(self, timeout: float | None) -> bytes:
        socket = self._require_socket()
        try:
            if timeout is None:
                return await socket.recv()
            return await asyncio.wait_for(socket.recv(), timeout)
        except TimeoutError:
            raise ReceiveTimeout(timeout or 0) from None
        except zmq.ZMQError as e:
            raise ConnectionClosed(f"Client socket failed: {e}") from e

    def _require_socket(self) -> zmq.asyncio.Socket:
        if self._socket is None or self.state == ClientState.CLOSED:
            raise ConnectionClosed("Client is not connected")
        return self._socket

    def _teardown(self) -> None:
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
        if self._owns_context and not self._context.closed:
            self._context.term()
        self.state = ClientState.CLOSED
