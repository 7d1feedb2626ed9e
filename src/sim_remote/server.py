"""Engine server.

Owns the ROUTER socket and routes each peer's messages to that peer's
session. New peers are admitted according to the isolation policy:

- reject:  while one session is active, newcomers get REJECT(session_busy)
- isolate: every peer gets its own session and its own engine instance

Either way a newcomer never touches an engine another session holds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TextIO

from .config import IsolationPolicy, ServerConfig
from .engine import EngineFactory
from .errors import BindFailed, ConnectionClosed, RejectCode
from .protocol.codec import encode_reject
from .protocol.version import PROTOCOL_VERSION
from .session import Session, SessionManager
from .transport.zmq_router import PeerChannel, RouterSocket

logger = logging.getLogger(__name__)


class EngineServer:
    """Serves engine sessions over ZeroMQ.

    Usage:
        async with EngineServer(config, engine_factory) as server:
            await server.serve_forever()

    `start()` binds the socket (raises BindFailed); `stop()` shuts every
    session down and waits for in-flight engine work to return.
    """

    def __init__(
        self,
        config: ServerConfig,
        engine_factory: EngineFactory,
        diagnostic_sink: TextIO | None = None,
    ) -> None:
        self.config = config
        self.sessions = SessionManager(config, engine_factory, diagnostic_sink)
        self._router = RouterSocket(config.endpoint)
        self._channels: dict[bytes, PeerChannel] = {}
        self._tasks: dict[bytes, asyncio.Task[None]] = {}
        self._receive_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def endpoint(self) -> str:
        return self._router.endpoint

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> str:
        """Bind the server socket and start routing. Returns the bound endpoint."""
        if self._running:
            return self.endpoint
        try:
            endpoint = self._router.bind()
        except BindFailed:
            self._router.close()
            raise
        self._running = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        return endpoint

    async def serve_forever(self) -> None:
        """Run until stop() is called or the socket fails."""
        await self.start()
        receive_task = self._receive_task
        if receive_task is None:
            return
        try:
            await receive_task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop accepting messages and tear every session down."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping engine server")

        self.sessions.shutdown_all()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        self._router.close()
        logger.info("Engine server stopped")

    async def __aenter__(self) -> EngineServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # =========================================================================
    # Routing
    # =========================================================================

    async def _receive_loop(self) -> None:
        while self._running:
            try:
                envelope, payload = await self._router.recv()
            except ConnectionClosed as e:
                logger.error(f"Server socket failed: {e}")
                break
            if not envelope:
                logger.warning("Dropping message without a routing envelope")
                continue
            await self._route(envelope, payload)

    async def _route(self, envelope: list[bytes], payload: bytes) -> None:
        peer_id = envelope[0]
        channel = self._channels.get(peer_id)
        if channel is not None and channel.deliver(envelope, payload):
            return

        refusal = self._admission_refusal()
        if refusal is not None:
            code, message = refusal
            logger.info(f"Refusing peer {peer_id.hex()}: {message}")
            await self._send_reject(envelope, code, message)
            return

        channel = PeerChannel(peer_id, self._router.send, self.config.receive_timeout)
        try:
            session = self.sessions.open(peer_id.hex(), channel)
        except Exception as e:
            logger.exception(f"Could not create an engine for peer {peer_id.hex()}")
            await self._send_reject(envelope, RejectCode.ENGINE_UNAVAILABLE, str(e))
            return

        self._channels[peer_id] = channel
        self._tasks[peer_id] = asyncio.create_task(self._run_session(peer_id, session))
        channel.deliver(envelope, payload)

    def _admission_refusal(self) -> tuple[RejectCode, str] | None:
        active = self.sessions.active_count
        if self.config.isolation == IsolationPolicy.REJECT and active > 0:
            return RejectCode.SESSION_BUSY, "The engine is in use by another session"
        if active >= self.config.max_sessions:
            return RejectCode.SERVER_FULL, f"Server is at its limit of {active} sessions"
        return None

    async def _run_session(self, peer_id: bytes, session: Session) -> None:
        try:
            await session.run()
        finally:
            await self.sessions.close(session)
            if self._channels.get(peer_id) is session.transport:
                del self._channels[peer_id]
            if self._tasks.get(peer_id) is asyncio.current_task():
                del self._tasks[peer_id]

    async def _send_reject(self, envelope: list[bytes], code: RejectCode, message: str) -> None:
        try:
            await self._router.send([*envelope, encode_reject(code, message, PROTOCOL_VERSION)])
        except ConnectionClosed as e:
            logger.debug(f"Could not deliver rejection: {e}")


async def run_server(config: ServerConfig, engine_factory: EngineFactory) -> None:
    """Run an engine server until cancelled."""
    server = EngineServer(config, engine_factory)
    try:
        await server.serve_forever()
    finally:
        await server.stop()
