"""Sessions and their lifecycle.

A session binds one peer channel, one engine and one negotiated protocol
version for its whole life:

    AWAITING_HANDSHAKE ──HELLO──▶ NEGOTIATED ──▶ DISPATCHING ──▶ CLOSED
            │                          │                            ▲
            └──────────────────────────┴────── fatal error ─────────┘

SessionManager opens sessions, releases their engine and channel on every
exit path, and enforces that no engine is ever shared between sessions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TextIO

from .config import ServerConfig
from .dispatcher import CommandDispatcher
from .engine import Engine, EngineFactory, release_engine, request_cancel
from .errors import HandshakeRequired, ProtocolError, TransportError, UnsupportedVersion
from .protocol.codec import FrameKind, encode_reject, encode_welcome, unpack_frame
from .protocol.version import PROTOCOL_VERSION, ProtocolVersion
from .transport.base import Transport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Session lifecycle states."""

    AWAITING_HANDSHAKE = "awaiting_handshake"
    NEGOTIATED = "negotiated"
    DISPATCHING = "dispatching"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.AWAITING_HANDSHAKE: {SessionState.NEGOTIATED, SessionState.CLOSED},
    SessionState.NEGOTIATED: {SessionState.DISPATCHING, SessionState.CLOSED},
    SessionState.DISPATCHING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class SessionMetadata:
    """Metadata for a session."""

    session_id: str
    peer: str
    state: SessionState = SessionState.AWAITING_HANDSHAKE
    version: ProtocolVersion | None = None
    client: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    closed_at: datetime | None = None
    commands_handled: int = 0
    error: str | None = None


class Session:
    """One peer, one engine, one protocol version.

    `run()` performs the handshake, then hands over to the command
    dispatcher until the peer leaves or the session fails. Fatal protocol
    errors are answered with a REJECT frame before the session closes.
    """

    def __init__(
        self,
        session_id: str,
        peer: str,
        transport: Transport,
        engine: Engine,
        config: ServerConfig,
        local_version: ProtocolVersion = PROTOCOL_VERSION,
        diagnostic_sink: TextIO | None = None,
    ) -> None:
        self.session_id = session_id
        self.transport = transport
        self.engine = engine
        self.config = config
        self.local_version = local_version
        self.metadata = SessionMetadata(session_id=session_id, peer=peer)
        self._diagnostic_sink = diagnostic_sink
        self._dispatcher: CommandDispatcher | None = None

    @property
    def state(self) -> SessionState:
        return self.metadata.state

    @property
    def version(self) -> ProtocolVersion | None:
        """The negotiated version, once the handshake is done."""
        return self.metadata.version

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Cannot move session from {self.state.value} to {new_state.value}")
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.metadata.state = new_state

    async def run(self) -> None:
        """Serve the peer until it leaves or the session fails.

        Never raises for protocol or transport failures; those end the
        session and are recorded in `metadata.error`.
        """
        try:
            await self._handshake()
            self._transition(SessionState.DISPATCHING)
            self._dispatcher = CommandDispatcher(
                self.engine,
                self.transport,
                self.version or self.local_version,
                verbose=self.config.verbose,
                state_change_timeout=self.config.state_change_timeout,
                default_overrides=self.config.default_overrides,
                diagnostic_sink=self._diagnostic_sink,
            )
            await self._dispatcher.run()
            logger.info(f"Session {self.session_id} ended by peer")

        except ProtocolError as e:
            self.metadata.error = str(e)
            logger.warning(f"Session {self.session_id} protocol error: {e}")
            await self._reject(e)

        except TransportError as e:
            self.metadata.error = str(e)
            logger.info(f"Session {self.session_id} transport closed: {e}")

        finally:
            if self._dispatcher is not None:
                self.metadata.commands_handled = self._dispatcher.commands_handled
                await self._dispatcher.drain()
            if not self.closed:
                self._transition(SessionState.CLOSED)
                self.metadata.closed_at = datetime.now(UTC)

    async def _handshake(self) -> None:
        data = await self.transport.receive()
        frame = unpack_frame(data)
        if frame.kind != FrameKind.HELLO:
            raise HandshakeRequired(f"Expected HELLO, got {frame.kind.name}")
        if not self.local_version.is_compatible(frame.version):
            raise UnsupportedVersion(self.local_version, frame.version)

        version = self.local_version.negotiate(frame.version)
        self.metadata.version = version
        client = frame.body.get("client")
        self.metadata.client = client if isinstance(client, str) else None
        self._transition(SessionState.NEGOTIATED)

        if frame.version != self.local_version:
            logger.info(
                f"Session {self.session_id}: peer speaks {frame.version}, using {version}"
            )
        await self.transport.send(encode_welcome(version, self.session_id))
        logger.info(f"Session {self.session_id} negotiated protocol {version}")

    async def _reject(self, error: ProtocolError) -> None:
        version = self.version or self.local_version
        try:
            await self.transport.send(encode_reject(error.code, str(error), version))
        except TransportError as e:
            logger.debug(f"Could not send rejection to {self.metadata.peer}: {e}")

    def shutdown(self) -> None:
        """Ask the session to stop: cancel engine work and close the channel.

        A waiting receive fails with ConnectionClosed; an engine call in
        progress is allowed to return first.
        """
        if self.state == SessionState.DISPATCHING:
            try:
                request_cancel(self.engine)
            except Exception as e:
                logger.warning(f"Engine cancel failed for session {self.session_id}: {e}")
        self.transport.close()

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "peer": self.metadata.peer,
            "state": self.state.value,
            "version": str(self.version) if self.version else None,
            "client": self.metadata.client,
            "created_at": self.metadata.created_at.isoformat(),
            "commands_handled": self.metadata.commands_handled,
            "error": self.metadata.error,
        }


class SessionManager:
    """Opens and closes sessions.

    Each session gets a fresh engine from the factory; the engine is
    released together with the session, whichever way the session ends.
    """

    def __init__(
        self,
        config: ServerConfig,
        engine_factory: EngineFactory,
        diagnostic_sink: TextIO | None = None,
    ) -> None:
        self._config = config
        self._engine_factory = engine_factory
        self._diagnostic_sink = diagnostic_sink
        self._sessions: dict[str, Session] = {}

    def open(self, peer: str, transport: Transport) -> Session:
        """Create a session with its own engine.

        Raises:
            Exception: Whatever the engine factory raises; the transport is
                closed before it propagates
        """
        try:
            engine = self._engine_factory()
        except Exception:
            transport.close()
            raise

        session_id = f"sess_{uuid.uuid4().hex[:12]}"
        session = Session(
            session_id,
            peer,
            transport,
            engine,
            self._config,
            diagnostic_sink=self._diagnostic_sink,
        )
        self._sessions[session_id] = session
        logger.info(f"Opened session {session_id} for peer {peer}")
        return session

    async def close(self, session: Session) -> None:
        """Release a session's transport and engine. Idempotent."""
        if self._sessions.pop(session.session_id, None) is None:
            return
        session.transport.close()
        try:
            await asyncio.to_thread(release_engine, session.engine)
        except Exception as e:
            logger.warning(f"Releasing engine of session {session.session_id} failed: {e}")
        logger.info(f"Closed session {session.session_id}")

    @asynccontextmanager
    async def session(self, peer: str, transport: Transport) -> AsyncIterator[Session]:
        """Scoped session: always closed on exit, normal or not."""
        session = self.open(peer, transport)
        try:
            yield session
        finally:
            await self.close(session)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[dict[str, object]]:
        return [session.to_dict() for session in self._sessions.values()]

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def shutdown_all(self) -> None:
        """Ask every open session to stop."""
        for session in list(self._sessions.values()):
            session.shutdown()
