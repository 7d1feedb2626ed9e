"""Tests for session module - SessionState, Session handshake, SessionManager."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeEngine, QueueTransport
from sim_remote.config import ServerConfig
from sim_remote.errors import RejectCode
from sim_remote.protocol.codec import (
    FrameKind,
    encode_bye,
    encode_command,
    encode_hello,
    unpack_frame,
)
from sim_remote.protocol.commands import Command
from sim_remote.protocol.version import PROTOCOL_VERSION, ProtocolVersion
from sim_remote.session import Session, SessionManager, SessionState


def make_session(transport: QueueTransport, engine: FakeEngine, **config) -> Session:
    return Session("sess_test", "peer-1", transport, engine, ServerConfig(**config))


def sent_kinds(transport: QueueTransport) -> list[FrameKind]:
    return [unpack_frame(data).kind for data in transport.sent]


# =============================================================================
# SessionState Tests
# =============================================================================


class TestSessionState:
    """Tests for SessionState enum."""

    def test_all_states_exist(self) -> None:
        expected = {"awaiting_handshake", "negotiated", "dispatching", "closed"}
        assert {s.value for s in SessionState} == expected

    def test_state_is_string_enum(self) -> None:
        """States can be used as strings."""
        assert SessionState.DISPATCHING == "dispatching"


# =============================================================================
# Session Tests
# =============================================================================


class TestHandshake:
    """Tests for the HELLO / WELCOME exchange."""

    @pytest.mark.asyncio
    async def test_hello_gets_welcome(self, transport, engine) -> None:
        session = make_session(transport, engine)
        transport.feed(encode_hello(PROTOCOL_VERSION, "tester"), encode_bye(PROTOCOL_VERSION))

        await session.run()

        assert sent_kinds(transport) == [FrameKind.WELCOME, FrameKind.BYE]
        welcome = unpack_frame(transport.sent[0])
        assert welcome.body["session_id"] == "sess_test"
        assert session.version == PROTOCOL_VERSION
        assert session.metadata.client == "tester"
        assert session.state == SessionState.CLOSED
        assert session.metadata.error is None

    @pytest.mark.asyncio
    async def test_newer_minor_negotiates_down(self, transport, engine) -> None:
        """A peer on a newer minor version is served at ours."""
        newer = ProtocolVersion(major=PROTOCOL_VERSION.major, minor=PROTOCOL_VERSION.minor + 3)
        session = make_session(transport, engine)
        transport.feed(encode_hello(newer), encode_bye(newer))

        await session.run()

        welcome = unpack_frame(transport.sent[0])
        assert welcome.kind == FrameKind.WELCOME
        assert welcome.version == PROTOCOL_VERSION
        assert session.version == PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_major_mismatch_rejected(self, transport, engine) -> None:
        """Another major version gets REJECT and the engine is never touched."""
        other = ProtocolVersion(major=PROTOCOL_VERSION.major + 1, minor=0)
        session = make_session(transport, engine)
        transport.feed(encode_hello(other))

        await session.run()

        assert sent_kinds(transport) == [FrameKind.REJECT]
        reject = unpack_frame(transport.sent[0])
        assert reject.body["code"] == RejectCode.UNSUPPORTED_VERSION.value
        assert engine.calls == []
        assert session.state == SessionState.CLOSED
        assert session.metadata.error is not None

    @pytest.mark.asyncio
    async def test_command_before_hello_rejected(self, transport, engine) -> None:
        session = make_session(transport, engine)
        transport.feed(encode_command(Command.create("X.Param = 5"), PROTOCOL_VERSION))

        await session.run()

        reject = unpack_frame(transport.sent[0])
        assert reject.kind == FrameKind.REJECT
        assert reject.body["code"] == RejectCode.HANDSHAKE_REQUIRED.value
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_garbage_rejected_as_malformed(self, transport, engine) -> None:
        session = make_session(transport, engine)
        transport.feed(b"\x00\x01\x02")

        await session.run()

        reject = unpack_frame(transport.sent[0])
        assert reject.body["code"] == RejectCode.MALFORMED_MESSAGE.value
        assert session.state == SessionState.CLOSED


class TestSessionRun:
    """Tests for a full session lifetime."""

    @pytest.mark.asyncio
    async def test_commands_counted(self, transport, engine) -> None:
        session = make_session(transport, engine)
        transport.feed(
            encode_hello(PROTOCOL_VERSION),
            encode_command(Command.create("A = 1"), PROTOCOL_VERSION),
            encode_command(Command.create("B = 2"), PROTOCOL_VERSION),
            encode_bye(PROTOCOL_VERSION),
        )

        await session.run()

        assert session.metadata.commands_handled == 2
        assert engine.runs == [["A = 1"], ["B = 2"]]

    @pytest.mark.asyncio
    async def test_default_overrides_from_config(self, transport, engine) -> None:
        session = make_session(transport, engine, default_overrides=["S.Id = host:1"])
        transport.feed(
            encode_hello(PROTOCOL_VERSION),
            encode_command(Command.create("A = 1"), PROTOCOL_VERSION),
            encode_bye(PROTOCOL_VERSION),
        )

        await session.run()

        assert engine.runs == [["S.Id = host:1", "A = 1"]]

    @pytest.mark.asyncio
    async def test_peer_disconnect_closes_session(self, transport, engine) -> None:
        """A closed channel ends the session without a REJECT."""
        session = make_session(transport, engine)
        transport.feed(encode_hello(PROTOCOL_VERSION))
        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.01)
        assert session.state == SessionState.DISPATCHING

        transport.close()
        await asyncio.wait_for(task, 5)

        assert session.state == SessionState.CLOSED
        assert sent_kinds(transport) == [FrameKind.WELCOME]
        assert session.metadata.closed_at is not None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_engine(self, transport, engine) -> None:
        session = make_session(transport, engine)
        transport.feed(encode_hello(PROTOCOL_VERSION))
        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.01)

        session.shutdown()
        await asyncio.wait_for(task, 5)

        assert engine.cancelled
        assert session.closed

    def test_to_dict(self, transport, engine) -> None:
        data = make_session(transport, engine).to_dict()

        assert data["session_id"] == "sess_test"
        assert data["state"] == "awaiting_handshake"
        assert data["version"] is None


# =============================================================================
# SessionManager Tests
# =============================================================================


class TestSessionManager:
    """Tests for SessionManager."""

    def test_each_session_gets_own_engine(self, server_config) -> None:
        engines: list[FakeEngine] = []

        def factory() -> FakeEngine:
            engines.append(FakeEngine())
            return engines[-1]

        manager = SessionManager(server_config, factory)
        first = manager.open("a", QueueTransport())
        second = manager.open("b", QueueTransport())

        assert first.engine is not second.engine
        assert first.session_id != second.session_id
        assert first.session_id.startswith("sess_")
        assert manager.active_count == 2
        assert manager.get(first.session_id) is first

    @pytest.mark.asyncio
    async def test_scoped_session_releases_engine(self, server_config) -> None:
        engine = FakeEngine()
        transport = QueueTransport()
        manager = SessionManager(server_config, lambda: engine)

        async with manager.session("peer", transport) as session:
            assert manager.active_count == 1
            assert session.engine is engine

        assert engine.closed
        assert transport.closed
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_scoped_session_releases_on_error(self, server_config) -> None:
        engine = FakeEngine()
        manager = SessionManager(server_config, lambda: engine)

        with pytest.raises(RuntimeError):
            async with manager.session("peer", QueueTransport()):
                raise RuntimeError("boom")

        assert engine.closed
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server_config, engine) -> None:
        manager = SessionManager(server_config, lambda: engine)
        session = manager.open("peer", QueueTransport())

        await manager.close(session)
        await manager.close(session)

        assert engine.closed
        assert manager.list_sessions() == []

    def test_factory_failure_closes_transport(self, server_config) -> None:
        def broken() -> FakeEngine:
            raise OSError("no engine binary")

        transport = QueueTransport()
        manager = SessionManager(server_config, broken)

        with pytest.raises(OSError):
            manager.open("peer", transport)

        assert transport.closed
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_all(self, server_config) -> None:
        manager = SessionManager(server_config, FakeEngine)
        transports = [QueueTransport(), QueueTransport()]
        for i, transport in enumerate(transports):
            manager.open(f"peer-{i}", transport)

        manager.shutdown_all()

        assert all(t.closed for t in transports)
