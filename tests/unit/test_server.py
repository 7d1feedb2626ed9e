"""Tests for EngineServer session bookkeeping."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeEngine, QueueTransport
from sim_remote.server import EngineServer


class TestSessionTasks:
    """Tests for the per-peer task table."""

    @pytest.mark.asyncio
    async def test_finished_session_keeps_newer_task(self, server_config) -> None:
        """A session ending late does not drop the task of the peer's next session."""
        server = EngineServer(server_config, FakeEngine)
        transport = QueueTransport()
        transport.close()
        session = server.sessions.open("peer", transport)
        newer = asyncio.get_running_loop().create_future()
        server._tasks[b"peer"] = newer

        await server._run_session(b"peer", session)

        assert server._tasks[b"peer"] is newer
        assert server.sessions.active_count == 0
        newer.cancel()

    @pytest.mark.asyncio
    async def test_finished_session_removes_own_task(self, server_config) -> None:
        server = EngineServer(server_config, FakeEngine)
        transport = QueueTransport()
        transport.close()
        session = server.sessions.open("peer", transport)

        task = asyncio.create_task(server._run_session(b"peer", session))
        server._tasks[b"peer"] = task
        await task

        assert b"peer" not in server._tasks
