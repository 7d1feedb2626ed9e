"""Tests for the ZeroMQ transport: PeerChannel and RouterSocket."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeEngine
from sim_remote.config import ServerConfig
from sim_remote.errors import BindFailed, ConnectionClosed, ReceiveTimeout
from sim_remote.server import EngineServer
from sim_remote.transport import PeerChannel, RouterSocket


class SentFrames:
    """Collects what a PeerChannel hands to the router."""

    def __init__(self) -> None:
        self.frames: list[list[bytes]] = []

    async def __call__(self, frames: list[bytes]) -> None:
        self.frames.append(frames)


# =============================================================================
# PeerChannel Tests
# =============================================================================


class TestPeerChannel:
    """Tests for one peer's channel over the shared socket."""

    @pytest.mark.asyncio
    async def test_delivered_messages_received_in_order(self) -> None:
        channel = PeerChannel(b"peer", SentFrames())

        assert channel.deliver([b"peer", b""], b"one")
        assert channel.deliver([b"peer", b""], b"two")

        assert await channel.receive() == b"one"
        assert await channel.receive() == b"two"

    @pytest.mark.asyncio
    async def test_send_reuses_latest_envelope(self) -> None:
        sent = SentFrames()
        channel = PeerChannel(b"peer", sent)
        channel.deliver([b"peer", b"", b"hop"], b"request")

        await channel.send(b"reply")

        assert sent.frames == [[b"peer", b"", b"hop", b"reply"]]

    @pytest.mark.asyncio
    async def test_receive_timeout(self) -> None:
        """An idle peer fails the receive once the timeout expires."""
        channel = PeerChannel(b"peer", SentFrames(), receive_timeout=0.05)

        with pytest.raises(ReceiveTimeout):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_receive(self) -> None:
        channel = PeerChannel(b"peer", SentFrames())
        waiting = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)

        channel.close()

        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(waiting, 5)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        channel = PeerChannel(b"peer", SentFrames())

        channel.close()
        channel.close()

        assert channel.closed
        with pytest.raises(ConnectionClosed):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_closed_channel_refuses_traffic(self) -> None:
        sent = SentFrames()
        channel = PeerChannel(b"peer", sent)
        channel.close()

        assert channel.deliver([b"peer", b""], b"late") is False
        with pytest.raises(ConnectionClosed):
            await channel.send(b"reply")
        assert sent.frames == []

    def test_peer_name_is_hex(self) -> None:
        assert PeerChannel(b"\x00\xab", SentFrames()).peer_name == "00ab"


# =============================================================================
# RouterSocket / EngineServer binding
# =============================================================================


class TestBinding:
    """Tests for binding the server socket."""

    @pytest.mark.asyncio
    async def test_ephemeral_port_resolved(self) -> None:
        router = RouterSocket("tcp://127.0.0.1:*")
        try:
            endpoint = router.bind()
        finally:
            router.close()

        assert endpoint.startswith("tcp://127.0.0.1:")
        assert int(endpoint.rsplit(":", 1)[1]) > 0

    @pytest.mark.asyncio
    async def test_port_in_use_raises_bind_failed(self) -> None:
        first = RouterSocket("tcp://127.0.0.1:*")
        endpoint = first.bind()
        second = RouterSocket(endpoint)
        try:
            with pytest.raises(BindFailed):
                second.bind()
            assert not second.is_bound
        finally:
            second.close()
            first.close()

    @pytest.mark.asyncio
    async def test_server_start_raises_bind_failed(self, server_config) -> None:
        async with EngineServer(server_config, FakeEngine) as running:
            port = int(running.endpoint.rsplit(":", 1)[1])
            clashing = EngineServer(ServerConfig(address="127.0.0.1", port=port), FakeEngine)

            with pytest.raises(BindFailed):
                await clashing.start()

            assert not clashing.is_running

    @pytest.mark.asyncio
    async def test_unbound_router_refuses_io(self) -> None:
        router = RouterSocket("tcp://127.0.0.1:*")
        try:
            with pytest.raises(ConnectionClosed):
                await router.send([b"peer", b"", b"data"])
        finally:
            router.close()
