"""Test doubles for engines and transports."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Sequence
from typing import Any

from sim_remote.errors import ConnectionClosed
from sim_remote.transport.base import Transport


class FakeEngine:
    """Records every call; behaviour is configured per instance.

    Args:
        errors: What get_errors() returns, or a callable taking the last
            run's overrides and returning it
        run_error: Raised from run() when set
        gate: If set, wait_for_state_change() blocks until it is set
            (cancel() sets it)
    """

    def __init__(
        self,
        errors: Sequence[Any] | Callable[[list[str]], Sequence[Any] | None] | None = None,
        run_error: BaseException | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.errors = errors
        self.run_error = run_error
        self.gate = gate
        self.calls: list[str] = []
        self.runs: list[list[str]] = []
        self.cancelled = False
        self.closed = False

    def run(self, overrides: Sequence[str]) -> None:
        self.calls.append("run")
        self.runs.append(list(overrides))
        if self.run_error is not None:
            raise self.run_error

    def wait_for_state_change(self) -> None:
        self.calls.append("wait_for_state_change")
        if self.gate is not None:
            self.gate.wait(timeout=5)

    def get_errors(self) -> Sequence[Any] | None:
        self.calls.append("get_errors")
        if callable(self.errors):
            return self.errors(self.runs[-1])
        return self.errors

    def cancel(self) -> None:
        self.cancelled = True
        if self.gate is not None:
            self.gate.set()

    def close(self) -> None:
        self.closed = True


class BadValueEngine(FakeEngine):
    """Raises from run() when any override value is "bad"."""

    def run(self, overrides: Sequence[str]) -> None:
        super().run(overrides)
        for override in overrides:
            if override.partition("=")[2].strip() == "bad":
                raise ValueError(f"Cannot apply {override!r}")


class QueueTransport(Transport):
    """In-memory transport: tests feed incoming frames and read what was sent."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.sent: list[bytes] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, *frames: bytes) -> None:
        for frame in frames:
            self.incoming.put_nowait(frame)

    async def receive(self) -> bytes:
        if self._closed:
            raise ConnectionClosed("closed")
        item = await self.incoming.get()
        if item is None:
            raise ConnectionClosed("closed")
        return item

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionClosed("closed")
        self.sent.append(data)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.incoming.put_nowait(None)
