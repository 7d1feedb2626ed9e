"""Command Dispatcher - the control loop of a session.

For each command:
1. Receive and decode one COMMAND frame
2. Hand the overrides to the engine unchanged
3. engine.run(overrides)
4. engine.wait_for_state_change()
5. engine.get_errors() → Success, or Failure via the error aggregator
6. Encode and send the response, then wait for the next command

Steps 3-5 happen strictly in order before the response goes out, so a
Success means the latest run had no recorded faults when the engine
reached its new state.

Engine calls block, so they run in worker threads. The loop itself never
overlaps two commands.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable, Sequence
from typing import Any, TextIO

from .engine import Engine, request_cancel
from .errors import DispatchFault, EngineFault, EngineStalled, InvalidCommand, UnexpectedFault
from .protocol.aggregator import aggregate, fault_from_exception
from .protocol.codec import (
    FrameKind,
    command_from_frame,
    encode_bye,
    encode_response,
    unpack_frame,
)
from .protocol.commands import Command
from .protocol.responses import ErrorReport, Failure, Fault, Success
from .protocol.version import ProtocolVersion
from .transport.base import Transport

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Drives one engine on behalf of one peer.

    Usage:
        dispatcher = CommandDispatcher(engine, channel, version)
        await dispatcher.run()  # Returns when the peer says BYE

    Per-command faults (engine-reported or raised) become Failure
    responses. Transport and framing errors propagate and end the session.
    """

    def __init__(
        self,
        engine: Engine,
        transport: Transport,
        version: ProtocolVersion,
        *,
        verbose: bool = False,
        state_change_timeout: float | None = None,
        default_overrides: Sequence[str] = (),
        diagnostic_sink: TextIO | None = None,
    ) -> None:
        self._engine = engine
        self._transport = transport
        self._version = version
        self._verbose = verbose
        self._state_change_timeout = state_change_timeout
        self._default_overrides = tuple(default_overrides)
        self._sink = diagnostic_sink

        # A wait_for_state_change() the watchdog gave up on; the engine
        # must settle before it is run again
        self._stalled: asyncio.Future[Any] | None = None

        self.commands_handled = 0

    async def run(self) -> None:
        """Serve commands until the peer says goodbye.

        Raises:
            MalformedMessage: If a frame cannot be decoded
            UnsupportedVersion: If a frame carries another major version
            ConnectionClosed / ReceiveTimeout: If the transport fails
        """
        while True:
            data = await self._transport.receive()
            frame = unpack_frame(data, self._version)

            if frame.kind == FrameKind.BYE:
                logger.debug("Peer said goodbye")
                await self._transport.send(encode_bye(self._version))
                return

            try:
                command = command_from_frame(frame)
            except InvalidCommand as e:
                response: Success | Failure = self._failure(
                    e.command_id, ErrorReport(faults=(Fault(message=str(e)),))
                )
            else:
                response = await self.dispatch(command)

            await self._transport.send(self._encode(response))
            self.commands_handled += 1

    async def dispatch(self, command: Command) -> Success | Failure:
        """Run one command against the engine and build its response."""
        logger.debug(f"Dispatching command {command.id} ({len(command.overrides)} overrides)")
        try:
            await self._execute(command)
        except EngineFault as e:
            report = e.report
        except DispatchFault as e:
            report = ErrorReport(faults=(Fault(message=str(e)),))
        except Exception as e:
            logger.warning(f"Command {command.id} raised {UnexpectedFault(e)}", exc_info=e)
            report = ErrorReport(faults=(fault_from_exception(e),))
        else:
            logger.debug(f"Command {command.id} succeeded")
            return Success(command_id=command.id)

        return self._failure(command.id, report)

    async def drain(self) -> None:
        """Wait for any engine call the watchdog abandoned."""
        if self._stalled is None:
            return
        stalled, self._stalled = self._stalled, None
        await asyncio.wait({stalled})
        _consume(stalled)

    # =========================================================================
    # Engine calls
    # =========================================================================

    async def _execute(self, command: Command) -> None:
        await self.drain()

        overrides = [*self._default_overrides, *command.overrides]
        await self._call(self._engine.run, overrides)
        await self._call(self._engine.wait_for_state_change, timeout=self._state_change_timeout)

        report = aggregate(await self._call(self._engine.get_errors))
        if not report.is_empty:
            raise EngineFault(report)

    async def _call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
    ) -> Any:
        """Run a blocking engine call in a worker thread.

        If this coroutine is cancelled, the engine is asked to cancel and
        the call is still awaited: in-progress engine work is never
        abandoned mid-flight.
        """
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            self._request_cancel()
            await asyncio.wait({task})
            _consume(task)
            raise

        if done:
            return task.result()

        # Only a timed wait can come back with the call still running
        self._stalled = task
        self._request_cancel()
        raise EngineStalled(timeout or 0.0)

    def _request_cancel(self) -> None:
        try:
            if request_cancel(self._engine):
                logger.info("Requested engine cancellation")
        except Exception as e:
            logger.warning(f"Engine cancel failed: {e}")

    # =========================================================================
    # Responses
    # =========================================================================

    def _encode(self, response: Success | Failure) -> bytes:
        """Encode a response; a response that cannot be encoded becomes a Failure saying so."""
        try:
            return encode_response(response, self._version)
        except (ValueError, TypeError) as e:
            logger.error(f"Cannot encode response to {response.command_id}: {e}")
            fault = Fault(message=f"Response could not be encoded: {e}")
            failure = self._failure(response.command_id, ErrorReport(faults=(fault,)))
            return encode_response(failure, self._version)

    def _failure(self, command_id: str | None, report: ErrorReport) -> Failure:
        failure = Failure(command_id=command_id, report=report)
        logger.info(f"Command {command_id} failed with {len(report.faults)} fault(s)")
        if self._verbose:
            sink = self._sink or sys.stderr
            sink.write(f"ERROR\n{report.describe()}\n")
            sink.flush()
        return failure


def _consume(task: asyncio.Future[Any]) -> None:
    """Retrieve a finished task's exception so asyncio does not warn about it."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned engine call ended with: {task.exception()}")
