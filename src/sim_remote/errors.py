"""Exception hierarchy for sim-remote.

Three families:
- ProtocolError: the bytes or the handshake cannot be trusted
- TransportError: the channel to the peer is gone or unusable
- DispatchFault: one command failed; recovered into a Failure response

Only ProtocolError (except InvalidCommand) and TransportError end a session.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol.responses import ErrorReport
    from .protocol.version import ProtocolVersion


class RejectCode(str, Enum):
    """Codes carried by REJECT frames."""

    MALFORMED_MESSAGE = "malformed_message"
    UNSUPPORTED_VERSION = "unsupported_version"
    HANDSHAKE_REQUIRED = "handshake_required"
    SESSION_BUSY = "session_busy"
    SERVER_FULL = "server_full"
    ENGINE_UNAVAILABLE = "engine_unavailable"


class SimRemoteError(Exception):
    """Base class for all sim-remote errors."""

    pass


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(SimRemoteError):
    """The peer sent something the protocol cannot interpret."""

    code: RejectCode = RejectCode.MALFORMED_MESSAGE


class MalformedMessage(ProtocolError):
    """A wire frame could not be decoded."""

    code = RejectCode.MALFORMED_MESSAGE


class UnsupportedVersion(ProtocolError):
    """The peer speaks a different major protocol version."""

    code = RejectCode.UNSUPPORTED_VERSION

    def __init__(self, local: ProtocolVersion, remote: ProtocolVersion) -> None:
        super().__init__(f"Unsupported protocol version {remote} (local version is {local})")
        self.local = local
        self.remote = remote


class HandshakeRequired(ProtocolError):
    """A frame other than HELLO arrived before the handshake."""

    code = RejectCode.HANDSHAKE_REQUIRED


class InvalidCommand(ProtocolError):
    """A well-formed COMMAND frame carried an override that breaks the syntax rule.

    Unlike the other protocol errors this one does not end the session: the
    frame boundary is intact, so the command is answered with a Failure.
    """

    def __init__(self, command_id: str | None, message: str) -> None:
        super().__init__(message)
        self.command_id = command_id


class SessionRejected(ProtocolError):
    """The server refused the session (client side)."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.reject_code = code
        self.message = message


# =============================================================================
# Transport errors
# =============================================================================


class TransportError(SimRemoteError):
    """The transport to the peer is unusable."""

    pass


class ConnectionClosed(TransportError):
    """The channel was closed while sending or receiving."""

    pass


class ReceiveTimeout(TransportError):
    """No message arrived within the configured receive timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"No message received within {timeout:g}s")
        self.timeout = timeout


class BindFailed(TransportError):
    """The server socket could not be bound."""

    pass


class ConnectionRefused(TransportError):
    """The client could not establish a session with the server."""

    pass


# =============================================================================
# Per-command faults
# =============================================================================


class DispatchFault(SimRemoteError):
    """A single command failed. The session carries on."""

    pass


class EngineFault(DispatchFault):
    """The engine reported one or more faults after a run."""

    def __init__(self, report: ErrorReport) -> None:
        count = len(report.faults)
        super().__init__(f"Simulation error ({count} fault{'s' if count != 1 else ''})")
        self.report = report


class UnexpectedFault(DispatchFault):
    """Something raised while dispatching a command."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause


class EngineStalled(DispatchFault):
    """The engine did not change state before the watchdog expired."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Engine did not reach a new state within {timeout:g}s")
        self.timeout = timeout
