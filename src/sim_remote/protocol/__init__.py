"""Transport-agnostic protocol layer.

Defines the command/response protocol between a remote client and a
simulation engine server.

Key concepts:
- Commands: Client → Server, a list of parameter overrides for one run
- Responses: Server → Client, Success or Failure(ErrorReport), one per command
- Version: every frame carries the sender's protocol version
"""

from .aggregator import aggregate, fault_from_exception
from .codec import (
    Frame,
    FrameKind,
    decode_command,
    decode_response,
    encode_command,
    encode_response,
)
from .commands import Command, split_override
from .responses import ErrorReport, Failure, Fault, Response, Success
from .version import PROTOCOL_VERSION, ProtocolVersion

__all__ = [
    "Command",
    "split_override",
    "ErrorReport",
    "Failure",
    "Fault",
    "Response",
    "Success",
    "aggregate",
    "fault_from_exception",
    "Frame",
    "FrameKind",
    "decode_command",
    "decode_response",
    "encode_command",
    "encode_response",
    "PROTOCOL_VERSION",
    "ProtocolVersion",
]
