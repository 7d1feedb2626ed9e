"""Binary wire codec.

Frame format:
    ┌──────────┬─────────┬─────────┬────────┬───────────┬──────────────────┐
    │ magic 2B │ major u8│ minor u8│ kind u8│ length u32│  msgpack map     │
    │ "SR"     │         │         │        │ BE        │  (length bytes)  │
    └──────────┴─────────┴─────────┴────────┴───────────┴──────────────────┘

The version in the header lets a receiver refuse a body it may not
understand before touching it. Bodies are msgpack maps with string keys;
keys a receiver does not know are ignored, so a newer minor version can
add fields without breaking older peers.

Direction of each frame kind:
    HELLO     client -> server   {"client": str}
    WELCOME   server -> client   {"session_id": str}
    COMMAND   client -> server   {"id": str, "overrides": [str, ...]}
    RESPONSE  server -> client   {"status": "success"|"failure", "command_id": str,
                                  "report": {"faults": [{"message", "location"}]}}
    REJECT    server -> client   {"code": str, "message": str}
    BYE       both               {}
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import msgpack
from pydantic import ValidationError

from ..errors import (
    InvalidCommand,
    MalformedMessage,
    RejectCode,
    SessionRejected,
    UnsupportedVersion,
)
from .commands import Command
from .responses import Failure, Success, response_adapter
from .version import ProtocolVersion

MAGIC = b"SR"
HEADER = struct.Struct(">2sBBBI")
HEADER_SIZE = HEADER.size

# Max body size (16MB); override lists are small, anything bigger is garbage
MAX_BODY_SIZE = 16 * 1024 * 1024


class FrameKind(IntEnum):
    """Frame kinds (header `kind` byte)."""

    HELLO = 0x01
    WELCOME = 0x02
    COMMAND = 0x03
    RESPONSE = 0x04
    REJECT = 0x05
    BYE = 0x06


@dataclass(frozen=True)
class Frame:
    """A decoded frame: header fields plus the raw body map."""

    version: ProtocolVersion
    kind: FrameKind
    body: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Framing
# =============================================================================


def pack_frame(kind: FrameKind, body: dict[str, Any], version: ProtocolVersion) -> bytes:
    """Encode a frame for the wire."""
    payload = msgpack.packb(body, use_bin_type=True)
    if len(payload) > MAX_BODY_SIZE:
        raise ValueError(f"Frame body too large: {len(payload)} bytes")
    return HEADER.pack(MAGIC, version.major, version.minor, int(kind), len(payload)) + payload


def unpack_frame(data: bytes, expected: ProtocolVersion | None = None) -> Frame:
    """Decode one frame.

    Args:
        data: The complete frame bytes
        expected: Local version; when given, a frame with another major
            version is refused before its body is read

    Raises:
        MalformedMessage: If the frame cannot be parsed
        UnsupportedVersion: If the major version differs from `expected`
    """
    if len(data) < HEADER_SIZE:
        raise MalformedMessage(f"Truncated frame header ({len(data)} of {HEADER_SIZE} bytes)")

    magic, major, minor, kind, length = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise MalformedMessage(f"Bad frame magic {magic!r}")

    version = ProtocolVersion(major=major, minor=minor)
    if expected is not None and not expected.is_compatible(version):
        raise UnsupportedVersion(expected, version)

    actual = len(data) - HEADER_SIZE
    if length > MAX_BODY_SIZE:
        raise MalformedMessage(f"Declared body length {length} exceeds limit")
    if actual < length:
        raise MalformedMessage(f"Truncated frame body ({actual} of {length} bytes)")
    if actual > length:
        raise MalformedMessage(f"{actual - length} trailing bytes after frame body")

    try:
        frame_kind = FrameKind(kind)
    except ValueError:
        raise MalformedMessage(f"Unknown frame kind 0x{kind:02x}") from None

    try:
        body = msgpack.unpackb(data[HEADER_SIZE:], raw=False)
    except (ValueError, TypeError) as e:
        raise MalformedMessage(f"Undecodable frame body: {e}") from e
    if not isinstance(body, dict):
        raise MalformedMessage(f"Frame body must be a map, got {type(body).__name__}")

    return Frame(version=version, kind=frame_kind, body=body)


def expect_kind(frame: Frame, *kinds: FrameKind) -> Frame:
    """Check a decoded frame is one of `kinds`."""
    if frame.kind not in kinds:
        names = ", ".join(kind.name for kind in kinds)
        raise MalformedMessage(f"Expected {names} frame, got {frame.kind.name}")
    return frame


# =============================================================================
# Handshake and control frames
# =============================================================================


def encode_hello(version: ProtocolVersion, client: str | None = None) -> bytes:
    body = {"client": client} if client else {}
    return pack_frame(FrameKind.HELLO, body, version)


def encode_welcome(version: ProtocolVersion, session_id: str) -> bytes:
    return pack_frame(FrameKind.WELCOME, {"session_id": session_id}, version)


def encode_reject(code: RejectCode | str, message: str, version: ProtocolVersion) -> bytes:
    code_value = code.value if isinstance(code, RejectCode) else code
    return pack_frame(FrameKind.REJECT, {"code": code_value, "message": message}, version)


def encode_bye(version: ProtocolVersion) -> bytes:
    return pack_frame(FrameKind.BYE, {}, version)


def raise_rejection(frame: Frame) -> None:
    """Turn a REJECT frame into the matching client-side error."""
    code = str(frame.body.get("code", "unknown"))
    message = str(frame.body.get("message", ""))
    raise SessionRejected(code, message)


# =============================================================================
# Commands
# =============================================================================


def encode_command(command: Command, version: ProtocolVersion) -> bytes:
    body = {"id": command.id, "overrides": list(command.overrides)}
    return pack_frame(FrameKind.COMMAND, body, version)


def command_from_frame(frame: Frame) -> Command:
    """Build a Command from a COMMAND frame body.

    Raises:
        MalformedMessage: If the body does not have the command shape
        InvalidCommand: If an override breaks the `<path> = <value>` rule
    """
    expect_kind(frame, FrameKind.COMMAND)
    command_id = frame.body.get("id")
    if command_id is not None and not isinstance(command_id, str):
        raise MalformedMessage("Command id must be a string")

    overrides = frame.body.get("overrides", [])
    if not isinstance(overrides, list) or not all(isinstance(o, str) for o in overrides):
        raise MalformedMessage("Command overrides must be a list of strings")

    params: dict[str, Any] = {"overrides": tuple(overrides)}
    if command_id is not None:
        params["id"] = command_id
    try:
        return Command(**params)
    except ValidationError as e:
        errors = e.errors()
        message = errors[0]["msg"] if errors else str(e)
        raise InvalidCommand(command_id, message) from e


def decode_command(data: bytes, version: ProtocolVersion) -> Command:
    """Decode a COMMAND frame."""
    return command_from_frame(unpack_frame(data, version))


# =============================================================================
# Responses
# =============================================================================


def encode_response(response: Success | Failure, version: ProtocolVersion) -> bytes:
    return pack_frame(FrameKind.RESPONSE, response.model_dump(mode="json"), version)


def response_from_frame(frame: Frame) -> Success | Failure:
    """Build a Response from a RESPONSE frame, raising SessionRejected on REJECT."""
    if frame.kind == FrameKind.REJECT:
        raise_rejection(frame)
    expect_kind(frame, FrameKind.RESPONSE)
    try:
        return response_adapter.validate_python(frame.body)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid response body: {e}") from e


def decode_response(data: bytes, version: ProtocolVersion) -> Success | Failure:
    """Decode a RESPONSE frame."""
    return response_from_frame(unpack_frame(data, version))
