"""Protocol version tag carried in every frame header."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProtocolVersion(BaseModel):
    """Major/minor protocol version.

    Bump `major` on every wire-incompatible change. Bump `minor` on additive
    changes and reset it to 0 when `major` changes.
    """

    model_config = ConfigDict(frozen=True)

    major: int = Field(ge=0, le=255)
    minor: int = Field(ge=0, le=255)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"

    def is_compatible(self, other: ProtocolVersion) -> bool:
        """Peers can talk if their major versions agree."""
        return self.major == other.major

    def negotiate(self, other: ProtocolVersion) -> ProtocolVersion:
        """Pick the version both peers understand.

        Callers check `is_compatible` first. Within a major version the
        lower minor wins, since it is the feature set both sides know.
        """
        return ProtocolVersion(major=self.major, minor=min(self.minor, other.minor))

    @classmethod
    def parse(cls, text: str) -> ProtocolVersion:
        """Parse "2.0" style strings."""
        major, _, minor = text.partition(".")
        return cls(major=int(major), minor=int(minor or 0))


PROTOCOL_VERSION = ProtocolVersion(major=2, minor=0)
