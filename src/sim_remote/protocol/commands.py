"""Command definitions for the protocol layer.

A command carries the parameter overrides to apply before one engine run.
Each command has a unique ID that the matching Response echoes back.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

ASSIGNMENT = "="


def new_command_id() -> str:
    return f"cmd_{uuid.uuid4().hex[:12]}"


def check_override(override: str) -> str:
    """Validate the `<path> = <value>` shape of one override.

    Raises:
        ValueError: If the override is blank or does not hold exactly one `=`
    """
    if not override.strip():
        raise ValueError("Override must not be empty")
    count = override.count(ASSIGNMENT)
    if count != 1:
        raise ValueError(
            f"Override {override!r} must contain exactly one '{ASSIGNMENT}' (found {count})"
        )
    return override


def split_override(override: str) -> tuple[str, str]:
    """Split an override into its (path, value) parts, whitespace trimmed."""
    path, _, value = check_override(override).partition(ASSIGNMENT)
    return path.strip(), value.strip()


class Command(BaseModel):
    """A command from client to server.

    Overrides are passed to the engine exactly as given; only the
    assignment syntax is checked.

    Example:
        Command(overrides=["[Clock].StartDate = 2001-01-01"])
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_command_id)
    overrides: tuple[str, ...] = ()

    @field_validator("overrides")
    @classmethod
    def _check_overrides(cls, overrides: tuple[str, ...]) -> tuple[str, ...]:
        for override in overrides:
            check_override(override)
        return overrides

    @classmethod
    def create(cls, *overrides: str, command_id: str | None = None) -> Command:
        """Factory method for creating commands."""
        return cls(id=command_id or new_command_id(), overrides=overrides)

    def assignments(self) -> list[tuple[str, str]]:
        """Overrides as (path, value) pairs, for display."""
        return [split_override(override) for override in self.overrides]

    def with_prefix(self, *overrides: str) -> Command:
        """Return a copy with extra overrides placed before this command's own."""
        return Command(id=self.id, overrides=(*overrides, *self.overrides))
