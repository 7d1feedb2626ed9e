"""Response definitions for the protocol layer.

Every command gets exactly one response:
- Success: the run completed and the engine recorded no faults
- Failure: the run produced faults (engine-reported or raised during dispatch)

Response is a tagged union on `status`, so consumers match on the variant
instead of checking for an empty error list.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class Fault(BaseModel):
    """One discrete error condition."""

    model_config = ConfigDict(frozen=True)

    message: str
    location: str | None = None  # Where it originated (file:line, model path, ...)

    @field_validator("message", "location", mode="before")
    @classmethod
    def _encodable(cls, value: object) -> object:
        # Lone surrogates (undecodable file names) cannot go out as UTF-8
        if isinstance(value, str):
            return value.encode("utf-8", "backslashreplace").decode("utf-8")
        return value

    def describe(self) -> str:
        if self.location:
            return f"{self.message} (at {self.location})"
        return self.message


class ErrorReport(BaseModel):
    """Ordered faults from one dispatch cycle, first reported first."""

    model_config = ConfigDict(frozen=True)

    faults: tuple[Fault, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.faults

    def describe(self) -> str:
        """Multi-line text, one fault per line."""
        return "\n".join(fault.describe() for fault in self.faults)


class Success(BaseModel):
    """The command ran and the engine reported no faults."""

    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    command_id: str | None = None

    @property
    def ok(self) -> bool:
        return True


class Failure(BaseModel):
    """The command failed; `report` holds at least one fault."""

    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    command_id: str | None = None
    report: ErrorReport

    @field_validator("report")
    @classmethod
    def _require_faults(cls, report: ErrorReport) -> ErrorReport:
        if report.is_empty:
            raise ValueError("A failure needs at least one fault")
        return report

    @property
    def ok(self) -> bool:
        return False


Response = Annotated[Success | Failure, Field(discriminator="status")]

response_adapter: TypeAdapter[Success | Failure] = TypeAdapter(Response)
