"""Error aggregation.

Engines report faults in whatever shape they have: Fault records,
exceptions, objects with a `message` attribute, or plain strings. The
aggregator turns them into one ErrorReport, keeping the engine's order
(root cause first, cascading failures after) and never adding or dropping
an entry.
"""

from __future__ import annotations

import traceback
from collections.abc import Iterable
from typing import Any

from .responses import ErrorReport, Fault


def fault_from_exception(exc: BaseException) -> Fault:
    """Describe a raised exception as a Fault.

    The location is the innermost traceback frame, when there is one.
    """
    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    location = None
    if exc.__traceback__ is not None:
        frames = traceback.extract_tb(exc.__traceback__)
        if frames:
            location = f"{frames[-1].filename}:{frames[-1].lineno}"
    return Fault(message=message, location=location)


def to_fault(item: Any) -> Fault:
    """Normalize one engine-reported fault."""
    if isinstance(item, Fault):
        return item
    if isinstance(item, BaseException):
        return fault_from_exception(item)
    if isinstance(item, str):
        return Fault(message=item)
    message = getattr(item, "message", None)
    if message is not None:
        location = getattr(item, "location", None)
        return Fault(message=str(message), location=str(location) if location else None)
    return Fault(message=str(item))


def aggregate(faults: Any) -> ErrorReport:
    """Merge reported faults into a single report, order preserved.

    `None` and empty input give an empty report; callers only build a
    Failure when the report has entries. A single fault (a string, an
    exception, a Fault) counts as a list of one.
    """
    if faults is None:
        return ErrorReport()
    if isinstance(faults, str | Fault) or not isinstance(faults, Iterable):
        return ErrorReport(faults=(to_fault(faults),))
    return ErrorReport(faults=tuple(to_fault(item) for item in faults))
