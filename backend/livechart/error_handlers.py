"""
LiveChart Core — Rendering-Surface Error Boundary

The computation core never raises on data. The only failures it has to
absorb come from the rendering surface (a pane torn down between two
events, a series removed twice). Those are caught here, logged with
context, and never propagated into the engines.
"""

from __future__ import annotations

import traceback
from contextlib import contextmanager
from typing import Optional

import structlog

log = structlog.get_logger(__name__)


class SurfaceError(Exception):
    """Raised by a rendering surface when an operation cannot be applied."""

    def __init__(self, surface_id: str, operation: str, reason: str = ""):
        self.surface_id = surface_id
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Surface '{surface_id}' failed during {operation}" + (f": {reason}" if reason else "")
        )


class SurfaceDisposedError(SurfaceError):
    """Raised when an operation targets a surface that has been disposed."""

    def __init__(self, surface_id: str, operation: str):
        super().__init__(surface_id, operation, reason="surface already disposed")


class SeriesNotFoundError(SurfaceError):
    """Raised when updating or removing a series the surface does not hold."""

    def __init__(self, surface_id: str, operation: str, series_key: str):
        self.series_key = series_key
        super().__init__(surface_id, operation, reason=f"unknown series '{series_key}'")


class BoundaryOutcome:
    """Records whether a guarded surface call succeeded."""

    __slots__ = ("ok", "error")

    def __init__(self):
        self.ok = True
        self.error: Optional[SurfaceError] = None


@contextmanager
def surface_guard(pane_id: str, operation: str, **context):
    """Swallow and log SurfaceError raised inside the block.

    Yields a BoundaryOutcome so callers can react (e.g. mark a pane as
    unmounted) without catching the exception themselves. Any other
    exception type is a bug and propagates.

    Usage::

        with surface_guard("rsi", "set_data") as outcome:
            surface.set_data("rsi", points)
        if not outcome.ok:
            ...
    """
    outcome = BoundaryOutcome()
    try:
        yield outcome
    except SurfaceDisposedError as exc:
        outcome.ok = False
        outcome.error = exc
        log.warning(
            "surface.disposed",
            pane_id=pane_id,
            operation=operation,
            **context,
        )
    except SurfaceError as exc:
        outcome.ok = False
        outcome.error = exc
        log.error(
            "surface.operation_failed",
            pane_id=pane_id,
            operation=operation,
            error=str(exc),
            traceback=traceback.format_exc(),
            **context,
        )
