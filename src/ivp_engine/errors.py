# ivp_engine/src/ivp_engine/errors.py
"""Error and warning types raised by the integration engine.

This module centralizes:
- the exception taxonomy shared by the controller, segment store, event engine
  and integration loop, and
- small helpers to format fault locations (time + state) consistently.

Propagation policy:
- Step rejections are recovered inside the loop and never raised.
- Every other failure carries the time and state at which it occurred so that
  callers can diagnose a partial Solution without re-running it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

_STATE_PREVIEW_LEN: Final[int] = 6


def format_state(state: NDArray[np.floating] | None) -> str:
    """Render a short, single-line preview of a state vector.

    Args:
        state: State vector, or None.

    Returns:
        Human-readable preview (truncated for long states).
    """
    if state is None:
        return "None"
    arr = np.asarray(state).ravel()
    if arr.size <= _STATE_PREVIEW_LEN:
        return np.array2string(arr, precision=6, separator=", ")
    head = np.array2string(arr[:_STATE_PREVIEW_LEN], precision=6, separator=", ")
    return f"{head[:-1]}, ... ({arr.size} components)]"


class IntegrationError(Exception):
    """Base exception for ivp_engine failures.

    Attributes:
        t: Time at which the fault occurred (None if not applicable).
        state: State at which the fault occurred (None if not applicable).
    """

    def __init__(
        self,
        message: str,
        *,
        t: float | None = None,
        state: NDArray[np.floating] | None = None,
    ) -> None:
        """Initialize the error with an optional fault location.

        Args:
            message: Human-readable description.
            t: Time of the fault.
            state: State at the fault (copied).
        """
        self.t = None if t is None else float(t)
        self.state = None if state is None else np.array(state, copy=True)
        if self.t is not None:
            message = f"{message} (t={self.t!r}, state={format_state(self.state)})"
        super().__init__(message)


class ToleranceError(IntegrationError, ValueError):
    """Raised for invalid tolerances or a non-computable error norm."""


class StepSizeError(IntegrationError):
    """Raised when the step collapses or the consecutive-rejection limit is hit."""


class DiscontinuityError(IntegrationError):
    """Raised when a segment is appended out of contiguity (internal invariant)."""


class OutOfRangeError(IntegrationError, ValueError):
    """Raised when dense output is queried outside the integrated span."""


class NonFiniteStateError(IntegrationError):
    """Raised when a stepper hands back a non-finite candidate state."""


class MaxIterationsError(IntegrationError):
    """Raised when the loop exceeds its configured iteration budget."""


class PossibleMissedEventWarning(RuntimeWarning):
    """Warned when an event condition changes sign twice inside one step."""
