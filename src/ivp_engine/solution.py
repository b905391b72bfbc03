# ivp_engine/src/ivp_engine/solution.py
"""Solution object returned by the integration loop.

A :class:`Solution` bundles the accepted samples ``(t_i, u_i)``, the dense-output
segment store (when ``dense=True``), the event log, per-run statistics and a
status tag. It is always returned, including for terminated and failed runs, so
already computed data is never lost.

Query semantics:
    - ``solution(t)`` evaluates the trajectory anywhere in the integrated span.
      With ``dense=False`` the store is rebuilt lazily from the samples with
      linear interpolants.
    - At a state jump produced by an event effect the trajectory is
      right-continuous: ``solution(t_e)`` returns the post-effect state. The
      pre-effect state is available as a sample when the event saves it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final

import numpy as np

from .dense_output import Segment, SegmentStore
from .errors import OutOfRangeError
from .interpolants import PolynomialInterpolant

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

    from .errors import IntegrationError
    from .events import EventRecord


_NO_SAMPLES_ERROR: Final[str] = "Solution has no samples to interpolate"


class ReturnCode(StrEnum):
    """Status tag of a finished integration."""

    SUCCESS = "success"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(slots=True)
class SolverStats:
    """Per-run counters.

    Attributes:
        n_rhs: Right-hand side evaluations.
        n_steps: Attempted steps (accepted + rejected).
        n_accepted: Accepted steps.
        n_rejected: Rejected steps.
        n_events: Fired events.
    """

    n_rhs: int = 0
    n_steps: int = 0
    n_accepted: int = 0
    n_rejected: int = 0
    n_events: int = 0

    def as_dict(self) -> dict[str, int]:
        """Return the counters as a plain dict."""
        return asdict(self)


class Solution:
    """Continuously queryable result of one trajectory."""

    def __init__(  # noqa: PLR0913
        self,
        t: Sequence[float],
        u: Sequence[NDArray[np.floating]],
        *,
        store: SegmentStore | None,
        status: ReturnCode,
        events: Sequence[EventRecord] = (),
        stats: SolverStats | None = None,
        error: IntegrationError | None = None,
        message: str = "",
        extrapolation_tolerance: float = 1e-10,
    ) -> None:
        """Initialize Solution.

        Args:
            t: Sample times in integration order.
            u: Sample states.
            store: Dense-output store, or None for sample-only runs.
            status: Return code.
            events: Event log.
            stats: Run statistics.
            error: Exception that ended a failed run.
            message: Human-readable termination reason.
            extrapolation_tolerance: Margin used for the lazily built store.
        """
        self._t = np.asarray(t, dtype=np.float64).reshape(-1)
        self._t.setflags(write=False)
        if len(u):
            self._u = np.vstack([np.asarray(row, dtype=np.float64) for row in u])
        else:
            self._u = np.empty((0, 0), dtype=np.float64)
        self._u.setflags(write=False)

        self._store = store
        self.dense = store is not None
        self.status = ReturnCode(status)
        self.events: tuple[EventRecord, ...] = tuple(events)
        self.stats = stats if stats is not None else SolverStats()
        self.error = error
        self.message = message
        self._extrapolation_tolerance = extrapolation_tolerance

    def __repr__(self) -> str:
        """Return a short summary."""
        return (
            f"Solution(status={self.status.value!r}, n_samples={len(self)}, "
            f"n_events={len(self.events)})"
        )

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        """Return the number of samples."""
        return int(self._t.size)

    def __getitem__(self, idx: int) -> tuple[float, NDArray[np.floating]]:
        """Return sample ``idx`` as ``(t_i, u_i)``."""
        return float(self._t[idx]), self._u[idx].copy()

    @property
    def t(self) -> NDArray[np.floating]:
        """Sample times (read-only)."""
        return self._t

    @property
    def u(self) -> NDArray[np.floating]:
        """Sample states, shape ``(n_samples, n_states)`` (read-only)."""
        return self._u

    @property
    def success(self) -> bool:
        """True if integration reached the final time."""
        return self.status == ReturnCode.SUCCESS

    # ------------------------------------------------------------------
    # Dense output
    # ------------------------------------------------------------------

    @property
    def segments(self) -> SegmentStore:
        """Segment store backing :meth:`__call__`.

        Raises:
            OutOfRangeError: If a sample-only solution has no samples.
        """
        if self._store is None:
            self._store = self._store_from_samples()
        return self._store

    def _store_from_samples(self) -> SegmentStore:
        store = SegmentStore(extrapolation_tolerance=self._extrapolation_tolerance)
        if not len(self):
            raise OutOfRangeError(_NO_SAMPLES_ERROR)
        for i in range(len(self) - 1):
            t0, t1 = float(self._t[i]), float(self._t[i + 1])
            if t0 == t1:
                continue
            u0, u1 = self._u[i], self._u[i + 1]
            store.append(
                Segment(t0, t1, u0, u1, PolynomialInterpolant.linear(t0, t1, u0, u1))
            )
        return store

    def __call__(self, t: ArrayLike, derivative_order: int = 0) -> NDArray[np.floating]:
        """Evaluate the trajectory.

        Args:
            t: Scalar time or 1D array of times.
            derivative_order: 0 for the state, k for the k-th time derivative.

        Raises:
            OutOfRangeError: If a time lies outside the integrated span.

        Returns:
            Shape ``(n_states,)`` for a scalar time, ``(len(t), n_states)``
            otherwise.
        """
        if np.ndim(t) == 0:
            if len(self) == 1 and float(t) == float(self._t[0]) and derivative_order == 0:
                return self._u[0].copy()
            return self.segments.evaluate(float(t), derivative_order)
        return self.segments.evaluate_many(t, derivative_order)
