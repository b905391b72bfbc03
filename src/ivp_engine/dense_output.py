# ivp_engine/src/ivp_engine/dense_output.py
"""Dense-output segment store.

Each accepted step is recorded as an immutable :class:`Segment` holding the step
boundaries, the boundary states and the stepper's interpolation data. The
:class:`SegmentStore` keeps segments in integration order and answers point and
derivative queries anywhere in the integrated span:

- ``append`` enforces contiguity (``segment.t_start == previous.t_end``) and
  raises :class:`~ivp_engine.errors.DiscontinuityError` otherwise.
- ``evaluate`` locates the owning segment with a binary search over segment
  start times (``bisect``) and delegates to its interpolant. Queries exactly at a
  segment boundary return the stored boundary state, so samples are reproduced
  exactly.

Backward integration is supported by searching on ``direction * t``.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np

from .errors import DiscontinuityError, OutOfRangeError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import ArrayLike, NDArray

    from .interpolants import Interpolant


_NON_CONTIGUOUS_ERROR: Final[str] = (
    "Segment starting at t={t_start!r} does not continue the store, which ends at "
    "t={t_end!r}"
)
_DIRECTION_ERROR: Final[str] = (
    "Segment [{t_start!r}, {t_end!r}] runs against the store direction ({direction:+.0f})"
)
_EMPTY_SEGMENT_ERROR: Final[str] = "Segment [{t_start!r}, {t_end!r}] has zero length"
_EMPTY_STORE_ERROR: Final[str] = "Dense output is empty; nothing has been integrated yet"
_OUT_OF_RANGE_ERROR: Final[str] = (
    "t={t!r} is outside the integrated span [{t_first!r}, {t_last!r}]"
)
_EXTRAP_TOL_ERROR: Final[str] = "extrapolation_tolerance must be >= 0; got {value!r}"


@dataclass(frozen=True, slots=True)
class Segment:
    """Immutable record of one accepted step.

    Attributes:
        t_start: Time at which the step begins.
        t_end: Time at which the step ends.
        u_start: State at ``t_start``.
        u_end: State at ``t_end``.
        interpolant: Stepper-emitted interpolation data over the step.
    """

    t_start: float
    t_end: float
    u_start: NDArray[np.floating]
    u_end: NDArray[np.floating]
    interpolant: Interpolant

    def __post_init__(self) -> None:
        """Freeze boundary states."""
        for name in ("u_start", "u_end"):
            arr = np.array(getattr(self, name), dtype=np.float64, copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def step(self) -> float:
        """Signed length of the segment."""
        return self.t_end - self.t_start

    def contains(self, t: float) -> bool:
        """Return True if ``t`` lies inside the closed segment."""
        lo, hi = sorted((self.t_start, self.t_end))
        return lo <= t <= hi

    def evaluate(self, t: float, derivative_order: int = 0) -> NDArray[np.floating]:
        """Evaluate the segment at ``t``.

        Args:
            t: Query time.
            derivative_order: 0 for the state, k for the k-th time derivative.

        Returns:
            New array with the state (or derivative) at ``t``.
        """
        if derivative_order == 0:
            if t == self.t_start:
                return self.u_start.copy()
            if t == self.t_end:
                return self.u_end.copy()
        return np.asarray(self.interpolant(t, derivative_order), dtype=np.float64)


class SegmentStore:
    """Append-only, binary-searchable collection of contiguous segments."""

    def __init__(self, *, extrapolation_tolerance: float = 1e-10) -> None:
        """Initialize an empty store.

        Args:
            extrapolation_tolerance: Queries may exceed the integrated span by
                this fraction of its length.

        Raises:
            ValueError: If the tolerance is negative.
        """
        if not extrapolation_tolerance >= 0.0:
            raise ValueError(_EXTRAP_TOL_ERROR.format(value=extrapolation_tolerance))
        self.extrapolation_tolerance = float(extrapolation_tolerance)
        self._segments: list[Segment] = []
        self._keys: list[float] = []
        self._direction: float = 0.0

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        """Return the number of stored segments."""
        return len(self._segments)

    def __iter__(self) -> Iterator[Segment]:
        """Iterate over segments in integration order."""
        return iter(self._segments)

    def __getitem__(self, idx: int) -> Segment:
        """Return the segment at position ``idx``."""
        return self._segments[idx]

    @property
    def direction(self) -> float:
        """+1.0 forward, -1.0 backward, 0.0 while empty."""
        return self._direction

    @property
    def t_first(self) -> float:
        """Start time of the first segment.

        Raises:
            OutOfRangeError: If the store is empty.
        """
        if not self._segments:
            raise OutOfRangeError(_EMPTY_STORE_ERROR)
        return self._segments[0].t_start

    @property
    def t_last(self) -> float:
        """End time of the last segment.

        Raises:
            OutOfRangeError: If the store is empty.
        """
        if not self._segments:
            raise OutOfRangeError(_EMPTY_STORE_ERROR)
        return self._segments[-1].t_end

    def boundaries(self) -> NDArray[np.floating]:
        """Return all segment boundary times, in integration order."""
        if not self._segments:
            return np.empty(0, dtype=np.float64)
        times = [self._segments[0].t_start]
        times.extend(seg.t_end for seg in self._segments)
        return np.asarray(times, dtype=np.float64)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, segment: Segment) -> None:
        """Append a segment that continues the store.

        Args:
            segment: Segment to append.

        Raises:
            DiscontinuityError: If the segment is empty, runs against the store
                direction, or does not start where the last segment ended.
        """
        step = segment.step
        if step == 0.0:
            raise DiscontinuityError(
                _EMPTY_SEGMENT_ERROR.format(t_start=segment.t_start, t_end=segment.t_end),
                t=segment.t_start,
                state=segment.u_start,
            )
        direction = 1.0 if step > 0.0 else -1.0

        if self._segments:
            last = self._segments[-1]
            if segment.t_start != last.t_end:
                raise DiscontinuityError(
                    _NON_CONTIGUOUS_ERROR.format(
                        t_start=segment.t_start, t_end=last.t_end
                    ),
                    t=segment.t_start,
                    state=segment.u_start,
                )
            if direction != self._direction:
                raise DiscontinuityError(
                    _DIRECTION_ERROR.format(
                        t_start=segment.t_start,
                        t_end=segment.t_end,
                        direction=self._direction,
                    ),
                    t=segment.t_start,
                    state=segment.u_start,
                )
        else:
            self._direction = direction

        self._segments.append(segment)
        self._keys.append(direction * segment.t_start)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _margin(self) -> float:
        return self.extrapolation_tolerance * abs(self.t_last - self.t_first)

    def locate(self, t: float) -> int:
        """Return the index of the segment owning ``t``.

        A time equal to a shared boundary belongs to the segment starting there
        (the last segment owns the final time). Where an event effect made the
        state jump, dense output is therefore right-continuous.

        Args:
            t: Query time.

        Raises:
            OutOfRangeError: If ``t`` is outside the permitted range.

        Returns:
            Segment index.
        """
        if not self._segments:
            raise OutOfRangeError(_EMPTY_STORE_ERROR, t=t)

        t = float(t)
        key = self._direction * t
        margin = self._margin()
        first = self._direction * self.t_first
        last = self._direction * self.t_last
        if not (first - margin <= key <= last + margin):
            raise OutOfRangeError(
                _OUT_OF_RANGE_ERROR.format(t=t, t_first=self.t_first, t_last=self.t_last),
                t=t,
            )

        idx = bisect_right(self._keys, key) - 1
        return max(idx, 0)

    def evaluate(self, t: float, derivative_order: int = 0) -> NDArray[np.floating]:
        """Evaluate the trajectory (or a time derivative) at ``t``.

        Args:
            t: Query time within the integrated span (plus tolerance).
            derivative_order: 0 for the state, k for the k-th derivative.

        Returns:
            New array with the interpolated state.
        """
        return self._segments[self.locate(t)].evaluate(float(t), derivative_order)

    def evaluate_many(
        self,
        ts: ArrayLike,
        derivative_order: int = 0,
    ) -> NDArray[np.floating]:
        """Evaluate at several times.

        Args:
            ts: 1D sequence of query times.
            derivative_order: 0 for the state, k for the k-th derivative.

        Returns:
            Array of shape ``(len(ts), n_states)``.
        """
        times = np.atleast_1d(np.asarray(ts, dtype=np.float64))
        rows = [self.evaluate(float(t), derivative_order) for t in times]
        if not rows:
            n_states = self._segments[0].u_start.size if self._segments else 0
            return np.empty((0, n_states), dtype=np.float64)
        return np.vstack(rows)
