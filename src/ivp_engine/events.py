# ivp_engine/src/ivp_engine/events.py
"""Event definitions and the event engine.

Events interrupt, modify or terminate a trajectory. Three kinds are supported:

- :class:`ContinuousEvent`: fires where ``condition(t, u)`` crosses zero. The
  crossing time is located by bracketed root finding on the accepted step's
  dense output, so event times are accurate to ``event_time_tolerance`` rather
  than to the step size.
- :class:`DiscreteEvent`: fires at the end of any accepted step where
  ``predicate(t, u)`` is true. No time search.
- :class:`PresetTimeEvent`: fires at fixed times. The integration loop clamps
  steps so that these times are hit exactly.

Per-event state machine (inspectable through :attr:`EventEngine.states`)::

    ARMED -> LOCATING -> FIRED -> ARMED
                          \\-> TERMINATED   (effect requested stop)

Crossing policy:
    - A zero at the start of a step is never a crossing: it was already handled
      by the previous step's end check (or it is the initial condition).
    - A zero at the end of a step is a crossing (fired once; the next step then
      starts on a zero, which is ignored).
    - The located time is the end of the final bracket on the *post-crossing*
      side, so a restarted trajectory does not see the same crossing again.
    - Crossings inside one step are ordered by time; ties are broken by
      registration order.

Effects receive an :class:`IntegratorHandle`, a narrow mutation surface: the
state (mutable copy), read-only time and parameters, a step-size override and
a termination flag. When an effect changes the state or terminates, the rest of
the step after the event time is discarded and the loop restarts from the
event; later crossings in that step are dropped and re-detected from the new
state. Events tied at that same time still fire, in order, against the state
left by the previous effect.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Literal, TypeAlias

import numpy as np
from scipy.optimize import brentq

from .errors import PossibleMissedEventWarning

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_DIRECTION_ERROR: Final[str] = "direction must be -1, 0 or +1; got {direction!r}"
_PRESET_TIMES_ERROR: Final[str] = "PresetTimeEvent needs finite times; got {times!r}"
_EVENT_TYPE_ERROR: Final[str] = (
    "events must be ContinuousEvent, DiscreteEvent or PresetTimeEvent; got {typ}"
)
_ROOTFIND_METHOD_ERROR: Final[str] = (
    "rootfind_method must be 'brent' or 'bisection'; got {method!r}"
)
_TIME_TOL_ERROR: Final[str] = "event_time_tolerance must be > 0; got {value!r}"
_MISSED_EVENT_WARNING: Final[str] = (
    "Event {name!r} condition has the same sign at t={t_start!r} and t={t_end!r} "
    "but the opposite sign at the step midpoint; a double crossing may have been "
    "missed. Reduce max_step to resolve it."
)
_NON_FINITE_CONDITION_ERROR: Final[str] = (
    "Event {name!r} condition returned a non-finite value at t={t!r}"
)

_MAX_BISECTIONS: Final[int] = 200


# =============================================================================
# Enums / small records
# =============================================================================


class EventKind(StrEnum):
    """Kind of an event definition."""

    CONTINUOUS = "continuous"
    DISCRETE = "discrete"


class SavePosition(StrEnum):
    """Which states are recorded as samples when an event fires."""

    NONE = "none"
    BEFORE = "before"
    AFTER = "after"
    BOTH = "both"

    @property
    def save_before(self) -> bool:
        """Whether the pre-effect state is recorded."""
        return self in {SavePosition.BEFORE, SavePosition.BOTH}

    @property
    def save_after(self) -> bool:
        """Whether the post-effect state is recorded."""
        return self in {SavePosition.AFTER, SavePosition.BOTH}


class EventState(StrEnum):
    """Per-event state machine states."""

    ARMED = "armed"
    LOCATING = "locating"
    FIRED = "fired"
    TERMINATED = "terminated"


RootfindMethod: TypeAlias = Literal["brent", "bisection"]


class IntegratorHandle:
    """Narrow mutation surface handed to event effects.

    Attributes:
        u: State at the event time; effects may modify it in place or assign a
            new array of the same shape.
    """

    __slots__ = ("_params", "_step", "_t", "_terminated", "u")

    def __init__(self, t: float, u: NDArray[np.floating], params: Any) -> None:  # noqa: ANN401
        """Initialize the handle.

        Args:
            t: Event time.
            u: State at the event time (the handle owns this array).
            params: Problem parameters (read-only by convention).
        """
        self._t = float(t)
        self.u = u
        self._params = params
        self._terminated = False
        self._step: float | None = None

    @property
    def t(self) -> float:
        """Event time."""
        return self._t

    @property
    def params(self) -> Any:  # noqa: ANN401
        """Problem parameters."""
        return self._params

    @property
    def terminated(self) -> bool:
        """Whether termination was requested."""
        return self._terminated

    @property
    def step_override(self) -> float | None:
        """Step size requested for the restart, if any."""
        return self._step

    def terminate(self) -> None:
        """Request that integration stops at the event time."""
        self._terminated = True

    def set_step(self, h: float) -> None:
        """Override the step size used when integration restarts.

        Args:
            h: Step magnitude (the integration direction is applied by the loop).
        """
        self._step = abs(float(h))


Effect: TypeAlias = Callable[[IntegratorHandle], None]
Condition: TypeAlias = Callable[[float, "NDArray[np.floating]"], float]
Predicate: TypeAlias = Callable[[float, "NDArray[np.floating]"], bool]


def terminate(handle: IntegratorHandle) -> None:
    """Effect that stops integration.

    Args:
        handle: Integrator handle.
    """
    handle.terminate()


# =============================================================================
# Event definitions
# =============================================================================


@dataclass(frozen=True, slots=True)
class ContinuousEvent:
    """Zero-crossing event.

    Attributes:
        condition: Scalar function ``g(t, u)``; fires where it crosses zero.
        effect: Function receiving an :class:`IntegratorHandle`, or None.
        direction: 0 for any crossing, +1 for upward only, -1 for downward only.
        rootfind: Locate the crossing time (True) or fire at the step end.
        save_position: Samples recorded when the event fires.
        terminal: Stop integration after the effect.
        name: Identifier used in the event log.
    """

    condition: Condition
    effect: Effect | None = None
    direction: int = 0
    rootfind: bool = True
    save_position: SavePosition = SavePosition.BOTH
    terminal: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        """Validate the crossing direction.

        Raises:
            ValueError: If ``direction`` is not in {-1, 0, +1}.
        """
        if self.direction not in {-1, 0, 1}:
            raise ValueError(_DIRECTION_ERROR.format(direction=self.direction))
        object.__setattr__(self, "save_position", SavePosition(self.save_position))

    @property
    def kind(self) -> EventKind:
        """Event kind."""
        return EventKind.CONTINUOUS


@dataclass(frozen=True, slots=True)
class DiscreteEvent:
    """Predicate event checked at the end of every accepted step.

    Attributes:
        predicate: Boolean function ``p(t, u)``.
        effect: Function receiving an :class:`IntegratorHandle`, or None.
        save_position: Samples recorded when the event fires.
        terminal: Stop integration after the effect.
        name: Identifier used in the event log.
    """

    predicate: Predicate
    effect: Effect | None = None
    save_position: SavePosition = SavePosition.BOTH
    terminal: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        """Normalize the save position."""
        object.__setattr__(self, "save_position", SavePosition(self.save_position))

    @property
    def kind(self) -> EventKind:
        """Event kind."""
        return EventKind.DISCRETE


@dataclass(frozen=True, slots=True)
class PresetTimeEvent:
    """Discrete event firing at fixed times.

    Attributes:
        times: Times at which the event fires (added to the loop's stop points).
        effect: Function receiving an :class:`IntegratorHandle`, or None.
        save_position: Samples recorded when the event fires.
        terminal: Stop integration after the effect.
        name: Identifier used in the event log.
    """

    times: tuple[float, ...]
    effect: Effect | None = None
    save_position: SavePosition = SavePosition.BOTH
    terminal: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        """Normalize and validate the firing times.

        Raises:
            ValueError: If any time is not finite.
        """
        times = tuple(float(t) for t in np.atleast_1d(np.asarray(self.times, dtype=float)))
        if not all(np.isfinite(times)):
            raise ValueError(_PRESET_TIMES_ERROR.format(times=self.times))
        object.__setattr__(self, "times", tuple(sorted(set(times))))
        object.__setattr__(self, "save_position", SavePosition(self.save_position))

    @property
    def kind(self) -> EventKind:
        """Event kind."""
        return EventKind.DISCRETE


Event: TypeAlias = ContinuousEvent | DiscreteEvent | PresetTimeEvent


@dataclass(frozen=True, slots=True)
class EventRecord:
    """One entry of the event log.

    Attributes:
        t: Time at which the event fired.
        name: Event name (registration index if unnamed).
        index: Registration index.
        kind: Event kind.
        modified: Whether the effect changed the state.
        terminated: Whether the effect requested termination.
    """

    t: float
    name: str
    index: int
    kind: EventKind
    modified: bool
    terminated: bool


@dataclass(slots=True)
class EventOutcome:
    """Result of processing one accepted step.

    Attributes:
        records: Events fired during the step, in firing order.
        samples: ``(t, u)`` samples requested through save positions.
        cut_time: Event time at which the step is truncated (state jump or
            termination), or None if the whole step stands.
        state: State to restart from at ``cut_time``.
        state_before: Pre-effect state at ``cut_time`` (end of the kept segment).
        terminated: Whether integration must stop at ``cut_time``.
        step_override: Step magnitude requested by an effect, if any.
    """

    records: list[EventRecord] = field(default_factory=list)
    samples: list[tuple[float, NDArray[np.floating]]] = field(default_factory=list)
    cut_time: float | None = None
    state: NDArray[np.floating] | None = None
    state_before: NDArray[np.floating] | None = None
    terminated: bool = False
    step_override: float | None = None


# =============================================================================
# Root finding on dense output
# =============================================================================


def _sign(x: float) -> float:
    return float(np.sign(x))


def _bisect_post_side(
    func: Callable[[float], float],
    a: float,
    b: float,
    g_a: float,
    tol: float,
) -> float:
    """Shrink ``[a, b]`` around a sign change and return the post-crossing end.

    ``func(a)`` has the pre-crossing sign ``g_a``; ``func(b)`` is zero or has the
    opposite sign.
    """
    s_a = _sign(g_a)
    for _ in range(_MAX_BISECTIONS):
        if abs(b - a) <= tol:
            break
        mid = a + 0.5 * (b - a)
        if mid in {a, b}:
            break
        g_mid = func(mid)
        if _sign(g_mid) == s_a:
            a = mid
        else:
            b = mid
    return b


def locate_crossing(  # noqa: PLR0913
    func: Callable[[float], float],
    t_start: float,
    t_end: float,
    g_start: float,
    g_end: float,
    *,
    tol: float,
    method: RootfindMethod = "brent",
) -> float:
    """Locate a sign change of ``func`` inside ``[t_start, t_end]``.

    Args:
        func: Scalar function of time (condition composed with dense output).
        t_start: Step start (pre-crossing side).
        t_end: Step end.
        g_start: ``func(t_start)``; must be non-zero.
        g_end: ``func(t_end)``; zero or of opposite sign to ``g_start``.
        tol: Time tolerance.
        method: "brent" (scipy ``brentq`` + post-side polish) or "bisection".

    Raises:
        ValueError: If ``method`` is unknown.

    Returns:
        A time within ``tol`` of the crossing on the post-crossing side.
    """
    if g_end == 0.0:
        return t_end

    if method == "bisection":
        return _bisect_post_side(func, t_start, t_end, g_start, tol)
    if method != "brent":
        raise ValueError(_ROOTFIND_METHOD_ERROR.format(method=method))

    lo, hi = sorted((t_start, t_end))
    root = float(brentq(func, lo, hi, xtol=tol, rtol=4.0 * np.finfo(float).eps))
    if root == t_start:
        return _bisect_post_side(func, t_start, t_end, g_start, tol)

    g_root = func(root)
    if _sign(g_root) != _sign(g_start):
        return root

    # brentq landed on the pre-crossing side; nudge across or fall back.
    step = float(np.copysign(tol, t_end - t_start))
    nudged = root + step
    if (nudged - t_end) * step < 0.0 and _sign(func(nudged)) != _sign(g_start):
        return nudged
    return _bisect_post_side(func, root, t_end, g_root, tol)


# =============================================================================
# EventEngine
# =============================================================================


@dataclass(slots=True)
class _Candidate:
    t: float
    index: int


class EventEngine:
    """Evaluates event definitions against accepted steps and applies effects."""

    def __init__(
        self,
        events: Sequence[Event] = (),
        *,
        time_tolerance: float = 1e-10,
        rootfind_method: RootfindMethod = "brent",
    ) -> None:
        """Initialize EventEngine.

        Args:
            events: Event definitions, in priority (registration) order.
            time_tolerance: Absolute tolerance on located event times.
            rootfind_method: "brent" or "bisection".

        Raises:
            TypeError: If an entry is not an event definition.
            ValueError: If the tolerance or root-finding method is invalid.
        """
        for ev in events:
            if not isinstance(ev, ContinuousEvent | DiscreteEvent | PresetTimeEvent):
                raise TypeError(_EVENT_TYPE_ERROR.format(typ=type(ev).__name__))
        if not time_tolerance > 0.0:
            raise ValueError(_TIME_TOL_ERROR.format(value=time_tolerance))
        if rootfind_method not in {"brent", "bisection"}:
            raise ValueError(_ROOTFIND_METHOD_ERROR.format(method=rootfind_method))

        self.events: tuple[Event, ...] = tuple(events)
        self.time_tolerance = float(time_tolerance)
        self.rootfind_method: RootfindMethod = rootfind_method
        self.states: list[EventState] = [EventState.ARMED] * len(self.events)
        self.log: list[EventRecord] = []
        self._g_prev: list[float] = [0.0] * len(self.events)
        self._latched: dict[int, float] = {}
        self._direction = 1.0

    def __len__(self) -> int:
        """Return the number of registered events."""
        return len(self.events)

    def name_of(self, index: int) -> str:
        """Return the log name of the event at ``index``."""
        name = self.events[index].name
        return name if name is not None else str(index)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def preset_times(self) -> tuple[float, ...]:
        """Return all preset firing times, sorted ascending."""
        times: set[float] = set()
        for ev in self.events:
            if isinstance(ev, PresetTimeEvent):
                times.update(ev.times)
        return tuple(sorted(times))

    def _condition(self, index: int, t: float, u: NDArray[np.floating]) -> float:
        ev = self.events[index]
        assert isinstance(ev, ContinuousEvent)  # noqa: S101
        g = float(ev.condition(float(t), u))
        if not np.isfinite(g):
            raise ValueError(_NON_FINITE_CONDITION_ERROR.format(name=self.name_of(index), t=t))
        return g

    def reset(self, t: float, u: NDArray[np.floating], *, direction: float | None = None) -> None:
        """Re-evaluate continuous conditions at a (re)start point.

        Continuous events that fired at the cut time which led to this restart
        are treated as sitting on zero, so their own crossing is not detected a
        second time on the first step after the restart.

        Args:
            t: Start time.
            u: State at ``t``.
            direction: Integration direction (+1/-1); unchanged if None.
        """
        if direction is not None:
            self._direction = float(direction)
        for i, ev in enumerate(self.events):
            if isinstance(ev, ContinuousEvent):
                self._g_prev[i] = self._condition(i, t, u)
                pre_sign = self._latched.get(i)
                if pre_sign is not None and _sign(self._g_prev[i]) != pre_sign:
                    # Still on the post-crossing side of the root just fired.
                    self._g_prev[i] = 0.0
            if self.states[i] != EventState.TERMINATED:
                self.states[i] = EventState.ARMED
        self._latched = {}

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    @staticmethod
    def _direction_allows(g0: float, g1: float, direction: int) -> bool:
        if direction == 0:
            return True
        if direction > 0:
            return g0 < 0.0 <= g1
        return g0 > 0.0 >= g1

    def _check_missed(  # noqa: PLR0913
        self,
        index: int,
        evaluate: Callable[[float], NDArray[np.floating]],
        t_start: float,
        t_end: float,
        g0: float,
        g1: float,
    ) -> None:
        if g0 == 0.0 or g1 == 0.0:
            return
        t_mid = t_start + 0.5 * (t_end - t_start)
        g_mid = self._condition(index, t_mid, evaluate(t_mid))
        if g_mid != 0.0 and _sign(g_mid) != _sign(g0):
            warnings.warn(
                _MISSED_EVENT_WARNING.format(
                    name=self.name_of(index), t_start=t_start, t_end=t_end
                ),
                PossibleMissedEventWarning,
                stacklevel=4,
            )

    def _detect(  # noqa: PLR0913
        self,
        evaluate: Callable[[float], NDArray[np.floating]],
        t_start: float,
        t_end: float,
        u_end: NDArray[np.floating],
        g_end: list[float],
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for i, ev in enumerate(self.events):
            if isinstance(ev, ContinuousEvent):
                g0 = self._g_prev[i]
                g1 = self._condition(i, t_end, u_end)
                g_end[i] = g1

                crossed = g0 != 0.0 and (g1 == 0.0 or _sign(g0) != _sign(g1))
                if not crossed:
                    self._check_missed(i, evaluate, t_start, t_end, g0, g1)
                    continue
                if not self._direction_allows(g0, g1, ev.direction):
                    continue

                self.states[i] = EventState.LOCATING
                if ev.rootfind:

                    def g_of_t(t: float, i: int = i) -> float:
                        return self._condition(i, t, evaluate(t))

                    t_e = locate_crossing(
                        g_of_t,
                        t_start,
                        t_end,
                        g0,
                        g1,
                        tol=self.time_tolerance,
                        method=self.rootfind_method,
                    )
                else:
                    t_e = t_end
                candidates.append(_Candidate(t=t_e, index=i))

            elif isinstance(ev, DiscreteEvent):
                if bool(ev.predicate(float(t_end), u_end)):
                    candidates.append(_Candidate(t=t_end, index=i))

            elif t_end in ev.times:
                candidates.append(_Candidate(t=t_end, index=i))

        candidates.sort(key=lambda c: (self._direction * c.t, c.index))
        return candidates

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def process(  # noqa: PLR0913
        self,
        evaluate: Callable[[float], NDArray[np.floating]],
        t_start: float,
        t_end: float,
        u_end: NDArray[np.floating],
        params: Any,  # noqa: ANN401
    ) -> EventOutcome:
        """Detect, locate and fire events for one accepted step.

        Args:
            evaluate: Dense output of the step, ``evaluate(t) -> u``.
            t_start: Step start.
            t_end: Step end.
            u_end: Accepted state at ``t_end``.
            params: Problem parameters (exposed to effects).

        Returns:
            The outcome; ``cut_time`` is set when the step must be truncated.
        """
        outcome = EventOutcome()
        if not self.events:
            return outcome

        g_end = list(self._g_prev)
        candidates = self._detect(evaluate, t_start, t_end, u_end, g_end)

        current: NDArray[np.floating] | None = None
        fired: list[_Candidate] = []
        for cand in candidates:
            if outcome.cut_time is not None and cand.t != outcome.cut_time:
                # Later crossings are re-detected after the restart.
                self.states[cand.index] = EventState.ARMED
                continue
            if outcome.terminated:
                self.states[cand.index] = EventState.ARMED
                continue

            u_before = evaluate(cand.t) if current is None else current.copy()
            record, u_after, handle = self._fire(cand, u_before, params)
            outcome.records.append(record)
            fired.append(cand)

            ev = self.events[cand.index]
            if ev.save_position.save_before:
                outcome.samples.append((cand.t, u_before.copy()))
            if ev.save_position.save_after:
                outcome.samples.append((cand.t, u_after.copy()))

            if record.modified or record.terminated:
                if outcome.cut_time is None:
                    outcome.cut_time = cand.t
                    outcome.state_before = u_before.copy()
                current = u_after
                outcome.state = u_after.copy()
                outcome.terminated = outcome.terminated or record.terminated
                if handle.step_override is not None:
                    outcome.step_override = handle.step_override
            elif outcome.cut_time is not None:
                current = u_after

        if outcome.cut_time is None:
            self._g_prev = g_end
        else:
            self._latched = {
                c.index: _sign(self._g_prev[c.index])
                for c in fired
                if c.t == outcome.cut_time and isinstance(self.events[c.index], ContinuousEvent)
            }
        return outcome

    def _fire(
        self,
        cand: _Candidate,
        u_before: NDArray[np.floating],
        params: Any,  # noqa: ANN401
    ) -> tuple[EventRecord, NDArray[np.floating], IntegratorHandle]:
        ev = self.events[cand.index]
        handle = IntegratorHandle(cand.t, u_before.copy(), params)
        if ev.effect is not None:
            ev.effect(handle)
        if ev.terminal:
            handle.terminate()

        u_after = np.asarray(handle.u, dtype=np.float64).reshape(u_before.shape)
        modified = not np.array_equal(u_after, u_before)
        record = EventRecord(
            t=cand.t,
            name=self.name_of(cand.index),
            index=cand.index,
            kind=ev.kind,
            modified=modified,
            terminated=handle.terminated,
        )
        self.log.append(record)
        self.states[cand.index] = (
            EventState.TERMINATED if handle.terminated else EventState.FIRED
        )
        logger.debug(
            "Event %s fired at t=%r (modified=%s, terminated=%s)",
            record.name,
            record.t,
            modified,
            handle.terminated,
        )
        if not handle.terminated:
            self.states[cand.index] = EventState.ARMED
        return record, u_after, handle
