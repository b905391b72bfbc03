# tests/test_events.py
"""Unit tests for ivp_engine.events.

Coverage:
- Crossing location (brent / bisection, forward / backward, post-crossing side).
- Boundary policy: zero at step start ignored, zero at step end fires.
- Direction filtering, time ordering and registration-order ties.
- Truncation on state change or termination; later crossings dropped.
- Discrete and preset-time events, save positions, missed-crossing warning.
- Definition / engine validation and the integrator handle.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from ivp_engine.errors import PossibleMissedEventWarning
from ivp_engine.events import (
    ContinuousEvent,
    DiscreteEvent,
    EventEngine,
    EventKind,
    EventOutcome,
    EventState,
    IntegratorHandle,
    PresetTimeEvent,
    SavePosition,
    locate_crossing,
    terminate,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _ramp(t: float) -> FloatArray:
    """Dense output of u(t) = t."""
    return np.array([t])


def _level(level: float) -> ContinuousEvent:
    return ContinuousEvent(lambda _t, u: u[0] - level, name=f"level-{level}")


def _process(engine: EventEngine, t0: float = 0.0, t1: float = 1.0) -> EventOutcome:
    engine.reset(t0, _ramp(t0), direction=np.sign(t1 - t0))
    return engine.process(_ramp, t0, t1, _ramp(t1), None)


# -----------------------------------------------------------------------------
# Root finding
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("method", ["brent", "bisection"])
@pytest.mark.parametrize(("t0", "t1"), [(0.0, 1.0), (1.0, 0.0)])
def test_locate_crossing_post_side(method: str, t0: float, t1: float) -> None:
    """The located time is within tol of the root on the post-crossing side."""

    def g(t: float) -> float:
        return t - 0.3

    tol = 1e-10
    t_e = locate_crossing(g, t0, t1, g(t0), g(t1), tol=tol, method=method)  # type: ignore[arg-type]
    assert abs(t_e - 0.3) <= 3.0 * tol
    assert np.sign(g(t_e)) != np.sign(g(t0))


def test_locate_crossing_zero_at_end_and_bad_method() -> None:
    """A zero at the step end is returned as is; unknown methods raise."""

    def g(t: float) -> float:
        return t - 1.0

    assert locate_crossing(g, 0.0, 1.0, -1.0, 0.0, tol=1e-10) == 1.0
    with pytest.raises(ValueError, match="rootfind_method"):
        locate_crossing(g, 0.0, 2.0, -1.0, 1.0, tol=1e-10, method="newton")  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Detection policy
# -----------------------------------------------------------------------------


def test_crossing_fires_once_at_located_time() -> None:
    """A single sign change fires once with no state change."""
    engine = EventEngine([_level(0.5)])
    outcome = _process(engine)
    assert [r.name for r in outcome.records] == ["level-0.5"]
    assert outcome.records[0].t == pytest.approx(0.5, abs=1e-9)
    assert outcome.records[0].kind is EventKind.CONTINUOUS
    assert not outcome.records[0].modified
    assert outcome.cut_time is None
    assert engine.states == [EventState.ARMED]


def test_zero_at_step_start_is_ignored_and_end_fires() -> None:
    """Boundary policy: zero at start never fires, zero at end fires once."""
    engine = EventEngine([_level(1.0)])
    outcome = _process(engine, 0.0, 1.0)
    assert len(outcome.records) == 1
    assert outcome.records[0].t == 1.0

    outcome = engine.process(_ramp, 1.0, 2.0, _ramp(2.0), None)
    assert outcome.records == []
    assert len(engine.log) == 1


@pytest.mark.parametrize(("direction", "fires"), [(0, True), (1, True), (-1, False)])
def test_direction_filter(direction: int, *, fires: bool) -> None:
    """Only crossings in the requested direction fire (u = t is increasing)."""
    ev = ContinuousEvent(lambda _t, u: u[0] - 0.5, direction=direction)
    outcome = _process(EventEngine([ev]))
    assert bool(outcome.records) is fires


def test_events_ordered_by_time_then_registration() -> None:
    """Crossings fire in time order; identical times in registration order."""
    events = [_level(0.7), _level(0.2), ContinuousEvent(lambda _t, u: u[0] - 0.2, name="twin")]
    outcome = _process(EventEngine(events))
    assert [r.name for r in outcome.records] == ["level-0.2", "twin", "level-0.7"]
    assert [r.index for r in outcome.records] == [1, 2, 0]


def test_backward_steps_order_by_decreasing_time() -> None:
    """Integrating backward, the later time in the step is encountered first."""
    engine = EventEngine([_level(0.2), _level(0.7)])
    outcome = _process(engine, 1.0, 0.0)
    assert [r.name for r in outcome.records] == ["level-0.7", "level-0.2"]


def test_rootfind_disabled_fires_at_step_end() -> None:
    """Without root finding the event time is the step end."""
    ev = ContinuousEvent(lambda _t, u: u[0] - 0.5, rootfind=False)
    outcome = _process(EventEngine([ev]))
    assert outcome.records[0].t == 1.0


def test_possible_missed_event_warns() -> None:
    """Same sign at both ends but opposite at the midpoint warns."""
    ev = ContinuousEvent(lambda _t, u: (u[0] - 0.4) * (u[0] - 0.6), name="double")
    with pytest.warns(PossibleMissedEventWarning, match="double"):
        outcome = _process(EventEngine([ev]))
    assert outcome.records == []


def test_non_finite_condition_raises() -> None:
    """Conditions must return finite values."""
    ev = ContinuousEvent(lambda _t, _u: float("nan"), name="bad")
    with pytest.raises(ValueError, match="non-finite"):
        EventEngine([ev]).reset(0.0, _ramp(0.0))


# -----------------------------------------------------------------------------
# Effects and truncation
# -----------------------------------------------------------------------------


def test_state_change_truncates_and_drops_later_crossings() -> None:
    """A modifying effect cuts the step; later crossings wait for the restart."""

    def jump(handle: IntegratorHandle) -> None:
        handle.u[0] = 10.0

    events = [
        ContinuousEvent(lambda _t, u: u[0] - 0.3, effect=jump, name="jump"),
        _level(0.6),
    ]
    engine = EventEngine(events)
    outcome = _process(engine)

    assert [r.name for r in outcome.records] == ["jump"]
    assert outcome.records[0].modified
    assert outcome.cut_time == pytest.approx(0.3, abs=1e-9)
    np.testing.assert_array_equal(outcome.state, [10.0])
    assert outcome.state_before is not None
    assert outcome.state_before[0] == pytest.approx(0.3, abs=1e-9)
    assert not outcome.terminated
    assert engine.states == [EventState.ARMED, EventState.ARMED]


def test_tied_events_fire_against_mutated_state() -> None:
    """Events tied at the cut time still fire, seeing the previous effect."""
    seen: list[float] = []

    def bump(handle: IntegratorHandle) -> None:
        handle.u = handle.u + 1.0

    def record(handle: IntegratorHandle) -> None:
        seen.append(float(handle.u[0]))

    events = [
        ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=bump, rootfind=False),
        ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=record, rootfind=False),
    ]
    outcome = _process(EventEngine(events))
    assert len(outcome.records) == 2  # noqa: PLR2004
    assert outcome.cut_time == 1.0
    assert seen == [2.0]


def test_fired_crossing_is_not_redetected_after_restart() -> None:
    """Reversing course right after a fired crossing does not fire it again."""

    def flag(handle: IntegratorHandle) -> None:
        handle.u[1] = 1.0

    engine = EventEngine([ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=flag)])
    engine.reset(0.0, np.array([0.0, 0.0]), direction=1.0)
    outcome = engine.process(lambda t: np.array([t, 0.0]), 0.0, 1.0, np.array([1.0, 0.0]), None)
    assert outcome.cut_time is not None
    t_cut = outcome.cut_time
    assert outcome.state is not None
    assert outcome.state[0] >= 0.5  # noqa: PLR2004

    # Restart on the post-crossing side and head back down through the level.
    engine.reset(t_cut, outcome.state)

    def down(t: float) -> FloatArray:
        return np.array([2.0 * t_cut - t, 1.0])

    t1 = t_cut + 0.2
    outcome = engine.process(down, t_cut, t1, down(t1), None)
    assert outcome.records == []

    # The event is armed again for later crossings.
    def up(t: float) -> FloatArray:
        return np.array([t - t1 + down(t1)[0], 1.0])

    outcome = engine.process(up, t1, t1 + 0.4, up(t1 + 0.4), None)
    assert len(outcome.records) == 1
    assert outcome.records[0].t == pytest.approx(t1 + 0.5 - down(t1)[0], abs=1e-9)
    assert len(engine.log) == 2  # noqa: PLR2004


def test_terminal_event_and_terminate_effect() -> None:
    """terminal=True and the terminate effect both stop integration."""
    for ev in (
        ContinuousEvent(lambda _t, u: u[0] - 0.5, terminal=True),
        ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=terminate),
    ):
        engine = EventEngine([ev])
        outcome = _process(engine)
        assert outcome.terminated
        assert outcome.cut_time == pytest.approx(0.5, abs=1e-9)
        assert outcome.records[0].terminated
        assert engine.states == [EventState.TERMINATED]


def test_step_override_is_reported() -> None:
    """An effect may request the step magnitude used after the restart."""

    def kick(handle: IntegratorHandle) -> None:
        handle.u[0] += 1.0
        handle.set_step(-0.01)

    ev = ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=kick)
    outcome = _process(EventEngine([ev]))
    assert outcome.step_override == pytest.approx(0.01)


@pytest.mark.parametrize(
    ("position", "n_samples"),
    [(SavePosition.NONE, 0), ("before", 1), (SavePosition.AFTER, 1), (SavePosition.BOTH, 2)],
)
def test_save_positions(position: SavePosition | str, n_samples: int) -> None:
    """Save positions control the samples returned with the outcome."""

    def double(handle: IntegratorHandle) -> None:
        handle.u = 2.0 * handle.u

    ev = ContinuousEvent(lambda _t, u: u[0] - 0.5, effect=double, save_position=position)  # type: ignore[arg-type]
    outcome = _process(EventEngine([ev]))
    assert len(outcome.samples) == n_samples
    if n_samples == 2:  # noqa: PLR2004
        (t_a, u_a), (t_b, u_b) = outcome.samples
        assert t_a == t_b
        assert u_b[0] == pytest.approx(2.0 * u_a[0])


# -----------------------------------------------------------------------------
# Discrete and preset-time events
# -----------------------------------------------------------------------------


def test_discrete_event_fires_at_step_end() -> None:
    """Predicates are checked on the accepted state at the step end."""
    ev = DiscreteEvent(lambda _t, u: u[0] > 0.9, name="high")
    outcome = _process(EventEngine([ev]))
    assert [(r.name, r.t, r.kind) for r in outcome.records] == [("high", 1.0, EventKind.DISCRETE)]
    assert _process(EventEngine([ev]), 0.0, 0.5).records == []


def test_preset_time_event() -> None:
    """Preset times fire only when the step ends exactly on them."""
    ev = PresetTimeEvent((0.5, 0.25, 0.5), name="dose")
    assert ev.times == (0.25, 0.5)
    engine = EventEngine([ev, PresetTimeEvent(1.0)])  # type: ignore[arg-type]
    assert engine.preset_times() == (0.25, 0.5, 1.0)

    assert engine.process(_ramp, 0.0, 0.25, _ramp(0.25), None).records[0].name == "dose"
    assert engine.process(_ramp, 0.25, 0.4, _ramp(0.4), None).records == []
    assert engine.process(_ramp, 0.9, 1.0, _ramp(1.0), None).records[0].name == "1"


# -----------------------------------------------------------------------------
# Validation and handle
# -----------------------------------------------------------------------------


def test_definition_and_engine_validation() -> None:
    """Bad directions, times, event types and engine options raise."""
    with pytest.raises(ValueError, match="direction"):
        ContinuousEvent(lambda _t, u: u[0], direction=2)
    with pytest.raises(ValueError, match="finite"):
        PresetTimeEvent((1.0, np.inf))
    with pytest.raises(TypeError, match="events must be"):
        EventEngine([object()])  # type: ignore[list-item]
    with pytest.raises(ValueError, match="event_time_tolerance"):
        EventEngine([], time_tolerance=0.0)
    with pytest.raises(ValueError, match="rootfind_method"):
        EventEngine([], rootfind_method="secant")  # type: ignore[arg-type]


def test_empty_engine_is_a_no_op() -> None:
    """No events, no outcome."""
    engine = EventEngine()
    assert len(engine) == 0
    outcome = engine.process(_ramp, 0.0, 1.0, _ramp(1.0), None)
    assert outcome.records == []
    assert outcome.cut_time is None


def test_integrator_handle_surface() -> None:
    """Time and parameters are read-only; state, step and termination are not."""
    handle = IntegratorHandle(0.5, np.array([1.0]), {"k": 2})
    assert handle.t == 0.5
    assert handle.params == {"k": 2}
    with pytest.raises(AttributeError):
        handle.t = 1.0  # type: ignore[misc]
    assert handle.step_override is None
    handle.set_step(-0.2)
    assert handle.step_override == pytest.approx(0.2)
    assert not handle.terminated
    terminate(handle)
    assert handle.terminated
