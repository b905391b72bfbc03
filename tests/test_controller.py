# tests/test_controller.py
"""Unit tests for ivp_engine.controller.

Coverage:
- Tolerance validation (scalar / per component, non-positive, non-finite).
- RMS error norm with the max(|u_old|, |u_new|) scale.
- Accept/reject decisions and factor clamping (growth suppressed on rejection).
- PI term, step bounds, consecutive-rejection limit and degenerate steps.
- Initial step heuristic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import pytest

from ivp_engine.controller import (
    ControllerConfig,
    StepSizeController,
    validate_tolerance,
)
from ivp_engine.errors import StepSizeError, ToleranceError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Tolerances
# -----------------------------------------------------------------------------


def test_validate_tolerance_scalar_and_array() -> None:
    """Scalars come back as float, arrays as read-only float64 copies."""
    assert validate_tolerance(1e-6, "abstol") == pytest.approx(1e-6)

    raw = np.array([1e-6, 1e-8])
    out = validate_tolerance(raw, "abstol")
    assert isinstance(out, np.ndarray)
    assert out.dtype == np.float64
    assert not out.flags.writeable
    raw[0] = 5.0
    assert out[0] == pytest.approx(1e-6)


@pytest.mark.parametrize("bad", [0.0, -1e-6, np.inf, np.nan, [1e-6, 0.0], []])
def test_validate_tolerance_rejects_invalid(bad: Any) -> None:  # noqa: ANN401
    """Non-positive, non-finite and empty tolerances raise ToleranceError."""
    with pytest.raises(ToleranceError):
        validate_tolerance(bad, "reltol")


def test_tolerance_error_is_value_error() -> None:
    """ToleranceError can be caught as ValueError."""
    with pytest.raises(ValueError, match="abstol"):
        StepSizeController(abstol=-1.0)


def test_tolerance_shape_mismatch() -> None:
    """Per-component tolerances must broadcast to the state shape."""
    ctrl = StepSizeController(abstol=[1e-6, 1e-6, 1e-6])
    ctrl.check_tolerance_shape((3,))
    with pytest.raises(ToleranceError, match="broadcast"):
        ctrl.check_tolerance_shape((2,))


# -----------------------------------------------------------------------------
# Error norm
# -----------------------------------------------------------------------------


def test_error_norm_rms_with_max_scale() -> None:
    """Scale uses atol + rtol * max(|u_old|, |u_new|), reduced by RMS."""
    ctrl = StepSizeController(abstol=1.0, reltol=1.0)
    u_old = np.array([1.0, 0.0])
    u_new = np.array([3.0, 1.0])
    err = np.array([4.0, 2.0])

    # scales: 1 + 3 = 4, 1 + 1 = 2 -> ratios 1, 1
    assert ctrl.error_norm(err, u_new, u_old) == pytest.approx(1.0)


def test_error_norm_per_component_tolerance() -> None:
    """Per-component abstol weights components separately."""
    ctrl = StepSizeController(abstol=np.array([1.0, 0.5]), reltol=1e-300)
    err = np.array([1.0, 1.0])
    zeros = np.zeros(2)
    expected = np.sqrt((1.0**2 + 2.0**2) / 2.0)
    assert ctrl.error_norm(err, zeros, zeros) == pytest.approx(expected)


def test_error_norm_non_finite_raises_with_location() -> None:
    """A non-finite norm raises ToleranceError carrying t and state."""
    ctrl = StepSizeController()
    u = np.array([1.0])
    with pytest.raises(ToleranceError) as excinfo:
        ctrl.error_norm(np.array([np.nan]), u, u, t=0.25)
    assert excinfo.value.t == pytest.approx(0.25)
    assert excinfo.value.state is not None


# -----------------------------------------------------------------------------
# Proposals
# -----------------------------------------------------------------------------


def test_accept_when_error_at_most_one() -> None:
    """err <= 1 accepts; err > 1 rejects."""
    ctrl = StepSizeController()
    assert ctrl.propose(1.0, 0.1, 4).accept
    assert not ctrl.propose(1.0 + 1e-12, 0.1, 4).accept


def test_factor_formula_and_clamps() -> None:
    """factor = safety * err^(-1/(order+1)) clamped to [min_shrink, max_growth]."""
    cfg = ControllerConfig(safety=0.9, min_shrink=0.2, max_growth=5.0)
    ctrl = StepSizeController(cfg)

    d = ctrl.propose(0.5, 0.1, 1)
    assert d.next_step == pytest.approx(0.1 * 0.9 * 0.5 ** (-0.5))

    assert ctrl.propose(0.0, 0.1, 1).next_step == pytest.approx(0.5)  # max_growth
    assert ctrl.propose(1e-12, 0.1, 1).next_step == pytest.approx(0.5)

    ctrl.reset()
    assert ctrl.propose(1e12, 0.1, 1).next_step == pytest.approx(0.02)  # min_shrink


def test_rejection_never_grows_step() -> None:
    """On rejection the factor is clamped to <= 1 even with a generous safety."""
    cfg = ControllerConfig(safety=0.99, min_shrink=0.5, max_growth=10.0)
    ctrl = StepSizeController(cfg)
    d = ctrl.propose(1.0000001, 1.0, 8)
    assert not d.accept
    assert abs(d.next_step) <= 1.0


def test_direction_is_preserved() -> None:
    """Backward steps stay negative after scaling and clamping."""
    ctrl = StepSizeController(max_step=0.3)
    d = ctrl.propose(1e-3, -0.2, 2)
    assert d.next_step == pytest.approx(-0.3)


def test_max_and_min_step_bounds() -> None:
    """Accepted proposals are clamped into [min_step, max_step]."""
    ctrl = StepSizeController(min_step=0.05, max_step=0.2)
    assert ctrl.propose(1e-8, 0.1, 1).next_step == pytest.approx(0.2)
    assert ctrl.propose(0.99, 0.05, 1).next_step == pytest.approx(0.05)


def test_pi_term_uses_previous_error() -> None:
    """beta2 > 0 multiplies the factor by err_prev**beta2 after an acceptance."""
    cfg = ControllerConfig(beta2=0.2)
    ctrl = StepSizeController(cfg)

    first = ctrl.propose(0.5, 0.1, 3)
    assert first.next_step == pytest.approx(0.1 * 0.9 * 0.5 ** (-0.25))

    second = ctrl.propose(0.5, 0.1, 3)
    assert second.next_step == pytest.approx(0.1 * 0.9 * 0.5 ** (-0.25) * 0.5**0.2)


def test_consecutive_rejection_limit() -> None:
    """The N-th consecutive rejection raises StepSizeError; acceptance resets."""
    ctrl = StepSizeController(max_rejections=3)
    ctrl.propose(10.0, 1.0, 1)
    ctrl.propose(10.0, 0.5, 1)
    ctrl.propose(0.5, 0.25, 1)  # accepted: counter resets
    assert ctrl.rejections == 0

    ctrl.propose(10.0, 0.5, 1)
    ctrl.propose(10.0, 0.25, 1)
    with pytest.raises(StepSizeError, match="consecutive") as excinfo:
        ctrl.propose(10.0, 0.1, 1, t=0.75, state=np.array([2.0]))
    assert excinfo.value.t == pytest.approx(0.75)
    assert np.array_equal(excinfo.value.state, [2.0])


def test_rejection_below_min_step_raises() -> None:
    """A rejected step that would shrink below min_step raises."""
    ctrl = StepSizeController(min_step=0.09)
    with pytest.raises(StepSizeError, match="min_step"):
        ctrl.propose(100.0, 0.1, 1)


def test_degenerate_step_raises() -> None:
    """Steps that cannot advance t, or are non-finite, raise StepSizeError."""
    with pytest.raises(StepSizeError):
        StepSizeController.check_step(1e-20, t=1.0)
    with pytest.raises(StepSizeError):
        StepSizeController.check_step(float("nan"), t=0.0)
    StepSizeController.check_step(1e-10, t=1.0)


def test_non_finite_estimate_raises() -> None:
    """A NaN error estimate is a ToleranceError, never an acceptance."""
    with pytest.raises(ToleranceError):
        StepSizeController().propose(float("nan"), 0.1, 1)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"safety": 1.0},
        {"min_shrink": 0.0},
        {"min_shrink": 1.5},
        {"max_growth": 1.0},
        {"beta2": -0.1},
    ],
)
def test_controller_config_validation(kwargs: dict[str, float]) -> None:
    """Out-of-range constants are rejected at construction."""
    with pytest.raises(ValueError, match="must satisfy"):
        ControllerConfig(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [{"min_step": -1.0}, {"max_step": 0.0}, {"min_step": 1.0, "max_step": 0.5}, {"max_rejections": 0}],
)
def test_controller_bounds_validation(kwargs: dict[str, float]) -> None:
    """Step bounds and the rejection limit are validated."""
    with pytest.raises(ValueError, match="must satisfy"):
        StepSizeController(**kwargs)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Initial step
# -----------------------------------------------------------------------------


def test_initial_step_respects_direction_span_and_bounds() -> None:
    """The heuristic is signed, finite, and within span and max_step."""

    def rhs(u: FloatArray, _p: object, _t: float) -> FloatArray:
        return -u

    u0 = np.array([1.0, 2.0])
    ctrl = StepSizeController(abstol=1e-8, reltol=1e-6, max_step=0.05)
    h = ctrl.initial_step(
        rhs, t0=1.0, u0=u0, f0=rhs(u0, None, 1.0), params=None, direction=-1.0, order=4, span=1.0
    )
    assert -0.05 <= h < 0.0

    ctrl = StepSizeController(abstol=1e-8, reltol=1e-6)
    h = ctrl.initial_step(
        rhs, t0=0.0, u0=u0, f0=rhs(u0, None, 0.0), params=None, direction=1.0, order=4, span=1e-3
    )
    assert 0.0 < h <= 1e-3
