# tests/test_interpolants.py
"""Unit tests for ivp_engine.interpolants.PolynomialInterpolant."""

from __future__ import annotations

import numpy as np
import pytest

from ivp_engine.interpolants import Interpolant, PolynomialInterpolant
from ivp_engine.steppers import DormandPrince45

# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------


def test_linear_interpolant_midpoint_and_slope() -> None:
    """Linear interpolation and its constant derivative."""
    p = PolynomialInterpolant.linear(1.0, 3.0, np.array([0.0, 2.0]), np.array([4.0, 0.0]))
    assert p.degree == 1
    assert isinstance(p, Interpolant)
    np.testing.assert_allclose(p(2.0), [2.0, 1.0])
    np.testing.assert_allclose(p(2.5, 1), [2.0, -1.0])
    np.testing.assert_array_equal(p(2.5, 2), [0.0, 0.0])


def test_hermite_reproduces_cubic_exactly() -> None:
    """A cubic is reproduced (with derivatives) from endpoint values and slopes."""

    def u(t: float) -> np.ndarray:
        return np.array([t**3 - 2.0 * t + 1.0])

    def du(t: float) -> np.ndarray:
        return np.array([3.0 * t**2 - 2.0])

    t0, t1 = -0.5, 1.5
    p = PolynomialInterpolant.hermite(t0, t1, u(t0), u(t1), du(t0), du(t1))

    for t in np.linspace(t0, t1, 9):
        np.testing.assert_allclose(p(t), u(t), rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(p(t, 1), du(t), rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(p(t, 2), [6.0 * t], rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(p(t, 3), [6.0], rtol=1e-12)


def test_hermite_backward_step() -> None:
    """Negative spans evaluate consistently (d/dt uses the signed step)."""
    p = PolynomialInterpolant.hermite(
        1.0, 0.0, np.array([1.0]), np.array([0.0]), np.array([1.0]), np.array([1.0])
    )
    np.testing.assert_allclose(p(0.5), [0.5], rtol=1e-12)
    np.testing.assert_allclose(p(0.25, 1), [1.0], rtol=1e-12)


def test_runge_kutta_dense_output_matches_exponential() -> None:
    """Dopri5 dense output of u' = u is accurate inside the step."""
    stepper = DormandPrince45()

    def rhs(u: np.ndarray, _p: object, _t: float) -> np.ndarray:
        return u

    result = stepper.step(rhs, np.array([1.0]), 0.0, 0.1, None)
    assert result.interpolant is not None
    for t in (0.025, 0.05, 0.075):
        np.testing.assert_allclose(result.interpolant(t), [np.exp(t)], rtol=1e-6)
    np.testing.assert_allclose(result.interpolant(0.05, 1), [np.exp(0.05)], rtol=1e-4)


# -----------------------------------------------------------------------------
# Invariants
# -----------------------------------------------------------------------------


def test_endpoints_are_exact_copies() -> None:
    """Endpoint evaluation returns the stored states bit for bit, as new arrays."""
    u0 = np.array([0.1, 0.2])
    u1 = np.array([0.3 + 1e-17, 0.7])
    p = PolynomialInterpolant.hermite(0.0, 0.3, u0, u1, np.ones(2), np.ones(2))

    out = p(0.3)
    np.testing.assert_array_equal(out, u1)
    out[0] = 99.0
    np.testing.assert_array_equal(p(0.3), u1)
    np.testing.assert_array_equal(p(0.0), u0)


def test_inputs_are_copied_and_frozen() -> None:
    """Mutating the caller's arrays does not change the interpolant."""
    u0 = np.array([1.0])
    p = PolynomialInterpolant.linear(0.0, 1.0, u0, np.array([2.0]))
    u0[0] = -5.0
    np.testing.assert_allclose(p(0.5), [1.5])
    assert not p.coeffs.flags.writeable


def test_repeated_evaluation_is_idempotent() -> None:
    """Queries have no hidden state."""
    p = PolynomialInterpolant.hermite(
        0.0, 1.0, np.array([0.0]), np.array([1.0]), np.array([3.0]), np.array([-1.0])
    )
    first = p(0.37)
    for _ in range(5):
        np.testing.assert_array_equal(p(0.37), first)


def test_invalid_construction() -> None:
    """Zero spans, malformed coefficients and negative orders are rejected."""
    with pytest.raises(ValueError, match="non-zero"):
        PolynomialInterpolant.linear(1.0, 1.0, np.zeros(1), np.zeros(1))
    with pytest.raises(ValueError, match="2D"):
        PolynomialInterpolant(0.0, 1.0, np.zeros(1), np.zeros(1), np.zeros(3))
    p = PolynomialInterpolant.linear(0.0, 1.0, np.zeros(1), np.ones(1))
    with pytest.raises(ValueError, match="derivative_order"):
        p(0.5, -1)
