"""Global pytest configuration and shared fixtures for ivp_engine."""

from __future__ import annotations

import importlib.util
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import pytest

from ivp_engine import Problem
from ivp_engine.linalg import clear_implicit_solver_cache

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]

# -----------------------------------------------------------------------------
# Optional dependency detection
# -----------------------------------------------------------------------------

HAS_MATPLOTLIB: Final[bool] = importlib.util.find_spec("matplotlib") is not None


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "examples: mark test as running a script from examples/ (needs matplotlib)",
    )


# -----------------------------------------------------------------------------
# Conditional skipping fixture
# -----------------------------------------------------------------------------


@pytest.fixture(scope="session")
def require_matplotlib() -> None:
    """
    Skip tests if the examples extra is not installed.

    Usage:
        def test_x(require_matplotlib):
            ...
    """
    if not HAS_MATPLOTLIB:
        pytest.skip("examples extra (matplotlib) not installed")


# -----------------------------------------------------------------------------
# Shared problems
# -----------------------------------------------------------------------------


def _decay_rhs(u: FloatArray, p: Any, _t: float) -> FloatArray:  # noqa: ANN401
    return -p * u


def _growth_rhs(u: FloatArray, _p: Any, _t: float) -> FloatArray:  # noqa: ANN401
    return u


def _oscillator_rhs(u: FloatArray, _p: Any, _t: float) -> FloatArray:  # noqa: ANN401
    return np.array([u[1], -u[0]])


@pytest.fixture
def decay_problem() -> Problem:
    """u' = -u on [0, 2], u(0) = 1."""
    return Problem(_decay_rhs, np.array([1.0]), (0.0, 2.0), params=1.0)


@pytest.fixture
def growth_problem() -> Problem:
    """u' = u on [0, 1], u(0) = 1."""
    return Problem(_growth_rhs, np.array([1.0]), (0.0, 1.0))


@pytest.fixture
def oscillator_problem() -> Problem:
    """Harmonic oscillator on [0, 2*pi], u(0) = (1, 0)."""
    return Problem(_oscillator_rhs, np.array([1.0, 0.0]), (0.0, 2.0 * np.pi))


@pytest.fixture(autouse=True)
def _fresh_solver_cache() -> Iterator[None]:
    """Isolate the implicit solver cache between tests."""
    clear_implicit_solver_cache()
    yield
    clear_implicit_solver_cache()
