# ivp_engine/src/ivp_engine/interpolants.py
"""Per-step interpolation data backing dense output.

Every accepted step carries an interpolant covering ``[t_start, t_end]``. All
interpolants shipped here are polynomials in the normalized step coordinate

    theta = (t - t_start) / (t_end - t_start)

stored as a coefficient matrix ``C`` of shape ``(degree + 1, n_states)`` so that

    u(theta) = sum_k C[k] * theta**k

Derivatives with respect to ``t`` follow from the chain rule
(``d/dt = (1/h) d/dtheta``). Evaluation exactly at ``t_start`` / ``t_end``
returns a copy of the stored boundary state, so dense output reproduces the
accepted samples bit for bit.

Builders:
    - :meth:`PolynomialInterpolant.linear` (two states),
    - :meth:`PolynomialInterpolant.hermite` (two states + two derivatives),
    - :meth:`PolynomialInterpolant.runge_kutta` (stage derivatives ``K`` and a
      dense-output matrix ``P``, as produced by Dormand-Prince style steppers).
"""

from __future__ import annotations

from dataclasses import dataclass
from math import factorial
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


_DERIV_ORDER_ERROR: Final[str] = "derivative_order must be >= 0; got {order}"
_COEFFS_SHAPE_ERROR: Final[str] = (
    "coefficients must be 2D (degree + 1, n_states); got shape {shape}"
)
_EMPTY_STEP_ERROR: Final[str] = "Interpolant span must be non-zero; got [{t0}, {t1}]"


@runtime_checkable
class Interpolant(Protocol):
    """Capability required from stepper-emitted interpolation data."""

    @property
    def t_start(self) -> float:
        """Left time of the covered step."""
        ...

    @property
    def t_end(self) -> float:
        """Right time of the covered step."""
        ...

    def __call__(self, t: float, derivative_order: int = 0) -> NDArray[np.floating]:
        """Evaluate the state (or a time derivative) at ``t``."""
        ...


@dataclass(frozen=True, slots=True)
class PolynomialInterpolant:
    """Polynomial dense output over one accepted step.

    Attributes:
        t_start: Left time of the step.
        t_end: Right time of the step.
        u_start: State at ``t_start`` (returned verbatim at that time).
        u_end: State at ``t_end`` (returned verbatim at that time).
        coeffs: Coefficients in ``theta``, shape ``(degree + 1, n_states)``.
    """

    t_start: float
    t_end: float
    u_start: NDArray[np.floating]
    u_end: NDArray[np.floating]
    coeffs: NDArray[np.floating]

    def __post_init__(self) -> None:
        """Validate shapes and freeze the arrays.

        Raises:
            ValueError: If the span is empty or coefficients are malformed.
        """
        object.__setattr__(self, "t_start", float(self.t_start))
        object.__setattr__(self, "t_end", float(self.t_end))
        if self.t_end == self.t_start:
            raise ValueError(_EMPTY_STEP_ERROR.format(t0=self.t_start, t1=self.t_end))
        if np.ndim(self.coeffs) != 2:  # noqa: PLR2004
            raise ValueError(_COEFFS_SHAPE_ERROR.format(shape=np.shape(self.coeffs)))
        for name in ("u_start", "u_end", "coeffs"):
            arr = np.array(getattr(self, name), dtype=np.float64, copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    @classmethod
    def linear(
        cls,
        t_start: float,
        t_end: float,
        u_start: NDArray[np.floating],
        u_end: NDArray[np.floating],
    ) -> PolynomialInterpolant:
        """Build a linear interpolant between two states.

        Args:
            t_start: Left time.
            t_end: Right time.
            u_start: Left state.
            u_end: Right state.

        Returns:
            Degree-1 interpolant.
        """
        u0 = np.array(u_start, dtype=np.float64, copy=True)
        u1 = np.array(u_end, dtype=np.float64, copy=True)
        coeffs = np.stack([u0, u1 - u0])
        return cls(float(t_start), float(t_end), u0, u1, coeffs)

    @classmethod
    def hermite(  # noqa: PLR0913
        cls,
        t_start: float,
        t_end: float,
        u_start: NDArray[np.floating],
        u_end: NDArray[np.floating],
        f_start: NDArray[np.floating],
        f_end: NDArray[np.floating],
    ) -> PolynomialInterpolant:
        """Build a cubic Hermite interpolant from endpoint states and slopes.

        Args:
            t_start: Left time.
            t_end: Right time.
            u_start: Left state.
            u_end: Right state.
            f_start: ``du/dt`` at ``t_start``.
            f_end: ``du/dt`` at ``t_end``.

        Returns:
            Degree-3 interpolant.
        """
        h = float(t_end) - float(t_start)
        u0 = np.array(u_start, dtype=np.float64, copy=True)
        u1 = np.array(u_end, dtype=np.float64, copy=True)
        hf0 = h * np.asarray(f_start, dtype=np.float64)
        hf1 = h * np.asarray(f_end, dtype=np.float64)
        du = u1 - u0

        coeffs = np.stack(
            [
                u0,
                hf0,
                3.0 * du - 2.0 * hf0 - hf1,
                -2.0 * du + hf0 + hf1,
            ]
        )
        return cls(float(t_start), float(t_end), u0, u1, coeffs)

    @classmethod
    def runge_kutta(  # noqa: PLR0913
        cls,
        t_start: float,
        t_end: float,
        u_start: NDArray[np.floating],
        u_end: NDArray[np.floating],
        stages: NDArray[np.floating],
        dense_matrix: NDArray[np.floating],
    ) -> PolynomialInterpolant:
        """Build the native dense output of an explicit Runge-Kutta pair.

        The interpolant is ``u(theta) = u_start + h * (K^T P) @ [theta, theta^2, ...]``.

        Args:
            t_start: Left time.
            t_end: Right time.
            u_start: Left state.
            u_end: Right state.
            stages: Stage derivatives ``K``, shape ``(n_stages, n_states)``.
            dense_matrix: Dense-output matrix ``P``, shape ``(n_stages, degree)``.

        Returns:
            Interpolant of degree ``P.shape[1]``.
        """
        h = float(t_end) - float(t_start)
        u0 = np.array(u_start, dtype=np.float64, copy=True)
        u1 = np.array(u_end, dtype=np.float64, copy=True)
        q = h * (np.asarray(stages, dtype=np.float64).T @ dense_matrix)
        coeffs = np.vstack([u0[None, :], q.T])
        return cls(float(t_start), float(t_end), u0, u1, coeffs)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @property
    def degree(self) -> int:
        """Polynomial degree in ``theta``."""
        return int(self.coeffs.shape[0] - 1)

    @property
    def step(self) -> float:
        """Signed step size covered by this interpolant."""
        return self.t_end - self.t_start

    def __call__(self, t: float, derivative_order: int = 0) -> NDArray[np.floating]:
        """Evaluate the interpolant.

        Args:
            t: Query time (may lie slightly outside the step).
            derivative_order: 0 for the state, k for the k-th time derivative.

        Raises:
            ValueError: If ``derivative_order`` is negative.

        Returns:
            New array of shape ``(n_states,)``.
        """
        if derivative_order < 0:
            raise ValueError(_DERIV_ORDER_ERROR.format(order=derivative_order))

        if derivative_order == 0:
            if t == self.t_start:
                return self.u_start.copy()
            if t == self.t_end:
                return self.u_end.copy()

        n_states = self.coeffs.shape[1]
        if derivative_order > self.degree:
            return np.zeros(n_states, dtype=np.float64)

        theta = (float(t) - self.t_start) / self.step
        out = np.zeros(n_states, dtype=np.float64)
        # Horner over the differentiated coefficients.
        for k in range(self.degree, derivative_order - 1, -1):
            weight = factorial(k) / factorial(k - derivative_order)
            out *= theta
            out += weight * self.coeffs[k]
        if derivative_order:
            out /= self.step**derivative_order
        return out
