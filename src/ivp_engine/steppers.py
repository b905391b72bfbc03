# ivp_engine/src/ivp_engine/steppers.py
"""Reference steppers consumed by the integration loop.

The loop only needs a *stepper capability*: given the current state, time and a
trial step size it returns a candidate next state, an embedded error estimate,
optional interpolation data and the order used by the step-size controller.
The catalog here is intentionally small; it exists to drive the engine.

Supported methods (``resolve_stepper(name)``):
    - "euler":      Explicit Euler (order 1), error via step doubling.
    - "heun":       Explicit Heun / RK2 (order 2), embedded Euler estimator.
    - "dopri5":     Dormand-Prince 5(4) with its native quartic dense output.
    - "imex-euler": IMEX Euler for ``u' = A u + F(u, p, t)``: explicit Euler on
                    ``F``, implicit Euler on ``A``; error via step doubling.

Contract:
    ``step(rhs, state, t, h, params, f_start=None) -> StepResult``

    - Must be repeatable for identical inputs (no hidden mutation of
      ``params`` or of the stepper).
    - ``f_start`` may be supplied by the caller when ``rhs(state, params, t)``
      is already known (first-same-as-last reuse); it must then be exact.
    - ``StepResult.f_end`` is ``rhs`` (the full derivative) at the candidate, if
      the stepper computed it; the loop reuses it as the next ``f_start``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Final, Protocol, runtime_checkable

import numpy as np

from .interpolants import PolynomialInterpolant
from .linalg import apply_operator, implicit_euler_solve, validate_operator

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .interpolants import Interpolant
    from .linalg import Operator
    from .problem import RHSFunction


# =============================================================================
# Errors / messages
# =============================================================================

_RHS_SHAPE_ERROR: Final[str] = "rhs shape {actual} does not match expected {expected}"
_UNKNOWN_METHOD_ERROR: Final[str] = "Unknown method: {method}; expected one of {allowed}"
_MISSING_OPERATOR_ERROR: Final[str] = "Method '{method}' requires an operator A"
_STEPPER_TYPE_ERROR: Final[str] = (
    "stepper must be a method name or implement the Stepper protocol; got {typ}"
)


# =============================================================================
# Protocol / result
# =============================================================================


@dataclass(frozen=True, slots=True)
class StepResult:
    """Output of one attempted step.

    Attributes:
        candidate: Proposed state at ``t + h``.
        error: Embedded local error estimate (same shape as the state).
        interpolant: Dense output over ``[t, t + h]``, or None.
        order: Order used in the controller exponent.
        f_end: Derivative at the candidate, if computed.
        n_rhs: Number of right-hand side evaluations performed.
    """

    candidate: NDArray[np.floating]
    error: NDArray[np.floating]
    interpolant: Interpolant | None
    order: int
    f_end: NDArray[np.floating] | None = None
    n_rhs: int = 0


@runtime_checkable
class Stepper(Protocol):
    """Capability interface for a stepping formula."""

    name: str
    order: int
    supports_dense_output: bool

    def derivative(
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        params: Any,  # noqa: ANN401
    ) -> NDArray[np.floating]:
        """Return the full time derivative at ``(t, state)``."""
        ...

    def step(  # noqa: PLR0913
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
        f_start: NDArray[np.floating] | None = None,
    ) -> StepResult:
        """Attempt one step of size ``h`` from ``(t, state)``."""
        ...


# =============================================================================
# RHS helper (shape + dtype enforcement)
# =============================================================================


def eval_rhs(
    rhs: RHSFunction,
    state: NDArray[np.floating],
    params: Any,  # noqa: ANN401
    t: float,
) -> NDArray[np.floating]:
    """Evaluate ``rhs`` with shape enforcement.

    Args:
        rhs: Right-hand side ``rhs(u, params, t)``.
        state: State vector.
        params: Problem parameters.
        t: Time.

    Raises:
        ValueError: If the result does not match the state shape.

    Returns:
        Derivative as a new float64 array.
    """
    f = np.array(rhs(state, params, float(t)), dtype=np.float64)
    if f.shape != state.shape:
        raise ValueError(_RHS_SHAPE_ERROR.format(actual=f.shape, expected=state.shape))
    return f


# =============================================================================
# Explicit steppers
# =============================================================================


class _ExplicitStepper:
    """Shared plumbing for explicit steppers with Hermite dense output."""

    name: ClassVar[str] = ""
    order: ClassVar[int] = 0
    supports_dense_output: ClassVar[bool] = True

    def derivative(
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        params: Any,  # noqa: ANN401
    ) -> NDArray[np.floating]:
        """Return ``rhs(state, params, t)``."""
        return eval_rhs(rhs, state, params, t)

    def __repr__(self) -> str:
        """Return a short representation."""
        return f"{type(self).__name__}()"

    @staticmethod
    def _hermite(  # noqa: PLR0913
        t: float,
        h: float,
        u0: NDArray[np.floating],
        u1: NDArray[np.floating],
        f0: NDArray[np.floating],
        f1: NDArray[np.floating],
    ) -> PolynomialInterpolant:
        return PolynomialInterpolant.hermite(t, t + h, u0, u1, f0, f1)


class ExplicitEuler(_ExplicitStepper):
    """Explicit Euler with a step-doubling error estimate."""

    name = "euler"
    order = 1

    def step(  # noqa: PLR0913
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
        f_start: NDArray[np.floating] | None = None,
    ) -> StepResult:
        """Take one full Euler step and two half steps; return the latter.

        Args:
            rhs: Right-hand side.
            state: Current state.
            t: Current time.
            h: Signed step size.
            params: Problem parameters.
            f_start: Optional known derivative at ``(t, state)``.

        Returns:
            Step result with ``error = y_two_half - y_full``.
        """
        n_rhs = 0
        if f_start is None:
            f_start = eval_rhs(rhs, state, params, t)
            n_rhs += 1

        y_full = state + h * f_start
        y_half = state + (0.5 * h) * f_start
        f_half = eval_rhs(rhs, y_half, params, t + 0.5 * h)
        y_two_half = y_half + (0.5 * h) * f_half
        f_end = eval_rhs(rhs, y_two_half, params, t + h)
        n_rhs += 2

        return StepResult(
            candidate=y_two_half,
            error=y_two_half - y_full,
            interpolant=self._hermite(t, h, state, y_two_half, f_start, f_end),
            order=self.order,
            f_end=f_end,
            n_rhs=n_rhs,
        )


class Heun(_ExplicitStepper):
    """Explicit Heun (RK2) with an embedded Euler estimator."""

    name = "heun"
    order = 2

    def step(  # noqa: PLR0913
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
        f_start: NDArray[np.floating] | None = None,
    ) -> StepResult:
        """Heun step; the Euler predictor doubles as the low-order solution.

        Args:
            rhs: Right-hand side.
            state: Current state.
            t: Current time.
            h: Signed step size.
            params: Problem parameters.
            f_start: Optional known derivative at ``(t, state)``.

        Returns:
            Step result with ``error = y_heun - y_euler``.
        """
        n_rhs = 0
        if f_start is None:
            f_start = eval_rhs(rhs, state, params, t)
            n_rhs += 1

        y_pred = state + h * f_start
        f_pred = eval_rhs(rhs, y_pred, params, t + h)
        y_new = state + (0.5 * h) * (f_start + f_pred)
        f_end = eval_rhs(rhs, y_new, params, t + h)
        n_rhs += 2

        return StepResult(
            candidate=y_new,
            error=y_new - y_pred,
            interpolant=self._hermite(t, h, state, y_new, f_start, f_end),
            order=self.order,
            f_end=f_end,
            n_rhs=n_rhs,
        )


class DormandPrince45(_ExplicitStepper):
    """Dormand-Prince 5(4) pair with free quartic interpolation.

    The fifth-order solution is propagated; the error estimate compares it with
    the embedded fourth-order solution, so the controller exponent uses order 4.
    """

    name = "dopri5"
    order = 4

    C: ClassVar[NDArray[np.floating]] = np.array(
        [0.0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1.0], dtype=np.float64
    )
    A: ClassVar[NDArray[np.floating]] = np.array(
        [
            [0.0, 0.0, 0.0, 0.0, 0.0],
            [1 / 5, 0.0, 0.0, 0.0, 0.0],
            [3 / 40, 9 / 40, 0.0, 0.0, 0.0],
            [44 / 45, -56 / 15, 32 / 9, 0.0, 0.0],
            [19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729, 0.0],
            [9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656],
        ],
        dtype=np.float64,
    )
    B: ClassVar[NDArray[np.floating]] = np.array(
        [35 / 384, 0.0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84],
        dtype=np.float64,
    )
    E: ClassVar[NDArray[np.floating]] = np.array(
        [-71 / 57600, 0.0, 71 / 16695, -71 / 1920, 17253 / 339200, -22 / 525, 1 / 40],
        dtype=np.float64,
    )
    P: ClassVar[NDArray[np.floating]] = np.array(
        [
            [
                1.0,
                -8048581381 / 2820520608,
                8663915743 / 2820520608,
                -12715105075 / 11282082432,
            ],
            [0.0, 0.0, 0.0, 0.0],
            [
                0.0,
                131558114200 / 32700410799,
                -68118460800 / 10900136933,
                87487479700 / 32700410799,
            ],
            [
                0.0,
                -1754552775 / 470086768,
                14199869525 / 1410260304,
                -10690763975 / 1880347072,
            ],
            [
                0.0,
                127303824393 / 49829197408,
                -318862633887 / 49829197408,
                701980252875 / 199316789632,
            ],
            [
                0.0,
                -282668133 / 205662961,
                2019193451 / 616988883,
                -1453857185 / 822651844,
            ],
            [
                0.0,
                40617522 / 29380423,
                -110615467 / 29380423,
                69997945 / 29380423,
            ],
        ],
        dtype=np.float64,
    )

    def step(  # noqa: PLR0913
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
        f_start: NDArray[np.floating] | None = None,
    ) -> StepResult:
        """One Dormand-Prince step with FSAL stage reuse.

        Args:
            rhs: Right-hand side.
            state: Current state.
            t: Current time.
            h: Signed step size.
            params: Problem parameters.
            f_start: Optional known derivative at ``(t, state)``.

        Returns:
            Step result carrying the quartic dense output.
        """
        n_stages = self.B.size
        k = np.empty((n_stages + 1, state.size), dtype=np.float64)
        n_rhs = 0
        if f_start is None:
            k[0] = eval_rhs(rhs, state, params, t)
            n_rhs += 1
        else:
            k[0] = f_start

        for i in range(1, n_stages):
            dy = self.A[i, :i] @ k[:i]
            k[i] = eval_rhs(rhs, state + h * dy, params, t + self.C[i] * h)
            n_rhs += 1

        y_new = state + h * (self.B @ k[:n_stages])
        k[n_stages] = eval_rhs(rhs, y_new, params, t + h)
        n_rhs += 1

        error = h * (self.E @ k)
        interpolant = PolynomialInterpolant.runge_kutta(
            t, t + h, state, y_new, k, self.P
        )
        return StepResult(
            candidate=y_new,
            error=error,
            interpolant=interpolant,
            order=self.order,
            f_end=k[n_stages].copy(),
            n_rhs=n_rhs,
        )


# =============================================================================
# IMEX stepper
# =============================================================================


class ImexEuler:
    """IMEX Euler for split systems ``u' = A u + F(u, p, t)``.

    ``rhs`` passed to :meth:`step` is the explicit part ``F``; the stiff linear
    part ``A`` (dense ndarray or CSR matrix) is treated implicitly:

        (I - h A) y_next = y + h F(y, p, t)

    The error estimate compares one full step against two half steps.
    """

    name: ClassVar[str] = "imex-euler"
    order: ClassVar[int] = 1
    supports_dense_output: ClassVar[bool] = True

    def __init__(self, operator: Operator) -> None:
        """Initialize ImexEuler.

        Args:
            operator: Linear operator ``A`` (reused object; factorizations cache
                on its identity).
        """
        validate_operator(operator)
        self.operator = operator

    def __repr__(self) -> str:
        """Return a short representation."""
        return f"ImexEuler(operator shape={self.operator.shape})"

    def derivative(
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        params: Any,  # noqa: ANN401
    ) -> NDArray[np.floating]:
        """Return ``A @ state + F(state, params, t)``."""
        return apply_operator(self.operator, state) + eval_rhs(rhs, state, params, t)

    def _once(
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
    ) -> NDArray[np.floating]:
        x = state + h * eval_rhs(rhs, state, params, t)
        return implicit_euler_solve(self.operator, h, x)

    def step(  # noqa: PLR0913
        self,
        rhs: RHSFunction,
        state: NDArray[np.floating],
        t: float,
        h: float,
        params: Any,  # noqa: ANN401
        f_start: NDArray[np.floating] | None = None,
    ) -> StepResult:
        """IMEX Euler step with step doubling.

        Args:
            rhs: Explicit part ``F``.
            state: Current state.
            t: Current time.
            h: Signed step size.
            params: Problem parameters.
            f_start: Optional known full derivative at ``(t, state)``.

        Returns:
            Step result with Hermite dense output on the full derivative.
        """
        validate_operator(self.operator, state.size)
        n_rhs = 0
        if f_start is None:
            f_start = self.derivative(rhs, state, t, params)
            n_rhs += 1

        y_full = self._once(rhs, state, t, h, params)
        y_half = self._once(rhs, state, t, 0.5 * h, params)
        y_two_half = self._once(rhs, y_half, t + 0.5 * h, 0.5 * h, params)
        f_end = self.derivative(rhs, y_two_half, t + h, params)
        n_rhs += 4

        return StepResult(
            candidate=y_two_half,
            error=y_two_half - y_full,
            interpolant=PolynomialInterpolant.hermite(
                t, t + h, state, y_two_half, f_start, f_end
            ),
            order=self.order,
            f_end=f_end,
            n_rhs=n_rhs,
        )


# =============================================================================
# Resolution
# =============================================================================

_STEPPERS: Final[dict[str, type[Any]]] = {
    "euler": ExplicitEuler,
    "heun": Heun,
    "dopri5": DormandPrince45,
    "imex-euler": ImexEuler,
}


def available_methods() -> tuple[str, ...]:
    """Return the names accepted by :func:`resolve_stepper`."""
    return tuple(_STEPPERS)


def resolve_stepper(
    method: str | Stepper,
    *,
    operator: Operator | None = None,
) -> Stepper:
    """Resolve a method name (or pass through a stepper instance).

    Args:
        method: Method name (case-insensitive) or a Stepper instance.
        operator: Linear operator for IMEX methods.

    Raises:
        ValueError: If the name is unknown or a required operator is missing.
        TypeError: If ``method`` is neither a name nor a Stepper.

    Returns:
        A stepper ready for use by the integration loop.
    """
    if not isinstance(method, str):
        if isinstance(method, Stepper):
            return method
        raise TypeError(_STEPPER_TYPE_ERROR.format(typ=type(method).__name__))

    method_norm = method.strip().lower()
    if method_norm not in _STEPPERS:
        raise ValueError(
            _UNKNOWN_METHOD_ERROR.format(method=method, allowed=available_methods())
        )
    if method_norm == "imex-euler":
        if operator is None:
            raise ValueError(_MISSING_OPERATOR_ERROR.format(method=method_norm))
        return ImexEuler(operator)
    return _STEPPERS[method_norm]()
