# ivp_engine/src/ivp_engine/controller.py
"""Step-size control: error norms, accept/reject decisions and step proposals.

The controller consumes the embedded error estimate produced by a stepper,
reduces it to a single normalized scalar and decides whether the candidate step
is accepted. It then proposes the next step size with the classic rule

    factor = safety * err ** (-1 / (order + 1))
    factor = min(max_growth, max(min_shrink, factor))
    h_next = h * factor

optionally extended with a proportional-integral term (``beta2 > 0``) that
multiplies the factor by ``err_prev ** beta2`` after accepted steps. Growth is
suppressed (factor <= 1) on rejected steps.

The controller is the only place that counts consecutive rejections. When the
configured limit is reached, or when the step collapses below ``min_step`` or
to numerical zero relative to the current time, it raises
:class:`~ivp_engine.errors.StepSizeError` instead of looping forever.

The controller never touches the Solution; its only state is the rejection
counter and the previous accepted error (for PI control).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np

from .errors import StepSizeError, ToleranceError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from .problem import RHSFunction


# =============================================================================
# Errors / messages
# =============================================================================

_TOL_NON_POSITIVE_ERROR: Final[str] = (
    "{name} must be strictly positive and finite; got {value!r}"
)
_TOL_SHAPE_ERROR: Final[str] = (
    "{name} has shape {actual}, which does not broadcast to state shape {expected}"
)
_NORM_NON_FINITE_ERROR: Final[str] = "Error norm is not finite"
_TOO_MANY_REJECTS_ERROR: Final[str] = (
    "Exceeded {limit} consecutive rejected steps (last step {h!r}, error norm {err!r})"
)
_DT_UNDERFLOW_ERROR: Final[str] = (
    "Step size {h!r} fell below min_step={min_step!r} after a rejected step"
)
_DT_DEGENERATE_ERROR: Final[str] = "Step size {h!r} is non-finite or numerically zero"
_CONFIG_RANGE_ERROR: Final[str] = "{name} must satisfy {constraint}; got {value!r}"

_EPS: Final[float] = float(np.finfo(float).eps)
_MIN_ERR_PREV: Final[float] = 1e-4


# =============================================================================
# Configuration / results
# =============================================================================


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Constants of the step-size update rule.

    Attributes:
        safety: Safety factor applied to the optimal factor (must be < 1).
        min_shrink: Smallest multiplicative change per step (must be < 1).
        max_growth: Largest multiplicative change per step (must be > 1).
        beta2: Exponent of the integral (previous error) term; 0 disables it.
    """

    safety: float = 0.9
    min_shrink: float = 0.2
    max_growth: float = 5.0
    beta2: float = 0.0

    def __post_init__(self) -> None:
        """Validate constant ranges.

        Raises:
            ValueError: If any constant is outside its admissible range.
        """
        if not 0.0 < self.safety < 1.0:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="safety", constraint="0 < safety < 1", value=self.safety
                )
            )
        if not 0.0 < self.min_shrink < 1.0:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="min_shrink",
                    constraint="0 < min_shrink < 1",
                    value=self.min_shrink,
                )
            )
        if not self.max_growth > 1.0:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="max_growth", constraint="max_growth > 1", value=self.max_growth
                )
            )
        if not 0.0 <= self.beta2 < 1.0:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="beta2", constraint="0 <= beta2 < 1", value=self.beta2
                )
            )


@dataclass(slots=True, frozen=True)
class StepDecision:
    """Outcome of one controller consultation.

    Attributes:
        accept: Whether the candidate step is accepted.
        next_step: Signed step size proposed for the next attempt.
        error_estimate: Normalized error that produced this decision.
    """

    accept: bool
    next_step: float
    error_estimate: float


# =============================================================================
# Tolerance helpers
# =============================================================================


def validate_tolerance(value: ArrayLike, name: str) -> float | NDArray[np.floating]:
    """Validate an absolute or relative tolerance.

    Args:
        value: Scalar or per-component tolerance.
        name: Name used in error messages.

    Raises:
        ToleranceError: If any entry is non-positive or non-finite.

    Returns:
        A float for scalar input, otherwise a read-only float64 array.
    """
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 0 or not np.all(np.isfinite(arr)) or not np.all(arr > 0.0):
        raise ToleranceError(_TOL_NON_POSITIVE_ERROR.format(name=name, value=value))
    if arr.ndim == 0:
        return float(arr)
    out = arr.copy()
    out.setflags(write=False)
    return out


# =============================================================================
# StepSizeController
# =============================================================================


class StepSizeController:
    """Adaptive step-size controller with a consecutive-rejection limit."""

    def __init__(
        self,
        config: ControllerConfig | None = None,
        *,
        abstol: ArrayLike = 1e-6,
        reltol: ArrayLike = 1e-3,
        min_step: float = 0.0,
        max_step: float = float("inf"),
        max_rejections: int = 25,
    ) -> None:
        """Initialize StepSizeController.

        Args:
            config: Update-rule constants; defaults are used if None.
            abstol: Absolute tolerance (scalar or per component).
            reltol: Relative tolerance (scalar or per component).
            min_step: Smallest admissible step magnitude.
            max_step: Largest admissible step magnitude.
            max_rejections: Consecutive rejections allowed before failing.

        Raises:
            ToleranceError: If tolerances are invalid.
            ValueError: If step bounds or the rejection limit are invalid.
        """
        self.config = config or ControllerConfig()
        self.abstol = validate_tolerance(abstol, "abstol")
        self.reltol = validate_tolerance(reltol, "reltol")

        if not (min_step >= 0.0 and np.isfinite(min_step)):
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="min_step", constraint="finite and >= 0", value=min_step
                )
            )
        if not max_step > 0.0 or max_step < min_step:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="max_step", constraint="> 0 and >= min_step", value=max_step
                )
            )
        if int(max_rejections) < 1:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="max_rejections", constraint=">= 1", value=max_rejections
                )
            )
        self.min_step = float(min_step)
        self.max_step = float(max_step)
        self.max_rejections = int(max_rejections)

        self.rejections = 0
        self._err_prev: float | None = None

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Forget rejection history and the PI memory (after a state jump)."""
        self.rejections = 0
        self._err_prev = None

    def clamp(self, h: float) -> float:
        """Clamp a signed step to ``[min_step, max_step]`` in magnitude.

        Args:
            h: Signed step size.

        Returns:
            The clamped step with the sign of ``h`` preserved.
        """
        mag = abs(h)
        mag = min(mag, self.max_step)
        mag = max(mag, self.min_step)
        return float(np.copysign(mag, h))

    # ------------------------------------------------------------------
    # Error norm
    # ------------------------------------------------------------------

    def check_tolerance_shape(self, shape: tuple[int, ...]) -> None:
        """Check that per-component tolerances broadcast to a state shape.

        Args:
            shape: State shape.

        Raises:
            ToleranceError: If a tolerance array does not match ``shape``.
        """
        for name, tol in (("abstol", self.abstol), ("reltol", self.reltol)):
            if isinstance(tol, float):
                continue
            try:
                np.broadcast_shapes(tol.shape, shape)
            except ValueError as exc:
                raise ToleranceError(
                    _TOL_SHAPE_ERROR.format(name=name, actual=tol.shape, expected=shape)
                ) from exc

    def error_norm(
        self,
        err: NDArray[np.floating],
        u_new: NDArray[np.floating],
        u_old: NDArray[np.floating],
        *,
        t: float | None = None,
    ) -> float:
        """Compute the RMS scaled error norm.

        Args:
            err: Embedded error estimate (same shape as the state).
            u_new: Candidate state.
            u_old: State at the start of the step.
            t: Time at the start of the step (for diagnostics).

        Raises:
            ToleranceError: If the norm is not finite.

        Returns:
            Normalized scalar error; the step is acceptable when <= 1.
        """
        scale = np.maximum(np.abs(u_new), np.abs(u_old))
        scale *= self.reltol
        scale += self.abstol

        ratio = np.asarray(err, dtype=np.float64) / scale
        v = float(np.sqrt(np.mean(ratio * ratio))) if ratio.size else 0.0
        if not np.isfinite(v):
            raise ToleranceError(_NORM_NON_FINITE_ERROR, t=t, state=u_new)
        return v

    # ------------------------------------------------------------------
    # Step proposal
    # ------------------------------------------------------------------

    def _factor(self, err_norm: float, order: int, *, accepted: bool) -> float:
        cfg = self.config
        if err_norm <= 0.0:
            fac = cfg.max_growth
        else:
            fac = cfg.safety * (err_norm ** (-1.0 / float(order + 1)))
            if accepted and cfg.beta2 > 0.0 and self._err_prev is not None:
                fac *= self._err_prev**cfg.beta2
            fac = min(cfg.max_growth, max(cfg.min_shrink, fac))
        if not accepted:
            fac = min(fac, 1.0)
        return fac

    def propose(
        self,
        error_estimate: float,
        current_step: float,
        order: int,
        *,
        t: float = 0.0,
        state: NDArray[np.floating] | None = None,
    ) -> StepDecision:
        """Decide accept/reject and propose the next step size.

        Args:
            error_estimate: Normalized error (output of :meth:`error_norm`).
            current_step: Signed step size that produced the estimate.
            order: Order used in the exponent (``order + 1``).
            t: Time at the start of the attempted step (for diagnostics).
            state: State at the start of the attempted step (for diagnostics).

        Raises:
            ToleranceError: If ``error_estimate`` is not finite.
            StepSizeError: If the rejection limit is hit or the step collapses.

        Returns:
            The decision and the signed proposal for the next attempt.
        """
        err = float(error_estimate)
        if not np.isfinite(err):
            raise ToleranceError(_NORM_NON_FINITE_ERROR, t=t, state=state)

        accept = err <= 1.0
        h_next = float(current_step) * self._factor(err, order, accepted=accept)
        if abs(h_next) > self.max_step:
            h_next = float(np.copysign(self.max_step, h_next))

        if accept:
            self.rejections = 0
            self._err_prev = max(err, _MIN_ERR_PREV)
            if abs(h_next) < self.min_step:
                h_next = float(np.copysign(self.min_step, h_next))
        else:
            self.rejections += 1
            if self.rejections >= self.max_rejections:
                raise StepSizeError(
                    _TOO_MANY_REJECTS_ERROR.format(
                        limit=self.max_rejections, h=current_step, err=err
                    ),
                    t=t,
                    state=state,
                )
            if self.min_step > 0.0 and abs(h_next) < self.min_step:
                raise StepSizeError(
                    _DT_UNDERFLOW_ERROR.format(h=h_next, min_step=self.min_step),
                    t=t,
                    state=state,
                )

        self.check_step(h_next, t=t, state=state)
        return StepDecision(accept=accept, next_step=h_next, error_estimate=err)

    @staticmethod
    def check_step(
        h: float,
        *,
        t: float,
        state: NDArray[np.floating] | None = None,
    ) -> None:
        """Fail if ``h`` is non-finite or too small to advance ``t``.

        Args:
            h: Signed step size.
            t: Current time.
            state: Current state (for diagnostics).

        Raises:
            StepSizeError: If the step is degenerate.
        """
        if not np.isfinite(h) or abs(h) <= _EPS * max(abs(t), 1.0):
            raise StepSizeError(_DT_DEGENERATE_ERROR.format(h=h), t=t, state=state)

    # ------------------------------------------------------------------
    # Initial step heuristic
    # ------------------------------------------------------------------

    def initial_step(
        self,
        rhs: RHSFunction,
        *,
        t0: float,
        u0: NDArray[np.floating],
        f0: NDArray[np.floating],
        params: object,
        direction: float,
        order: int,
        span: float,
    ) -> float:
        """Estimate a first step size (Hairer, Norsett & Wanner, II.4).

        Args:
            rhs: Right-hand side ``f(u, params, t)``.
            t0: Initial time.
            u0: Initial state.
            f0: ``rhs(u0, params, t0)``.
            params: Problem parameters.
            direction: +1.0 for forward, -1.0 for backward integration.
            order: Stepper order.
            span: Magnitude of the time span.

        Returns:
            Signed initial step, clamped to the span and step bounds.
        """
        scale = self.abstol + np.abs(u0) * self.reltol
        d0 = _rms(u0 / scale)
        d1 = _rms(f0 / scale)
        h0 = 1e-6 if (d0 < 1e-5 or d1 < 1e-5) else 0.01 * d0 / d1
        h0 = min(h0, span)

        u1 = u0 + direction * h0 * f0
        f1 = np.asarray(rhs(u1, params, t0 + direction * h0), dtype=np.float64)
        d2 = _rms((f1 - f0) / scale) / h0

        if max(d1, d2) <= 1e-15:
            h1 = max(1e-6, h0 * 1e-3)
        else:
            h1 = (0.01 / max(d1, d2)) ** (1.0 / float(order + 1))

        h = min(100.0 * h0, h1, span)
        return self.clamp(direction * h)


def _rms(x: NDArray[np.floating]) -> float:
    return float(np.sqrt(np.mean(np.square(x)))) if x.size else 0.0
