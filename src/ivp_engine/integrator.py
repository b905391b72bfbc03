# ivp_engine/src/ivp_engine/integrator.py
"""Adaptive integration loop.

The :class:`Integrator` orchestrates a stepper, the step-size controller, the
dense-output segment store and the event engine into the march from ``t0`` to
``tf``::

    INITIALIZING -> STEPPING -> ACCEPTED | REJECTED -> STEPPING -> ...
                 -> COMPLETED | TERMINATED | FAILED

- STEPPING clamps the proposed step to the next stopping point (``tf``,
  ``tstops``, preset event times) so those times are hit exactly.
- REJECTED retries from the same time and state with the shrunk step. This is
  the only retry policy; rejections never surface unless the controller's
  consecutive-rejection limit is hit.
- ACCEPTED builds a segment, lets the event engine fire (possibly shortening the
  segment at a state jump), records the segment and samples, and advances.

A :class:`~ivp_engine.solution.Solution` is returned for every terminal state.
Failures (:class:`~ivp_engine.errors.IntegrationError`) are caught at the loop
boundary and attached as ``solution.error``; errors raised by user callbacks
propagate unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Protocol

import numpy as np

from .controller import ControllerConfig, StepSizeController, validate_tolerance
from .dense_output import Segment, SegmentStore
from .errors import (
    IntegrationError,
    MaxIterationsError,
    NonFiniteStateError,
)
from .events import EventEngine, RootfindMethod
from .interpolants import PolynomialInterpolant
from .solution import ReturnCode, Solution, SolverStats
from .steppers import resolve_stepper

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from .events import Event, EventOutcome
    from .linalg import Operator
    from .problem import Problem
    from .steppers import Stepper

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_MAX_ITER_ERROR: Final[str] = "Exceeded max_iterations={limit} step attempts"
_NON_FINITE_CANDIDATE_ERROR: Final[str] = "Stepper produced a non-finite state"
_NON_FINITE_DERIVATIVE_ERROR: Final[str] = "Right-hand side is not finite at the initial state"
_NON_FINITE_EFFECT_ERROR: Final[str] = "Event effect produced a non-finite state"
_INITIAL_STEP_SIGN_ERROR: Final[str] = (
    "initial_step={h!r} does not agree with the integration direction of tspan={tspan!r}"
)
_CONFIG_RANGE_ERROR: Final[str] = "{name} must be {constraint}; got {value!r}"
_SAVEAT_RANGE_ERROR: Final[str] = "saveat time {t!r} lies outside tspan={tspan!r}"
_TERMINATED_EVENT_MSG: Final[str] = "Terminated by event {name!r} at t={t!r}"
_CANCELLED_MSG: Final[str] = "Cancelled at t={t!r}"
_DEADLINE_MSG: Final[str] = "Deadline reached at t={t!r}"
_COMPLETED_MSG: Final[str] = "Reached tf={t!r}"

_EPS: Final[float] = float(np.finfo(np.float64).eps)


class CancelToken(Protocol):
    """Anything with ``is_set()``, e.g. :class:`threading.Event`."""

    def is_set(self) -> bool:
        """Return True once cancellation has been requested."""
        ...


# =============================================================================
# Configuration
# =============================================================================


@dataclass(slots=True, frozen=True)
class IntegratorConfig:
    """Immutable configuration of one integration run.

    Attributes:
        abstol: Absolute tolerance (scalar or per component).
        reltol: Relative tolerance (scalar or per component).
        max_step: Largest step magnitude.
        min_step: Smallest step magnitude (0 disables the bound).
        initial_step: Signed first step; estimated when None.
        max_rejections: Consecutive rejections allowed before failing.
        max_iterations: Total step attempts allowed before failing.
        event_time_tolerance: Absolute tolerance on located event times.
        rootfind_method: "brent" or "bisection".
        save_everystep: Record a sample at every accepted step.
        dense: Keep per-step interpolation data for ``solution(t)``.
        saveat: Output times; when given, step samples are not recorded.
        tstops: Times the loop must step onto exactly.
        save_start: Record the initial sample. Defaults to True, or to whether
            ``t0`` is in ``saveat`` when ``saveat`` is given.
        save_end: Record the final sample. Same default rule as ``save_start``.
        extrapolation_tolerance: Relative margin for dense-output queries.
        controller: Step-size update constants.
    """

    abstol: float | NDArray[np.floating] = 1e-6
    reltol: float | NDArray[np.floating] = 1e-3
    max_step: float = float("inf")
    min_step: float = 0.0
    initial_step: float | None = None
    max_rejections: int = 25
    max_iterations: int = 1_000_000
    event_time_tolerance: float = 1e-10
    rootfind_method: RootfindMethod = "brent"
    save_everystep: bool = True
    dense: bool = True
    saveat: tuple[float, ...] = ()
    tstops: tuple[float, ...] = ()
    save_start: bool | None = None
    save_end: bool | None = None
    extrapolation_tolerance: float = 1e-10
    controller: ControllerConfig = field(default_factory=ControllerConfig)

    def __post_init__(self) -> None:
        """Validate and normalize fields.

        Raises:
            ToleranceError: If a tolerance is non-positive or non-finite.
            ValueError: If another option is out of range.
        """
        object.__setattr__(self, "abstol", validate_tolerance(self.abstol, "abstol"))
        object.__setattr__(self, "reltol", validate_tolerance(self.reltol, "reltol"))
        if int(self.max_iterations) < 1:
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="max_iterations", constraint=">= 1", value=self.max_iterations
                )
            )
        if self.initial_step is not None and not (
            np.isfinite(self.initial_step) and self.initial_step != 0.0
        ):
            raise ValueError(
                _CONFIG_RANGE_ERROR.format(
                    name="initial_step",
                    constraint="finite and non-zero",
                    value=self.initial_step,
                )
            )
        for name in ("saveat", "tstops"):
            values = np.atleast_1d(np.asarray(getattr(self, name), dtype=np.float64))
            if not np.all(np.isfinite(values)):
                raise ValueError(
                    _CONFIG_RANGE_ERROR.format(
                        name=name, constraint="finite", value=getattr(self, name)
                    )
                )
            object.__setattr__(self, name, tuple(float(v) for v in values))

    def resolved_save_start(self, t0: float) -> bool:
        """Return the effective ``save_start`` flag."""
        if self.save_start is not None:
            return self.save_start
        return not self.saveat or t0 in self.saveat

    def resolved_save_end(self, tf: float) -> bool:
        """Return the effective ``save_end`` flag."""
        if self.save_end is not None:
            return self.save_end
        return not self.saveat or tf in self.saveat


# =============================================================================
# Loop state
# =============================================================================


class LoopState(StrEnum):
    """Integration loop states."""

    INITIALIZING = "initializing"
    STEPPING = "stepping"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(slots=True)
class _Session:
    """Mutable working set of one run; discarded when the run ends."""

    t: float
    u: NDArray[np.floating]
    f: NDArray[np.floating] | None
    h: float
    stats: SolverStats
    store: SegmentStore | None
    sample_t: list[float] = field(default_factory=list)
    sample_u: list[NDArray[np.floating]] = field(default_factory=list)
    stop_idx: int = 0
    save_idx: int = 0
    status: ReturnCode = ReturnCode.SUCCESS
    message: str = ""
    error: IntegrationError | None = None

    def push_sample(self, t: float, u: NDArray[np.floating]) -> None:
        # Consecutive identical samples collapse into one.
        if self.sample_t and self.sample_t[-1] == t and np.array_equal(self.sample_u[-1], u):
            return
        self.sample_t.append(float(t))
        self.sample_u.append(np.array(u, dtype=np.float64, copy=True))


# =============================================================================
# Integrator
# =============================================================================


class Integrator:
    """Adaptive single-trajectory integrator."""

    def __init__(
        self,
        problem: Problem,
        stepper: str | Stepper = "dopri5",
        config: IntegratorConfig | None = None,
        events: Sequence[Event] = (),
        *,
        operator: Operator | None = None,
    ) -> None:
        """Initialize Integrator.

        The stepper is resolved and every option validated here, once.

        Args:
            problem: Problem definition.
            stepper: Method name or Stepper instance.
            config: Run configuration; defaults are used if None.
            events: Event definitions in priority order.
            operator: Linear operator ``A`` for IMEX methods.

        Raises:
            ToleranceError: If tolerances do not match the state shape.
            ValueError: If ``initial_step`` or ``saveat`` contradict ``tspan``.
        """
        self.problem = problem
        self.config = config or IntegratorConfig()
        self.stepper = resolve_stepper(stepper, operator=operator)
        self.events = tuple(events)

        cfg = self.config
        self._controller_kwargs: dict[str, Any] = {
            "abstol": cfg.abstol,
            "reltol": cfg.reltol,
            "min_step": cfg.min_step,
            "max_step": cfg.max_step,
            "max_rejections": cfg.max_rejections,
        }
        StepSizeController(cfg.controller, **self._controller_kwargs).check_tolerance_shape(
            problem.u0.shape
        )

        direction = problem.direction
        if cfg.initial_step is not None and np.sign(cfg.initial_step) != direction:
            raise ValueError(
                _INITIAL_STEP_SIGN_ERROR.format(h=cfg.initial_step, tspan=problem.tspan)
            )

        lo, hi = sorted(problem.tspan)
        for t in cfg.saveat:
            if not lo <= t <= hi:
                raise ValueError(_SAVEAT_RANGE_ERROR.format(t=t, tspan=problem.tspan))
        self._saveat = sorted(cfg.saveat, key=lambda t: direction * t)

        self.state = LoopState.INITIALIZING
        self.controller: StepSizeController | None = None
        self.engine: EventEngine | None = None
        self._stops: list[float] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stopping_points(self, engine: EventEngine) -> list[float]:
        t0, tf = self.problem.tspan
        direction = self.problem.direction
        candidates = {*self.config.tstops, *engine.preset_times()}
        stops = {t for t in candidates if 0.0 < direction * (t - t0) < direction * (tf - t0)}
        stops.add(tf)
        return sorted(stops, key=lambda t: direction * t)

    def _derivative(self, u: NDArray[np.floating], params: Any, t: float) -> NDArray[np.floating]:  # noqa: ANN401
        return self.stepper.derivative(self.problem.rhs, u, t, params)

    def _fresh_step(
        self,
        controller: StepSizeController,
        session: _Session,
        f: NDArray[np.floating],
    ) -> float:
        """Propose a first step from ``(session.t, session.u)``."""
        direction = self.problem.direction
        if self.config.initial_step is not None:
            return controller.clamp(float(self.config.initial_step))
        session.stats.n_rhs += 1
        return controller.initial_step(
            self._derivative,
            t0=session.t,
            u0=session.u,
            f0=f,
            params=self.problem.params,
            direction=direction,
            order=self.stepper.order,
            span=abs(self.problem.tf - session.t),
        )

    def _reached(self, t: float, target: float) -> bool:
        return self.problem.direction * (target - t) <= 4.0 * _EPS * max(abs(t), 1.0)

    def _should_stop(
        self,
        session: _Session,
        cancel: CancelToken | None,
        deadline: float | None,
    ) -> bool:
        if cancel is not None and cancel.is_set():
            session.status = ReturnCode.TERMINATED
            session.message = _CANCELLED_MSG.format(t=session.t)
            return True
        if deadline is not None and time.monotonic() >= deadline:
            session.status = ReturnCode.TERMINATED
            session.message = _DEADLINE_MSG.format(t=session.t)
            return True
        return False

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def solve(
        self,
        *,
        cancel: CancelToken | None = None,
        deadline: float | None = None,
    ) -> Solution:
        """Run the loop to a terminal state.

        Every call starts a fresh session, so repeated calls are independent.

        Args:
            cancel: Optional cancellation token checked between accepted steps.
            deadline: Optional ``time.monotonic()`` deadline checked between
                accepted steps.

        Returns:
            Solution tagged with the terminal status.
        """
        problem = self.problem
        cfg = self.config
        self.state = LoopState.INITIALIZING

        controller = StepSizeController(cfg.controller, **self._controller_kwargs)
        engine = EventEngine(
            self.events,
            time_tolerance=cfg.event_time_tolerance,
            rootfind_method=cfg.rootfind_method,
        )
        self.controller, self.engine = controller, engine

        session = _Session(
            t=problem.t0,
            u=np.array(problem.u0, dtype=np.float64, copy=True),
            f=None,
            h=0.0,
            stats=SolverStats(),
            store=SegmentStore(extrapolation_tolerance=cfg.extrapolation_tolerance)
            if cfg.dense
            else None,
        )

        try:
            self._initialize(session, controller, engine)
            self._run(session, controller, engine, cancel, deadline)
        except IntegrationError as exc:
            self.state = LoopState.FAILED
            session.status = ReturnCode.FAILED
            session.error = exc
            session.message = str(exc)
            logger.info("Integration failed: %s", exc)

        session.stats.n_events = len(engine.log)
        return Solution(
            session.sample_t,
            session.sample_u,
            store=session.store,
            status=session.status,
            events=engine.log,
            stats=session.stats,
            error=session.error,
            message=session.message,
            extrapolation_tolerance=cfg.extrapolation_tolerance,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _initialize(
        self,
        session: _Session,
        controller: StepSizeController,
        engine: EventEngine,
    ) -> None:
        problem = self.problem
        f0 = self._derivative(session.u, problem.params, session.t)
        session.stats.n_rhs += 1
        if not np.all(np.isfinite(f0)):
            raise NonFiniteStateError(_NON_FINITE_DERIVATIVE_ERROR, t=session.t, state=session.u)
        session.f = f0

        engine.reset(session.t, session.u, direction=problem.direction)
        self._stops = self._stopping_points(engine)

        if self.config.resolved_save_start(problem.t0):
            session.push_sample(session.t, session.u)
        while session.save_idx < len(self._saveat) and self._saveat[session.save_idx] == problem.t0:
            session.save_idx += 1

        session.h = self._fresh_step(controller, session, f0)
        logger.debug(
            "Initialized %s on tspan=%r with h=%r", self.stepper.name, problem.tspan, session.h
        )

    def _run(  # noqa: C901
        self,
        session: _Session,
        controller: StepSizeController,
        engine: EventEngine,
        cancel: CancelToken | None,
        deadline: float | None,
    ) -> None:
        problem = self.problem
        cfg = self.config
        rhs, params = problem.rhs, problem.params
        attempts = 0

        while True:
            if self._should_stop(session, cancel, deadline):
                self.state = LoopState.TERMINATED
                self._finish(session, saved=self.config.resolved_save_end(problem.tf))
                return

            # STEPPING (retried in place while rejected)
            while True:
                self.state = LoopState.STEPPING
                if attempts >= cfg.max_iterations:
                    raise MaxIterationsError(
                        _MAX_ITER_ERROR.format(limit=cfg.max_iterations),
                        t=session.t,
                        state=session.u,
                    )
                attempts += 1

                t, u = session.t, session.u
                stop = self._stops[session.stop_idx]
                h = session.h
                remaining = stop - t
                clamped = abs(h) * 1.01 >= abs(remaining)
                if clamped:
                    h = remaining
                controller.check_step(h, t=t, state=u)

                result = self.stepper.step(rhs, u, t, h, params, f_start=session.f)
                session.stats.n_steps += 1
                session.stats.n_rhs += result.n_rhs

                if not np.all(np.isfinite(result.candidate)):
                    raise NonFiniteStateError(_NON_FINITE_CANDIDATE_ERROR, t=t, state=u)

                err = controller.error_norm(result.error, result.candidate, u, t=t)
                if err > 1.0:
                    session.stats.n_rejected += 1
                decision = controller.propose(err, h, result.order, t=t, state=u)
                if decision.accept:
                    break

                self.state = LoopState.REJECTED
                session.h = decision.next_step
                logger.debug(
                    "Rejected step at t=%r: h=%r err=%.3g -> h=%r",
                    t,
                    h,
                    err,
                    decision.next_step,
                )

            # ACCEPTED
            self.state = LoopState.ACCEPTED
            session.stats.n_accepted += 1
            t_new = stop if clamped else t + h
            next_h = decision.next_step
            if clamped:
                next_h = controller.clamp(
                    float(np.copysign(max(abs(next_h), abs(session.h)), next_h))
                )

            interpolant = result.interpolant
            if interpolant is None or not self.stepper.supports_dense_output:
                interpolant = PolynomialInterpolant.linear(t, t_new, u, result.candidate)
            segment = Segment(t, t_new, u, result.candidate, interpolant)

            outcome = engine.process(segment.evaluate, t, t_new, result.candidate, params)
            if outcome.cut_time is not None and outcome.cut_time != t_new:
                segment = Segment(t, outcome.cut_time, u, outcome.state_before, interpolant)

            if session.store is not None:
                session.store.append(segment)
            self._record_samples(session, segment, outcome)

            if outcome.cut_time is not None:
                self._restart(session, controller, engine, outcome)
                if outcome.terminated:
                    self.state = LoopState.TERMINATED
                    record = next(r for r in reversed(outcome.records) if r.terminated)
                    session.status = ReturnCode.TERMINATED
                    session.message = _TERMINATED_EVENT_MSG.format(name=record.name, t=record.t)
                    self._finish(session, saved=True)
                    return
            else:
                session.t = t_new
                session.u = result.candidate
                session.f = result.f_end
                session.h = next_h

            while session.stop_idx < len(self._stops) and self._reached(
                session.t, self._stops[session.stop_idx]
            ):
                session.stop_idx += 1
            if session.stop_idx >= len(self._stops):
                self.state = LoopState.COMPLETED
                session.message = _COMPLETED_MSG.format(t=session.t)
                self._finish(session, saved=self.config.resolved_save_end(problem.tf))
                return

    def _record_samples(
        self,
        session: _Session,
        segment: Segment,
        outcome: EventOutcome,
    ) -> None:
        """Merge saveat, event and step-end samples for one accepted segment."""
        direction = self.problem.direction
        pending: list[tuple[float, NDArray[np.floating]]] = []

        while session.save_idx < len(self._saveat):
            ts = self._saveat[session.save_idx]
            if direction * (ts - segment.t_end) > 0.0:
                break
            pending.append((ts, segment.evaluate(ts)))
            session.save_idx += 1

        pending.extend(outcome.samples)
        if self.config.save_everystep and not self._saveat and outcome.cut_time is None:
            pending.append((segment.t_end, segment.u_end))

        # Stable: equal times keep saveat, event, step-end order.
        pending.sort(key=lambda item: direction * item[0])
        for ts, us in pending:
            session.push_sample(ts, us)

    def _restart(
        self,
        session: _Session,
        controller: StepSizeController,
        engine: EventEngine,
        outcome: EventOutcome,
    ) -> None:
        """Continue from an event time after a state jump or termination."""
        assert outcome.cut_time is not None  # noqa: S101
        assert outcome.state is not None  # noqa: S101
        session.t = outcome.cut_time
        session.u = np.array(outcome.state, dtype=np.float64, copy=True)
        if not np.all(np.isfinite(session.u)):
            raise NonFiniteStateError(_NON_FINITE_EFFECT_ERROR, t=session.t, state=session.u)
        if outcome.terminated:
            return

        controller.reset()
        session.f = self._derivative(session.u, self.problem.params, session.t)
        session.stats.n_rhs += 1
        if outcome.step_override is not None:
            session.h = controller.clamp(self.problem.direction * outcome.step_override)
        elif not self._reached(session.t, self.problem.tf):
            session.h = self._fresh_step(controller, session, session.f)
        engine.reset(session.t, session.u)

    def _finish(self, session: _Session, *, saved: bool) -> None:
        if saved:
            session.push_sample(session.t, session.u)
        logger.debug("Integration finished: %s", session.message)


# =============================================================================
# Functional entry point
# =============================================================================


def solve(  # noqa: PLR0913
    problem: Problem,
    stepper: str | Stepper = "dopri5",
    config: IntegratorConfig | None = None,
    events: Sequence[Event] = (),
    *,
    operator: Operator | None = None,
    cancel: CancelToken | None = None,
    deadline: float | None = None,
) -> Solution:
    """Integrate ``problem`` and return its Solution.

    Args:
        problem: Problem definition.
        stepper: Method name ("euler", "heun", "dopri5", "imex-euler") or a
            Stepper instance.
        config: Run configuration.
        events: Event definitions in priority order.
        operator: Linear operator ``A`` for IMEX methods.
        cancel: Optional cancellation token.
        deadline: Optional ``time.monotonic()`` deadline.

    Returns:
        The Solution; inspect ``status`` / ``error`` for early exits.
    """
    integrator = Integrator(problem, stepper, config, events, operator=operator)
    return integrator.solve(cancel=cancel, deadline=deadline)

