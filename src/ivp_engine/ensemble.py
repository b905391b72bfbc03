# ivp_engine/src/ivp_engine/ensemble.py
"""Ensemble fan-out over independent trajectories.

Each trajectory runs the full integration loop in its own session (segment
store, controller, event engine); nothing mutable is shared between workers.
Results come back in input order. A trajectory that raises yields a FAILED
:class:`~ivp_engine.solution.Solution` carrying the exception, so one bad
parameter set never aborts its siblings.

Executors:
    - "serial":  run in the calling thread (deterministic, easiest to debug).
    - "thread":  ``concurrent.futures.ThreadPoolExecutor``.
    - "process": ``concurrent.futures.ProcessPoolExecutor``; problems, events
      and factories must then be picklable (module-level functions).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import TYPE_CHECKING, Final, Literal, TypeAlias

from .errors import IntegrationError
from .integrator import solve
from .solution import ReturnCode, Solution

if TYPE_CHECKING:
    from .events import Event
    from .integrator import CancelToken, IntegratorConfig
    from .linalg import Operator
    from .problem import Problem
    from .steppers import Stepper

logger = logging.getLogger(__name__)

ExecutorName: TypeAlias = Literal["serial", "thread", "process"]
EventFactory: TypeAlias = Callable[[int], Sequence["Event"]]

_EXECUTOR_ERROR: Final[str] = (
    "executor must be 'serial', 'thread' or 'process'; got {executor!r}"
)
_MAX_WORKERS_ERROR: Final[str] = "max_workers must be >= 1; got {value!r}"
_EVENTS_CONFLICT_ERROR: Final[str] = "Pass either events or event_factory, not both"
_TRAJECTORY_FAILED_MSG: Final[str] = "Trajectory {index} raised {typ}: {exc}"


def _run_one(  # noqa: PLR0913
    index: int,
    problem: Problem,
    stepper: str | Stepper,
    config: IntegratorConfig | None,
    events: Sequence[Event],
    event_factory: EventFactory | None,
    operator: Operator | None,
    cancel: CancelToken | None,
    deadline: float | None,
) -> Solution:
    """Integrate one trajectory, converting any exception into a FAILED Solution."""
    try:
        trajectory_events = event_factory(index) if event_factory is not None else events
        return solve(
            problem,
            stepper,
            config,
            trajectory_events,
            operator=operator,
            cancel=cancel,
            deadline=deadline,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            _TRAJECTORY_FAILED_MSG.format(index=index, typ=type(exc).__name__, exc=exc)
        )
        error = (
            exc
            if isinstance(exc, IntegrationError)
            else IntegrationError(
                _TRAJECTORY_FAILED_MSG.format(index=index, typ=type(exc).__name__, exc=exc)
            )
        )
        if error is not exc:
            error.__cause__ = exc
        return Solution(
            [],
            [],
            store=None,
            status=ReturnCode.FAILED,
            error=error,
            message=str(error),
        )


def _make_executor(executor: ExecutorName, max_workers: int | None) -> Executor:
    if executor == "thread":
        return ThreadPoolExecutor(max_workers=max_workers)
    return ProcessPoolExecutor(max_workers=max_workers)


def solve_ensemble(  # noqa: PLR0913
    problems: Sequence[Problem],
    stepper: str | Stepper = "dopri5",
    config: IntegratorConfig | None = None,
    events: Sequence[Event] = (),
    *,
    event_factory: EventFactory | None = None,
    executor: ExecutorName = "serial",
    max_workers: int | None = None,
    operator: Operator | None = None,
    cancel: CancelToken | None = None,
    deadline: float | None = None,
) -> list[Solution]:
    """Integrate independent problems, returning Solutions in input order.

    Args:
        problems: Problems to integrate (e.g. built with ``Problem.remake``).
        stepper: Method name or Stepper instance shared by all trajectories.
        config: Run configuration shared by all trajectories.
        events: Event definitions shared by all trajectories. Event objects are
            immutable; the engine state is per trajectory.
        event_factory: Alternative to ``events``: ``event_factory(i)`` builds the
            events of trajectory ``i``.
        executor: "serial", "thread" or "process".
        max_workers: Pool size (executor default when None).
        operator: Linear operator ``A`` for IMEX methods.
        cancel: Cancellation token checked by every trajectory.
        deadline: ``time.monotonic()`` deadline checked by every trajectory.

    Raises:
        ValueError: If the executor name, pool size or event arguments are
            invalid.

    Returns:
        One Solution per problem, in the order of ``problems``.
    """
    if executor not in {"serial", "thread", "process"}:
        raise ValueError(_EXECUTOR_ERROR.format(executor=executor))
    if max_workers is not None and max_workers < 1:
        raise ValueError(_MAX_WORKERS_ERROR.format(value=max_workers))
    if events and event_factory is not None:
        raise ValueError(_EVENTS_CONFLICT_ERROR)

    args = [
        (i, p, stepper, config, tuple(events), event_factory, operator, cancel, deadline)
        for i, p in enumerate(problems)
    ]
    logger.debug("Running %d trajectories with executor=%s", len(args), executor)

    if executor == "serial" or len(args) <= 1:
        return [_run_one(*a) for a in args]

    with _make_executor(executor, max_workers) as pool:
        futures = [pool.submit(_run_one, *a) for a in args]
        return [f.result() for f in futures]
