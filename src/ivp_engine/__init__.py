"""ivp_engine adaptive initial-value-problem integration engine package."""

from __future__ import annotations

import logging

from .config import SolverSettings
from .controller import ControllerConfig, StepDecision, StepSizeController
from .dense_output import Segment, SegmentStore
from .ensemble import solve_ensemble
from .errors import (
    DiscontinuityError,
    IntegrationError,
    MaxIterationsError,
    NonFiniteStateError,
    OutOfRangeError,
    PossibleMissedEventWarning,
    StepSizeError,
    ToleranceError,
)
from .events import (
    ContinuousEvent,
    DiscreteEvent,
    EventEngine,
    EventRecord,
    EventState,
    IntegratorHandle,
    PresetTimeEvent,
    SavePosition,
    terminate,
)
from .integrator import Integrator, IntegratorConfig, LoopState, solve
from .interpolants import Interpolant, PolynomialInterpolant
from .problem import Problem, RHSFunction
from .solution import ReturnCode, Solution, SolverStats
from .steppers import (
    DormandPrince45,
    ExplicitEuler,
    Heun,
    ImexEuler,
    Stepper,
    StepResult,
    available_methods,
    resolve_stepper,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ContinuousEvent",
    "ControllerConfig",
    "DiscontinuityError",
    "DiscreteEvent",
    "DormandPrince45",
    "EventEngine",
    "EventRecord",
    "EventState",
    "ExplicitEuler",
    "Heun",
    "ImexEuler",
    "IntegrationError",
    "Integrator",
    "IntegratorConfig",
    "IntegratorHandle",
    "Interpolant",
    "LoopState",
    "MaxIterationsError",
    "NonFiniteStateError",
    "OutOfRangeError",
    "PolynomialInterpolant",
    "PossibleMissedEventWarning",
    "PresetTimeEvent",
    "Problem",
    "RHSFunction",
    "ReturnCode",
    "SavePosition",
    "Segment",
    "SegmentStore",
    "Solution",
    "SolverSettings",
    "SolverStats",
    "StepDecision",
    "StepResult",
    "StepSizeController",
    "Stepper",
    "ToleranceError",
    "available_methods",
    "resolve_stepper",
    "solve",
    "solve_ensemble",
    "terminate",
]

__version__ = "0.1.0"
