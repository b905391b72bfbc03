# ivp_engine/src/ivp_engine/config.py
"""User-facing solver settings.

This module defines the pydantic model used for dict/YAML-facing configuration
and translates it into the native frozen :class:`IntegratorConfig`.

Notes:
    - Unknown fields are allowed and ignored (``extra="allow"``), so settings can
      live in a larger configuration document.
    - Tolerances may be scalars or per-component lists; their positivity is
      checked again by :class:`IntegratorConfig` (raising ``ToleranceError``).
    - Events and operators are Python objects and are not part of the settings;
      pass them to :func:`~ivp_engine.integrator.solve` directly.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .controller import ControllerConfig
from .integrator import IntegratorConfig

MethodName = Literal["euler", "heun", "dopri5", "imex-euler"]


class SolverSettings(BaseModel):
    """Configuration schema for a single integration run.

    This model mirrors :class:`IntegratorConfig` with YAML-friendly field types
    (lists instead of tuples/arrays) and adds the method name.
    """

    model_config = ConfigDict(extra="allow")

    method: MethodName = Field(
        default="dopri5",
        description="Stepping method",
    )

    # Error control
    abstol: float | list[float] = Field(default=1e-6)
    reltol: float | list[float] = Field(default=1e-3)

    # Step bounds and limits
    max_step: float = Field(default=float("inf"), gt=0.0)
    min_step: float = Field(default=0.0, ge=0.0)
    initial_step: float | None = Field(default=None)
    max_rejections: int = Field(default=25, ge=1)
    max_iterations: int = Field(default=1_000_000, ge=1)

    # Step-size update constants
    safety: float = Field(default=0.9, gt=0.0, lt=1.0)
    min_shrink: float = Field(default=0.2, gt=0.0, lt=1.0)
    max_growth: float = Field(default=5.0, gt=1.0)
    beta2: float = Field(default=0.0, ge=0.0, lt=1.0)

    # Events
    event_time_tolerance: float = Field(default=1e-10, gt=0.0)
    rootfind_method: Literal["brent", "bisection"] = Field(default="brent")

    # Output
    save_everystep: bool = Field(default=True)
    dense: bool = Field(default=True)
    saveat: list[float] = Field(default_factory=list)
    tstops: list[float] = Field(default_factory=list)
    save_start: bool | None = Field(default=None)
    save_end: bool | None = Field(default=None)
    extrapolation_tolerance: float = Field(default=1e-10, ge=0.0)

    @field_validator("abstol", "reltol")
    @classmethod
    def _positive_tolerance(cls, value: float | list[float]) -> float | list[float]:
        values = value if isinstance(value, list) else [value]
        if not values or any(not v > 0.0 for v in values):
            msg = "tolerances must be strictly positive"
            raise ValueError(msg)
        return value

    def to_integrator_config(self) -> IntegratorConfig:
        """Convert these settings to a native IntegratorConfig.

        Returns:
            Fully constructed IntegratorConfig instance.
        """
        controller = ControllerConfig(
            safety=self.safety,
            min_shrink=self.min_shrink,
            max_growth=self.max_growth,
            beta2=self.beta2,
        )

        return IntegratorConfig(
            abstol=self.abstol,
            reltol=self.reltol,
            max_step=self.max_step,
            min_step=self.min_step,
            initial_step=self.initial_step,
            max_rejections=self.max_rejections,
            max_iterations=self.max_iterations,
            event_time_tolerance=self.event_time_tolerance,
            rootfind_method=self.rootfind_method,
            save_everystep=self.save_everystep,
            dense=self.dense,
            saveat=tuple(self.saveat),
            tstops=tuple(self.tstops),
            save_start=self.save_start,
            save_end=self.save_end,
            extrapolation_tolerance=self.extrapolation_tolerance,
            controller=controller,
        )
