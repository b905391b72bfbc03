# ivp_engine/src/ivp_engine/problem.py
"""Problem definition consumed by the integration loop.

A :class:`Problem` bundles the right-hand side ``f(u, params, t)``, the initial
state, the time span and the parameters. It is immutable; ensembles derive
variants with :meth:`Problem.remake`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Final, TypeAlias

import numpy as np
from numpy.typing import ArrayLike, NDArray

_TSPAN_LEN_ERROR: Final[str] = "tspan must be a pair (t0, tf); got {tspan!r}"
_TSPAN_FINITE_ERROR: Final[str] = "tspan endpoints must be finite; got {tspan!r}"
_TSPAN_EMPTY_ERROR: Final[str] = "tspan endpoints must differ; got {tspan!r}"
_U0_NDIM_ERROR: Final[str] = "u0 must be a non-empty 1D array; got shape {shape}"
_U0_FINITE_ERROR: Final[str] = "u0 must contain only finite values"

FloatArray: TypeAlias = NDArray[np.floating[Any]]
RHSFunction: TypeAlias = Callable[[FloatArray, Any, float], ArrayLike]


@dataclass(slots=True, frozen=True)
class Problem:
    """Initial-value problem ``u' = rhs(u, params, t)``, ``u(t0) = u0``.

    Attributes:
        rhs: Right-hand side ``rhs(u, params, t) -> du/dt``.
        u0: Initial state (1D float array).
        tspan: ``(t0, tf)``; ``tf < t0`` integrates backward in time.
        params: Arbitrary parameter object passed through to ``rhs``.
    """

    rhs: RHSFunction
    u0: FloatArray
    tspan: tuple[float, float]
    params: Any = field(default=None)

    def __post_init__(self) -> None:
        """Normalize and validate fields.

        Raises:
            ValueError: If ``tspan`` or ``u0`` are invalid.
        """
        if len(self.tspan) != 2:  # noqa: PLR2004
            raise ValueError(_TSPAN_LEN_ERROR.format(tspan=self.tspan))
        t0, tf = float(self.tspan[0]), float(self.tspan[1])
        if not (np.isfinite(t0) and np.isfinite(tf)):
            raise ValueError(_TSPAN_FINITE_ERROR.format(tspan=self.tspan))
        if t0 == tf:
            raise ValueError(_TSPAN_EMPTY_ERROR.format(tspan=self.tspan))

        u0 = np.array(self.u0, dtype=np.float64, copy=True)
        if u0.ndim == 0:
            u0 = u0.reshape(1)
        if u0.ndim != 1 or u0.size == 0:
            raise ValueError(_U0_NDIM_ERROR.format(shape=u0.shape))
        if not np.all(np.isfinite(u0)):
            raise ValueError(_U0_FINITE_ERROR)
        u0.setflags(write=False)

        object.__setattr__(self, "tspan", (t0, tf))
        object.__setattr__(self, "u0", u0)

    @property
    def t0(self) -> float:
        """Initial time."""
        return self.tspan[0]

    @property
    def tf(self) -> float:
        """Final time."""
        return self.tspan[1]

    @property
    def direction(self) -> float:
        """+1.0 for forward integration, -1.0 for backward."""
        return 1.0 if self.tspan[1] > self.tspan[0] else -1.0

    @property
    def n_states(self) -> int:
        """Number of state components."""
        return int(self.u0.size)

    def remake(self, **changes: Any) -> Problem:  # noqa: ANN401
        """Return a copy with selected fields replaced.

        Args:
            **changes: Any of ``rhs``, ``u0``, ``tspan``, ``params``.

        Returns:
            New validated Problem.
        """
        return replace(self, **changes)
