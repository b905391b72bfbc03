# ivp_engine/examples/simple_sir.py
"""Single-location SIR with adaptive stepping, dense output and events.

This example demonstrates the core API:

- ``solve(problem, "dopri5", config)`` chooses its own steps; ``saveat`` asks for
  samples on a fixed output grid, interpolated from the per-step dense output.
- ``solution(t)`` evaluates the trajectory anywhere in the integrated span.
- A ``ContinuousEvent`` on ``dI/dt`` locates the epidemic peak to
  ``event_time_tolerance`` without any output-grid refinement.
- A ``PresetTimeEvent`` applies an intervention (halving ``S``) at a fixed day;
  the state jump is recorded as a pre/post sample pair.

We model a normalized SIR system with state u = (S, I, R) and S + I + R = 1.

This script saves plots to disk (no interactive windows).
"""

from __future__ import annotations

from pathlib import Path
from typing import NamedTuple

import matplotlib.pyplot as plt
import numpy as np

from ivp_engine import (
    ContinuousEvent,
    IntegratorConfig,
    IntegratorHandle,
    PresetTimeEvent,
    Problem,
    SavePosition,
    Solution,
    solve,
)

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "sir"


class SIRParams(NamedTuple):
    """SIR rates."""

    beta: float
    gamma: float


def sir_rhs(u: np.ndarray, p: SIRParams, t: float) -> np.ndarray:  # noqa: ARG001
    """RHS for a normalized SIR model.

    Args:
        u: State (S, I, R).
        p: Rates.
        t: Current time (unused; included for API compatibility).

    Returns:
        (dS/dt, dI/dt, dR/dt).
    """
    s, i, _ = u
    new_inf = p.beta * s * i
    recov = p.gamma * i
    return np.array([-new_inf, new_inf - recov, recov])


def compute_conservation_drift(states: np.ndarray) -> float:
    """Compute max |S+I+R-1| over samples.

    Args:
        states: Sample states, shape (n_samples, 3).

    Returns:
        Maximum absolute conservation drift.
    """
    return float(np.max(np.abs(states.sum(axis=1) - 1.0)))


def save_sir_plot(solution: Solution, *, title: str, out_path: Path) -> None:
    """Save S, I, R samples (and event times) to an image file.

    Args:
        solution: Integrated solution.
        title: Plot title.
        out_path: Output path for the saved figure.
    """
    drift = compute_conservation_drift(solution.u)

    plt.figure(figsize=(8, 5))
    for k, label in enumerate(("S", "I", "R")):
        plt.plot(solution.t, solution.u[:, k], label=label)
    for record in solution.events:
        plt.axvline(record.t, color="grey", linestyle=":", linewidth=1.0)
    plt.grid(visible=True)
    plt.legend()
    plt.title(f"{title}\nmax |S+I+R-1| = {drift:.3e}")
    plt.xlabel("Time")
    plt.ylabel("Proportion")
    plt.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=150)
    plt.close()


def vaccinate(handle: IntegratorHandle) -> None:
    """Move half of the susceptibles to R."""
    moved = 0.5 * handle.u[0]
    handle.u[0] -= moved
    handle.u[2] += moved


def main() -> None:
    """Run and save SIR simulations with and without an intervention.

    Files are written to: examples/output/sir/
    """
    params = SIRParams(beta=0.30, gamma=1.0 / 7.0)
    initial_infected = 0.01
    total_time = 160.0

    problem = Problem(
        sir_rhs,
        np.array([1.0 - initial_infected, initial_infected, 0.0]),
        (0.0, total_time),
        params,
    )

    def infections_rate(t: float, u: np.ndarray) -> float:
        return float(sir_rhs(u, params, t)[1])

    peak = ContinuousEvent(infections_rate, direction=-1, name="peak")

    # ---------------------------------------------------------------------
    # (1) Free epidemic on a coarse output grid
    # ---------------------------------------------------------------------
    cfg = IntegratorConfig(
        abstol=1e-9,
        reltol=1e-7,
        saveat=tuple(np.linspace(0.0, total_time, 161)),
    )
    free = solve(problem, "dopri5", cfg, [peak])
    print(f"free run: {free.message}; peak at t={free.events[0].t:.4f}")
    print(f"  stats: {free.stats.as_dict()}")
    save_sir_plot(free, title="SIR (dopri5, saveat grid)", out_path=_OUTPUT_DIR / "free.png")

    # ---------------------------------------------------------------------
    # (2) Intervention at day 30; samples at every accepted step
    # ---------------------------------------------------------------------
    intervention = PresetTimeEvent(
        (30.0,), vaccinate, save_position=SavePosition.BOTH, name="vaccinate"
    )
    cfg_steps = IntegratorConfig(abstol=1e-9, reltol=1e-7)
    treated = solve(problem, "dopri5", cfg_steps, [peak, intervention])
    for record in treated.events:
        print(f"treated run: event {record.name!r} at t={record.t:.4f}")
    save_sir_plot(
        treated,
        title="SIR with intervention at t=30 (dopri5, every step)",
        out_path=_OUTPUT_DIR / "intervention.png",
    )


if __name__ == "__main__":
    main()
