# ivp_engine/examples/bouncing_ball.py
"""Bouncing ball: a state-resetting continuous event and a terminal event.

State u = (height, velocity) under gravity. Each downward zero crossing of the
height reflects the velocity with a restitution coefficient; integration
terminates once the rebound velocity falls below a threshold.

The event engine locates each impact on the step's dense output, discards the
rest of the step past the impact, and restarts from the reflected state. The
pre-impact and post-impact states share a time in the sample sequence.

This script saves a plot to disk (no interactive windows).
"""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from ivp_engine import ContinuousEvent, IntegratorConfig, IntegratorHandle, Problem, solve

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "ball"

GRAVITY = 9.81
RESTITUTION = 0.8
MIN_REBOUND = 0.5


def ball_rhs(u: np.ndarray, p: None, t: float) -> np.ndarray:  # noqa: ARG001
    """Free fall."""
    return np.array([u[1], -GRAVITY])


def height(t: float, u: np.ndarray) -> float:  # noqa: ARG001
    """Impact condition."""
    return float(u[0])


def bounce(handle: IntegratorHandle) -> None:
    """Reflect the velocity; stop when the rebound is too weak."""
    rebound = -RESTITUTION * handle.u[1]
    if rebound < MIN_REBOUND:
        handle.u[1] = 0.0
        handle.terminate()
        return
    handle.u[0] = 0.0
    handle.u[1] = rebound


def main() -> None:
    """Drop a ball from 10 m and record its impacts."""
    problem = Problem(ball_rhs, np.array([10.0, 0.0]), (0.0, 60.0))
    impact = ContinuousEvent(height, bounce, direction=-1, name="impact")

    solution = solve(problem, "dopri5", IntegratorConfig(abstol=1e-10, reltol=1e-8), [impact])
    print(f"{solution.status.value}: {solution.message}")
    for record in solution.events:
        print(f"  impact at t={record.t:.6f}")

    fine = np.linspace(solution.t[0], solution.t[-1], 2000)
    plt.figure(figsize=(8, 4))
    plt.plot(fine, solution(fine)[:, 0], label="dense output")
    plt.plot(solution.t, solution.u[:, 0], ".", markersize=3, label="samples")
    plt.grid(visible=True)
    plt.legend()
    plt.xlabel("Time [s]")
    plt.ylabel("Height [m]")
    plt.tight_layout()

    _OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    plt.savefig(_OUTPUT_DIR / "bouncing_ball.png", dpi=150)
    plt.close()


if __name__ == "__main__":
    main()
