"""Bounded simplex fit of free model parameters to reference data.

Bounds are enforced by optimising over angles: ``x = lo + (hi - lo)(sin a + 1)/2``
maps every real ``a`` into ``[lo, hi]``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional

import numpy as np
from scipy.optimize import minimize

from .errors import ConfigError
from .simulator import ABORTED, SUCCESS, CancellationToken

if TYPE_CHECKING:  # pragma: no cover
    from .simulator import StimulusClampSimulator

logger = logging.getLogger(__name__)

INITIAL_STEP = math.pi / 50
_PROGRESS_EVERY = 2


@dataclass(frozen=True)
class OptimizationResult:
    status: str
    x: np.ndarray
    cost: float
    iterations: int
    converged: bool
    message: str = ""


class _Interrupted(Exception):
    def __init__(self, status: str, message: str = ""):
        super().__init__(message)
        self.status = status
        self.message = message


def linear_to_angular(x, lower, upper):
    ratio = 2.0 * (np.asarray(x, dtype=float) - lower) / (np.asarray(upper, dtype=float) - lower) - 1.0
    return np.arcsin(np.clip(ratio, -1.0, 1.0))


def angular_to_linear(angles, lower, upper):
    lower = np.asarray(lower, dtype=float)
    return lower + (np.asarray(upper, dtype=float) - lower) * (np.sin(angles) + 1.0) / 2.0


def optimize(
    simulator: "StimulusClampSimulator",
    max_iterations: int = 500,
    tolerance: float = 1e-4,
    token: Optional[CancellationToken] = None,
    progress: Optional[Callable[[int, float], None]] = None,
) -> OptimizationResult:
    """Minimise the simulator cost over the model's free parameters.

    Each candidate costs one full simulation pass. Convergence is decided
    by the simplex size alone (``xatol=tolerance``). The best vector is
    applied to the model and simulated once more before returning, so the
    model state matches the reported cost.
    """

    token = token or CancellationToken()
    model = simulator.model
    x0, lower, upper = (np.asarray(values, dtype=float) for values in model.free_parameters())
    if x0.size == 0:
        raise ConfigError("No free parameters to optimise")
    if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))):
        raise ConfigError("Every free parameter needs finite lower and upper bounds")
    if np.any(upper <= lower):
        raise ConfigError("Free parameter upper bounds must exceed lower bounds")

    initial = simulator.simulate(token)
    if not initial.ok:
        return OptimizationResult(
            status=initial.status, x=x0, cost=math.nan, iterations=0, converged=False, message=initial.message
        )
    best: Dict[str, object] = {"x": x0.copy(), "cost": float(initial.cost)}
    logger.info("optimize_start free=%d cost=%.6g max_iterations=%d", x0.size, best["cost"], max_iterations)

    def objective(angles: np.ndarray) -> float:
        if token.cancelled:
            raise _Interrupted(ABORTED, token.message)
        x = angular_to_linear(angles, lower, upper)
        model.set_free_parameters(x)
        result = simulator.simulate(token, init=False)
        if result.status != SUCCESS:
            raise _Interrupted(result.status, result.message)
        cost = float(result.cost)
        if not math.isfinite(cost):
            return math.inf
        if cost < best["cost"]:
            best["x"] = x.copy()
            best["cost"] = cost
        return cost

    iterations = 0

    def callback(_angles: np.ndarray) -> None:
        nonlocal iterations
        iterations += 1
        if progress is not None and iterations % _PROGRESS_EVERY == 0:
            progress(iterations, float(best["cost"]))
        logger.debug("optimize_iteration n=%d best=%.6g", iterations, best["cost"])

    angles0 = linear_to_angular(x0, lower, upper)
    simplex = np.vstack([angles0, angles0 + np.eye(x0.size) * INITIAL_STEP])
    try:
        res = minimize(
            objective,
            angles0,
            method="Nelder-Mead",
            callback=callback,
            options={
                "initial_simplex": simplex,
                "maxiter": int(max_iterations),
                "xatol": float(tolerance),
                "fatol": math.inf,
            },
        )
    except _Interrupted as exc:
        model.set_free_parameters(best["x"])
        logger.info("optimize_interrupted status=%s iterations=%d", exc.status, iterations)
        return OptimizationResult(
            status=exc.status,
            x=np.asarray(best["x"]),
            cost=float(best["cost"]),
            iterations=iterations,
            converged=False,
            message=exc.message,
        )

    x_final = angular_to_linear(res.x, lower, upper)
    model.set_free_parameters(x_final)
    final = simulator.simulate(token, init=False)
    if final.status != SUCCESS:
        return OptimizationResult(
            status=final.status,
            x=x_final,
            cost=float(best["cost"]),
            iterations=iterations,
            converged=False,
            message=final.message,
        )
    logger.info(
        "optimize_done converged=%s iterations=%d cost=%.6g", bool(res.success), iterations, final.cost
    )
    return OptimizationResult(
        status=SUCCESS,
        x=x_final,
        cost=float(final.cost),
        iterations=iterations,
        converged=bool(res.success),
        message=str(res.message),
    )


__all__ = ["INITIAL_STEP", "OptimizationResult", "angular_to_linear", "linear_to_angular", "optimize"]
