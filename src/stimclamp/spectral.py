"""Spectral expansion solver for piecewise-constant rate matrices."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np

from .epochs import UniqueEpochRegistry
from .errors import ModelError, NumericsError

if TYPE_CHECKING:  # pragma: no cover
    from .conditions import ConditionCell
    from .simulator import CancellationToken

logger = logging.getLogger(__name__)

_IMAG_TOL = 1e-9


def _aborted(token: Optional["CancellationToken"]) -> bool:
    return token is not None and token.cancelled


def equilibrium_probability(rates: np.ndarray) -> np.ndarray:
    """Stationary row distribution of the generator *rates*.

    Solves ``u (S S^T)^-1`` where ``S`` is ``rates`` with an extra column of
    ones and ``u`` a row of ones.
    """

    rates = np.asarray(rates, dtype=float)
    num_states = rates.shape[1]
    augmented = np.ones((num_states, num_states + 1), dtype=float)
    augmented[:, :num_states] = rates
    try:
        inverse = np.linalg.inv(augmented @ augmented.T)
    except np.linalg.LinAlgError as exc:
        raise NumericsError(f"Equilibrium system is singular: {exc}") from exc
    return np.ones(num_states, dtype=float) @ inverse


def spectral_expansion(
    rates: np.ndarray,
    token: Optional["CancellationToken"] = None,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Eigen-decompose *rates* into ``(eigenvalues, spectral_matrices)``.

    Eigenvalues are ordered by ascending absolute value so that slot 0 is the
    steady-state component. ``spectral_matrices[i]`` is the outer product of
    eigenvector column ``i`` with row ``i`` of the inverse eigenvector matrix.
    Returns ``None`` when cancelled.
    """

    rates = np.asarray(rates, dtype=float)
    if rates.ndim != 2 or rates.shape[0] != rates.shape[1]:
        raise ModelError(f"Rate matrix must be square, got shape {rates.shape}")
    num_states = rates.shape[1]
    if num_states < 2:
        raise ModelError("Spectral expansion for less than two states does not make sense.")
    eigenvalues, eigenvectors = np.linalg.eig(rates)
    if _aborted(token):
        return None
    order = np.argsort(np.abs(eigenvalues), kind="stable")
    try:
        inverse = np.linalg.inv(eigenvectors)
    except np.linalg.LinAlgError as exc:
        raise NumericsError(f"Rate matrix is not diagonalisable: {exc}") from exc
    if _aborted(token):
        return None
    eigenvalues = eigenvalues[order]
    matrices = np.einsum("ik,kj->kij", eigenvectors[:, order], inverse[order, :])
    if np.max(np.abs(eigenvalues.imag), initial=0.0) <= _IMAG_TOL:
        eigenvalues = eigenvalues.real
        matrices = matrices.real
    else:
        logger.warning("spectral_expansion complex eigenvalues max_imag=%g", np.max(np.abs(eigenvalues.imag)))
    return eigenvalues, matrices


def propagate(
    probability: np.ndarray,
    eigenvalues: np.ndarray,
    matrices: np.ndarray,
    elapsed: np.ndarray,
) -> np.ndarray:
    """``P(t) = sum_i exp(lambda_i t) p0 A_i`` for every *elapsed* time."""

    coefficients = np.einsum("j,ijk->ik", probability, matrices)
    result = np.exp(np.outer(elapsed, eigenvalues)) @ coefficients
    return np.real(result)


def spectral_simulation(
    cell: "ConditionCell",
    registry: UniqueEpochRegistry,
    starting_probability: np.ndarray,
    start_equilibrated: bool,
    variable_set: int,
    token: Optional["CancellationToken"] = None,
) -> None:
    """Fill ``cell.probability[variable_set]`` epoch by epoch."""

    num_pts = cell.time.size
    probability = np.asarray(starting_probability, dtype=float).copy()
    num_states = probability.size
    P = cell.probability_buffer(variable_set, num_states)
    for counter, epoch in enumerate(cell.epochs):
        if _aborted(token):
            return
        unique = registry.of(epoch)
        block = slice(epoch.first_pt, epoch.first_pt + epoch.num_pts)
        if counter == 0 and start_equilibrated:
            probability = np.real(probability @ unique.spectral_matrices[0])
            if epoch.num_pts > 0:
                P[block, :] = probability
            continue
        if epoch.num_pts > 0:
            elapsed = cell.time[block] - epoch.start
            P[block, :] = propagate(probability, unique.eigenvalues, unique.spectral_matrices, elapsed)
        if counter + 1 < len(cell.epochs):
            probability = propagate(
                probability, unique.eigenvalues, unique.spectral_matrices, np.array([epoch.duration])
            )[0]
    if num_pts and not np.all(np.isfinite(P)):
        raise NumericsError("Spectral simulation produced non-finite probabilities")


__all__ = ["equilibrium_probability", "propagate", "spectral_expansion", "spectral_simulation"]
