"""Stochastic trajectory solver and ensemble probability reconstruction."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .entities import EventChain, UniqueEpoch
from .epochs import UniqueEpochRegistry
from .spectral import equilibrium_probability

if TYPE_CHECKING:  # pragma: no cover
    from .conditions import ConditionCell, StimulusClampProtocol
    from .simulator import CancellationToken

logger = logging.getLogger(__name__)

_EPS = float(np.finfo(float).eps) * 5


def _aborted(token: Optional["CancellationToken"]) -> bool:
    return token is not None and token.cancelled


def prepare_dwell_distributions(unique: UniqueEpoch) -> None:
    """Cache exit rates and cumulative jump distributions per state."""

    rates = np.asarray(unique.transition_rates, dtype=float)
    num_states = rates.shape[1]
    unique.exit_rates = -np.diag(rates).copy()
    unique.jump_targets = []
    unique.jump_cdfs = []
    for state in range(num_states):
        targets = np.array([j for j in range(num_states) if j != state and rates[state, j] > 0.0], dtype=np.int64)
        kout = unique.exit_rates[state]
        if targets.size and kout >= _EPS:
            cdf = np.cumsum(rates[state, targets] / kout)
        else:
            cdf = np.zeros(targets.size, dtype=float)
        unique.jump_targets.append(targets)
        unique.jump_cdfs.append(cdf)


def _select_state(cumulative: np.ndarray, draw: float, strict: bool) -> int:
    """Index of the first cumulative mass exceeding (or reaching) *draw*."""

    side = "right" if strict else "left"
    return int(np.searchsorted(cumulative, draw, side=side))


def _draw_lifetime(rng: np.random.Generator, kout: float) -> float:
    # Absorbing: the dwell runs on to the next epoch boundary or the end.
    if kout < _EPS:
        return math.inf
    return float(rng.exponential(1.0 / kout))


@dataclass
class MonteCarloJob:
    """Picklable inputs for the trajectories of one condition cell.

    Tables are indexed by position in ``exit_rates``; ``epoch_tables`` maps
    every epoch of the cell onto its table.
    """

    start_time: float
    end_time: float
    stops: np.ndarray
    epoch_tables: np.ndarray
    exit_rates: List[np.ndarray]
    jump_targets: List[List[np.ndarray]]
    jump_cdfs: List[List[np.ndarray]]
    start_cdf: np.ndarray
    num_runs: int
    rng: np.random.Generator

    @property
    def num_states(self) -> int:
        return int(self.start_cdf.size)


def build_monte_carlo_job(
    cell: "ConditionCell",
    registry: UniqueEpochRegistry,
    starting_probability: np.ndarray,
    num_runs: int,
    start_equilibrated: bool,
) -> Optional[MonteCarloJob]:
    if not cell.epochs:
        return None
    first_unique = registry.of(cell.epochs[0])
    if start_equilibrated:
        starting_probability = equilibrium_probability(first_unique.transition_rates)
    tables: Dict[int, int] = {}
    exit_rates: List[np.ndarray] = []
    jump_targets: List[List[np.ndarray]] = []
    jump_cdfs: List[List[np.ndarray]] = []
    epoch_tables = np.empty(len(cell.epochs), dtype=np.int64)
    for index, epoch in enumerate(cell.epochs):
        if epoch.unique_index not in tables:
            unique = registry.of(epoch)
            tables[epoch.unique_index] = len(exit_rates)
            exit_rates.append(unique.exit_rates)
            jump_targets.append(unique.jump_targets)
            jump_cdfs.append(unique.jump_cdfs)
        epoch_tables[index] = tables[epoch.unique_index]
    return MonteCarloJob(
        start_time=float(cell.time[0]),
        end_time=float(cell.end_time),
        stops=np.array([epoch.stop for epoch in cell.epochs], dtype=float),
        epoch_tables=epoch_tables,
        exit_rates=exit_rates,
        jump_targets=jump_targets,
        jump_cdfs=jump_cdfs,
        start_cdf=np.cumsum(np.asarray(starting_probability, dtype=float)),
        num_runs=int(num_runs),
        rng=cell.rng,
    )


def _simulate_chain(job: MonteCarloJob, token: Optional["CancellationToken"]) -> Optional[EventChain]:
    chain = EventChain()
    rng = job.rng
    stops = job.stops
    end_time = job.end_time
    state = min(_select_state(job.start_cdf, rng.random(), strict=True), job.num_states - 1)
    elapsed = job.start_time
    epoch_index = 0
    table = int(job.epoch_tables[0])
    while elapsed < end_time:
        if _aborted(token):
            return None
        lifetime = _draw_lifetime(rng, job.exit_rates[table][state])
        exhausted = False
        while elapsed + lifetime > stops[epoch_index]:
            lifetime = stops[epoch_index] - elapsed
            epoch_index += 1
            if epoch_index == stops.size:
                exhausted = True
                break
            table = int(job.epoch_tables[epoch_index])
            lifetime += _draw_lifetime(rng, job.exit_rates[table][state])
        if exhausted:
            chain.append(state, end_time - elapsed)
            break
        chain.append(state, lifetime)
        elapsed += lifetime
        if elapsed < end_time:
            targets = job.jump_targets[table][state]
            if targets.size == 0:
                continue
            pick = _select_state(job.jump_cdfs[table][state], rng.random(), strict=False)
            state = int(targets[min(pick, targets.size - 1)])
    return chain


def run_monte_carlo_job(
    job: MonteCarloJob, token: Optional["CancellationToken"] = None
) -> Tuple[Optional[List[EventChain]], np.random.Generator]:
    """Simulate ``job.num_runs`` trajectories.

    Returns the chains (``None`` once *token* is cancelled) together with
    the advanced generator, so a worker process can hand its stream back.
    """

    chains: List[EventChain] = []
    for _ in range(job.num_runs):
        chain = _simulate_chain(job, token)
        if chain is None:
            return None, job.rng
        chains.append(chain)
    return chains, job.rng


def store_event_chains(
    cell: "ConditionCell",
    variable_set: int,
    chains: Sequence[EventChain],
    num_states: int,
    accumulate_runs: bool,
    sample_runs: bool,
    token: Optional["CancellationToken"] = None,
) -> None:
    """Write new chains into ``cell.events[variable_set]`` and sample them."""

    stored = cell.event_chains(variable_set)
    if not accumulate_runs:
        stored.clear()
    stored.extend(chains)
    if sample_runs and stored:
        P = cell.probability_buffer(variable_set, num_states)
        sampled = probability_from_event_chains(cell.time, cell.end_time, num_states, stored, token)
        if sampled is not None:
            P[...] = sampled


def _occupancy_at(stops: np.ndarray, states: np.ndarray, instant: float) -> int:
    index = int(np.searchsorted(stops, instant, side="right"))
    return int(states[min(index, states.size - 1)])


def probability_from_event_chains(
    time: np.ndarray,
    end_time: float,
    num_states: int,
    chains: Sequence[EventChain],
    token: Optional["CancellationToken"] = None,
) -> Optional[np.ndarray]:
    """Average fractional state occupancy of every sample bin.

    Bin ``k`` spans ``[time[k], time[k+1])`` and the last bin ends at
    *end_time*. Each event contributes the fraction of the bin it overlaps,
    whether it covers the whole bin, ends in it, starts in it or lies inside
    it; these four cases reduce to differences of the cumulative dwell time
    in each state evaluated at the bin edges. Returns ``None`` if cancelled.
    """

    time = np.asarray(time, dtype=float)
    num_pts = time.size
    P = np.zeros((num_pts, num_states), dtype=float)
    if num_pts == 0 or not chains:
        return P
    edges = np.append(time, max(float(end_time), float(time[-1])))
    widths = np.diff(edges)
    zero_width = np.flatnonzero(widths <= 0.0)
    safe_widths = np.where(widths > 0.0, widths, 1.0)
    for chain in chains:
        if _aborted(token):
            return None
        if len(chain) == 0:
            continue
        durations = chain.durations
        states = chain.states
        stops = time[0] + np.cumsum(durations)
        boundaries = np.concatenate(([time[0]], stops))
        for state in np.unique(states):
            in_state = np.where(states == state, durations, 0.0)
            dwell = np.concatenate(([0.0], np.cumsum(in_state)))
            cumulative = np.interp(edges, boundaries, dwell)
            P[:, state] += np.diff(cumulative) / safe_widths
        for k in zero_width:
            P[k, _occupancy_at(stops, states, edges[k])] += 1.0
    P /= len(chains)
    return P


def max_probability_error(cell: "ConditionCell") -> float:
    """Largest deviation of any sample's total probability from one."""

    worst = 0.0
    for P in cell.probability:
        if P.size == 0:
            continue
        worst = max(worst, float(np.max(np.abs(P.sum(axis=1) - 1.0))))
    return worst


def write_dwell_times(prefix: Path | str, protocol: "StimulusClampProtocol") -> List[Path]:
    """Export every event chain of *protocol* in dwell-time text format.

    One file per ``(variable set, row, col)`` named
    ``"<prefix> (<vs>,<row>,<col>).dwt"``; durations are in milliseconds.
    """

    text = str(prefix)
    if text.endswith(".dwt"):
        text = text[:-4]
    written: List[Path] = []
    for row, cells in enumerate(protocol.cells):
        for col, cell in enumerate(cells):
            for variable_set, chains in enumerate(cell.events):
                path = Path(f"{text} ({variable_set},{row},{col}).dwt")
                path.parent.mkdir(parents=True, exist_ok=True)
                lines: List[str] = []
                for segment, chain in enumerate(chains, start=1):
                    lines.append(f"Segment: {segment} Dwells: {len(chain)} Sampling(ms): 1")
                    for state, duration in zip(chain.states, chain.durations):
                        lines.append(f"{int(state)}\t{float(duration) * 1000:g}")
                    lines.append("")
                path.write_text("\r\n".join(lines) + ("\r\n" if lines else ""), encoding="utf8")
                written.append(path)
                logger.info("dwell_export path=%s chains=%d", path, len(chains))
    return written


__all__ = [
    "MonteCarloJob",
    "build_monte_carlo_job",
    "max_probability_error",
    "prepare_dwell_distributions",
    "probability_from_event_chains",
    "run_monte_carlo_job",
    "store_event_chains",
    "write_dwell_times",
]
