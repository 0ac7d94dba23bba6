"""Phased simulation pass over every protocol of a simulator."""

from __future__ import annotations

import logging
import os
import threading
import time as _time
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .conditions import ConditionCell, StimulusClampProtocol
from .cost import total_cost
from .entities import EventChain, UniqueEpoch
from .epochs import UniqueEpochRegistry
from .errors import ModelError, StimClampError
from .expressions import ExpressionEngine
from .model import KineticModel
from .monte_carlo import (
    MonteCarloJob,
    build_monte_carlo_job,
    max_probability_error,
    prepare_dwell_distributions,
    probability_from_event_chains,
    run_monte_carlo_job,
    store_event_chains,
)
from .options import MONTE_CARLO, SPECTRAL, SimulationOptions
from .spectral import spectral_expansion, spectral_simulation

if TYPE_CHECKING:  # pragma: no cover
    from .optimizer import OptimizationResult

logger = logging.getLogger(__name__)

# Elementary charges per second to picoamperes.
CHARGE_TO_PA = 6.242e-6

CHARGE_CURRENT = "charge_current"

SUCCESS = "success"
ABORTED = "aborted"
FAILED = "failed"


class CancellationToken:
    """Cooperative abort flag shared by every worker of a pass."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._message = ""

    def cancel(self, message: str = "") -> None:
        with self._lock:
            if not self._event.is_set():
                self._message = message
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def message(self) -> str:
        return self._message


@dataclass(frozen=True)
class PassResult:
    status: str
    message: str = ""
    cost: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


def _wait(futures: List[Future]) -> None:
    for future in futures:
        future.result()


def _bind_cell(
    engine: ExpressionEngine,
    parameters: Dict[str, float],
    cell: ConditionCell,
    probability: Optional[np.ndarray],
    state_names: Sequence[str],
    waveforms: Dict[str, np.ndarray],
    window: slice,
) -> None:
    engine.clear()
    engine.bind_many(parameters)
    engine.bind("t", cell.time[window])
    for name, values in cell.stimuli.items():
        engine.bind(name, values[window])
    if probability is not None:
        for idx, name in enumerate(state_names):
            engine.bind(name, probability[window, idx])
    for name, values in waveforms.items():
        engine.bind(name, values[window])


class StimulusClampSimulator:
    """Runs protocols against a kinetic model with the configured solver."""

    def __init__(
        self,
        model: KineticModel,
        protocols: Sequence[StimulusClampProtocol],
        options: Optional[SimulationOptions] = None,
    ):
        self.model = model
        self.protocols: List[StimulusClampProtocol] = list(protocols)
        self.options = options or SimulationOptions()
        self.registry = UniqueEpochRegistry()
        self._initialised = False

    # Pass entry points

    def init_simulation(self, seed: Optional[int] = None) -> None:
        """Tear down unique epochs and rebuild every protocol grid."""

        self.registry.clear()
        if seed is None:
            seed = self.options.seed
        sequences = np.random.SeedSequence(seed).spawn(len(self.protocols))
        for protocol, sequence in zip(self.protocols, sequences):
            protocol.init(self.registry, self.model.state_names, sequence)
        self._initialised = True

    def run_simulation(self, token: Optional[CancellationToken] = None) -> None:
        """Simulate every variable set; returns early once *token* is cancelled."""

        token = token or CancellationToken()
        if not self._initialised:
            self.init_simulation()
        num_sets = self.model.num_variable_sets
        num_cells = sum(protocol.rows * protocol.cols for protocol in self.protocols)
        logger.info(
            "simulation_pass method=%s variable_sets=%d unique_epochs=%d cells=%d",
            self.options.method,
            num_sets,
            len(self.registry),
            num_cells,
        )
        with ThreadPoolExecutor(max_workers=self.options.max_workers) as pool:
            for variable_set in range(num_sets):
                started = _time.perf_counter()
                self._prepare_unique_epochs(pool, variable_set, token)
                if token.cancelled:
                    return
                logger.debug("phase=unique_epochs vs=%d elapsed=%.4f", variable_set, _time.perf_counter() - started)
                started = _time.perf_counter()
                self._simulate_cells(pool, variable_set, token)
                if token.cancelled:
                    return
                logger.debug("phase=cells vs=%d elapsed=%.4f", variable_set, _time.perf_counter() - started)
                started = _time.perf_counter()
                for protocol in self.protocols:
                    self._derive_outputs(protocol, variable_set, token)
                    if token.cancelled:
                        return
                logger.debug("phase=outputs vs=%d elapsed=%.4f", variable_set, _time.perf_counter() - started)
        for protocol in self.protocols:
            protocol.align_summary_references()
        if self.options.method == MONTE_CARLO:
            worst = max((max_probability_error(cell) for p in self.protocols for cell in p.iter_cells()), default=0.0)
            logger.debug("monte_carlo max_probability_error=%g", worst)

    def simulate(self, token: Optional[CancellationToken] = None, *, init: bool = True) -> PassResult:
        """One complete pass reported as a tagged result.

        ``init=False`` keeps the current grid, so Monte Carlo chains can
        accumulate across passes.
        """

        token = token or CancellationToken()
        try:
            if init or not self._initialised:
                self.init_simulation()
            self.run_simulation(token)
        except (StimClampError, np.linalg.LinAlgError) as exc:
            logger.error("simulation_failed %s", exc)
            return PassResult(status=FAILED, message=str(exc))
        if token.cancelled:
            logger.info("simulation_aborted message=%s", token.message)
            return PassResult(status=ABORTED, message=token.message)
        return PassResult(status=SUCCESS, cost=self.cost())

    def cost(self) -> float:
        return total_cost(self.protocols)

    def submit_simulation(self, token: Optional[CancellationToken] = None) -> "Future[PassResult]":
        return self._submit(self.simulate, token)

    def submit_optimization(
        self,
        max_iterations: int = 500,
        tolerance: float = 1e-4,
        token: Optional[CancellationToken] = None,
        progress: Optional[Callable[[int, float], None]] = None,
    ) -> "Future[OptimizationResult]":
        from .optimizer import optimize

        return self._submit(
            optimize, self, max_iterations=max_iterations, tolerance=tolerance, token=token, progress=progress
        )

    @staticmethod
    def _submit(func: Callable, *args, **kwargs) -> Future:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stimclamp")
        try:
            return executor.submit(func, *args, **kwargs)
        finally:
            executor.shutdown(wait=False)

    # Phases

    def _prepare_unique_epochs(self, pool: ThreadPoolExecutor, variable_set: int, token: CancellationToken) -> None:
        futures: List[Future] = []
        for unique in self.registry:
            if token.cancelled:
                break
            kinetics = self.model.epoch_kinetics(unique.stimuli, variable_set)
            rates = np.asarray(kinetics.transition_rates, dtype=float)
            if rates.ndim != 2 or rates.shape[0] != rates.shape[1]:
                raise ModelError(f"Rate matrix must be square, got shape {rates.shape}")
            unique.transition_rates = rates
            unique.state_probabilities = np.asarray(kinetics.state_probabilities, dtype=float)
            unique.state_attributes = {
                name: np.asarray(values, dtype=float) for name, values in kinetics.state_attributes.items()
            }
            unique.transition_charges = kinetics.transition_charges
            if self.options.method == SPECTRAL:
                futures.append(pool.submit(self._expand, unique, token))
            else:
                unique.eigenvalues = None
                unique.spectral_matrices = None
                prepare_dwell_distributions(unique)
            charges = kinetics.transition_charges
            if charges is not None and np.any(charges):
                unique.state_charge_currents = (rates * np.asarray(charges, dtype=float)).sum(axis=1) * CHARGE_TO_PA
            else:
                unique.state_charge_currents = np.zeros(rates.shape[1], dtype=float)
        _wait(futures)

    @staticmethod
    def _expand(unique: UniqueEpoch, token: CancellationToken) -> None:
        result = spectral_expansion(unique.transition_rates, token)
        if result is not None:
            unique.eigenvalues, unique.spectral_matrices = result

    def _simulate_cells(self, pool: ThreadPoolExecutor, variable_set: int, token: CancellationToken) -> None:
        if self.options.method == MONTE_CARLO:
            self._simulate_chains(variable_set, token)
            return
        futures: List[Future] = []
        for protocol in self.protocols:
            for cell in protocol.iter_cells():
                if token.cancelled:
                    break
                if not cell.epochs:
                    continue
                start = self.registry.of(cell.epochs[0]).state_probabilities
                futures.append(
                    pool.submit(
                        spectral_simulation,
                        cell,
                        self.registry,
                        start,
                        protocol.start_equilibrated,
                        variable_set,
                        token,
                    )
                )
        _wait(futures)

    def _simulate_chains(self, variable_set: int, token: CancellationToken) -> None:
        """Monte Carlo cell phase; several cells are spread over worker processes.

        Chains are written into the cells only after every job has returned.
        Worker processes cannot see *token*, so a cancel drops jobs that have
        not started and discards the finished ones.
        """

        options = self.options
        cells: List[ConditionCell] = []
        jobs: List[Optional[MonteCarloJob]] = []
        for protocol in self.protocols:
            for cell in protocol.iter_cells():
                start = self.registry.of(cell.epochs[0]).state_probabilities if cell.epochs else None
                cells.append(cell)
                jobs.append(
                    build_monte_carlo_job(cell, self.registry, start, options.num_runs, protocol.start_equilibrated)
                )
        runnable = [index for index, job in enumerate(jobs) if job is not None]
        results: Dict[int, Tuple[Optional[List[EventChain]], np.random.Generator]] = {}
        if len(runnable) == 1:
            index = runnable[0]
            results[index] = run_monte_carlo_job(jobs[index], token)
        elif runnable:
            max_workers = min(options.max_workers or os.cpu_count() or 1, len(runnable))
            with ProcessPoolExecutor(max_workers=max_workers) as processes:
                futures = {processes.submit(run_monte_carlo_job, jobs[index]): index for index in runnable}
                for future in as_completed(futures):
                    if token.cancelled:
                        for pending in futures:
                            pending.cancel()
                        return
                    results[futures[future]] = future.result()
        if token.cancelled:
            return
        for index, cell in enumerate(cells):
            job = jobs[index]
            if job is None:
                store_event_chains(cell, variable_set, [], 0, options.accumulate_runs, False)
                continue
            chains, rng = results[index]
            if chains is None:
                return
            cell.rng = rng
            store_event_chains(
                cell, variable_set, chains, job.num_states, options.accumulate_runs, options.sample_runs, token
            )

    def _derive_outputs(self, protocol: StimulusClampProtocol, variable_set: int, token: CancellationToken) -> None:
        """State attribute, group, protocol waveforms and summaries per cell."""

        rows, cols = protocol.rows, protocol.cols
        summaries = protocol.active_summaries()
        for summary in summaries:
            protocol.summary_states[summary.name].reset(variable_set, rows, cols)
        parameters = dict(self.model.parameters(variable_set))
        state_names = list(self.model.state_names)
        groups = self.model.state_groups
        engine = ExpressionEngine()
        for cell in protocol.iter_cells():
            if token.cancelled:
                return
            num_pts = cell.num_pts
            num_states = self.registry.of(cell.epochs[0]).num_states if cell.epochs else 0
            probability = cell.state_probability(variable_set, num_states)
            if probability is None and self.options.method == MONTE_CARLO and variable_set < len(cell.events):
                probability = probability_from_event_chains(
                    cell.time, cell.end_time, num_states, cell.events[variable_set], token
                )
            waveforms = cell.waveform_map(variable_set)
            if probability is not None:
                self._state_waveforms(cell, probability, waveforms)
                for name, members in groups.items():
                    waveforms[name] = probability[:, list(members)].sum(axis=1)
            whole = slice(0, num_pts)
            _bind_cell(engine, parameters, cell, probability, state_names, waveforms, whole)
            for waveform in protocol.waveforms:
                if token.cancelled:
                    return
                if not waveform.active:
                    continue
                result = engine.evaluate(waveform.expr)
                if result.shape != (num_pts,):
                    raise ModelError(f"Invalid dimensions for waveform '{waveform.expr}'.")
                waveforms[waveform.name] = result
                engine.bind(waveform.name, result)
            for summary in summaries:
                if token.cancelled:
                    return
                state = protocol.summary_states[summary.name]
                row, col = cell.row, cell.col
                window_x = slice(int(state.first_x[row, col]), int(state.first_x[row, col] + state.num_x[row, col]))
                window_y = slice(int(state.first_y[row, col]), int(state.first_y[row, col] + state.num_y[row, col]))
                _bind_cell(engine, parameters, cell, probability, state_names, waveforms, window_x)
                state.data_x[variable_set][row, col] = self._summary_value(engine, summary.value("expr_x", row, col))
                if window_y != window_x:
                    _bind_cell(engine, parameters, cell, probability, state_names, waveforms, window_y)
                state.data_y[variable_set][row, col] = self._summary_value(engine, summary.value("expr_y", row, col))
        for summary in summaries:
            data_y = protocol.summary_states[summary.name].data_y[variable_set]
            if summary.normalization == "per_row":
                for row in range(data_y.shape[0]):
                    peak = np.max(np.abs(data_y[row]), initial=0.0)
                    if peak > 0.0:
                        data_y[row] /= peak
            elif summary.normalization == "all_rows":
                peak = np.max(np.abs(data_y), initial=0.0)
                if peak > 0.0:
                    data_y /= peak

    def _state_waveforms(self, cell: ConditionCell, probability: np.ndarray, waveforms: Dict[str, np.ndarray]) -> None:
        charged = any(np.any(self.registry.of(epoch).state_charge_currents) for epoch in cell.epochs)
        if charged:
            waveforms[CHARGE_CURRENT] = np.zeros(cell.num_pts, dtype=float)
        for epoch in cell.epochs:
            unique = self.registry.of(epoch)
            block = slice(epoch.first_pt, epoch.first_pt + epoch.num_pts)
            for name, values in unique.state_attributes.items():
                if name not in waveforms or waveforms[name].shape != (cell.num_pts,):
                    waveforms[name] = np.zeros(cell.num_pts, dtype=float)
                waveforms[name][block] = probability[block] @ values
            if charged:
                waveforms[CHARGE_CURRENT][block] = probability[block] @ unique.state_charge_currents

    @staticmethod
    def _summary_value(engine: ExpressionEngine, expression: str) -> float:
        result = engine.evaluate(expression)
        if result.size != 1:
            raise ModelError(f"Summary '{expression}' does not reduce to a single value.")
        return float(result.ravel()[0])


__all__ = [
    "ABORTED",
    "CHARGE_CURRENT",
    "CancellationToken",
    "FAILED",
    "PassResult",
    "SUCCESS",
    "StimulusClampSimulator",
]
