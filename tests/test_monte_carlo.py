from __future__ import annotations

import numpy as np
import pytest

from src.stimclamp.conditions import Stimulus, StimulusClampProtocol
from src.stimclamp.entities import EventChain
from src.stimclamp.model import ExpressionKineticModel, ModelParameter, Transition
from src.stimclamp.monte_carlo import max_probability_error, probability_from_event_chains, write_dwell_times
from src.stimclamp.options import SimulationOptions
from src.stimclamp.simulator import StimulusClampSimulator


def _two_state_model() -> ExpressionKineticModel:
    return ExpressionKineticModel(
        states=["C", "O"],
        transitions=[Transition("C", "O", "1 + V"), Transition("O", "C", "2")],
        parameters=[ModelParameter("V", 0.0)],
    )


def _simulator(num_runs: int, seed: int = 1, **protocol_kwargs) -> StimulusClampSimulator:
    protocol = StimulusClampProtocol(name="mc", duration="1", sample_interval="0.05", **protocol_kwargs)
    options = SimulationOptions(method="monte_carlo", num_runs=num_runs, seed=seed)
    return StimulusClampSimulator(_two_state_model(), [protocol], options)


def _chain(*events) -> EventChain:
    chain = EventChain()
    for state, duration in events:
        chain.append(state, duration)
    return chain


def test_probability_from_chain_splits_partial_bins() -> None:
    time = np.array([0.0, 1.0, 2.0])
    chain = _chain((0, 1.5), (1, 1.5))

    P = probability_from_event_chains(time, 3.0, 2, [chain])

    assert P.tolist() == pytest.approx([[1.0, 0.0], [0.5, 0.5], [0.0, 1.0]])


def test_probability_from_chains_averages_over_chains() -> None:
    time = np.array([0.0, 1.0])
    chains = [_chain((0, 2.0)), _chain((1, 0.25), (0, 1.75))]

    P = probability_from_event_chains(time, 2.0, 2, chains)

    assert P.tolist() == pytest.approx([[0.875, 0.125], [1.0, 0.0]])


def test_zero_width_last_bin_takes_occupied_state() -> None:
    time = np.array([0.0, 1.0, 2.0])
    chain = _chain((0, 1.0), (1, 1.0))

    P = probability_from_event_chains(time, 2.0, 2, [chain])

    assert P[-1].tolist() == [0.0, 1.0]


def test_chains_cover_protocol_and_probability_is_normalised() -> None:
    simulator = _simulator(200, stimuli=[Stimulus("V", start="0.3", duration="0.4", amplitude="2")])

    assert simulator.simulate().ok

    cell = simulator.protocols[0].cells[0][0]
    chains = cell.events[0]
    assert len(chains) == 200
    for chain in chains:
        assert chain.total_duration == pytest.approx(cell.end_time - cell.time[0])
        assert np.all(chain.durations >= 0.0)
    assert max_probability_error(cell) < 1e-9


def test_dwell_starts_in_start_state() -> None:
    simulator = _simulator(50)

    assert simulator.simulate().ok

    chains = simulator.protocols[0].cells[0][0].events[0]
    assert all(chain.states[0] == 0 for chain in chains)


def test_same_seed_reproduces_chains() -> None:
    first = _simulator(20, seed=3)
    second = _simulator(20, seed=3)
    first.simulate()
    second.simulate()

    a = first.protocols[0].cells[0][0].events[0]
    b = second.protocols[0].cells[0][0].events[0]
    assert [chain.durations.tolist() for chain in a] == [chain.durations.tolist() for chain in b]


def test_accumulate_runs_keeps_previous_chains() -> None:
    protocol = StimulusClampProtocol(duration="1", sample_interval="0.05")
    options = SimulationOptions(method="monte_carlo", num_runs=10, accumulate_runs=True, seed=0)
    simulator = StimulusClampSimulator(_two_state_model(), [protocol], options)

    simulator.simulate()
    simulator.simulate(init=False)

    assert len(protocol.cells[0][0].events[0]) == 20


def _durations(chains) -> list:
    return [chain.durations.tolist() for chain in chains]


def test_cells_simulated_in_worker_processes_are_reproducible() -> None:
    def sweep() -> list:
        return [Stimulus("V", start="0.3", duration="0.4", amplitude="0, 1, 2")]

    first = _simulator(20, seed=7, stimuli=sweep())
    second = _simulator(20, seed=7, stimuli=sweep())

    assert first.simulate().ok
    assert second.simulate().ok

    cells = first.protocols[0].cells[0]
    assert len(cells) == 3
    for cell, twin in zip(cells, second.protocols[0].cells[0]):
        assert len(cell.events[0]) == 20
        assert _durations(cell.events[0]) == _durations(twin.events[0])
        assert max_probability_error(cell) < 1e-9
    assert _durations(cells[0].events[0]) != _durations(cells[1].events[0])


def test_worker_generators_carry_over_between_passes() -> None:
    protocol = StimulusClampProtocol(duration="1", sample_interval="0.05", start="0, 0")
    options = SimulationOptions(method="monte_carlo", num_runs=5, accumulate_runs=True, seed=2, max_workers=2)
    simulator = StimulusClampSimulator(_two_state_model(), [protocol], options)

    simulator.simulate()
    simulator.simulate(init=False)

    for cell in protocol.iter_cells():
        chains = cell.events[0]
        assert len(chains) == 10
        assert _durations(chains[:5]) != _durations(chains[5:])


@pytest.mark.slow
def test_monte_carlo_converges_to_equilibrium() -> None:
    simulator = _simulator(10000, start_equilibrated=True)

    assert simulator.simulate().ok

    P = simulator.protocols[0].cells[0][0].probability[0]
    assert P[-1, 0] == pytest.approx(2.0 / 3.0, abs=0.02)
    assert np.mean(P[:, 0]) == pytest.approx(2.0 / 3.0, abs=0.02)


def _absorbing_simulator(open_rate: str, stimuli) -> StimulusClampSimulator:
    model = ExpressionKineticModel(
        states=["C", "O"],
        transitions=[Transition("C", "O", open_rate), Transition("O", "C", "0 * V")],
        parameters=[ModelParameter("V", 0.0)],
    )
    protocol = StimulusClampProtocol(start="-0.5", duration="1", sample_interval="0.05", stimuli=stimuli)
    options = SimulationOptions(method="monte_carlo", num_runs=200, seed=5)
    return StimulusClampSimulator(model, [protocol], options)


def test_absorbing_state_dwells_until_end_of_negative_start_protocol() -> None:
    simulator = _absorbing_simulator("0 * V", stimuli=[])

    assert simulator.simulate().ok

    for chain in simulator.protocols[0].cells[0][0].events[0]:
        assert chain.states.tolist() == [0]
        assert chain.durations.tolist() == pytest.approx([1.0])


def test_state_absorbing_after_pulse_keeps_single_final_dwell() -> None:
    pulse = Stimulus("V", start="-0.5", duration="0.5", amplitude="1")
    simulator = _absorbing_simulator("5 * V", stimuli=[pulse])

    assert simulator.simulate().ok

    cell = simulator.protocols[0].cells[0][0]
    chains = cell.events[0]
    assert any(chain.states[-1] == 1 for chain in chains)
    for chain in chains:
        assert len(chain) <= 2
        assert np.all(np.diff(chain.states) != 0)
        assert chain.total_duration == pytest.approx(cell.end_time - cell.time[0])
        # O only becomes reachable during the pulse and never leaves
        assert cell.time[0] + chain.durations[:-1].sum() <= 0.0 + 1e-12


def test_dwell_time_export_format(tmp_path) -> None:
    simulator = _simulator(3, start="0, 0")
    assert simulator.simulate().ok
    protocol = simulator.protocols[0]

    written = write_dwell_times(tmp_path / "chains", protocol)

    assert [path.name for path in written] == ["chains (0,0,0).dwt", "chains (0,0,1).dwt"]
    raw = written[0].read_bytes().decode("utf8")
    lines = raw.split("\r\n")
    chain = protocol.cells[0][0].events[0][0]
    assert lines[0] == f"Segment: 1 Dwells: {len(chain)} Sampling(ms): 1"
    state, duration = lines[1].split("\t")
    assert int(state) == int(chain.states[0])
    assert float(duration) == pytest.approx(chain.durations[0] * 1000, rel=1e-5)
    assert sum(line.startswith("Segment:") for line in lines) == 3


@pytest.mark.slow
def test_monte_carlo_follows_spectral_trajectory() -> None:
    stochastic = _simulator(4000, seed=11)
    protocol = StimulusClampProtocol(name="fine", duration="1", sample_interval="0.001")
    deterministic = StimulusClampSimulator(_two_state_model(), [protocol])

    assert stochastic.simulate().ok
    assert deterministic.simulate().ok

    estimate = stochastic.protocols[0].cells[0][0].probability[0][:, 0]
    fine = protocol.cells[0][0].probability[0][:, 0]
    # Monte Carlo samples are occupancies averaged over each 0.05 s bin
    expected = np.array([fine[50 * k : 50 * k + 50].mean() for k in range(20)] + [fine[-1]])
    assert np.max(np.abs(estimate - expected)) < 4.0 * 0.5 / np.sqrt(4000) + 1e-3
