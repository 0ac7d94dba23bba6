from __future__ import annotations

import numpy as np
import pytest

from src.stimclamp.conditions import Stimulus, StimulusClampProtocol
from src.stimclamp.errors import ModelError
from src.stimclamp.model import ExpressionKineticModel, ModelParameter, Transition
from src.stimclamp.simulator import StimulusClampSimulator
from src.stimclamp.spectral import equilibrium_probability, propagate, spectral_expansion


def _two_state_rates() -> np.ndarray:
    return np.array([[-1.0, 1.0], [2.0, -2.0]])


def _two_state_model(**kwargs) -> ExpressionKineticModel:
    return ExpressionKineticModel(
        states=["C", "O"],
        transitions=[Transition("C", "O", "1 + V"), Transition("O", "C", "2")],
        parameters=[ModelParameter("V", 0.0)],
        **kwargs,
    )


def test_equilibrium_probability_of_two_state_model() -> None:
    assert equilibrium_probability(_two_state_rates()) == pytest.approx([2.0 / 3.0, 1.0 / 3.0])


def test_spectral_expansion_orders_steady_state_first() -> None:
    eigenvalues, matrices = spectral_expansion(_two_state_rates())

    assert eigenvalues == pytest.approx([0.0, -3.0], abs=1e-12)
    assert matrices.shape == (2, 2, 2)
    assert matrices.sum(axis=0) == pytest.approx(np.eye(2))
    assert np.array([1.0, 0.0]) @ matrices[0] == pytest.approx([2.0 / 3.0, 1.0 / 3.0])


def test_spectral_expansion_requires_two_states() -> None:
    with pytest.raises(ModelError):
        spectral_expansion(np.zeros((1, 1)))


def test_propagate_matches_closed_form() -> None:
    eigenvalues, matrices = spectral_expansion(_two_state_rates())
    t = np.linspace(0.0, 2.0, 21)

    P = propagate(np.array([1.0, 0.0]), eigenvalues, matrices, t)

    assert P[:, 0] == pytest.approx(2.0 / 3.0 + np.exp(-3.0 * t) / 3.0)


def test_simulated_occupancy_matches_closed_form() -> None:
    protocol = StimulusClampProtocol(duration="1", sample_interval="0.01")
    simulator = StimulusClampSimulator(_two_state_model(), [protocol])

    result = simulator.simulate()

    assert result.ok
    cell = protocol.cells[0][0]
    P = cell.probability[0]
    assert P[:, 0] == pytest.approx(2.0 / 3.0 + np.exp(-3.0 * cell.time) / 3.0, abs=1e-10)
    assert P.sum(axis=1) == pytest.approx(np.ones(cell.time.size))


def test_probability_is_continuous_across_epochs() -> None:
    protocol = StimulusClampProtocol(
        duration="1",
        sample_interval="0.01",
        stimuli=[Stimulus("V", start="0.3", duration="0.4", amplitude="2")],
    )
    simulator = StimulusClampSimulator(_two_state_model(), [protocol])

    assert simulator.simulate().ok

    cell = protocol.cells[0][0]
    P = cell.probability[0]
    step = np.max(np.abs(np.diff(P[:, 0])))
    assert step < 0.05
    assert np.all(P >= -1e-12)
    assert P.sum(axis=1) == pytest.approx(np.ones(cell.time.size))
    # during the pulse C relaxes towards 2/5 at rate 5 from its value at the pulse onset
    onset = 2.0 / 3.0 + np.exp(-3.0 * cell.time[30]) / 3.0
    expected = 2.0 / 5.0 + (onset - 2.0 / 5.0) * np.exp(-5.0 * (cell.time[69] - cell.time[30]))
    assert P[69, 0] == pytest.approx(expected, abs=1e-9)
    assert P[-1, 0] > P[69, 0]


def test_start_equilibrated_holds_first_epoch_at_steady_state() -> None:
    protocol = StimulusClampProtocol(
        duration="1",
        sample_interval="0.01",
        start_equilibrated=True,
        stimuli=[Stimulus("V", start="0.5", duration="0.5", amplitude="2")],
    )
    simulator = StimulusClampSimulator(_two_state_model(), [protocol])

    assert simulator.simulate().ok

    P = protocol.cells[0][0].probability[0]
    assert P[:50, 0] == pytest.approx(np.full(50, 2.0 / 3.0))
    assert P[-1, 0] < 2.0 / 3.0
