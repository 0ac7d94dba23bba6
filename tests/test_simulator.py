from __future__ import annotations

import numpy as np
import pytest

from src.stimclamp.conditions import ReferenceData, Stimulus, StimulusClampProtocol, Summary, Waveform
from src.stimclamp.model import ExpressionKineticModel, ModelParameter, Transition
from src.stimclamp.options import SimulationOptions
from src.stimclamp.simulator import (
    ABORTED,
    CHARGE_CURRENT,
    FAILED,
    SUCCESS,
    CancellationToken,
    StimulusClampSimulator,
)


def _model(**extra) -> ExpressionKineticModel:
    payload = {
        "states": ["C", "O"],
        "transitions": [
            {"source": "C", "target": "O", "rate": "k_on * (1 + V)"},
            {"source": "O", "target": "C", "rate": "k_off", "charge": 1.0},
        ],
        "parameters": [{"name": "k_on", "value": 1.0}, {"name": "k_off", "value": 2.0}, {"name": "V", "value": 0.0}],
        "state_attributes": {"g": [0.0, 10.0]},
        "state_groups": {"open": ["O"]},
    }
    payload.update(extra)
    return ExpressionKineticModel.from_mapping(payload)


def _protocol(**kwargs) -> StimulusClampProtocol:
    options = {
        "name": "act",
        "duration": "1",
        "sample_interval": "0.01",
        "stimuli": [Stimulus("V", start="0.2", duration="0.5", amplitude="0, 1, 2")],
    }
    options.update(kwargs)
    return StimulusClampProtocol(**options)


def test_derived_waveforms_per_cell() -> None:
    protocol = _protocol(waveforms=[Waveform("double_open", "2 * O")])
    simulator = StimulusClampSimulator(_model(), [protocol])

    result = simulator.simulate()

    assert result.status == SUCCESS
    assert result.cost == 0.0
    cell = protocol.cells[0][2]
    P = cell.probability[0]
    waveforms = cell.waveforms[0]
    assert waveforms["g"] == pytest.approx(10.0 * P[:, 1])
    assert waveforms["open"] == pytest.approx(P[:, 1])
    assert waveforms["double_open"] == pytest.approx(2.0 * P[:, 1])
    # O -> C carries one elementary charge
    assert waveforms[CHARGE_CURRENT] == pytest.approx(P[:, 1] * 2.0 * 6.242e-6)


def test_simulation_waveform_lookup_order() -> None:
    protocol = _protocol(waveforms=[Waveform("double_open", "2 * O")])
    simulator = StimulusClampSimulator(_model(), [protocol])
    simulator.simulate()
    cell = protocol.cells[0][1]

    t, y = protocol.simulation_waveform("O", cell, 0)
    assert y is not None and t is cell.time
    assert protocol.simulation_waveform("V", cell, 0)[1] is cell.stimuli["V"]
    assert protocol.simulation_waveform("double_open", cell, 0)[1] is cell.waveforms[0]["double_open"]
    assert protocol.simulation_waveform("nothing", cell, 0) is None


def test_summaries_and_row_normalisation() -> None:
    protocol = _protocol(
        summaries=[
            Summary("peak", expr_x="max(V)", expr_y="max(O)", start_x="0.2", duration_x="0.5",
                    start_y="0", duration_y="1", normalization="per_row"),
        ]
    )
    simulator = StimulusClampSimulator(_model(), [protocol])

    assert simulator.simulate().ok

    x, y = protocol.summary_waveform("peak", 0, 0)
    assert x.tolist() == [0.0, 1.0, 2.0]
    assert y[-1] == pytest.approx(1.0)
    assert np.all(np.diff(y) > 0.0)


def test_summary_reference_is_aligned_to_summary_x() -> None:
    reference = ReferenceData("peak", columns=[np.array([0.0, 2.0]), np.array([0.0, 1.0])], titles=["V", "peak"])
    protocol = _protocol(
        summaries=[Summary("peak", expr_x="max(V)", expr_y="max(O)", start_x="0", duration_x="1",
                           start_y="0", duration_y="1", normalization="all_rows")],
        reference_data=[reference],
    )
    simulator = StimulusClampSimulator(_model(), [protocol])

    result = simulator.simulate()

    x, ref = protocol.summary_reference_waveform("peak", 0, 0)
    assert x.tolist() == [0.0, 1.0, 2.0]
    assert ref.tolist() == pytest.approx([0.0, 0.5, 1.0])
    y = protocol.summary_waveform("peak", 0, 0)[1]
    assert result.cost == pytest.approx(float(np.sum((y - ref) ** 2)))


def test_variable_sets_produce_separate_results() -> None:
    protocol = _protocol()
    simulator = StimulusClampSimulator(_model(variable_sets=[{}, {"k_off": 20.0}]), [protocol])

    assert simulator.simulate().ok

    cell = protocol.cells[0][0]
    assert len(cell.probability) == 2
    assert cell.probability[1][-1, 1] < cell.probability[0][-1, 1]


def test_cancelled_token_aborts_pass() -> None:
    token = CancellationToken()
    token.cancel("user abort")
    simulator = StimulusClampSimulator(_model(), [_protocol()])

    result = simulator.simulate(token)

    assert result.status == ABORTED
    assert result.message == "user abort"
    assert not result.ok


def test_waveform_with_wrong_shape_fails_pass() -> None:
    protocol = _protocol(waveforms=[Waveform("bad", "mean(O)")])
    simulator = StimulusClampSimulator(_model(), [protocol])

    result = simulator.simulate()

    assert result.status == FAILED
    assert "bad" not in protocol.cells[0][0].waveforms[0]


def test_summary_not_reducing_to_scalar_fails_pass() -> None:
    protocol = _protocol(summaries=[Summary("trace", expr_x="t", expr_y="O", duration_x="1", duration_y="1")])

    result = StimulusClampSimulator(_model(), [protocol]).simulate()

    assert result.status == FAILED
    assert "single value" in result.message


def test_single_state_model_fails_with_spectral_solver() -> None:
    model = ExpressionKineticModel(states=["C"], transitions=[])

    result = StimulusClampSimulator(model, [_protocol()]).simulate()

    assert result.status == FAILED


def test_submit_simulation_runs_in_background() -> None:
    simulator = StimulusClampSimulator(_model(), [_protocol()], SimulationOptions(max_workers=2))

    result = simulator.submit_simulation().result(timeout=60)

    assert result.ok


class _CancellingModel(ExpressionKineticModel):
    def __init__(self, token: CancellationToken, **kwargs):
        super().__init__(**kwargs)
        self.token = token

    def epoch_kinetics(self, stimuli, variable_set):
        self.token.cancel("halfway")
        return super().epoch_kinetics(stimuli, variable_set)


def test_cancel_during_pass_stops_before_cell_phase() -> None:
    token = CancellationToken()
    model = _CancellingModel(
        token,
        states=["C", "O"],
        transitions=[
            Transition("C", "O", "k_on * (1 + V)"),
            Transition("O", "C", "k_off"),
        ],
        parameters=[ModelParameter("k_on", 1.0), ModelParameter("k_off", 2.0), ModelParameter("V", 0.0)],
    )
    protocol = _protocol()

    result = StimulusClampSimulator(model, [protocol]).simulate(token)

    assert result.status == ABORTED
    assert result.message == "halfway"
    assert all(not cell.probability for cell in protocol.iter_cells())
