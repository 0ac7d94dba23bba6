from __future__ import annotations

import numpy as np
import pytest

from src.stimclamp.conditions import ReferenceData, StimulusClampProtocol
from src.stimclamp.errors import ConfigError
from src.stimclamp.model import ExpressionKineticModel, ModelParameter, Transition
from src.stimclamp.optimizer import angular_to_linear, linear_to_angular, optimize
from src.stimclamp.simulator import ABORTED, SUCCESS, CancellationToken, StimulusClampSimulator


def _reference() -> ReferenceData:
    # C -> O at k_on = 1, O -> C at 2, starting closed
    t = np.linspace(0.0, 1.0, 101)
    open_probability = (1.0 - np.exp(-3.0 * t)) / 3.0
    return ReferenceData("O", columns=[t, open_probability], titles=["t", "O"])


def _simulator(k_on: float = 3.0, lower: float = 0.1, upper: float = 10.0, free: bool = True) -> StimulusClampSimulator:
    model = ExpressionKineticModel(
        states=["C", "O"],
        transitions=[Transition("C", "O", "k_on"), Transition("O", "C", "2")],
        parameters=[ModelParameter("k_on", k_on, lower=lower, upper=upper, free=free)],
    )
    protocol = StimulusClampProtocol(duration="1", sample_interval="0.01", reference_data=[_reference()])
    return StimulusClampSimulator(model, [protocol])


def test_angular_transform_round_trip_and_bounds() -> None:
    lower, upper = np.array([0.0, -5.0]), np.array([1.0, 5.0])
    x = np.array([0.25, 4.0])

    assert angular_to_linear(linear_to_angular(x, lower, upper), lower, upper) == pytest.approx(x)
    for angle in (-100.0, -1.0, 0.3, 7.0):
        mapped = angular_to_linear(np.array([angle, angle]), lower, upper)
        assert np.all(mapped >= lower) and np.all(mapped <= upper)


def test_linear_to_angular_clips_out_of_range_values() -> None:
    angles = linear_to_angular(np.array([-1.0, 2.0]), np.zeros(2), np.ones(2))

    assert angles == pytest.approx([-np.pi / 2, np.pi / 2])


def test_optimize_recovers_rate_constant() -> None:
    simulator = _simulator()
    calls = []

    result = optimize(simulator, tolerance=1e-7, progress=lambda n, cost: calls.append((n, cost)))

    assert result.status == SUCCESS
    assert result.converged
    assert result.x[0] == pytest.approx(1.0, abs=1e-3)
    assert result.cost < 1e-6
    assert simulator.model.parameters(0)["k_on"] == pytest.approx(result.x[0])
    assert calls and all(n % 2 == 0 for n, _ in calls)
    costs = [cost for _, cost in calls]
    assert costs == sorted(costs, reverse=True)


def test_optimize_requires_bounded_free_parameters() -> None:
    with pytest.raises(ConfigError):
        optimize(_simulator(free=False))
    with pytest.raises(ConfigError):
        optimize(_simulator(upper=np.inf))
    with pytest.raises(ConfigError):
        optimize(_simulator(lower=2.0, upper=2.0))


def test_cancelled_before_start_reports_abort() -> None:
    token = CancellationToken()
    token.cancel("stop")

    result = optimize(_simulator(), token=token)

    assert result.status == ABORTED
    assert result.iterations == 0
    assert result.x.tolist() == [3.0]


def test_cancel_during_fit_keeps_best_parameters() -> None:
    simulator = _simulator()
    start_cost = simulator.simulate().cost
    token = CancellationToken()

    def progress(iteration: int, cost: float) -> None:
        token.cancel("enough")

    result = optimize(simulator, token=token, progress=progress)

    assert result.status == ABORTED
    assert result.message == "enough"
    assert not result.converged
    assert result.iterations == 2
    assert result.cost <= start_cost
    assert simulator.model.parameters(0)["k_on"] == pytest.approx(result.x[0])


def test_submit_optimization_returns_future() -> None:
    future = _simulator().submit_optimization(max_iterations=5)

    result = future.result(timeout=120)

    assert result.iterations <= 5
    assert result.status == SUCCESS
