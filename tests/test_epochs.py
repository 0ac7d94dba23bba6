from __future__ import annotations

import numpy as np
import pytest

from src.stimclamp.conditions import Stimulus, StimulusClampProtocol
from src.stimclamp.entities import Epoch, EventChain
from src.stimclamp.epochs import UniqueEpochRegistry, find_epochs


def test_find_epochs_splits_on_any_stimulus_change() -> None:
    time = np.linspace(0.0, 0.9, 10)
    stimuli = {
        "V": np.array([0, 0, 1, 1, 1, 1, 0, 0, 0, 0], dtype=float),
        "L": np.array([0, 0, 0, 0, 2, 2, 2, 2, 2, 2], dtype=float),
    }

    epochs = find_epochs(time, 1.0, stimuli)

    assert [epoch.first_pt for epoch in epochs] == [0, 2, 4, 6]
    assert [epoch.num_pts for epoch in epochs] == [2, 2, 2, 4]
    assert epochs[1].stimuli == {"V": 1.0, "L": 0.0}
    assert epochs[-1].duration == pytest.approx(0.4)
    assert epochs[-1].stop == pytest.approx(1.0)
    assert sum(epoch.duration for epoch in epochs) == pytest.approx(1.0)


def test_find_epochs_without_stimuli_is_single_epoch() -> None:
    epochs = find_epochs(np.linspace(0.0, 1.0, 5), 1.0, {})

    assert len(epochs) == 1
    assert epochs[0].num_pts == 5
    assert epochs[0].duration == pytest.approx(1.0)


def test_registry_dedupes_by_snapshot_value() -> None:
    registry = UniqueEpochRegistry()
    first = Epoch(start=0.0, first_pt=0, stimuli={"V": 1.0, "L": 0.0})
    second = Epoch(start=5.0, first_pt=3, stimuli={"L": 0.0, "V": 1.0})
    third = Epoch(start=6.0, first_pt=4, stimuli={"L": 0.0, "V": 2.0})

    assert registry.register(first) is registry.register(second)
    registry.register(third)

    assert len(registry) == 2
    assert first.unique_index == second.unique_index == 0
    assert registry.of(third).stimuli == {"L": 0.0, "V": 2.0}
    registry.clear()
    assert len(registry) == 0


def test_epochs_with_identical_stimuli_share_unique_epoch_across_cells() -> None:
    protocol = StimulusClampProtocol(
        duration="1",
        sample_interval="0.1",
        stimuli=[Stimulus("V", start="0.2", duration="0.3", amplitude="1, 2")],
    )
    registry = UniqueEpochRegistry()
    protocol.init(registry, ["C", "O"], seed=0)

    left, right = protocol.cells[0]
    assert len(registry) == 3
    assert left.epochs[0].unique_index == left.epochs[2].unique_index == right.epochs[0].unique_index
    assert registry.of(left.epochs[1]) is not registry.of(right.epochs[1])


def test_event_chain_grows_in_batches() -> None:
    chain = EventChain()
    for k in range(1001):
        chain.append(k % 2, 0.5)

    assert len(chain) == 1001
    assert chain.capacity == 2000
    assert chain.total_duration == pytest.approx(500.5)
    assert chain[-1].state == 0
    assert [event.state for event in list(chain)[:3]] == [0, 1, 0]
