"""Core dataclasses shared across the stimulus clamp runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np


StimulusSnapshot = Tuple[Tuple[str, float], ...]

_CHAIN_BATCH = 1000


@dataclass
class Epoch:
    """Maximal run of samples during which every stimulus is constant."""

    start: float
    first_pt: int
    stimuli: Dict[str, float]
    duration: float = 0.0
    num_pts: int = 0
    unique_index: int = -1

    @property
    def stop(self) -> float:
        return self.start + self.duration

    def snapshot(self) -> StimulusSnapshot:
        return tuple(sorted((name, float(value)) for name, value in self.stimuli.items()))


@dataclass
class UniqueEpoch:
    """Kinetics shared by every epoch with the same stimulus snapshot."""

    stimuli: Dict[str, float]
    transition_rates: Optional[np.ndarray] = None
    state_probabilities: Optional[np.ndarray] = None
    state_attributes: Dict[str, np.ndarray] = field(default_factory=dict)
    transition_charges: Optional[np.ndarray] = None
    state_charge_currents: Optional[np.ndarray] = None
    eigenvalues: Optional[np.ndarray] = None
    spectral_matrices: Optional[np.ndarray] = None
    exit_rates: Optional[np.ndarray] = None
    jump_targets: List[np.ndarray] = field(default_factory=list)
    jump_cdfs: List[np.ndarray] = field(default_factory=list)

    @property
    def num_states(self) -> int:
        if self.transition_rates is None:
            return 0
        return int(self.transition_rates.shape[1])


@dataclass(frozen=True)
class MonteCarloEvent:
    state: int
    duration: float


class EventChain:
    """Time-ordered dwell sequence of one stochastic trajectory.

    Storage grows in batches of 1000 events; ``states`` and ``durations``
    expose views over the filled part only.
    """

    def __init__(self) -> None:
        self._states = np.empty(_CHAIN_BATCH, dtype=np.int64)
        self._durations = np.empty(_CHAIN_BATCH, dtype=float)
        self._size = 0

    def append(self, state: int, duration: float) -> None:
        if self._size == self._states.size:
            capacity = self._states.size + _CHAIN_BATCH
            self._states = np.resize(self._states, capacity)
            self._durations = np.resize(self._durations, capacity)
        self._states[self._size] = state
        self._durations[self._size] = duration
        self._size += 1

    @property
    def capacity(self) -> int:
        return int(self._states.size)

    @property
    def states(self) -> np.ndarray:
        return self._states[: self._size]

    @property
    def durations(self) -> np.ndarray:
        return self._durations[: self._size]

    @property
    def total_duration(self) -> float:
        return float(self.durations.sum())

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[MonteCarloEvent]:
        for state, duration in zip(self.states, self.durations):
            yield MonteCarloEvent(state=int(state), duration=float(duration))

    def __getitem__(self, index: int) -> MonteCarloEvent:
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError(index)
        return MonteCarloEvent(state=int(self._states[index]), duration=float(self._durations[index]))


@dataclass(frozen=True)
class AlignedReference:
    """Reference trace resampled onto a target axis.

    ``waveform`` holds only the aligned run, i.e. the target samples
    ``first .. first + count``.
    """

    waveform: np.ndarray
    first: int
    count: int
    weight: float = 1.0


__all__ = [
    "AlignedReference",
    "Epoch",
    "EventChain",
    "MonteCarloEvent",
    "StimulusSnapshot",
    "UniqueEpoch",
]
