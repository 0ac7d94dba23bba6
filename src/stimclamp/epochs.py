"""Epoch decomposition and grid-wide deduplication of stimulus states."""

from __future__ import annotations

from typing import Dict, Iterator, List, Mapping

import numpy as np

from .entities import Epoch, StimulusSnapshot, UniqueEpoch


def find_epochs(time: np.ndarray, end_time: float, stimuli: Mapping[str, np.ndarray]) -> List[Epoch]:
    """Split the sample grid into maximal runs of constant stimulus values."""

    time = np.asarray(time, dtype=float)
    num_pts = time.size
    names = list(stimuli)
    if num_pts == 0:
        return []
    boundaries = np.zeros(num_pts, dtype=bool)
    boundaries[0] = True
    for name in names:
        values = np.asarray(stimuli[name], dtype=float)
        boundaries[1:] |= values[1:] != values[:-1]
    firsts = np.flatnonzero(boundaries)
    epochs: List[Epoch] = []
    for idx, first in enumerate(firsts):
        first = int(first)
        stop_pt = int(firsts[idx + 1]) if idx + 1 < firsts.size else num_pts
        start = float(time[first])
        stop = float(time[stop_pt]) if stop_pt < num_pts else float(end_time)
        epochs.append(
            Epoch(
                start=start,
                first_pt=first,
                stimuli={name: float(stimuli[name][first]) for name in names},
                duration=stop - start,
                num_pts=stop_pt - first,
            )
        )
    return epochs


class UniqueEpochRegistry:
    """Owns every :class:`UniqueEpoch` of a simulation run.

    Epochs refer to their unique epoch through ``Epoch.unique_index``.
    """

    def __init__(self) -> None:
        self._epochs: List[UniqueEpoch] = []
        self._lookup: Dict[StimulusSnapshot, int] = {}

    def register(self, epoch: Epoch) -> UniqueEpoch:
        key = epoch.snapshot()
        index = self._lookup.get(key)
        if index is None:
            index = len(self._epochs)
            self._epochs.append(UniqueEpoch(stimuli=dict(epoch.stimuli)))
            self._lookup[key] = index
        epoch.unique_index = index
        return self._epochs[index]

    def of(self, epoch: Epoch) -> UniqueEpoch:
        return self._epochs[epoch.unique_index]

    def clear(self) -> None:
        self._epochs = []
        self._lookup = {}

    def __getitem__(self, index: int) -> UniqueEpoch:
        return self._epochs[index]

    def __len__(self) -> int:
        return len(self._epochs)

    def __iter__(self) -> Iterator[UniqueEpoch]:
        return iter(self._epochs)


__all__ = ["UniqueEpochRegistry", "find_epochs"]
