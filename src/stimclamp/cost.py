"""Weighted sum-of-squares cost between simulations and aligned references."""

from __future__ import annotations

from typing import Iterable

import numpy as np

from .conditions import StimulusClampProtocol


def protocol_cost(protocol: StimulusClampProtocol) -> float:
    """Cost of one protocol.

    Cell references contribute ``weight_ref * sum(w_k * (sim_k - ref_k)^2)``
    over their aligned window, with ``w`` the cell's per-sample weight.
    Summary references contribute the same without per-sample weights.
    """

    cost = 0.0
    for cell in protocol.iter_cells():
        for variable_set, references in enumerate(cell.references):
            for name, aligned in references.items():
                if aligned.count <= 0:
                    continue
                simulated = protocol.simulation_waveform(name, cell, variable_set)
                if simulated is None:
                    continue
                window = slice(aligned.first, aligned.first + aligned.count)
                residual = simulated[1][window] - aligned.waveform
                cost += float(np.sum(residual**2 * cell.weight[window])) * aligned.weight
    for name, state in protocol.summary_states.items():
        for variable_set, rows in enumerate(state.references):
            if variable_set >= len(state.data_y):
                continue
            for row, aligned in enumerate(rows):
                if aligned is None or aligned.count <= 0:
                    continue
                window = slice(aligned.first, aligned.first + aligned.count)
                residual = state.data_y[variable_set][row, window] - aligned.waveform
                cost += float(np.sum(residual**2)) * aligned.weight
    return cost


def total_cost(protocols: Iterable[StimulusClampProtocol]) -> float:
    return sum((protocol_cost(protocol) for protocol in protocols), 0.0)


__all__ = ["protocol_cost", "total_cost"]
