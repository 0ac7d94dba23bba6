"""Stimulus waveform rendering over a sampled time grid."""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from .errors import ExpressionError
from .expressions import ExpressionEngine

logger = logging.getLogger(__name__)

_EPS = float(np.finfo(float).eps) * 5


def find_indexes_in_range(time: np.ndarray, start: float, stop: float, epsilon: float = 0.0) -> Tuple[int, int]:
    """Return ``(first, count)`` of the samples in ``[start, stop)``.

    Both ends snap to the nearest sample; a sample lying just below a bound
    (by more than *epsilon*) is excluded.
    """

    if epsilon == 0.0:
        epsilon = _EPS
    time = np.asarray(time, dtype=float)
    if time.size == 0:
        return -1, 0
    first = int(np.argmin(np.abs(time - start)))
    if time[first] < start - epsilon:
        first += 1
    count = 0
    if first < time.size:
        end = int(np.argmin(np.abs(time - stop)))
        if time[end] < stop - epsilon:
            end += 1
        count = end - first
    return first, count


def _add_shape(
    engine: ExpressionEngine,
    expression: str,
    waveform: np.ndarray,
    first: int,
    count: int,
    elapsed: np.ndarray,
    amplitude: float,
) -> None:
    engine.bind("t", elapsed)
    try:
        values = np.broadcast_to(engine.evaluate(expression), (count,))
    except (ExpressionError, ValueError) as exc:
        logger.debug("stimulus_shape skipped expr=%r window=%d+%d: %s", expression, first, count, exc)
        return
    waveform[first : first + count] += values * amplitude


def stimulus_waveform(
    time: np.ndarray,
    *,
    start: float,
    duration: float,
    amplitude: float,
    repeats: int = 1,
    period: float = 0.0,
    onset_expr: str = "",
    offset_expr: str = "",
) -> np.ndarray:
    """Render repeated pulses of one stimulus over *time*.

    Without shape expressions each repeat is a square pulse of *amplitude*
    over its onset window. ``onset_expr`` is evaluated over the onset window
    and ``offset_expr`` from the offset to the end of the grid, both as
    functions of ``t``, the time elapsed since onset or offset.
    """

    time = np.asarray(time, dtype=float)
    waveform = np.zeros(time.size, dtype=float)
    if duration <= _EPS or abs(amplitude) <= _EPS or time.size == 0:
        return waveform
    onset_expr = (onset_expr or "").strip()
    offset_expr = (offset_expr or "").strip()
    engine = ExpressionEngine()
    for rep in range(max(int(repeats), 0)):
        onset = start + rep * period
        offset = onset + duration
        first_onset, num_onset = find_indexes_in_range(time, onset, offset, _EPS)
        if first_onset >= time.size:
            continue
        first_offset = first_onset + num_onset
        num_offset = time.size - first_offset
        if onset_expr or offset_expr:
            if num_onset > 0 and onset_expr:
                elapsed = time[first_onset:first_offset] - onset
                _add_shape(engine, onset_expr, waveform, first_onset, num_onset, elapsed, amplitude)
            if num_offset > 0 and offset_expr:
                elapsed = time[first_offset:] - offset
                _add_shape(engine, offset_expr, waveform, first_offset, num_offset, elapsed, amplitude)
        elif num_onset > 0:
            waveform[first_onset:first_offset] += amplitude
    return waveform


__all__ = ["find_indexes_in_range", "stimulus_waveform"]
