"""Resampling of reference traces onto simulation or summary axes."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from .entities import AlignedReference
from .errors import ConfigError

NORMALIZATIONS = ("none", "to_max", "to_min", "to_abs_extremum")

_EPS = float(np.finfo(float).eps) * 5


def _min_spacing(axis: np.ndarray) -> float:
    if axis.size < 2:
        return np.inf
    return float(np.min(np.abs(np.diff(axis))))


def alignment_epsilon(x: np.ndarray, xref: np.ndarray) -> float:
    """Matching tolerance: 1e-5 of the finest spacing of either axis."""

    spacing = min(_min_spacing(np.asarray(x, dtype=float)), _min_spacing(np.asarray(xref, dtype=float)))
    if not np.isfinite(spacing) or spacing <= 0.0:
        return 0.0
    return spacing * 1e-5


def sample_array(
    xref: np.ndarray,
    yref: np.ndarray,
    x: np.ndarray,
    x0: float = 0.0,
    epsilon: float = 0.0,
) -> Tuple[np.ndarray, int, int]:
    """Resample ``yref(xref - x0)`` onto *x*.

    Each target sample is linearly interpolated between its bounding
    reference samples. Both axes must be monotone; either may decrease.
    Returns ``(y, first, count)`` where only ``y[first:first + count]`` holds
    reference values and the remaining samples are left at zero.
    """

    xref = np.asarray(xref, dtype=float)
    yref = np.asarray(yref, dtype=float)
    x = np.asarray(x, dtype=float)
    n = x.size
    nref = min(xref.size, yref.size)
    y = np.zeros(n, dtype=float)
    if epsilon == 0.0:
        epsilon = _EPS
    increasing = not (n >= 2 and x[1] - x[0] < 0)
    ref_increasing = not (nref >= 2 and xref[1] - xref[0] < 0)
    i = 0 if increasing else n - 1
    iref = 0 if ref_increasing else nref - 1
    di = 1 if increasing else -1
    diref = 1 if ref_increasing else -1
    first = -1
    while 0 <= i < n and 0 <= iref < nref:
        shifted = xref[iref] - x0
        if x[i] < shifted - epsilon:
            i += di
        elif abs(x[i] - shifted) < epsilon:
            y[i] = yref[iref]
            if first == -1:
                first = i
            i += di
        else:
            jref = iref + diref
            if 0 <= jref < nref and xref[jref] - x0 > x[i]:
                # Stay on this reference interval; the next target may fall in it too.
                slope = (yref[jref] - yref[iref]) / (xref[jref] - xref[iref])
                y[i] = yref[iref] + slope * (x[i] - shifted)
                if first == -1:
                    first = i
                i += di
            else:
                iref = jref
    if first == -1:
        return y, -1, 0
    if increasing:
        return y, first, i - first
    return y, i + 1, first - i


def normalize(values: np.ndarray, mode: str) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if mode == "none" or values.size == 0:
        return values
    if mode == "to_max":
        return values / values.max()
    if mode == "to_min":
        return values / values.min()
    if mode == "to_abs_extremum":
        low = values.min()
        high = values.max()
        peak = high if abs(high) >= abs(low) else low
        return values / peak
    raise ConfigError(f"Unknown reference normalization '{mode}'")


def align_reference(
    xref: np.ndarray,
    yref: np.ndarray,
    x: np.ndarray,
    *,
    x0: float = 0.0,
    normalization: str = "none",
    scale: float = 1.0,
    weight: float = 1.0,
) -> Optional[AlignedReference]:
    """Resample, normalise and scale one reference column pair onto *x*."""

    epsilon = alignment_epsilon(x, xref)
    values, first, count = sample_array(xref, yref, x, x0=x0, epsilon=epsilon)
    if count <= 0:
        return None
    segment = normalize(values[first : first + count], normalization)
    if scale != 1.0:
        segment = segment * scale
    return AlignedReference(waveform=segment, first=first, count=count, weight=float(weight))


__all__ = ["NORMALIZATIONS", "align_reference", "alignment_epsilon", "normalize", "sample_array"]
