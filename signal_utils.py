"""
signal_utils.py – 1-D helpers for intensity profiles.

Smoothing, local-minimum (tick) picking, median and a closed-form
least-squares line fit.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np


def moving_average(values: Sequence[float], window_size: int) -> List[float]:
    """
    Centered moving average with truncated windows at the borders (no padding).
    """
    arr = np.asarray(values, dtype=np.float64)
    n = arr.size
    if n == 0:
        return []
    half = max(int(window_size), 1) // 2
    # prefix sums: window [lo, hi] inclusive
    csum = np.concatenate(([0.0], np.cumsum(arr)))
    idx = np.arange(n)
    lo = np.maximum(idx - half, 0)
    hi = np.minimum(idx + half, n - 1)
    sums = csum[hi + 1] - csum[lo]
    return (sums / (hi - lo + 1)).tolist()


def local_minima(values: Sequence[float], min_distance: int, min_prominence: float) -> List[int]:
    """
    Indices of strictly interior local minima.

    A candidate must be lower than both neighbours and have a prominence
    (min of left/right maximum within +-min_distance, minus its value) of at
    least min_prominence. Accepted left to right; a candidate closer than
    min_distance to the last accepted index is skipped.
    """
    arr = np.asarray(values, dtype=np.float64)
    n = arr.size
    w = max(int(min_distance), 1)
    minima: List[int] = []
    for i in range(1, n - 1):
        v = arr[i]
        if not (v < arr[i - 1] and v < arr[i + 1]):
            continue
        left_max = max(v, float(arr[max(0, i - w):i].max()))
        right_max = max(v, float(arr[i + 1:min(n, i + w + 1)].max()))
        prominence = min(left_max - v, right_max - v)
        if prominence < min_prominence:
            continue
        if minima and i - minima[-1] < min_distance:
            continue
        minima.append(i)
    return minima


def median(values: Sequence[float]) -> float:
    """Median; 0.0 for empty input."""
    if len(values) == 0:
        return 0.0
    s = sorted(values)
    mid = len(s) // 2
    if len(s) % 2:
        return float(s[mid])
    return (s[mid - 1] + s[mid]) / 2.0


def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> Optional[Tuple[float, float]]:
    """
    Least-squares fit y = slope * x + intercept.

    Returns (slope, intercept), or None for fewer than two points or when
    the x values have (near) zero variance.
    """
    x = np.asarray(xs, dtype=np.float64)
    y = np.asarray(ys, dtype=np.float64)
    if x.size < 2 or x.size != y.size:
        return None
    n = x.size
    sx, sy = x.sum(), y.sum()
    sxx, sxy = (x * x).sum(), (x * y).sum()
    denom = n * sxx - sx * sx
    if abs(denom) < 1e-12 * max(1.0, n * sxx):
        return None
    slope = (n * sxy - sx * sy) / denom
    intercept = (sy - slope * sx) / n
    return float(slope), float(intercept)
