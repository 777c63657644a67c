"""Support level and trendline helpers shared by the scanners."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

__all__ = [
    "Trendline",
    "find_local_minima",
    "find_support_levels",
    "fit_trendline",
    "nearest_support_below",
]


@dataclass(frozen=True)
class Trendline:
    """Least squares line ``price = slope * day + intercept``."""

    slope: float
    intercept: float
    r_squared: float

    def value_at(self, day: float) -> float:
        return self.slope * day + self.intercept


def find_local_minima(values: Sequence[float], window: int) -> List[int]:
    """Return indices whose value no neighbour within ``±window`` undercuts.

    Only indices with a full window on both sides are considered, so the
    first and last ``window`` points are never reported.
    """

    arr = np.asarray(values, dtype=float)
    window = max(int(window), 1)
    span = 2 * window + 1
    if arr.size < span:
        return []

    windows = sliding_window_view(arr, span)
    centres = windows[:, window]
    mask = centres <= windows.min(axis=1)
    return [int(idx) + window for idx in np.nonzero(mask)[0]]


def find_support_levels(
    lows: Sequence[float],
    *,
    window: int = 5,
    lookback: int = 120,
    merge_pct: float = 0.02,
) -> List[float]:
    """Local minima of ``lows`` over the trailing ``lookback`` points.

    Levels within ``merge_pct`` of a level already found are dropped, so the
    earliest touch of a price zone is the one kept.
    """

    recent = list(lows)[-lookback:] if lookback > 0 else list(lows)
    levels: List[float] = []
    for idx in find_local_minima(recent, window):
        price = float(recent[idx])
        if price <= 0:
            continue
        if any(abs(price - level) / level < merge_pct for level in levels):
            continue
        levels.append(price)
    return levels


def nearest_support_below(price: float, levels: Iterable[float]) -> Optional[float]:
    """Closest level strictly below ``price`` by relative distance."""

    below = [float(level) for level in levels if 0 < level < price]
    if not below:
        return None
    return min(below, key=lambda level: (price - level) / level)


def fit_trendline(days: Sequence[float], prices: Sequence[float]) -> Trendline:
    """Ordinary least squares fit of ``prices`` against ``days``.

    ``r_squared`` is ``nan`` when every price is identical.
    """

    x_arr = np.asarray(days, dtype=float)
    y_arr = np.asarray(prices, dtype=float)
    if x_arr.size < 2 or x_arr.size != y_arr.size:
        raise ValueError("need at least two points of equal length")

    n = float(x_arr.size)
    sum_x = float(x_arr.sum())
    sum_y = float(y_arr.sum())
    denominator = n * float(np.sum(x_arr * x_arr)) - sum_x * sum_x
    if denominator == 0:
        raise ValueError("days must not all be equal")

    slope = (n * float(np.sum(x_arr * y_arr)) - sum_x * sum_y) / denominator
    intercept = sum_y / n - slope * sum_x / n

    predicted = slope * x_arr + intercept
    ss_res = float(np.sum((y_arr - predicted) ** 2))
    ss_tot = float(np.sum((y_arr - y_arr.mean()) ** 2))
    r_squared = 1.0 - ss_res / ss_tot if ss_tot > 0 else math.nan
    return Trendline(slope=float(slope), intercept=float(intercept), r_squared=float(r_squared))
