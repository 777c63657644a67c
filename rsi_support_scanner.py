"""Oversold-near-support scanner.

Flags symbols whose 14 day Wilder RSI is at or below ``max_rsi`` while the
last close sits within ``max_distance_from_support`` percent above a recent
support level.  The layout follows the other scanners: a frozen signal
dataclass, pure helpers, a per-symbol ``evaluate_*`` function and a
``scan_*`` routine that handles ordering and tracked state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from alert_config import RsiSupportCriteria
from detection import (
    DetectionResult,
    NoQualifyingSymbols,
    ScanContext,
    collect_signals,
    record_state,
    require_history,
)
from price_levels import find_support_levels, nearest_support_below

logger = logging.getLogger(__name__)

DETECTOR_NAME = "rsi_support"

__all__ = [
    "DETECTOR_NAME",
    "RsiSupportSignal",
    "compute_rsi",
    "evaluate_rsi_support",
    "scan_rsi_support",
]


@dataclass(frozen=True)
class RsiSupportSignal:
    symbol: str
    current_rsi: float
    support_level: float
    last_price: float
    percent_from_support: float
    volume: int
    percent_change: float


def compute_rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Latest Wilder RSI of ``closes`` or ``None`` without enough data.

    The first averages are simple means over ``period`` differences; later
    ones are smoothed with ``(avg * (period - 1) + value) / period``.  A zero
    average loss is treated as ``RS = 100``.
    """

    values = np.asarray(closes, dtype=float)
    period = max(int(period), 1)
    if values.size < period + 1:
        return None

    deltas = np.diff(values)
    gains = np.clip(deltas, 0, None)
    losses = np.clip(-deltas, 0, None)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    rs = 100.0 if avg_loss == 0 else avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def evaluate_rsi_support(
    symbol: str,
    df: pd.DataFrame,
    criteria: RsiSupportCriteria | None = None,
) -> Optional[RsiSupportSignal]:
    """Return a signal when ``symbol`` is oversold close to support."""

    criteria = criteria or RsiSupportCriteria()
    require_history(symbol, df, criteria.min_records)

    closes = df["close"].to_numpy(dtype=float)
    rsi = compute_rsi(closes, criteria.rsi_period)
    if rsi is None or rsi > criteria.max_rsi:
        return None

    last_price = float(closes[-1])
    levels = find_support_levels(
        df["low"].to_numpy(dtype=float),
        window=criteria.support_window,
        lookback=criteria.support_lookback,
        merge_pct=criteria.support_merge_pct,
    )
    support = nearest_support_below(last_price, levels)
    if support is None:
        return None

    percent_from_support = (last_price - support) / support * 100
    if percent_from_support > criteria.max_distance_from_support:
        return None

    prev_close = float(closes[-2])
    percent_change = (last_price - prev_close) / prev_close * 100 if prev_close else 0.0

    return RsiSupportSignal(
        symbol=symbol,
        current_rsi=rsi,
        support_level=support,
        last_price=last_price,
        percent_from_support=float(percent_from_support),
        volume=int(df["volume"].iloc[-1]),
        percent_change=float(percent_change),
    )


def scan_rsi_support(
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> DetectionResult:
    criteria: RsiSupportCriteria = context.criteria.rsi_support

    signals: List[RsiSupportSignal] = collect_signals(data, evaluate_rsi_support, criteria)
    if not signals:
        raise NoQualifyingSymbols(DETECTOR_NAME)

    signals.sort(key=lambda s: s.current_rsi)

    timestamp = context.timestamp
    record_state(
        context,
        DETECTOR_NAME,
        {
            s.symbol: {
                "rsi": s.current_rsi,
                "support_level": s.support_level,
                "percent_from_support": s.percent_from_support,
                "timestamp": timestamp,
            }
            for s in signals
        },
    )

    average_rsi = sum(s.current_rsi for s in signals) / len(signals)
    logger.info("RSI support: %d symbols, average RSI %.1f", len(signals), average_rsi)
    return DetectionResult(
        type=DETECTOR_NAME,
        data={
            "stocks": signals,
            "summary": {
                "count": len(signals),
                "average_rsi": average_rsi,
                "max_rsi": criteria.max_rsi,
            },
        },
        timestamp=timestamp,
    )
