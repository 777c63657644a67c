"""Support trendline scanner.

A least squares line is fitted through the local lows of the last 60 sessions.
The slope together with the price change over ``period_to_check`` sessions
classifies the trend, and the tracked state tells freshly detected uptrends
apart from ones reported on earlier runs.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from alert_config import TrendlineCriteria
from detection import (
    DetectionResult,
    NoQualifyingSymbols,
    ScanContext,
    as_utc,
    collect_signals,
    record_state,
    require_history,
)
from price_levels import Trendline, find_local_minima, fit_trendline

logger = logging.getLogger(__name__)

DETECTOR_NAME = "trendline"

UPTREND = "Uptrend"
DOWNTREND = "Downtrend"
SIDEWAYS = "Sideways"

_SECONDS_PER_DAY = 24 * 60 * 60

__all__ = [
    "DETECTOR_NAME",
    "TrendSignal",
    "classify_trend",
    "evaluate_trendline",
    "scan_trendlines",
    "split_new_and_existing",
    "trend_strength",
]


@dataclass(frozen=True)
class TrendSignal:
    symbol: str
    name: str
    trend: str
    percent_change: float
    trend_strength: float
    last_price: float
    support: float
    percent_from_support: float
    slope: float
    r_squared: float
    volume: int
    days_since_detected: Optional[int] = None


def classify_trend(slope: float, percent_change: float, min_percent_change: float) -> str:
    if slope > 0 and percent_change >= min_percent_change:
        return UPTREND
    if slope < 0 and abs(percent_change) >= min_percent_change:
        return DOWNTREND
    return SIDEWAYS


def trend_strength(line: Trendline) -> float:
    """Bounded confidence score ``min(1, |R² * slope * 20|)``."""

    r_squared = 0.0 if math.isnan(line.r_squared) else line.r_squared
    return min(1.0, abs(r_squared * line.slope * 20))


def evaluate_trendline(
    symbol: str,
    df: pd.DataFrame,
    criteria: TrendlineCriteria | None = None,
) -> Optional[TrendSignal]:
    """Fit the support trendline for ``symbol``.

    Raises :class:`InsufficientHistory` for fewer than ``lookback`` rows.
    Returns ``None`` when fewer than two local lows exist or the move over
    ``period_to_check`` is below the threshold.
    """

    criteria = criteria or TrendlineCriteria()
    require_history(symbol, df, criteria.lookback)

    recent = df.tail(criteria.lookback)
    lows = recent["low"].to_numpy(dtype=float)
    closes = recent["close"].to_numpy(dtype=float)

    minima = find_local_minima(lows, criteria.minima_window)
    if len(minima) < 2:
        return None

    try:
        line = fit_trendline(minima, [lows[idx] for idx in minima])
    except ValueError:
        return None

    last_day = len(recent) - 1
    last_price = float(closes[-1])
    expected_support = line.value_at(last_day)
    if expected_support == 0:
        return None
    percent_from_support = (last_price - expected_support) / expected_support * 100

    start = max(0, len(recent) - criteria.period_to_check)
    start_price = float(closes[start])
    if start_price == 0:
        return None
    percent_change = (last_price - start_price) / start_price * 100

    if abs(percent_change) < criteria.min_percent_change:
        return None

    return TrendSignal(
        symbol=symbol,
        name=symbol,
        trend=classify_trend(line.slope, percent_change, criteria.min_percent_change),
        percent_change=float(percent_change),
        trend_strength=trend_strength(line),
        last_price=last_price,
        support=float(expected_support),
        percent_from_support=float(percent_from_support),
        slope=line.slope,
        r_squared=line.r_squared,
        volume=int(recent["volume"].iloc[-1]),
    )


def _parse_timestamp(value: object, fallback: datetime) -> datetime:
    # Accepts the ``...000Z`` form written by older state files.
    if value is None:
        return fallback
    try:
        parsed = pd.Timestamp(str(value))
    except (TypeError, ValueError):
        logger.debug("Unparseable first_detected %r; treating as today", value)
        return fallback
    if pd.isna(parsed):
        return fallback
    return as_utc(parsed.to_pydatetime())


def split_new_and_existing(
    signals: List[TrendSignal],
    previous: Mapping[str, Mapping[str, object]],
    now: datetime,
    min_percent_change: float,
) -> Tuple[List[TrendSignal], List[TrendSignal]]:
    """Partition qualifying uptrends into first sightings and repeats."""

    now = as_utc(now)
    new: List[TrendSignal] = []
    existing: List[TrendSignal] = []
    for signal in signals:
        if signal.trend != UPTREND or signal.percent_change < min_percent_change:
            continue
        prior = previous.get(signal.symbol)
        if not prior:
            new.append(signal)
            continue
        first_detected = _parse_timestamp(prior.get("first_detected"), now)
        elapsed = (now - first_detected).total_seconds()
        existing.append(replace(signal, days_since_detected=math.floor(elapsed / _SECONDS_PER_DAY)))
    return new, existing


def scan_trendlines(
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> DetectionResult:
    criteria: TrendlineCriteria = context.criteria.trendline

    signals: List[TrendSignal] = collect_signals(data, evaluate_trendline, criteria)
    if not signals:
        raise NoQualifyingSymbols(DETECTOR_NAME, "No trendline stocks found in data")

    previous = context.state.detector_state(DETECTOR_NAME)
    new, existing = split_new_and_existing(
        signals, previous, context.now, criteria.min_percent_change
    )

    timestamp = context.timestamp
    tracked: Dict[str, Dict[str, object]] = {}
    for signal in new + existing:
        prior = previous.get(signal.symbol) or {}
        tracked[signal.symbol] = {
            "trend": signal.trend,
            "first_detected": prior.get("first_detected") or timestamp,
            "timestamp": timestamp,
        }
    record_state(context, DETECTOR_NAME, tracked)

    logger.info(
        "Trendlines: %d scanned, %d new, %d existing uptrends",
        len(signals),
        len(new),
        len(existing),
    )
    return DetectionResult(
        type=DETECTOR_NAME,
        data={
            "new": new,
            "existing": existing,
            "summary": {
                "scanned": len(signals),
                "new_count": len(new),
                "existing_count": len(existing),
            },
        },
        timestamp=timestamp,
    )
