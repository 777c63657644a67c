"""Institutional accumulation scoring.

Each symbol's last 30 sessions are scored on four additive factors:

* volume anomaly (recent 5 day mean against the 30 day mean), up to 0.3
* price/volume alignment, up to 0.3
* price stability (close range over the window), up to 0.2
* on-balance volume trend, up to 0.2

The resulting score in ``[0, 1]`` is bucketed under the highest configured
threshold it reaches for the notification.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from alert_config import InstitutionalCriteria, thresholds_label
from detection import (
    DetectionResult,
    NoQualifyingSymbols,
    ScanContext,
    collect_signals,
    record_state,
    require_history,
)

logger = logging.getLogger(__name__)

DETECTOR_NAME = "institutional_activity"

INCREASING = "Increasing"
DECREASING = "Decreasing"
STABLE = "Stable"
NEUTRAL = "Neutral"

__all__ = [
    "DETECTOR_NAME",
    "InstitutionalSignal",
    "activity_label",
    "bucket_by_threshold",
    "on_balance_volume",
    "scan_institutional_activity",
    "score_institutional_activity",
]


@dataclass(frozen=True)
class InstitutionalSignal:
    symbol: str
    score: float
    percent_change: float
    volume: int
    activity: str
    volume_ratio: float
    obv: float


def on_balance_volume(closes: Sequence[float], volumes: Sequence[float]) -> float:
    """Volume summed with the sign of each day-over-day close move."""

    closes_arr = np.asarray(closes, dtype=float)
    volumes_arr = np.asarray(volumes, dtype=float)
    if closes_arr.size < 2:
        return 0.0
    direction = np.sign(np.diff(closes_arr))
    return float(np.sum(direction * volumes_arr[1:]))


def _volume_anomaly_score(ratio: float) -> float:
    if ratio > 1.5:
        return 0.3
    if ratio > 1.2:
        return 0.2
    if ratio > 1.0:
        return 0.1
    return 0.0


def _alignment_score(percent_change: float, ratio: float) -> float:
    if percent_change > 5 and ratio > 1.3:
        return 0.3
    if percent_change > 2 and ratio > 1.1:
        return 0.2
    if percent_change > 0 and ratio > 1.0:
        return 0.1
    return 0.0


def _stability_score(price_range: float) -> float:
    if price_range < 0.05:
        return 0.2
    if price_range < 0.10:
        return 0.15
    if price_range < 0.15:
        return 0.1
    return 0.0


def _obv_score(obv: float, percent_change: float) -> float:
    if obv > 0 and percent_change > 0:
        return 0.2
    if obv > 0:
        return 0.1
    return 0.0


def activity_label(score: float, percent_change: float) -> str:
    if score >= 0.7 and percent_change > 0:
        return INCREASING
    if score >= 0.5 and percent_change < 0:
        return DECREASING
    if score >= 0.5:
        return STABLE
    return NEUTRAL


def score_institutional_activity(
    symbol: str,
    df: pd.DataFrame,
    criteria: InstitutionalCriteria | None = None,
) -> Optional[InstitutionalSignal]:
    """Score ``symbol`` over its most recent ``lookback`` sessions."""

    criteria = criteria or InstitutionalCriteria()
    require_history(symbol, df, criteria.lookback)

    window = df.tail(criteria.lookback)
    closes = window["close"].to_numpy(dtype=float)
    volumes = window["volume"].to_numpy(dtype=float)

    first_close = closes[0]
    min_close = closes.min()
    if first_close <= 0 or min_close <= 0:
        return None

    average_volume = volumes.mean()
    recent_volume = volumes[-criteria.recent_window:].mean()
    volume_ratio = float(recent_volume / average_volume) if average_volume > 0 else 0.0
    percent_change = float((closes[-1] - first_close) / first_close * 100)
    price_range = float((closes.max() - min_close) / min_close)
    obv = on_balance_volume(closes, volumes)

    score = (
        _volume_anomaly_score(volume_ratio)
        + _alignment_score(percent_change, volume_ratio)
        + _stability_score(price_range)
        + _obv_score(obv, percent_change)
    )
    score = round(min(max(score, 0.0), 1.0), 4)

    return InstitutionalSignal(
        symbol=symbol,
        score=score,
        percent_change=percent_change,
        volume=int(volumes[-1]),
        activity=activity_label(score, percent_change),
        volume_ratio=volume_ratio,
        obv=obv,
    )


def bucket_by_threshold(
    signals: Sequence[InstitutionalSignal],
    thresholds: Sequence[float],
    min_percent_change: float,
) -> Dict[str, List[InstitutionalSignal]]:
    """Group signals under the highest threshold each one meets.

    Signals below ``min_percent_change`` or below every threshold are left
    out.  Keys are the thresholds rendered by :func:`thresholds_label`.
    """

    ordered = sorted(float(t) for t in thresholds)
    buckets: Dict[str, List[InstitutionalSignal]] = {thresholds_label(t): [] for t in ordered}
    for signal in signals:
        if signal.percent_change < min_percent_change:
            continue
        for threshold in reversed(ordered):
            if signal.score >= threshold:
                buckets[thresholds_label(threshold)].append(signal)
                break
    for members in buckets.values():
        members.sort(key=lambda s: s.score, reverse=True)
    return buckets


def scan_institutional_activity(
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> DetectionResult:
    criteria: InstitutionalCriteria = context.criteria.institutional_activity
    lowest = min(criteria.thresholds)

    scored: List[InstitutionalSignal] = collect_signals(
        data, score_institutional_activity, criteria
    )
    if not scored:
        raise NoQualifyingSymbols(DETECTOR_NAME, "No institutional activity data found")

    included = [
        s
        for s in scored
        if s.score >= lowest or abs(s.percent_change) >= criteria.min_percent_change
    ]
    buckets = bucket_by_threshold(included, criteria.thresholds, criteria.min_percent_change)

    # Every scored symbol is tracked, not only the bucketed ones.
    timestamp = context.timestamp
    record_state(
        context,
        DETECTOR_NAME,
        {s.symbol: {"score": s.score, "timestamp": timestamp} for s in scored},
    )

    logger.info(
        "Institutional activity: %d scored, %d included, %d bucketed",
        len(scored),
        len(included),
        sum(len(members) for members in buckets.values()),
    )
    return DetectionResult(
        type=DETECTOR_NAME,
        data={
            "thresholds": buckets,
            "summary": {
                "scored": len(scored),
                "included": len(included),
            },
        },
        timestamp=timestamp,
    )
