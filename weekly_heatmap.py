"""Weekly volume heatmap grouped by sector."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from alert_config import HeatmapCriteria, sector_items
from detection import (
    DetectionResult,
    NoQualifyingSymbols,
    ScanContext,
    collect_signals,
    record_state,
    require_history,
)

logger = logging.getLogger(__name__)

DETECTOR_NAME = "weekly_heatmap"
UNKNOWN_SECTOR = "Others"

__all__ = [
    "DETECTOR_NAME",
    "HeatmapEntry",
    "assign_sector",
    "build_heatmap_entry",
    "scan_weekly_heatmap",
    "top_by_sector",
]


@dataclass(frozen=True)
class HeatmapEntry:
    symbol: str
    sector: str
    close: float
    percent_change: float
    volume: int


def assign_sector(symbol: str, sector_map: Sequence[Tuple[str, str]] | Mapping[str, str]) -> str:
    """Sector of the longest prefix in ``sector_map`` matching ``symbol``."""

    best: Optional[Tuple[str, str]] = None
    upper = symbol.upper()
    for prefix, sector in sector_items(sector_map):
        if upper.startswith(prefix.upper()) and (best is None or len(prefix) > len(best[0])):
            best = (prefix, sector)
    return best[1] if best else UNKNOWN_SECTOR


def build_heatmap_entry(
    symbol: str,
    df: pd.DataFrame,
    criteria: HeatmapCriteria | None = None,
) -> Optional[HeatmapEntry]:
    criteria = criteria or HeatmapCriteria()
    require_history(symbol, df, criteria.window)

    week = df.tail(criteria.window)
    first_close = float(week["close"].iloc[0])
    last_close = float(week["close"].iloc[-1])
    if first_close == 0:
        return None

    average_volume = float(week["volume"].mean())
    if average_volume < criteria.min_volume:
        return None

    return HeatmapEntry(
        symbol=symbol,
        sector=assign_sector(symbol, criteria.sector_map),
        close=last_close,
        percent_change=(last_close - first_close) / first_close * 100,
        volume=int(round(average_volume)),
    )


def top_by_sector(entries: Sequence[HeatmapEntry], top_n: int) -> Dict[str, List[HeatmapEntry]]:
    grouped: Dict[str, List[HeatmapEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.sector, []).append(entry)
    return {
        sector: sorted(members, key=lambda e: e.volume, reverse=True)[:top_n]
        for sector, members in sorted(grouped.items())
    }


def scan_weekly_heatmap(
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> DetectionResult:
    criteria: HeatmapCriteria = context.criteria.heatmap

    entries: List[HeatmapEntry] = collect_signals(data, build_heatmap_entry, criteria)
    sectors = top_by_sector(entries, criteria.top_n_by_volume)
    stock_count = sum(len(members) for members in sectors.values())
    if stock_count == 0:
        raise NoQualifyingSymbols(DETECTOR_NAME, "Heatmap is empty")

    timestamp = context.timestamp
    record_state(
        context,
        DETECTOR_NAME,
        {
            entry.symbol: {
                "volume": entry.volume,
                "last_price": entry.close,
                "timestamp": timestamp,
            }
            for members in sectors.values()
            for entry in members
        },
    )

    logger.info("Weekly heatmap: %d stocks across %d sectors", stock_count, len(sectors))
    return DetectionResult(
        type=DETECTOR_NAME,
        data={
            "sectors": sectors,
            "summary": {
                "sector_count": len(sectors),
                "stock_count": stock_count,
            },
        },
        timestamp=timestamp,
    )
