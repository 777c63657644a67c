"""Result, error and context types shared by the signal scanners.

Every scanner module (see :mod:`rsi_support_scanner`,
:mod:`trendline_scanner`, :mod:`institutional_activity_scanner` and
:mod:`weekly_heatmap`) exposes a ``scan_*`` routine that takes the per-symbol
OHLCV frames together with a :class:`ScanContext` and returns a
:class:`DetectionResult`.  The runner wraps each call in a
:class:`DetectionOutcome` so callers can tell "nothing to report" apart from a
genuine failure.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

__all__ = [
    "DetectionError",
    "InsufficientHistory",
    "NoQualifyingSymbols",
    "SourceUnavailable",
    "StatePersistenceFailure",
    "DetectionResult",
    "DetectionOutcome",
    "ScanContext",
    "as_utc",
    "collect_signals",
    "isoformat",
    "record_state",
    "require_history",
    "to_jsonable",
]


class DetectionError(Exception):
    """Base class for errors raised while producing a signal."""


class InsufficientHistory(DetectionError):
    """A symbol does not carry enough daily records for a scanner."""

    def __init__(self, symbol: str, required: int, available: int) -> None:
        super().__init__(
            f"{symbol}: {available} records available, {required} required"
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class NoQualifyingSymbols(DetectionError):
    """A scan completed but no symbol met its criteria."""

    def __init__(self, detector: str, message: str | None = None) -> None:
        super().__init__(message or f"No qualifying symbols for {detector}")
        self.detector = detector


class SourceUnavailable(DetectionError):
    """The market data source could not be read or parsed."""


class StatePersistenceFailure(DetectionError):
    """Tracked state could not be written to storage."""


@dataclass(frozen=True)
class DetectionResult:
    """Payload produced by a scanner for one run."""

    type: str
    data: Dict[str, Any]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": to_jsonable(self.data),
            "timestamp": self.timestamp,
        }


@dataclass
class DetectionOutcome:
    """Result-or-error wrapper for a single scanner invocation.

    ``result`` and ``error`` are both ``None`` when the scanner ran
    successfully but had nothing to report.
    """

    name: str
    result: Optional[DetectionResult] = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_data(self) -> bool:
        return self.result is not None


@dataclass
class ScanContext:
    """Objects shared by every scanner during one run.

    The context replaces module level singletons: it is built once by the
    runner (or a test) and handed to each ``scan_*`` routine.
    """

    criteria: Any
    state: Any
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.now = as_utc(self.now)

    @property
    def timestamp(self) -> str:
        return isoformat(self.now)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime) -> str:
    return as_utc(value).isoformat()


def require_history(symbol: str, df: Optional[pd.DataFrame], required: int) -> None:
    available = 0 if df is None else len(df)
    if available < required:
        raise InsufficientHistory(symbol, required, available)


def collect_signals(
    data: Mapping[str, pd.DataFrame],
    evaluate: Callable[[str, pd.DataFrame, Any], Any],
    criteria: Any,
) -> List[Any]:
    """Run ``evaluate`` for every symbol and keep the non-``None`` results.

    Symbols raising :class:`InsufficientHistory` are skipped and only logged.
    """

    signals: List[Any] = []
    skipped = 0
    for symbol, df in data.items():
        try:
            signal = evaluate(symbol, df, criteria)
        except InsufficientHistory as exc:
            skipped += 1
            logger.debug("Skipping %s", exc)
            continue
        if signal is not None:
            signals.append(signal)
    if skipped:
        logger.debug("%d symbols skipped for short history", skipped)
    return signals


def record_state(context: ScanContext, detector: str, mapping: Mapping[str, Any]) -> bool:
    """Replace ``detector``'s tracked state, logging instead of failing.

    A failed write only means the next run may report some symbols as new
    again, so the scan result is still returned to the caller.
    """

    try:
        context.state.update_detector_state(detector, dict(mapping))
    except StatePersistenceFailure as exc:
        logger.warning("Could not persist %s state: %s", detector, exc)
        return False
    return True


def to_jsonable(value: Any) -> Any:
    if isinstance(value, float):
        return float(value) if np.isfinite(value) else None
    if isinstance(value, (int, bool)) or value is None:
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    if is_dataclass(value):
        return to_jsonable(asdict(value))
    if isinstance(value, np.generic):
        return to_jsonable(value.item())
    if hasattr(value, "tolist"):
        return to_jsonable(value.tolist())
    return value
