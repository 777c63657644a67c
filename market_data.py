"""Daily OHLCV loading and normalisation for the NEPSE scanners.

The raw exports come in a few shapes: a JSON array of rows, a JSON object
wrapping the rows in ``data``, or a CSV table.  Column names vary (``time``
vs ``date``, ``ticker`` vs ``symbol``) and dates use either ISO strings or
the ``YYYY_MM_DD`` form of the organised NEPSE dump.  Everything is funnelled
through :func:`normalise_daily_records`, which returns strict per-symbol
frames: a ``DatetimeIndex`` named ``date``, float ``open/high/low/close`` and
integer ``volume``, sorted ascending with one row per day.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd
import requests

from detection import SourceUnavailable

logger = logging.getLogger(__name__)

__all__ = [
    "AllowList",
    "OHLCV_COLUMNS",
    "load_market_data",
    "normalise_daily_records",
    "read_raw_records",
]

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]
_REQUIRED_COLUMNS = ["symbol", "date"] + OHLCV_COLUMNS

_COLUMN_ALIASES = {
    "ticker": "symbol",
    "stock_symbol": "symbol",
    "stocksymbol": "symbol",
    "time": "date",
    "timestamp": "date",
    "businessdate": "date",
    "business_date": "date",
    "openprice": "open",
    "open_price": "open",
    "highprice": "high",
    "high_price": "high",
    "lowprice": "low",
    "low_price": "low",
    "closeprice": "close",
    "close_price": "close",
    "ltp": "close",
    "totaltradedquantity": "volume",
    "total_traded_quantity": "volume",
    "qty": "volume",
}

_SYMBOL_COLUMNS = ("Symbol", "symbol", "SYMBOL", "stock_symbol", "StockSymbol", "Ticker")

REQUEST_TIMEOUT = 30
_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class AllowList:
    """Universe of tracked symbols.

    An *open* allow-list (``symbols=None``) admits everything; that is what
    the loader falls back to when the symbols workbook cannot be read.
    """

    def __init__(self, symbols: Optional[Iterable[str]] = None) -> None:
        if symbols is None:
            self._symbols = None
        else:
            self._symbols = frozenset(
                str(symbol).strip().upper() for symbol in symbols if str(symbol).strip()
            )

    @classmethod
    def from_file(cls, path: Path | str) -> "AllowList":
        path = Path(path)
        try:
            symbols = _read_symbol_file(path)
        except FileNotFoundError:
            logger.warning("Allow-list %s not found; tracking every symbol", path)
            return cls()
        except (OSError, ValueError, ImportError) as exc:
            logger.warning("Could not read allow-list %s (%s); tracking every symbol", path, exc)
            return cls()
        logger.info("Loaded %d allowed symbols from %s", len(symbols), path)
        return cls(symbols)

    @property
    def is_open(self) -> bool:
        return self._symbols is None

    def is_allowed(self, symbol: str) -> bool:
        if self._symbols is None:
            return True
        return str(symbol).strip().upper() in self._symbols

    def filter_symbols(self, symbols: Iterable[str]) -> List[str]:
        return [symbol for symbol in symbols if self.is_allowed(symbol)]

    def __len__(self) -> int:
        return 0 if self._symbols is None else len(self._symbols)

    def __contains__(self, symbol: object) -> bool:
        return self.is_allowed(str(symbol))


def _read_symbol_file(path: Path) -> List[str]:
    suffix = path.suffix.lower()
    if suffix in (".txt", ""):
        with path.open("r", encoding="utf-8") as handle:
            return [line.strip() for line in handle if line.strip()]

    if suffix in (".xlsx", ".xls"):
        table = pd.read_excel(path)
    elif suffix == ".csv":
        table = pd.read_csv(path)
    else:
        raise ValueError(f"Unsupported allow-list format: {path.suffix}")

    for column in _SYMBOL_COLUMNS:
        if column in table.columns:
            values = table[column].dropna().astype(str).str.strip()
            return [value for value in values if value]
    raise ValueError(f"No symbol column in {path}; expected one of {list(_SYMBOL_COLUMNS)}")


def read_raw_records(source: str | Path) -> pd.DataFrame:
    """Read rows from a file path or an HTTP(S) URL without normalising them."""

    text_source = str(source)
    if text_source.startswith(("http://", "https://")):
        return _fetch_remote_records(text_source)

    path = Path(source)
    try:
        if path.suffix.lower() == ".csv":
            return pd.read_csv(path)
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError as exc:
        raise SourceUnavailable(f"Market data file not found: {path}") from exc
    except (OSError, ValueError) as exc:
        raise SourceUnavailable(f"Failed to read market data {path}: {exc}") from exc
    return _frame_from_payload(payload, str(path))


def _fetch_remote_records(url: str) -> pd.DataFrame:
    try:
        response = requests.get(
            url, headers={"User-Agent": _USER_AGENT}, timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        raise SourceUnavailable(f"Request to {url} failed: {exc}") from exc
    except ValueError as exc:
        raise SourceUnavailable(f"Response from {url} is not JSON: {exc}") from exc
    return _frame_from_payload(payload, url)


def _frame_from_payload(payload: Any, origin: str) -> pd.DataFrame:
    rows = payload
    if isinstance(payload, Mapping):
        rows = payload.get("data")
    if not isinstance(rows, list):
        raise SourceUnavailable(f"Unexpected market data payload from {origin}")
    return pd.DataFrame([row for row in rows if isinstance(row, Mapping)])


def _canonical_column(name: Any) -> str:
    key = str(name).strip().lower()
    return _COLUMN_ALIASES.get(key, key)


def _parse_dates(values: pd.Series) -> pd.Series:
    text = values.astype(str).str.strip().str.replace("_", "-", regex=False)
    parsed = pd.to_datetime(text, errors="coerce", utc=True, format="mixed")
    return parsed.dt.tz_convert(None).dt.normalize()


def _parse_numbers(values: pd.Series) -> pd.Series:
    if not pd.api.types.is_numeric_dtype(values):
        values = values.astype(str).str.replace(",", "", regex=False).str.strip()
    return pd.to_numeric(values, errors="coerce")


def normalise_daily_records(
    frame: pd.DataFrame,
    allow_list: Optional[AllowList] = None,
) -> Dict[str, pd.DataFrame]:
    """Validate raw rows and split them into one sorted frame per symbol."""

    if frame is None or frame.empty:
        return {}

    renamed: Dict[Any, str] = {}
    for column in frame.columns:
        canonical = _canonical_column(column)
        if canonical in _REQUIRED_COLUMNS and canonical not in renamed.values():
            renamed[column] = canonical
    table = frame[list(renamed)].rename(columns=renamed)

    missing = [column for column in _REQUIRED_COLUMNS if column not in table.columns]
    if missing:
        raise SourceUnavailable(f"Market data is missing required columns: {missing}")

    before = len(table)
    table = table.dropna(subset=["symbol", "date"]).copy()
    table["symbol"] = table["symbol"].astype(str).str.strip().str.upper()
    table["date"] = _parse_dates(table["date"])
    for column in OHLCV_COLUMNS:
        table[column] = _parse_numbers(table[column])

    table = table.dropna(subset=_REQUIRED_COLUMNS)
    table = table[table["symbol"] != ""]
    dropped = before - len(table)
    if dropped:
        logger.debug("Dropped %d malformed market data rows", dropped)

    if allow_list is not None and not allow_list.is_open:
        table = table[table["symbol"].map(allow_list.is_allowed)]

    table = table.drop_duplicates(subset=["symbol", "date"], keep="last")
    table = table.sort_values(["symbol", "date"])
    table["volume"] = table["volume"].round().astype("int64")
    for column in ("open", "high", "low", "close"):
        table[column] = table[column].astype(float)

    series: Dict[str, pd.DataFrame] = {}
    for symbol, rows in table.groupby("symbol", sort=True):
        df = rows.set_index("date")[OHLCV_COLUMNS]
        df.index.name = "date"
        series[str(symbol)] = df
    return series


def load_market_data(
    source: str | Path,
    allow_list: Optional[AllowList] = None,
) -> Dict[str, pd.DataFrame]:
    """Load ``source`` and return ``{symbol: daily frame}`` for tracked symbols."""

    raw = read_raw_records(source)
    data = normalise_daily_records(raw, allow_list)
    logger.info("Loaded %d symbols from %s", len(data), source)
    return data
