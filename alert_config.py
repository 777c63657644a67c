"""Configuration for the NEPSE signal scanners.

Each scanner is driven by a small frozen dataclass, mirroring the screener
configuration objects used elsewhere in the project.  :func:`load_criteria`
builds an :class:`AlertCriteria` from a JSON file that uses the option names
of the notification config (``rsiSupport.maxRSI`` and friends).  File
locations are resolved from environment variables so a deployment can keep
state outside the source tree.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "AlertCriteria",
    "DEFAULT_SECTOR_MAP",
    "HeatmapCriteria",
    "InstitutionalCriteria",
    "RsiSupportCriteria",
    "TrendlineCriteria",
    "criteria_from_mapping",
    "load_criteria",
    "resolve_config_path",
    "resolve_data_dir",
    "resolve_state_path",
]


# Symbol prefix -> sector.  The longest matching prefix wins.
DEFAULT_SECTOR_MAP: Tuple[Tuple[str, str], ...] = (
    ("NABIL", "Commercial Banks"),
    ("NICA", "Commercial Banks"),
    ("NMB", "Commercial Banks"),
    ("SBL", "Commercial Banks"),
    ("EBL", "Commercial Banks"),
    ("HBL", "Commercial Banks"),
    ("KBL", "Commercial Banks"),
    ("GBIME", "Commercial Banks"),
    ("ADBL", "Commercial Banks"),
    ("PRVU", "Commercial Banks"),
    ("SANIMA", "Commercial Banks"),
    ("MBL", "Commercial Banks"),
    ("GBBL", "Development Banks"),
    ("MNBBL", "Development Banks"),
    ("SHINE", "Development Banks"),
    ("JBBL", "Development Banks"),
    ("GUFL", "Finance"),
    ("ICFC", "Finance"),
    ("MFIL", "Finance"),
    ("CBBL", "Microfinance"),
    ("NUBL", "Microfinance"),
    ("SKBBL", "Microfinance"),
    ("SWBBL", "Microfinance"),
    ("CHCL", "Hydropower"),
    ("UPPER", "Hydropower"),
    ("API", "Hydropower"),
    ("AKPL", "Hydropower"),
    ("BPCL", "Hydropower"),
    ("NHPC", "Hydropower"),
    ("NLIC", "Life Insurance"),
    ("LICN", "Life Insurance"),
    ("ALICL", "Life Insurance"),
    ("NIL", "Non Life Insurance"),
    ("SICL", "Non Life Insurance"),
    ("PRIN", "Non Life Insurance"),
    ("SHL", "Hotels And Tourism"),
    ("TRH", "Hotels And Tourism"),
    ("OHL", "Hotels And Tourism"),
    ("UNL", "Manufacturing And Processing"),
    ("SHIVM", "Manufacturing And Processing"),
    ("HDL", "Manufacturing And Processing"),
    ("NTC", "Others"),
    ("NRIC", "Investment"),
    ("CIT", "Investment"),
    ("HIDCL", "Investment"),
    ("BBC", "Tradings"),
    ("STC", "Tradings"),
)


@dataclass(frozen=True)
class RsiSupportCriteria:
    """Thresholds for the oversold-near-support scan."""

    max_rsi: float = 40.0
    max_distance_from_support: float = 5.0
    rsi_period: int = 14
    min_records: int = 15
    support_lookback: int = 120
    support_window: int = 5
    support_merge_pct: float = 0.02


@dataclass(frozen=True)
class TrendlineCriteria:
    """Thresholds for the support trendline scan."""

    min_percent_change: float = 2.0
    period_to_check: int = 20
    lookback: int = 60
    minima_window: int = 7


@dataclass(frozen=True)
class InstitutionalCriteria:
    """Score thresholds for the institutional activity scan.

    ``thresholds`` is kept sorted ascending; bucketing scans it from the top.
    """

    thresholds: Tuple[float, ...] = (0.5, 0.65, 0.8)
    min_percent_change: float = 1.0
    lookback: int = 30
    recent_window: int = 5


@dataclass(frozen=True)
class HeatmapCriteria:
    """Settings for the weekly volume heatmap."""

    top_n_by_volume: int = 5
    min_volume: float = 10_000
    window: int = 5
    sector_map: Tuple[Tuple[str, str], ...] = DEFAULT_SECTOR_MAP


@dataclass(frozen=True)
class AlertCriteria:
    rsi_support: RsiSupportCriteria = field(default_factory=RsiSupportCriteria)
    trendline: TrendlineCriteria = field(default_factory=TrendlineCriteria)
    institutional_activity: InstitutionalCriteria = field(default_factory=InstitutionalCriteria)
    heatmap: HeatmapCriteria = field(default_factory=HeatmapCriteria)

    def __post_init__(self) -> None:
        _validate(self)


# Option name in the config file -> dataclass field.
_OPTION_NAMES: Dict[str, Dict[str, str]] = {
    "rsiSupport": {
        "maxRSI": "max_rsi",
        "maxDistanceFromSupport": "max_distance_from_support",
    },
    "trendline": {
        "minPercentChange": "min_percent_change",
        "periodToCheck": "period_to_check",
    },
    "heatmap": {
        "topNbyVolume": "top_n_by_volume",
        "minVolume": "min_volume",
        "sectors": "sector_map",
    },
    "institutionalActivity": {
        "thresholds": "thresholds",
        "minPercentChange": "min_percent_change",
    },
}

_SECTION_FIELDS = {
    "rsiSupport": "rsi_support",
    "trendline": "trendline",
    "heatmap": "heatmap",
    "institutionalActivity": "institutional_activity",
}


def _validate(criteria: AlertCriteria) -> None:
    rsi = criteria.rsi_support
    if not 0 <= rsi.max_rsi <= 100:
        raise ValueError("rsiSupport.maxRSI must be between 0 and 100")
    if rsi.max_distance_from_support < 0:
        raise ValueError("rsiSupport.maxDistanceFromSupport must not be negative")
    if rsi.rsi_period < 1 or rsi.min_records <= rsi.rsi_period:
        raise ValueError("RSI needs more records than its period")

    trend = criteria.trendline
    if trend.period_to_check < 1:
        raise ValueError("trendline.periodToCheck must be positive")
    if trend.min_percent_change < 0:
        raise ValueError("trendline.minPercentChange must not be negative")

    inst = criteria.institutional_activity
    if not inst.thresholds:
        raise ValueError("institutionalActivity.thresholds must not be empty")
    if list(inst.thresholds) != sorted(inst.thresholds):
        raise ValueError("institutionalActivity.thresholds must be sorted ascending")
    if inst.recent_window < 1 or inst.lookback < inst.recent_window:
        raise ValueError("institutional lookback must cover the recent window")

    heatmap = criteria.heatmap
    if heatmap.top_n_by_volume < 1:
        raise ValueError("heatmap.topNbyVolume must be at least 1")
    if heatmap.window < 2:
        raise ValueError("heatmap window must span at least two days")


def _coerce_option(field_name: str, value: Any) -> Any:
    if field_name == "thresholds":
        return tuple(float(item) for item in value)
    if field_name == "sector_map":
        if isinstance(value, Mapping):
            return tuple((str(prefix), str(sector)) for prefix, sector in value.items())
        return tuple((str(prefix), str(sector)) for prefix, sector in value)
    if field_name in ("period_to_check", "top_n_by_volume"):
        return int(value)
    return float(value)


def criteria_from_mapping(options: Mapping[str, Any]) -> AlertCriteria:
    """Build :class:`AlertCriteria` from ``{"rsiSupport": {...}, ...}``."""

    base = AlertCriteria()
    overrides: Dict[str, Any] = {}
    for section, names in _OPTION_NAMES.items():
        raw_section = options.get(section)
        if raw_section is None:
            continue
        if not isinstance(raw_section, Mapping):
            raise ValueError(f"{section} must be an object")
        values = {}
        for option, field_name in names.items():
            if option not in raw_section:
                continue
            try:
                values[field_name] = _coerce_option(field_name, raw_section[option])
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{section}.{option}: {exc}") from exc
        unknown = set(raw_section) - set(names)
        if unknown:
            logger.warning("Ignoring unknown %s options: %s", section, sorted(unknown))
        attr = _SECTION_FIELDS[section]
        overrides[attr] = replace(getattr(base, attr), **values)
    return replace(base, **overrides)


def load_criteria(path: Optional[Path] = None) -> AlertCriteria:
    """Load criteria from ``path`` (or ``NEPSE_ALERTS_CONFIG``).

    A missing file yields the defaults.  The options may sit at the top level
    or under a ``criteria`` key.
    """

    path = path or resolve_config_path()
    if path is None:
        return AlertCriteria()
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        logger.info("No config at %s; using default criteria", path)
        return AlertCriteria()
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config {path} must contain a JSON object")
    options = payload.get("criteria", payload)
    if not isinstance(options, Mapping):
        raise ValueError(f"criteria in {path} must be a JSON object")
    return criteria_from_mapping(options)


def resolve_data_dir() -> Path:
    env_path = os.environ.get("NEPSE_ALERTS_DATA_DIR")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".nepse_alerts"


def resolve_state_path() -> Path:
    env_path = os.environ.get("NEPSE_ALERTS_STATE_FILE")
    if env_path:
        return Path(env_path).expanduser()
    return resolve_data_dir() / "previous_alerts.json"


def resolve_config_path() -> Optional[Path]:
    env_path = os.environ.get("NEPSE_ALERTS_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return None


def thresholds_label(threshold: float) -> str:
    """Render a threshold as a stable mapping key (``0.65`` -> ``"0.65"``)."""

    return f"{threshold:g}"


def sector_items(sector_map: Sequence[Tuple[str, str]] | Mapping[str, str]) -> Tuple[Tuple[str, str], ...]:
    if isinstance(sector_map, Mapping):
        return tuple(sector_map.items())
    return tuple(sector_map)
