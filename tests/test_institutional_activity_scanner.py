import numpy as np
import pandas as pd
import pytest

from alert_config import AlertCriteria, InstitutionalCriteria
from detection import InsufficientHistory, NoQualifyingSymbols
from institutional_activity_scanner import (
    InstitutionalSignal,
    activity_label,
    bucket_by_threshold,
    on_balance_volume,
    scan_institutional_activity,
    score_institutional_activity,
)


def _build_dataframe(closes, volumes) -> pd.DataFrame:
    closes = np.asarray(closes, dtype=float)
    dates = pd.date_range("2024-03-01", periods=len(closes), freq="B")
    return pd.DataFrame(
        {
            "open": closes,
            "high": closes * 1.01,
            "low": closes * 0.99,
            "close": closes,
            "volume": np.asarray(volumes, dtype="int64"),
        },
        index=dates,
    )


def _flat(count: int = 30) -> pd.DataFrame:
    return _build_dataframe(np.full(count, 100.0), np.full(count, 10_000))


def _accumulating() -> pd.DataFrame:
    closes = np.linspace(100.0, 104.0, 30)
    volumes = [10_000] * 25 + [20_000] * 5
    return _build_dataframe(closes, volumes)


def _signal(symbol: str, score: float, percent_change: float) -> InstitutionalSignal:
    return InstitutionalSignal(
        symbol=symbol,
        score=score,
        percent_change=percent_change,
        volume=10_000,
        activity=activity_label(score, percent_change),
        volume_ratio=1.0,
        obv=0.0,
    )


def test_flat_symbol_only_earns_the_stability_factor():
    signal = score_institutional_activity("FLAT", _flat())

    assert signal is not None
    assert signal.score == pytest.approx(0.2)
    assert signal.activity == "Neutral"
    assert signal.volume_ratio == pytest.approx(1.0)
    assert signal.obv == 0.0


def test_accumulation_scores_every_factor():
    signal = score_institutional_activity("NABIL", _accumulating())

    assert signal.score == pytest.approx(0.9)
    assert signal.activity == "Increasing"
    assert signal.percent_change == pytest.approx(4.0)
    assert signal.volume_ratio == pytest.approx(20_000 / (350_000 / 30))
    assert signal.volume == 20_000


def test_score_stays_in_unit_interval_for_noisy_series():
    rng = np.random.default_rng(7)
    for _ in range(20):
        closes = 100 * np.exp(np.cumsum(rng.normal(0, 0.03, 30)))
        volumes = rng.integers(1_000, 100_000, 30)
        signal = score_institutional_activity("RAND", _build_dataframe(closes, volumes))
        assert 0.0 <= signal.score <= 1.0
        assert signal.score == round(signal.score, 4)


def test_short_history_raises():
    with pytest.raises(InsufficientHistory):
        score_institutional_activity("NEW", _flat(29))


def test_on_balance_volume_follows_close_direction():
    assert on_balance_volume([10, 11, 10, 10], [5, 7, 3, 9]) == pytest.approx(4.0)
    assert on_balance_volume([10], [5]) == 0.0


@pytest.mark.parametrize(
    "score, percent_change, expected",
    [
        (0.75, 2.0, "Increasing"),
        (0.75, -2.0, "Decreasing"),
        (0.55, 0.0, "Stable"),
        (0.55, 3.0, "Stable"),
        (0.4, 5.0, "Neutral"),
    ],
)
def test_activity_label(score, percent_change, expected):
    assert activity_label(score, percent_change) == expected


def test_bucket_by_threshold_uses_highest_threshold_met():
    signals = [
        _signal("MID", 0.65, 3.0),
        _signal("TOP", 0.9, 2.0),
        _signal("LOW", 0.55, 1.5),
        _signal("TOP2", 0.85, 4.0),
        _signal("WEAK", 0.3, 5.0),
        _signal("QUIET", 0.7, 0.5),
    ]

    buckets = bucket_by_threshold(signals, (0.5, 0.65, 0.8), min_percent_change=1.0)

    assert list(buckets) == ["0.5", "0.65", "0.8"]
    assert [s.symbol for s in buckets["0.8"]] == ["TOP", "TOP2"]
    assert [s.symbol for s in buckets["0.65"]] == ["MID"]
    assert [s.symbol for s in buckets["0.5"]] == ["LOW"]


def test_scan_buckets_signals_and_tracks_every_scored_symbol(make_context, state_store):
    data = {
        "NABIL": _accumulating(),
        "FLAT": _flat(),
        "NEW": _flat(10),
    }
    context = make_context()

    result = scan_institutional_activity(data, context)

    assert result.type == "institutional_activity"
    assert [s.symbol for s in result.data["thresholds"]["0.8"]] == ["NABIL"]
    assert result.data["summary"] == {"scored": 2, "included": 1}

    tracked = state_store.detector_state("institutional_activity")
    assert set(tracked) == {"NABIL", "FLAT"}
    assert tracked["FLAT"]["score"] == pytest.approx(0.2)
    assert tracked["NABIL"]["timestamp"] == context.timestamp


def test_scan_honours_configured_thresholds(make_context):
    criteria = AlertCriteria(
        institutional_activity=InstitutionalCriteria(thresholds=(0.5, 0.95))
    )

    result = scan_institutional_activity({"NABIL": _accumulating()}, make_context(criteria=criteria))

    assert [s.symbol for s in result.data["thresholds"]["0.5"]] == ["NABIL"]
    assert result.data["thresholds"]["0.95"] == []


def test_scan_without_history_signals_no_data(make_context):
    with pytest.raises(NoQualifyingSymbols):
        scan_institutional_activity({"NEW": _flat(5)}, make_context())
