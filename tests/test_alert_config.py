from __future__ import annotations

import json

import pytest

from alert_config import (
    DEFAULT_SECTOR_MAP,
    AlertCriteria,
    InstitutionalCriteria,
    criteria_from_mapping,
    load_criteria,
    resolve_config_path,
    resolve_data_dir,
    resolve_state_path,
    thresholds_label,
)


def test_defaults_match_notification_settings():
    criteria = AlertCriteria()

    assert criteria.rsi_support.max_rsi == 40.0
    assert criteria.rsi_support.max_distance_from_support == 5.0
    assert criteria.trendline.min_percent_change == 2.0
    assert criteria.trendline.period_to_check == 20
    assert criteria.institutional_activity.thresholds == (0.5, 0.65, 0.8)
    assert criteria.heatmap.top_n_by_volume == 5
    assert criteria.heatmap.sector_map == DEFAULT_SECTOR_MAP


def test_mapping_uses_config_option_names():
    criteria = criteria_from_mapping(
        {
            "rsiSupport": {"maxRSI": 35, "maxDistanceFromSupport": 3},
            "trendline": {"periodToCheck": "10"},
            "institutionalActivity": {"thresholds": [0.4, 0.7]},
            "heatmap": {"topNbyVolume": 3, "sectors": {"NA": "Banks"}},
        }
    )

    assert criteria.rsi_support.max_rsi == 35.0
    assert criteria.rsi_support.max_distance_from_support == 3.0
    assert criteria.rsi_support.rsi_period == 14
    assert criteria.trendline.period_to_check == 10
    assert criteria.trendline.min_percent_change == 2.0
    assert criteria.institutional_activity.thresholds == (0.4, 0.7)
    assert criteria.heatmap.top_n_by_volume == 3
    assert criteria.heatmap.sector_map == (("NA", "Banks"),)


def test_unknown_options_are_ignored_with_a_warning(caplog):
    with caplog.at_level("WARNING"):
        criteria = criteria_from_mapping({"trendline": {"colour": "red"}})

    assert criteria == AlertCriteria()
    assert "colour" in caplog.text


@pytest.mark.parametrize(
    "options",
    [
        {"rsiSupport": {"maxRSI": 140}},
        {"institutionalActivity": {"thresholds": [0.8, 0.5]}},
        {"institutionalActivity": {"thresholds": []}},
        {"heatmap": {"topNbyVolume": 0}},
        {"trendline": "fast"},
        {"institutionalActivity": {"thresholds": 0.5}},
        {"institutionalActivity": {"thresholds": ["high"]}},
        {"rsiSupport": {"maxRSI": None}},
        {"heatmap": {"sectors": 12}},
        {"trendline": {"periodToCheck": "twenty"}},
    ],
)
def test_invalid_options_raise_value_error(options):
    with pytest.raises(ValueError):
        criteria_from_mapping(options)


def test_criteria_are_validated_on_construction():
    with pytest.raises(ValueError):
        AlertCriteria(institutional_activity=InstitutionalCriteria(thresholds=(0.9, 0.1)))


def test_load_criteria_reads_nested_criteria_block(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"criteria": {"rsiSupport": {"maxRSI": 30}}}), encoding="utf-8")

    assert load_criteria(path).rsi_support.max_rsi == 30.0


def test_load_criteria_missing_file_gives_defaults(tmp_path):
    assert load_criteria(tmp_path / "absent.json") == AlertCriteria()


def test_load_criteria_rejects_bad_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{", encoding="utf-8")

    with pytest.raises(ValueError):
        load_criteria(path)


def test_load_criteria_rejects_non_object_criteria_block(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"criteria": [1, 2]}), encoding="utf-8")

    with pytest.raises(ValueError, match="criteria"):
        load_criteria(path)


def test_option_errors_name_the_offending_setting():
    with pytest.raises(ValueError, match=r"rsiSupport\.maxRSI"):
        criteria_from_mapping({"rsiSupport": {"maxRSI": None}})


def test_paths_follow_environment(tmp_path, monkeypatch):
    monkeypatch.delenv("NEPSE_ALERTS_STATE_FILE", raising=False)
    monkeypatch.delenv("NEPSE_ALERTS_CONFIG", raising=False)
    monkeypatch.setenv("NEPSE_ALERTS_DATA_DIR", str(tmp_path))

    assert resolve_data_dir() == tmp_path
    assert resolve_state_path() == tmp_path / "previous_alerts.json"
    assert resolve_config_path() is None

    monkeypatch.setenv("NEPSE_ALERTS_STATE_FILE", str(tmp_path / "elsewhere.json"))
    monkeypatch.setenv("NEPSE_ALERTS_CONFIG", str(tmp_path / "config.json"))

    assert resolve_state_path() == tmp_path / "elsewhere.json"
    assert resolve_config_path() == tmp_path / "config.json"


def test_thresholds_label_is_compact():
    assert thresholds_label(0.65) == "0.65"
    assert thresholds_label(0.5) == "0.5"
    assert thresholds_label(1.0) == "1"
