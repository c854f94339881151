import json
from datetime import timedelta

import pytest

from glucose_events.core.settings import Settings, load_settings, merge_settings


def test_defaults_without_file_or_env(tmp_path):
    settings = load_settings(path=tmp_path / "missing.json", environ={})

    assert settings.windows.minimum_lookahead == timedelta(hours=3)
    assert settings.windows.max_lookahead_no_next == timedelta(hours=4)
    assert settings.windows.default_lookback == timedelta(hours=3)
    assert settings.analysis.reanalysis_min_interval == timedelta(minutes=30)
    assert settings.analysis.notes_folder == "Cukier"
    assert settings.ranges.low_mgdl == 70
    assert settings.ranges.high_mgdl == 180
    assert settings.display.timezone == "UTC"
    assert settings.nightscout.base_url is None


def test_env_overrides_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "windows": {"minimum_lookahead_minutes": 120, "max_lookahead_no_next_minutes": 200},
                "analysis": {"notes_folder": "Food"},
                "display": {"timezone": "Europe/Madrid"},
            }
        )
    )

    settings = load_settings(
        path=path,
        environ={
            "MIN_LOOKAHEAD_MINUTES": "150",
            "REANALYSIS_MIN_INTERVAL_MINUTES": "45",
            "NIGHTSCOUT_URL": "https://ns.example.com",
            "NIGHTSCOUT_API_SECRET": "secret",
        },
    )

    assert settings.windows.minimum_lookahead_minutes == 150
    assert settings.windows.max_lookahead_no_next_minutes == 200
    assert settings.analysis.notes_folder == "Food"
    assert settings.analysis.reanalysis_min_interval_minutes == 45
    assert settings.display.timezone == "Europe/Madrid"
    assert str(settings.nightscout.base_url).startswith("https://ns.example.com")
    assert settings.nightscout.api_secret == "secret"


def test_blank_timezone_falls_back_to_utc(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"display": {"timezone": "  "}}))
    assert load_settings(path=path, environ={}).display.timezone == "UTC"


@pytest.mark.parametrize(
    "environ",
    [
        {"MIN_LOOKAHEAD_MINUTES": "soon"},
        {"MIN_LOOKAHEAD_MINUTES": "300", "MAX_LOOKAHEAD_NO_NEXT_MINUTES": "240"},
        {"GLUCOSE_LOW_MGDL": "190"},
        {"REANALYSIS_MIN_INTERVAL_MINUTES": "0"},
    ],
)
def test_invalid_configuration_raises(tmp_path, environ):
    with pytest.raises(RuntimeError):
        load_settings(path=tmp_path / "missing.json", environ=environ)


def test_invalid_json_raises(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(RuntimeError, match="Invalid JSON"):
        load_settings(path=path, environ={})


def test_merge_settings_prefers_env():
    merged = merge_settings(
        env_config={"ranges": {"low_mgdl": 65.0}},
        file_config={"ranges": {"low_mgdl": 72.0, "high_mgdl": 170.0}},
    )
    assert merged["ranges"] == {"low_mgdl": 65.0, "high_mgdl": 170.0}
    assert Settings.model_validate(merged).ranges.high_mgdl == 170.0
