"""Tests for JSON configuration loading."""

import json
from pathlib import Path

import pytest

from atv_bridge.config import BackendConfig, load_config_from_json
from atv_bridge.device_manager import ConnectionSettings

_EXAMPLE = Path(__file__).parent.parent / "atv_bridge" / "config.json.example"


def _write(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_example_config_loads() -> None:
    config = load_config_from_json(_EXAMPLE)

    assert config.app.name == "Living Room Bridge"
    assert config.backend.type == "atvscript"
    assert config.mqtt.enabled
    assert config.mqtt.topic_prefix == "atv"
    assert len(config.devices) == 1
    assert config.devices[0].device_id == "AA_BB_CC_DD_EE_FF"
    assert not config.devices[0].credentials.any()


def test_defaults_for_missing_sections(tmp_path) -> None:
    config = load_config_from_json(_write(tmp_path, {"app": {"name": "Bridge"}}))

    assert config.devices == []
    assert not config.mqtt.enabled
    assert config.mqtt.port == 1883
    assert config.connection_settings() == ConnectionSettings()


def test_device_credentials(tmp_path) -> None:
    data = {
        "app": {"name": "Bridge"},
        "devices": [
            {"identifier": "dev1", "credentials": {"companion": "c1"}},
            {"address": "10.0.0.5", "airplay_credentials": "a2"},
        ],
    }
    first, second = load_config_from_json(_write(tmp_path, data)).devices

    assert first.credentials.companion == "c1"
    assert first.credentials.airplay == ""
    assert second.credentials.airplay == "a2"
    assert second.device_id == "10_0_0_5"


def test_connection_settings(tmp_path) -> None:
    data = {
        "app": {"name": "Bridge"},
        "polling": {"interval": 3, "artwork_interval": 60},
        "reconnect": {"base_delay": 1, "max_delay": 8, "max_attempts": 2},
    }
    settings = load_config_from_json(_write(tmp_path, data)).connection_settings()

    assert settings == ConnectionSettings(
        polling_interval=3,
        artwork_interval=60,
        reconnect_base_delay=1,
        reconnect_max_delay=8,
        max_reconnect_attempts=2,
    )


def test_missing_app_section(tmp_path) -> None:
    with pytest.raises(ValueError, match="'app'"):
        load_config_from_json(_write(tmp_path, {"devices": []}))


def test_missing_file(tmp_path, caplog) -> None:
    with pytest.raises(FileNotFoundError):
        load_config_from_json(tmp_path / "missing.json")
    assert "not found" in caplog.text


def test_invalid_json(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(json.JSONDecodeError):
        load_config_from_json(path)


def test_backend_options() -> None:
    assert BackendConfig(type="native").options() == {}
    assert BackendConfig(type="pyatv").options() == {}
    options = BackendConfig(atvscript_path="/opt/atvscript", timeout=5).options()
    assert options["atvscript_path"] == "/opt/atvscript"
    assert options["atvremote_path"] is None
    assert options["timeout"] == 5
