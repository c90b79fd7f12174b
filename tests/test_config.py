from __future__ import annotations

import json
from pathlib import Path

import pytest

from hyperdeck_capture.config import (
    CaptureSettings,
    DeviceSettings,
    MonitoringConfig,
    SettingsStore,
)
from hyperdeck_capture.errors import ConfigError


def test_device_settings_defaults() -> None:
    settings = DeviceSettings()

    assert settings.control_port == 9993
    assert settings.stream_url("10.0.0.5", 2) == "rtsp://10.0.0.5:8554/slot2"
    assert settings.slot_directory(1) == "ssd1"
    assert settings.media_extensions == (".mp4",)


def test_device_settings_normalise_extensions() -> None:
    settings = DeviceSettings(media_extensions=("MOV", ".Mp4"))

    assert settings.media_extensions == (".mov", ".mp4")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"control_port": 0},
        {"ftp_port": 70000},
        {"command_timeout": 0},
        {"poll_interval": -1},
        {"min_command_spacing": -0.5},
        {"media_extensions": ()},
    ],
)
def test_device_settings_reject_invalid_values(kwargs) -> None:
    with pytest.raises(ValueError):
        DeviceSettings(**kwargs)


def test_capture_settings_validation() -> None:
    assert CaptureSettings().max_retries == 3
    with pytest.raises(ValueError):
        CaptureSettings(ffmpeg_binary=" ")
    with pytest.raises(ValueError):
        CaptureSettings(max_retries=-1)
    with pytest.raises(ValueError):
        CaptureSettings(drain_grace=float("nan"))


def test_monitoring_config_normalises_values(tmp_path) -> None:
    config = MonitoringConfig(" 10.0.0.5 ", str(tmp_path), [2, 1, 2], file_name="  ")

    assert config.device_address == "10.0.0.5"
    assert config.destination_path == Path(tmp_path)
    assert config.slots == (1, 2)
    assert config.file_name is None
    assert config.to_dict()["slots"] == [1, 2]


@pytest.mark.parametrize(
    "address, destination, slots, message",
    [
        ("", "/tmp", (1,), "device address"),
        ("10.0.0.5", "", (1,), "destination path"),
        ("10.0.0.5", "/tmp", (), "At least one drive"),
        ("10.0.0.5", "/tmp", (3,), "Unknown slot"),
        ("10.0.0.5", "/tmp", ("x",), "integers"),
    ],
)
def test_monitoring_config_rejects_invalid(address, destination, slots, message) -> None:
    with pytest.raises(ConfigError) as excinfo:
        MonitoringConfig(address, destination, slots)

    assert message in str(excinfo.value)
    assert excinfo.value.kind == "config_error"


def test_monitoring_config_from_drives(tmp_path) -> None:
    config = MonitoringConfig.from_drives(
        "10.0.0.5",
        {"ssd1": False, "ssd2": True},
        tmp_path,
        file_name="show",
        capture_enabled=False,
    )

    assert config.slots == (2,)
    assert config.file_name == "show"
    assert config.capture_enabled is False


def test_monitoring_config_from_drives_errors(tmp_path) -> None:
    with pytest.raises(ConfigError):
        MonitoringConfig.from_drives("10.0.0.5", {"ssd1": False, "ssd2": False}, tmp_path)
    with pytest.raises(ConfigError):
        MonitoringConfig.from_drives("10.0.0.5", {"usb": True}, tmp_path)
    with pytest.raises(ConfigError):
        MonitoringConfig.from_drives("10.0.0.5", {"ssd1": True}, None)


def test_settings_store_defaults_when_missing(tmp_path) -> None:
    store = SettingsStore(tmp_path / "settings.json", environ={})

    assert store.device == DeviceSettings()
    assert store.capture == CaptureSettings()
    assert not (tmp_path / "settings.json").exists()


def test_settings_store_persists_updates(tmp_path) -> None:
    path = tmp_path / "conf" / "settings.json"
    store = SettingsStore(path, environ={})

    device = store.update_device({"stream_port": 9554, "media_extensions": ["mp4", "mov"]})
    capture = store.update_capture({"max_retries": 5})

    assert device.stream_port == 9554
    assert capture.max_retries == 5
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["device"]["stream_port"] == 9554
    assert payload["device"]["media_extensions"] == [".mp4", ".mov"]
    assert payload["capture"]["max_retries"] == 5

    reloaded = SettingsStore(path, environ={})
    assert reloaded.device == device
    assert reloaded.capture == capture


def test_settings_store_rejects_invalid_update(tmp_path) -> None:
    store = SettingsStore(tmp_path / "settings.json", environ={})

    with pytest.raises(ConfigError):
        store.update_device({"control_port": "not-a-port"})
    with pytest.raises(ConfigError):
        store.update_capture({"retry_delay": True})

    assert store.device == DeviceSettings()
    assert not (tmp_path / "settings.json").exists()


def test_settings_store_environment_overrides(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"device": {"ftp_port": 2121}}), encoding="utf-8")
    environ = {
        "HYPERDECK_CONTROL_PORT": "9994",
        "HYPERDECK_FTP_USER": "deck",
        "HYPERDECK_FFMPEG": "/opt/ffmpeg/bin/ffmpeg",
        "HYPERDECK_MAX_RETRIES": " ",
    }

    store = SettingsStore(path, environ=environ)

    assert store.device.control_port == 9994
    assert store.device.ftp_port == 2121
    assert store.device.ftp_user == "deck"
    assert store.capture.ffmpeg_binary == "/opt/ffmpeg/bin/ffmpeg"
    assert store.capture.max_retries == 3


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps([1, 2]), json.dumps({"device": {"poll_interval": 0}})],
)
def test_settings_store_rejects_bad_files(tmp_path, content) -> None:
    path = tmp_path / "settings.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        SettingsStore(path, environ={})


def test_invalid_environment_override_is_reported(tmp_path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        SettingsStore(tmp_path / "settings.json", environ={"HYPERDECK_STREAM_PORT": "abc"})

    assert "Invalid settings" in str(excinfo.value)
    assert "abc" in str(excinfo.value)
