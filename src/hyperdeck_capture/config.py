"""Configuration values for the HyperDeck capture coordinator."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

from .errors import ConfigError

SLOT_IDS: tuple[int, ...] = (1, 2)
"""Storage slots exposed by the recorder."""

DEFAULT_CONTROL_PORT = 9993
DEFAULT_STREAM_PORT = 8554
DEFAULT_FTP_PORT = 21


@dataclass(frozen=True, slots=True)
class DeviceSettings:
    """Network parameters used to reach the recorder."""

    control_port: int = DEFAULT_CONTROL_PORT
    connect_timeout: float = 10.0
    command_timeout: float = 3.0
    clip_list_timeout: float = 5.0
    poll_interval: float = 1.0
    min_command_spacing: float = 1.0
    stream_port: int = DEFAULT_STREAM_PORT
    stream_url_template: str = "rtsp://{address}:{port}/slot{slot}"
    ftp_port: int = DEFAULT_FTP_PORT
    ftp_user: str = "anonymous"
    ftp_password: str = "anonymous"
    ftp_timeout: float = 30.0
    slot_directory_template: str = "ssd{slot}"
    media_extensions: tuple[str, ...] = (".mp4",)

    def __post_init__(self) -> None:
        for name in ("control_port", "stream_port", "ftp_port"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or not 0 < value < 65536:
                raise ValueError(f"{name} must be a TCP port number")
        for name in (
            "connect_timeout",
            "command_timeout",
            "clip_list_timeout",
            "poll_interval",
        ):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive number of seconds")
            object.__setattr__(self, name, value)
        spacing = float(self.min_command_spacing)
        if not math.isfinite(spacing) or spacing < 0:
            raise ValueError("min_command_spacing must not be negative")
        object.__setattr__(self, "min_command_spacing", spacing)
        extensions = tuple(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in self.media_extensions
        )
        if not extensions:
            raise ValueError("At least one media extension is required")
        object.__setattr__(self, "media_extensions", extensions)

    def stream_url(self, address: str, slot: int) -> str:
        return self.stream_url_template.format(
            address=address, port=self.stream_port, slot=slot
        )

    def slot_directory(self, slot: int) -> str:
        return self.slot_directory_template.format(slot=slot)

    def to_dict(self) -> dict[str, object]:
        return {
            "control_port": self.control_port,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "clip_list_timeout": self.clip_list_timeout,
            "poll_interval": self.poll_interval,
            "min_command_spacing": self.min_command_spacing,
            "stream_port": self.stream_port,
            "stream_url_template": self.stream_url_template,
            "ftp_port": self.ftp_port,
            "ftp_user": self.ftp_user,
            "ftp_password": self.ftp_password,
            "ftp_timeout": self.ftp_timeout,
            "slot_directory_template": self.slot_directory_template,
            "media_extensions": list(self.media_extensions),
        }


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Parameters for the ffmpeg based capture processes."""

    ffmpeg_binary: str = "ffmpeg"
    max_retries: int = 3
    retry_delay: float = 1.0
    drain_grace: float = 1.0
    terminate_timeout: float = 5.0

    def __post_init__(self) -> None:
        if not isinstance(self.ffmpeg_binary, str) or not self.ffmpeg_binary.strip():
            raise ValueError("ffmpeg_binary must be a non-empty string")
        if isinstance(self.max_retries, bool) or int(self.max_retries) < 0:
            raise ValueError("max_retries must be zero or greater")
        object.__setattr__(self, "max_retries", int(self.max_retries))
        for name in ("retry_delay", "drain_grace", "terminate_timeout"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number of seconds")
            object.__setattr__(self, name, value)

    def to_dict(self) -> dict[str, object]:
        return {
            "ffmpeg_binary": self.ffmpeg_binary,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "drain_grace": self.drain_grace,
            "terminate_timeout": self.terminate_timeout,
        }


DEFAULT_DEVICE_SETTINGS = DeviceSettings()
DEFAULT_CAPTURE_SETTINGS = CaptureSettings()


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Describes which slots to watch and where captures are written."""

    device_address: str
    destination_path: Path
    slots: tuple[int, ...]
    file_name: str | None = None
    capture_enabled: bool = True

    def __post_init__(self) -> None:
        address = (self.device_address or "").strip() if isinstance(self.device_address, str) else ""
        if not address:
            raise ConfigError("A device address is required to start monitoring")
        object.__setattr__(self, "device_address", address)
        if self.destination_path is None or not str(self.destination_path).strip():
            raise ConfigError("A destination path is required to start monitoring")
        object.__setattr__(self, "destination_path", Path(self.destination_path))
        try:
            slots = tuple(sorted({int(slot) for slot in self.slots or ()}))
        except (TypeError, ValueError) as exc:
            raise ConfigError("Slot ids must be integers") from exc
        if not slots:
            raise ConfigError("At least one drive must be enabled for monitoring")
        unknown = [slot for slot in slots if slot not in SLOT_IDS]
        if unknown:
            raise ConfigError(f"Unknown slot id(s): {', '.join(map(str, unknown))}")
        object.__setattr__(self, "slots", slots)
        name = self.file_name.strip() if isinstance(self.file_name, str) else None
        object.__setattr__(self, "file_name", name or None)

    @classmethod
    def from_drives(
        cls,
        device_address: str,
        drives: Mapping[str, Any],
        destination_path: str | Path | None,
        *,
        file_name: str | None = None,
        capture_enabled: bool = True,
    ) -> "MonitoringConfig":
        """Build a config from a ``{"ssd1": True, "ssd2": False}`` mapping."""

        if destination_path is None:
            raise ConfigError("A destination path is required to start monitoring")
        return cls(
            device_address=device_address,
            destination_path=Path(destination_path),
            slots=_parse_drives(drives),
            file_name=file_name,
            capture_enabled=capture_enabled,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "device_address": self.device_address,
            "destination_path": str(self.destination_path),
            "slots": list(self.slots),
            "file_name": self.file_name,
            "capture_enabled": self.capture_enabled,
        }


# ------------------------------ parsing -----------------------------
def _parse_drives(drives: Mapping[str, Any] | Iterable[Any] | None) -> tuple[int, ...]:
    if drives is None:
        return ()
    if isinstance(drives, Mapping):
        selected: list[int] = []
        for key, enabled in drives.items():
            if not _parse_flag(enabled, default=False):
                continue
            text = str(key).strip().lower()
            digits = text[3:] if text.startswith("ssd") else text.removeprefix("slot")
            try:
                selected.append(int(digits))
            except ValueError as exc:
                raise ConfigError(f"Unrecognised drive name: {key}") from exc
        return tuple(selected)
    try:
        return tuple(int(item) for item in drives)
    except (TypeError, ValueError) as exc:
        raise ConfigError("Drives must be a mapping of drive names or slot ids") from exc


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def _parse_number(value: Any, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError("Expected a number, got a boolean")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ValueError("Numbers must be finite")
    return number


def _parse_int(value: Any, *, default: int) -> int:
    number = _parse_number(value, default=float(default))
    if not number.is_integer():
        raise ValueError(f"Expected an integer, got {value!r}")
    return int(number)


def _parse_text(value: Any, *, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"Expected a string, got {value!r}")
    text = value.strip()
    return text or default


def _parse_extensions(value: Any, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        items = [part for part in value.split(",")]
    elif isinstance(value, Iterable):
        items = list(value)
    else:
        raise ValueError("Media extensions must be a list of strings")
    cleaned = tuple(str(item).strip() for item in items if str(item).strip())
    return cleaned or default


def _parse_device_settings(
    value: Any, *, default: DeviceSettings = DEFAULT_DEVICE_SETTINGS
) -> DeviceSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Device settings must be a JSON object")
    return DeviceSettings(
        control_port=_parse_int(value.get("control_port"), default=default.control_port),
        connect_timeout=_parse_number(
            value.get("connect_timeout"), default=default.connect_timeout
        ),
        command_timeout=_parse_number(
            value.get("command_timeout"), default=default.command_timeout
        ),
        clip_list_timeout=_parse_number(
            value.get("clip_list_timeout"), default=default.clip_list_timeout
        ),
        poll_interval=_parse_number(value.get("poll_interval"), default=default.poll_interval),
        min_command_spacing=_parse_number(
            value.get("min_command_spacing"), default=default.min_command_spacing
        ),
        stream_port=_parse_int(value.get("stream_port"), default=default.stream_port),
        stream_url_template=_parse_text(
            value.get("stream_url_template"), default=default.stream_url_template
        ),
        ftp_port=_parse_int(value.get("ftp_port"), default=default.ftp_port),
        ftp_user=_parse_text(value.get("ftp_user"), default=default.ftp_user),
        ftp_password=_parse_text(value.get("ftp_password"), default=default.ftp_password),
        ftp_timeout=_parse_number(value.get("ftp_timeout"), default=default.ftp_timeout),
        slot_directory_template=_parse_text(
            value.get("slot_directory_template"), default=default.slot_directory_template
        ),
        media_extensions=_parse_extensions(
            value.get("media_extensions"), default=default.media_extensions
        ),
    )


def _parse_capture_settings(
    value: Any, *, default: CaptureSettings = DEFAULT_CAPTURE_SETTINGS
) -> CaptureSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be a JSON object")
    return CaptureSettings(
        ffmpeg_binary=_parse_text(value.get("ffmpeg_binary"), default=default.ffmpeg_binary),
        max_retries=_parse_int(value.get("max_retries"), default=default.max_retries),
        retry_delay=_parse_number(value.get("retry_delay"), default=default.retry_delay),
        drain_grace=_parse_number(value.get("drain_grace"), default=default.drain_grace),
        terminate_timeout=_parse_number(
            value.get("terminate_timeout"), default=default.terminate_timeout
        ),
    )


ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "HYPERDECK_CONTROL_PORT": ("device", "control_port"),
    "HYPERDECK_STREAM_PORT": ("device", "stream_port"),
    "HYPERDECK_FTP_PORT": ("device", "ftp_port"),
    "HYPERDECK_FTP_USER": ("device", "ftp_user"),
    "HYPERDECK_FTP_PASSWORD": ("device", "ftp_password"),
    "HYPERDECK_FFMPEG": ("capture", "ffmpeg_binary"),
    "HYPERDECK_MAX_RETRIES": ("capture", "max_retries"),
}


@dataclass(slots=True)
class SettingsStore:
    """Persists device and capture settings as JSON on disk."""

    path: Path
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _device: DeviceSettings = field(default=DEFAULT_DEVICE_SETTINGS, init=False)
    _capture: CaptureSettings = field(default=DEFAULT_CAPTURE_SETTINGS, init=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self._device, self._capture = self._load()

    def _read_payload(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Failed to load settings: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError("Settings file must contain a JSON object")
        return payload

    def _load(self) -> tuple[DeviceSettings, CaptureSettings]:
        payload = self._read_payload()
        device_payload = dict(payload.get("device") or {})
        capture_payload = dict(payload.get("capture") or {})
        sections = {"device": device_payload, "capture": capture_payload}
        for env_name, (section, key) in ENV_OVERRIDES.items():
            env_value = self.environ.get(env_name)
            if env_value is not None and env_value.strip():
                sections[section][key] = env_value.strip()
        try:
            device = _parse_device_settings(device_payload)
            capture = _parse_capture_settings(capture_payload)
        except ValueError as exc:
            raise ConfigError(f"Invalid settings in {self.path}: {exc}") from exc
        return device, capture

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"device": self._device.to_dict(), "capture": self._capture.to_dict()}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    @property
    def device(self) -> DeviceSettings:
        with self._lock:
            return self._device

    @property
    def capture(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def update_device(self, data: Mapping[str, Any]) -> DeviceSettings:
        with self._lock:
            try:
                settings = _parse_device_settings(data, default=self._device)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            self._device = settings
            self._save()
        return settings

    def update_capture(self, data: Mapping[str, Any]) -> CaptureSettings:
        with self._lock:
            try:
                settings = _parse_capture_settings(data, default=self._capture)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            self._capture = settings
            self._save()
        return settings


__all__ = [
    "CaptureSettings",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_CONTROL_PORT",
    "DEFAULT_DEVICE_SETTINGS",
    "DeviceSettings",
    "MonitoringConfig",
    "SLOT_IDS",
    "SettingsStore",
]
