"""JSON message models exchanged with a control client."""
from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .catalog import TrackedFile
from .config import MonitoringConfig
from .events import (
    ClipList,
    ConnectResponse,
    ErrorEvent,
    Event,
    FileRenamed,
    MonitoringStarted,
    MonitoringStopped,
    RecordingSaved,
    RecordingStarted,
    RecordingStopped,
    TransferProgress,
)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConnectRequest(_Request):
    type: Literal["CONNECT_HYPERDECK"]
    ip_address: str = Field(..., min_length=1, alias="ipAddress")


class GetFileListRequest(_Request):
    type: Literal["GET_FILE_LIST"]


class StartMonitoringRequest(_Request):
    type: Literal["START_MONITORING"]
    drives: dict[str, bool] = Field(default_factory=dict)
    destination_path: str = Field(..., min_length=1, alias="destinationPath")
    file_name: str | None = Field(default=None, alias="fileName")
    capture_enabled: bool = Field(default=True, alias="rtspEnabled")

    def to_config(self, device_address: str) -> MonitoringConfig:
        return MonitoringConfig.from_drives(
            device_address,
            self.drives,
            self.destination_path,
            file_name=self.file_name,
            capture_enabled=self.capture_enabled,
        )


class StopMonitoringRequest(_Request):
    type: Literal["STOP_MONITORING"]


class FilePayload(_Request):
    name: str = Field(..., min_length=1)
    slot: int = Field(..., ge=1)
    path: str | None = None

    def to_tracked_file(self, directory_template: str = "ssd{slot}") -> TrackedFile:
        directory = directory_template.format(slot=self.slot)
        return TrackedFile(name=self.name, path=self.path or f"{directory}/{self.name}", slot=self.slot)


class SaveRecordingRequest(_Request):
    type: Literal["SAVE_RECORDING"]
    file: FilePayload
    destination_path: str = Field(..., min_length=1, alias="destinationPath")
    new_file_name: str | None = Field(default=None, alias="newFileName")


class RenameFileRequest(_Request):
    type: Literal["RENAME_FILE", "RENAME_MONITORED_FILE"]
    old_path: str = Field(..., min_length=1, alias="oldPath")
    new_name: str = Field(..., min_length=1, alias="newName")


Request = Annotated[
    Union[
        ConnectRequest,
        GetFileListRequest,
        StartMonitoringRequest,
        StopMonitoringRequest,
        SaveRecordingRequest,
        RenameFileRequest,
    ],
    Field(discriminator="type"),
]

_REQUEST_ADAPTER: TypeAdapter[Any] = TypeAdapter(Request)


def parse_request(payload: Mapping[str, Any] | str | bytes) -> _Request:
    """Validate an inbound message, raising :class:`pydantic.ValidationError`."""

    if isinstance(payload, (str, bytes)):
        return _REQUEST_ADAPTER.validate_json(payload)
    return _REQUEST_ADAPTER.validate_python(dict(payload))


# ------------------------------ outbound -----------------------------
def _path(value: Path | None) -> str | None:
    return str(value) if value is not None else None


def _clip_list(event: ClipList) -> dict[str, Any]:
    return {"type": "CLIP_LIST", "clips": [clip.to_dict() for clip in event.clips]}


def _connect_response(event: ConnectResponse) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": "CONNECT_HYPERDECK_RESPONSE",
        "success": event.success,
        "message": event.message,
    }
    if event.success and event.address:
        payload["ipAddress"] = event.address
    return payload


def _recording_started(event: RecordingStarted) -> dict[str, Any]:
    return {
        "type": "RECORDING_STARTED",
        "filename": event.filename,
        "slot": event.slot,
        "filePath": _path(event.file_path),
    }


def _recording_stopped(event: RecordingStopped) -> dict[str, Any]:
    return {
        "type": "RECORDING_STOPPED",
        "slot": event.slot,
        "lastTransferredFile": _path(event.file_path),
        "fileName": event.file_name,
    }


def _monitoring_started(event: MonitoringStarted) -> dict[str, Any]:
    return {
        "type": "MONITORING_STARTED",
        "message": "Monitoring has begun",
        "slots": list(event.slots),
        "destinationPath": _path(event.destination_path),
    }


def _monitoring_stopped(event: MonitoringStopped) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": "MONITORING_STOPPED",
        "message": (
            "Monitoring stopped with errors" if event.error else "Monitoring stopped successfully"
        ),
        "lastTransferredFile": event.last_transferred_file,
        "fileName": event.file_name,
    }
    if event.error:
        payload["error"] = event.error
    return payload


def _transfer_progress(event: TransferProgress) -> dict[str, Any]:
    return {
        "type": "TRANSFER_PROGRESS",
        "progress": {
            "filename": event.file_name,
            "transferred": event.transferred,
            "total": event.total,
            "percent": event.percent,
        },
    }


def _recording_saved(event: RecordingSaved) -> dict[str, Any]:
    return {
        "type": "RECORDING_SAVED",
        "message": "Recording saved successfully",
        "newPath": _path(event.new_path),
    }


def _file_renamed(event: FileRenamed) -> dict[str, Any]:
    return {
        "type": "FILE_RENAMED",
        "message": "File renamed successfully",
        "oldName": event.old_name,
        "newName": event.new_name,
    }


def _error(event: ErrorEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "ERROR", "message": event.message, "kind": event.kind}
    if event.slot is not None:
        payload["slot"] = event.slot
    return payload


_SERIALISERS: dict[type[Event], Callable[[Any], dict[str, Any]]] = {
    ClipList: _clip_list,
    ConnectResponse: _connect_response,
    RecordingStarted: _recording_started,
    RecordingStopped: _recording_stopped,
    MonitoringStarted: _monitoring_started,
    MonitoringStopped: _monitoring_stopped,
    TransferProgress: _transfer_progress,
    RecordingSaved: _recording_saved,
    FileRenamed: _file_renamed,
    ErrorEvent: _error,
}


def event_to_message(event: Event) -> dict[str, Any] | None:
    """Return the outbound message for ``event`` or ``None`` for internal events."""

    serialiser = _SERIALISERS.get(type(event))
    if serialiser is None:
        return None
    return serialiser(event)


__all__ = [
    "ConnectRequest",
    "FilePayload",
    "GetFileListRequest",
    "RenameFileRequest",
    "SaveRecordingRequest",
    "StartMonitoringRequest",
    "StopMonitoringRequest",
    "event_to_message",
    "parse_request",
]
