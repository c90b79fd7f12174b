"""Exception types raised by the HyperDeck capture components."""
from __future__ import annotations


class HyperDeckError(RuntimeError):
    """Base class for every error raised by this package."""

    kind = "error"


class ConnectionTimeout(HyperDeckError):
    """Raised when the control connection does not open in time."""

    kind = "connection_timeout"


class DeviceConnectionError(HyperDeckError):
    """Raised for socket failures on the control connection."""

    kind = "connection_error"


class NotConnected(HyperDeckError):
    """Raised when a command is issued without an open session."""

    kind = "not_connected"


class ConfigError(HyperDeckError, ValueError):
    """Raised when a monitoring configuration is incomplete or invalid."""

    kind = "config_error"


class InvalidCommandError(HyperDeckError, ValueError):
    """Raised for command text that cannot be sent over the control port."""

    kind = "invalid_command"


class ProtocolSyntaxError(HyperDeckError):
    """Raised when the device rejects a command with a 1xx response."""

    kind = "syntax_error"

    def __init__(self, command: str, code: int, text: str) -> None:
        super().__init__(f"Device rejected {command!r}: {code} {text}")
        self.command = command
        self.code = code
        self.text = text


class ClipListTimeout(HyperDeckError):
    """Raised when a clip listing does not terminate in time."""

    kind = "clip_list_timeout"


class CaptureStartError(HyperDeckError):
    """Raised when the capture subprocess cannot be launched."""

    kind = "capture_start_error"


class CaptureRetryExhausted(HyperDeckError):
    """Describes a capture stream that failed more often than allowed."""

    kind = "capture_retry_exhausted"


class RecordingVerificationError(HyperDeckError):
    """Base class for problems found when checking a captured file."""

    kind = "verification_error"


class RecordingNotFoundError(RecordingVerificationError):
    kind = "recording_not_found"


class EmptyFileError(RecordingVerificationError):
    kind = "empty_file"


class TransferError(HyperDeckError):
    """Raised when listing or downloading files over FTP fails."""

    kind = "transfer_error"


class RenameError(HyperDeckError):
    """Raised when a saved recording cannot be renamed."""

    kind = "rename_error"


__all__ = [
    "CaptureRetryExhausted",
    "CaptureStartError",
    "ClipListTimeout",
    "ConfigError",
    "ConnectionTimeout",
    "DeviceConnectionError",
    "EmptyFileError",
    "HyperDeckError",
    "InvalidCommandError",
    "NotConnected",
    "ProtocolSyntaxError",
    "RecordingNotFoundError",
    "RecordingVerificationError",
    "RenameError",
    "TransferError",
]
