"""Capture HyperDeck recordings from the live proxy feed and fetch them over FTP."""

from typing import Any

__version__ = "0.1.0"


def create_coordinator(*args: Any, **kwargs: Any):
    from .coordinator import RecordingCoordinator

    return RecordingCoordinator(*args, **kwargs)


__all__ = ["create_coordinator", "__version__"]
