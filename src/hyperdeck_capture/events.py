"""Typed events and a small publish/subscribe bus."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar, Union

logger = logging.getLogger(__name__)


class TransportStatus(str, Enum):
    """Transport states reported by ``transport info``."""

    STOPPED = "stopped"
    PREVIEW = "preview"
    RECORD = "record"
    PLAY = "play"
    FORWARD = "forward"
    REWIND = "rewind"
    JOG = "jog"
    SHUTTLE = "shuttle"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "TransportStatus":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_idle(self) -> bool:
        return self in (TransportStatus.STOPPED, TransportStatus.PREVIEW)


@dataclass(frozen=True, slots=True)
class ClipRecord:
    """A clip entry parsed from a device listing."""

    slot: int
    id: int
    name: str
    duration: str

    def to_dict(self) -> dict[str, object]:
        return {"slot": self.slot, "id": self.id, "name": self.name, "duration": self.duration}


@dataclass(frozen=True, slots=True)
class Event:
    """Base class for everything published on an :class:`EventBus`."""


# ------------------------------ device -------------------------------
@dataclass(frozen=True, slots=True)
class ResponseLine(Event):
    line: str


@dataclass(frozen=True, slots=True)
class SlotStatus(Event):
    slot: int
    status: str
    recording_time: int | None = None

    @property
    def mounted(self) -> bool:
        return self.status.strip().lower() == "mounted"


@dataclass(frozen=True, slots=True)
class TransportInfo(Event):
    slot: int
    status: TransportStatus
    timecode: str | None = None
    active_slot: int | None = None


@dataclass(frozen=True, slots=True)
class ClipList(Event):
    clips: tuple[ClipRecord, ...]


@dataclass(frozen=True, slots=True)
class ErrorEvent(Event):
    message: str
    kind: str = "error"
    slot: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, *, slot: int | None = None) -> "ErrorEvent":
        kind = getattr(exc, "kind", None) or exc.__class__.__name__
        message = str(exc) or exc.__class__.__name__
        return cls(message=message, kind=kind, slot=slot)


# ----------------------------- coordinator ---------------------------
@dataclass(frozen=True, slots=True)
class ConnectResponse(Event):
    success: bool
    message: str
    address: str | None = None


@dataclass(frozen=True, slots=True)
class RecordingStarted(Event):
    filename: str
    slot: int
    file_path: Path


@dataclass(frozen=True, slots=True)
class RecordingStopped(Event):
    slot: int
    file_path: Path
    file_name: str
    size: int = 0


@dataclass(frozen=True, slots=True)
class MonitoringStarted(Event):
    slots: tuple[int, ...]
    destination_path: Path


@dataclass(frozen=True, slots=True)
class MonitoringStopped(Event):
    last_transferred_file: str | None = None
    file_name: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TransferProgress(Event):
    file_name: str
    transferred: int
    total: int | None = None

    @property
    def percent(self) -> float | None:
        if not self.total:
            return None
        return min(100.0, 100.0 * self.transferred / self.total)


@dataclass(frozen=True, slots=True)
class RecordingSaved(Event):
    new_path: Path


@dataclass(frozen=True, slots=True)
class FileRenamed(Event):
    old_name: str
    new_name: str


# -------------------------------- bus --------------------------------
E = TypeVar("E", bound=Event)
Handler = Callable[[Any], Union[Awaitable[None], None]]


class EventBus:
    """Dispatch events to handlers registered per event type.

    Handlers registered for a base class receive every subclass, so
    subscribing to :class:`Event` observes the whole stream. Coroutine
    handlers run as tasks owned by the bus.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Event], list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for cls in type(event).__mro__:
            for handler in list(self._handlers.get(cls, ())):
                self._invoke(handler, event)

    def _invoke(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
        except Exception:
            logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_finished)

    def _task_finished(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Asynchronous event handler failed", exc_info=exc)

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def drain(self) -> None:
        """Wait until every handler task scheduled so far has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._handlers.clear()


__all__ = [
    "ClipList",
    "ClipRecord",
    "ConnectResponse",
    "ErrorEvent",
    "Event",
    "EventBus",
    "FileRenamed",
    "MonitoringStarted",
    "MonitoringStopped",
    "RecordingSaved",
    "RecordingStarted",
    "RecordingStopped",
    "ResponseLine",
    "SlotStatus",
    "TransferProgress",
    "TransportInfo",
    "TransportStatus",
]
