"""Drive capture and transfer of recordings from transport state changes."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from .capture import CaptureStreamManager
from .catalog import CatalogSnapshot, FileTransferCatalog, TrackedFile, newest_file
from .config import SLOT_IDS, MonitoringConfig
from .errors import (
    CaptureRetryExhausted,
    HyperDeckError,
    NotConnected,
    RenameError,
    TransferError,
)
from .events import (
    ClipList,
    ClipRecord,
    ConnectResponse,
    ErrorEvent,
    EventBus,
    FileRenamed,
    MonitoringStarted,
    MonitoringStopped,
    RecordingSaved,
    RecordingStarted,
    RecordingStopped,
    TransferProgress,
    TransportInfo,
    TransportStatus,
)
from .protocol import ProtocolClient

logger = logging.getLogger(__name__)

CatalogFactory = Callable[[str], FileTransferCatalog]


class SlotPhase(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


@dataclass(slots=True)
class SlotCapture:
    """Per-slot recording state while monitoring."""

    slot: int
    phase: SlotPhase = SlotPhase.IDLE
    file_name: str | None = None
    file_path: Path | None = None
    start_failed: bool = False

    def clear(self) -> None:
        self.file_name = None
        self.file_path = None


@dataclass(slots=True)
class LastTransferredFile:
    name: str
    path: Path
    slot: int | None = None


@dataclass(slots=True)
class MonitoringSession:
    config: MonitoringConfig
    snapshot: CatalogSnapshot | None
    slots: dict[int, SlotCapture]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_transferred: LastTransferredFile | None = None


class RecordingCoordinator:
    """Watch transport state on enabled slots and capture each recording.

    The coordinator owns one :class:`ProtocolClient` session. Recording
    starts and stops are detected from the ``transport info`` poll and
    mirrored by capture processes run through the
    :class:`CaptureStreamManager`.
    """

    def __init__(
        self,
        client: ProtocolClient | None = None,
        captures: CaptureStreamManager | None = None,
        *,
        catalog_factory: CatalogFactory | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.client = client or ProtocolClient(events=events)
        self.events = self.client.events
        self.captures = captures or CaptureStreamManager(device_settings=self.client.settings)
        self._catalog_factory = catalog_factory or self._default_catalog
        self._session: MonitoringSession | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()
        self._last_transferred: LastTransferredFile | None = None

    def _default_catalog(self, address: str) -> FileTransferCatalog:
        return FileTransferCatalog(address, self.client.settings)

    # ------------------------------ state -------------------------------
    @property
    def monitoring(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> MonitoringSession | None:
        return self._session

    def slot_phase(self, slot: int) -> SlotPhase:
        session = self._session
        if session is None or slot not in session.slots:
            return SlotPhase.IDLE
        return session.slots[slot].phase

    @property
    def last_transferred(self) -> LastTransferredFile | None:
        if self._session is not None and self._session.last_transferred is not None:
            return self._session.last_transferred
        return self._last_transferred

    def _publish_error(self, exc: BaseException, *, slot: int | None = None) -> None:
        self.events.publish(ErrorEvent.from_exception(exc, slot=slot))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _require_address(self) -> str:
        address = self.client.address
        if address is None or not self.client.connected:
            raise NotConnected("No HyperDeck connection")
        return address

    # ---------------------------- connection ----------------------------
    async def connect_device(self, address: str) -> list[ClipRecord]:
        """Connect to ``address`` and publish the clips on both slots."""

        try:
            await self.client.connect(address)
            clips = await self._collect_clips()
        except HyperDeckError as exc:
            logger.error("Failed to connect to HyperDeck at %s: %s", address, exc)
            self.events.publish(
                ConnectResponse(success=False, message=str(exc), address=address)
            )
            raise
        self.events.publish(ClipList(tuple(clips)))
        self.events.publish(
            ConnectResponse(success=True, message=f"Connected to HyperDeck at {address}", address=address)
        )
        return clips

    async def _collect_clips(self) -> list[ClipRecord]:
        clips: list[ClipRecord] = []
        for slot in SLOT_IDS:
            clips.extend(await self.client.get_clip_list(slot))
        return clips

    async def get_clip_list(self) -> list[ClipRecord]:
        """Return the clips on both slots and publish them."""

        try:
            clips = await self._collect_clips()
        except HyperDeckError as exc:
            self._publish_error(exc)
            raise
        self.events.publish(ClipList(tuple(clips)))
        return clips

    async def disconnect(self) -> None:
        await self.stop_monitoring(publish=False)
        await self.client.disconnect()

    async def aclose(self) -> None:
        """Stop monitoring, every capture and the device connection."""

        await self.disconnect()
        await self.captures.aclose()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------------------- monitoring ----------------------------
    async def start_monitoring(self, config: MonitoringConfig | Mapping[str, Any]) -> MonitoringStarted:
        """Begin watching the enabled slots described by ``config``."""

        try:
            if not isinstance(config, MonitoringConfig):
                payload = dict(config)
                payload.setdefault("device_address", self.client.address or "")
                config = MonitoringConfig.from_drives(
                    payload["device_address"],
                    payload.get("drives") or {},
                    payload.get("destination_path"),
                    file_name=payload.get("file_name"),
                    capture_enabled=payload.get("capture_enabled", True),
                )
            if not self.client.connected or self.client.address != config.device_address:
                await self.client.connect(config.device_address)
            await asyncio.to_thread(config.destination_path.mkdir, parents=True, exist_ok=True)
        except (HyperDeckError, OSError) as exc:
            logger.error("Unable to start monitoring: %s", exc)
            self._publish_error(exc)
            raise

        async with self._lock:
            if self._session is not None:
                logger.info("Restarting monitoring with a new configuration")
                await self._stop_session(self._session)
            snapshot = await self._take_snapshot(config)
            session = MonitoringSession(
                config=config,
                snapshot=snapshot,
                slots={slot: SlotCapture(slot=slot, phase=SlotPhase.POLLING) for slot in config.slots},
            )
            self._session = session
            self._unsubscribe = self.events.subscribe(TransportInfo, self._on_transport_info)
            self.client.start_polling_many(config.slots)
        logger.info(
            "Monitoring slot(s) %s on %s into %s",
            ", ".join(map(str, config.slots)),
            config.device_address,
            config.destination_path,
        )
        event = MonitoringStarted(slots=config.slots, destination_path=config.destination_path)
        self.events.publish(event)
        return event

    async def _take_snapshot(self, config: MonitoringConfig) -> CatalogSnapshot | None:
        catalog = self._catalog_factory(config.device_address)
        try:
            return await catalog.snapshot(config.slots)
        except TransferError as exc:
            logger.warning("Unable to snapshot files on %s: %s", config.device_address, exc)
            return None

    async def stop_monitoring(self, *, publish: bool = True) -> MonitoringStopped:
        """Stop watching and tear down captures. Never raises."""

        async with self._lock:
            session = self._session
            if session is None:
                event = MonitoringStopped()
                if publish:
                    self.events.publish(event)
                return event
            last = await self._find_last_transferred(session)
            error = await self._stop_session(session)
        event = MonitoringStopped(
            last_transferred_file=str(last.path) if last is not None else None,
            file_name=last.name if last is not None else None,
            error=error,
        )
        logger.info("Monitoring stopped; last file %s", event.last_transferred_file or "none")
        if publish:
            self.events.publish(event)
        return event

    async def _stop_session(self, session: MonitoringSession) -> str | None:
        if self._session is session:
            self._session = None
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        errors: list[str] = []
        try:
            await self.client.stop_polling()
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Failed to stop transport polling")
            errors.append(str(exc))
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        address = session.config.device_address
        for slot, state in session.slots.items():
            try:
                await self.captures.stop_capture(address, slot, drain=False)
            except Exception as exc:
                logger.exception("Failed to stop capture for slot %s", slot)
                errors.append(str(exc) or exc.__class__.__name__)
            state.phase = SlotPhase.IDLE
            state.clear()
        if session.last_transferred is not None:
            self._last_transferred = session.last_transferred
        return "; ".join(errors) or None

    async def get_last_transferred_file(self) -> LastTransferredFile | None:
        """Return the newest file recorded since monitoring started."""

        session = self._session
        if session is None:
            return self._last_transferred
        return await self._find_last_transferred(session)

    async def _find_last_transferred(self, session: MonitoringSession) -> LastTransferredFile | None:
        config = session.config
        if session.snapshot is not None:
            catalog = self._catalog_factory(config.device_address)
            try:
                listing = await catalog.list_files(config.slots)
            except TransferError as exc:
                logger.warning("Unable to list files on %s: %s", config.device_address, exc)
            else:
                newest = newest_file(session.snapshot.new_files(listing))
                if newest is not None:
                    return LastTransferredFile(
                        name=newest.name,
                        path=config.destination_path / newest.name,
                        slot=newest.slot,
                    )
                return None
        return session.last_transferred

    # ------------------------- transport events -------------------------
    def _on_transport_info(self, event: TransportInfo) -> None:
        session = self._session
        if session is None:
            return
        state = session.slots.get(event.slot)
        if state is None:
            return
        if event.status is TransportStatus.RECORD:
            if event.active_slot is not None and event.active_slot != event.slot:
                return
            if state.phase is not SlotPhase.POLLING or state.start_failed:
                return
            if not session.config.capture_enabled:
                logger.debug("Slot %s recording; live capture disabled", event.slot)
                return
            state.phase = SlotPhase.STARTING
            self._spawn(self._begin_capture(session, state))
        elif event.status.is_idle:
            state.start_failed = False
            if state.phase is not SlotPhase.RECORDING:
                return
            state.phase = SlotPhase.STOPPING
            self._spawn(self._finish_capture(session, state))

    def _capture_name(self, config: MonitoringConfig, slot: int, clip: ClipRecord | None) -> str:
        if clip is not None:
            return clip.name
        base = config.file_name or "recording"
        return f"{base}_slot{slot}_{int(time.time() * 1000)}.mp4"

    async def _begin_capture(self, session: MonitoringSession, state: SlotCapture) -> None:
        slot = state.slot
        config = session.config
        try:
            clip = await self.client.current_clip(slot)
            file_name = self._capture_name(config, slot, clip)
            await self.captures.start_capture(
                config.device_address, slot, config.destination_path, file_name
            )
        except asyncio.CancelledError:
            raise
        except HyperDeckError as exc:
            logger.error("Failed to start capture for slot %s: %s", slot, exc)
            if state.phase is SlotPhase.STARTING:
                state.phase = SlotPhase.POLLING
            state.start_failed = True
            self._publish_error(exc, slot=slot)
            return
        if self._session is not session or state.phase is not SlotPhase.STARTING:
            await self.captures.stop_capture(config.device_address, slot, drain=False)
            return
        state.phase = SlotPhase.RECORDING
        state.file_name = file_name
        state.file_path = config.destination_path / file_name
        logger.info("Slot %s recording %s", slot, file_name)
        self.events.publish(RecordingStarted(filename=file_name, slot=slot, file_path=state.file_path))

    async def _finish_capture(self, session: MonitoringSession, state: SlotCapture) -> None:
        slot = state.slot
        config = session.config
        file_name = state.file_name
        try:
            grace = self.captures.settings.drain_grace
            if grace > 0:
                await asyncio.sleep(grace)
            result = await self.captures.stop_capture(config.device_address, slot, drain=False)
            if result is None:
                if self._session is not session or self.captures.is_active(config.device_address, slot):
                    return
                raise CaptureRetryExhausted(
                    f"Capture for slot {slot} stopped before the recording ended"
                    f" ({state.file_name or 'unnamed'})"
                )
            verified = await self.captures.verify(result.output_path)
        except asyncio.CancelledError:
            raise
        except HyperDeckError as exc:
            logger.error("Recording on slot %s was not captured: %s", slot, exc)
            self._publish_error(exc, slot=slot)
        else:
            name = file_name or verified.path.name
            session.last_transferred = LastTransferredFile(name=name, path=verified.path, slot=slot)
            logger.info("Slot %s recording saved to %s (%d bytes)", slot, verified.path, verified.size)
            self.events.publish(
                RecordingStopped(slot=slot, file_path=verified.path, file_name=name, size=verified.size)
            )
        finally:
            state.clear()
            if state.phase is SlotPhase.STOPPING:
                state.phase = SlotPhase.POLLING if self._session is session else SlotPhase.IDLE

    # ------------------------------ files -------------------------------
    async def save_recording(
        self,
        file: TrackedFile,
        destination_path: str | os.PathLike[str],
        new_file_name: str | None = None,
    ) -> Path:
        """Download ``file`` from the recorder and optionally rename it."""

        destination = Path(destination_path)
        try:
            address = self._require_address()
            catalog = self._catalog_factory(address)

            def _progress(done: int, total: int | None) -> None:
                self.events.publish(TransferProgress(file_name=file.name, transferred=done, total=total))

            path = await catalog.download(file, destination, progress=_progress)
            if new_file_name and new_file_name != file.name:
                target_name = new_file_name
                if not Path(target_name).suffix:
                    target_name = f"{target_name}{Path(file.name).suffix}"
                path = await self._rename(path, target_name)
        except HyperDeckError as exc:
            logger.error("Failed to save %s: %s", file.name, exc)
            self._publish_error(exc)
            raise
        self.events.publish(RecordingSaved(new_path=path))
        return path

    async def rename_file(self, old_path: str | os.PathLike[str], new_name: str) -> Path:
        """Rename a file inside its current directory."""

        source = Path(old_path)
        try:
            target = await self._rename(source, new_name)
        except RenameError as exc:
            logger.error("Failed to rename %s: %s", source, exc)
            self._publish_error(exc)
            raise
        self.events.publish(FileRenamed(old_name=source.name, new_name=target.name))
        return target

    async def _rename(self, source: Path, new_name: str) -> Path:
        name = (new_name or "").strip()
        if not name or name in {".", ".."} or "/" in name or "\\" in name:
            raise RenameError(f"Invalid file name: {new_name!r}")
        target = source.with_name(name)
        if target == source:
            return source

        def _move() -> None:
            if not source.exists():
                raise RenameError(f"Source file not found: {source}")
            if target.exists():
                raise RenameError(f"A file named {name} already exists in {source.parent}")
            try:
                source.rename(target)
            except OSError as exc:
                raise RenameError(f"Unable to rename {source.name} to {name}: {exc}") from exc

        await asyncio.to_thread(_move)
        if self._last_transferred is not None and self._last_transferred.path == source:
            self._last_transferred = LastTransferredFile(
                name=target.name, path=target, slot=self._last_transferred.slot
            )
        logger.info("Renamed %s to %s", source, target)
        return target


__all__ = [
    "LastTransferredFile",
    "MonitoringSession",
    "RecordingCoordinator",
    "SlotCapture",
    "SlotPhase",
]
