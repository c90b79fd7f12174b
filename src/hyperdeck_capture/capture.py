"""Supervise ffmpeg processes that copy a recorder's proxy feed to disk."""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from .config import (
    DEFAULT_CAPTURE_SETTINGS,
    DEFAULT_DEVICE_SETTINGS,
    CaptureSettings,
    DeviceSettings,
)
from .errors import (
    CaptureRetryExhausted,
    CaptureStartError,
    EmptyFileError,
    RecordingNotFoundError,
)

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """Subset of :class:`asyncio.subprocess.Process` used by the manager."""

    pid: int
    returncode: int | None

    async def communicate(self, input: bytes | None = None) -> tuple[bytes | None, bytes | None]:
        ...

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


Launcher = Callable[..., Awaitable[ProcessHandle]]


class StreamState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    EXHAUSTED = "exhausted"


def stream_key(address: str, slot: int) -> str:
    return f"{address}_{slot}"


@dataclass(slots=True)
class CaptureStream:
    """Book-keeping for one capture process and its restarts."""

    key: str
    address: str
    slot: int
    url: str
    output_path: Path
    started_at: float
    started_wall: datetime
    retry_count: int = 0
    state: StreamState = StreamState.STARTING
    process: ProcessHandle | None = None
    supervisor: asyncio.Task[None] | None = field(default=None, repr=False)
    stopping: bool = False
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class CaptureResult:
    key: str
    output_path: Path
    duration: float
    file_size: int
    retry_count: int = 0


@dataclass(frozen=True, slots=True)
class VerifiedRecording:
    path: Path
    size: int
    created: datetime
    modified: datetime


@dataclass(frozen=True, slots=True)
class StreamStatus:
    active: bool
    duration: float = 0.0
    output_path: Path | None = None
    retry_count: int = 0
    state: StreamState | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "duration": self.duration,
            "output_path": str(self.output_path) if self.output_path else None,
            "retry_count": self.retry_count,
            "state": self.state.value if self.state else None,
        }


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _stderr_tail(payload: bytes | None, limit: int = 400) -> str:
    if not payload:
        return ""
    text = payload.decode("utf-8", errors="replace").strip()
    return text[-limit:]


class CaptureStreamManager:
    """Run at most one ffmpeg capture per ``(address, slot)`` key.

    A capture that exits on its own is restarted up to
    ``CaptureSettings.max_retries`` times. Once the bound is exceeded the
    stream is dropped and the failure is only logged.
    """

    def __init__(
        self,
        settings: CaptureSettings = DEFAULT_CAPTURE_SETTINGS,
        device_settings: DeviceSettings = DEFAULT_DEVICE_SETTINGS,
        *,
        launcher: Launcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.device_settings = device_settings
        self._launcher = launcher or asyncio.create_subprocess_exec
        self._clock = clock
        self._streams: dict[str, CaptureStream] = {}

    # ------------------------------ helpers -----------------------------
    def build_command(self, url: str, output_path: Path) -> list[str]:
        return [
            self.settings.ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-fflags",
            "+genpts",
            "-rtsp_transport",
            "tcp",
            "-i",
            url,
            "-c:v",
            "copy",
            "-c:a",
            "copy",
            "-reset_timestamps",
            "1",
            "-y",
            str(output_path),
        ]

    async def _spawn(self, stream: CaptureStream) -> None:
        argv = self.build_command(stream.url, stream.output_path)
        try:
            process = await self._launcher(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            stream.process = None
            stream.last_error = str(exc) or exc.__class__.__name__
            raise CaptureStartError(
                f"Failed to launch {argv[0]} for {stream.key}: {stream.last_error}"
            ) from exc
        stream.process = process
        stream.state = StreamState.RUNNING
        logger.info(
            "Capture %s running (pid %s) from %s to %s",
            stream.key,
            getattr(process, "pid", "?"),
            stream.url,
            stream.output_path,
        )

    async def _wait_for_exit(self, stream: CaptureStream) -> str | None:
        """Return a description of an unexpected exit or ``None`` when stopping."""

        process = stream.process
        if process is None:
            return stream.last_error or "capture process unavailable"
        _, stderr = await process.communicate()
        if stream.stopping:
            return None
        detail = _stderr_tail(stderr)
        message = f"exited with code {process.returncode}"
        if detail:
            message = f"{message}: {detail}"
        stream.last_error = message
        return message

    async def _supervise(self, stream: CaptureStream) -> None:
        try:
            while True:
                error = await self._wait_for_exit(stream)
                if error is None:
                    return
                logger.warning("Capture %s %s", stream.key, error)
                if stream.retry_count >= self.settings.max_retries:
                    stream.state = StreamState.EXHAUSTED
                    if self._streams.get(stream.key) is stream:
                        del self._streams[stream.key]
                    failure = CaptureRetryExhausted(
                        f"Capture {stream.key} failed after {stream.retry_count} restart(s): {error}"
                    )
                    logger.error("%s", failure)
                    return
                stream.retry_count += 1
                stream.state = StreamState.RESTARTING
                logger.info(
                    "Restarting capture %s in %.1fs (attempt %d of %d)",
                    stream.key,
                    self.settings.retry_delay,
                    stream.retry_count,
                    self.settings.max_retries,
                )
                await asyncio.sleep(self.settings.retry_delay)
                if stream.stopping:
                    return
                try:
                    await self._spawn(stream)
                except CaptureStartError as exc:
                    logger.warning("%s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Capture supervisor for %s crashed", stream.key)

    async def _terminate(self, stream: CaptureStream) -> None:
        process = stream.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Capture %s ignored SIGTERM for %.1fs; killing it",
                stream.key,
                self.settings.terminate_timeout,
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    # ------------------------------ control -----------------------------
    async def start_capture(
        self, address: str, slot: int, dest_dir: str | os.PathLike[str], file_name: str
    ) -> str:
        """Start capturing ``slot`` of ``address`` into ``dest_dir/file_name``.

        Starting a key that is already active returns the existing key.
        """

        key = stream_key(address, slot)
        if key in self._streams:
            logger.info("Capture %s already active", key)
            return key
        destination = Path(dest_dir)
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CaptureStartError(f"Cannot create capture directory {destination}: {exc}") from exc
        stream = CaptureStream(
            key=key,
            address=address,
            slot=slot,
            url=self.device_settings.stream_url(address, slot),
            output_path=destination / file_name,
            started_at=self._clock(),
            started_wall=datetime.now(timezone.utc),
        )
        self._streams[key] = stream
        try:
            await self._spawn(stream)
        except CaptureStartError:
            if self._streams.get(key) is stream:
                del self._streams[key]
            raise
        if stream.stopping:
            # stopped while the process was launching
            await self._terminate(stream)
            return key
        stream.supervisor = asyncio.create_task(self._supervise(stream))
        return key

    async def stop_capture(
        self, address: str, slot: int, *, drain: bool = True
    ) -> CaptureResult | None:
        """Stop the capture for ``(address, slot)`` if one is active."""

        key = stream_key(address, slot)
        stream = self._streams.get(key)
        if stream is None or stream.stopping:
            logger.debug("No active capture for %s", key)
            return None
        stream.stopping = True
        stream.state = StreamState.STOPPING
        try:
            if drain and self.settings.drain_grace > 0:
                await asyncio.sleep(self.settings.drain_grace)
            await self._terminate(stream)
        finally:
            supervisor = stream.supervisor
            if supervisor is not None and not supervisor.done():
                supervisor.cancel()
                await asyncio.gather(supervisor, return_exceptions=True)
            if self._streams.get(key) is stream:
                del self._streams[key]
        duration = max(0.0, self._clock() - stream.started_at)
        size = await asyncio.to_thread(_file_size, stream.output_path)
        logger.info(
            "Stopped capture %s after %.1fs (%d bytes) at %s",
            key,
            duration,
            size,
            stream.output_path,
        )
        return CaptureResult(
            key=key,
            output_path=stream.output_path,
            duration=duration,
            file_size=size,
            retry_count=stream.retry_count,
        )

    async def verify(self, output_path: str | os.PathLike[str]) -> VerifiedRecording:
        """Check that a capture produced a non-empty file."""

        path = Path(output_path)
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError as exc:
            raise RecordingNotFoundError(f"Recording not found: {path}") from exc
        if stat.st_size == 0:
            raise EmptyFileError(f"Recording is empty: {path}")
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        return VerifiedRecording(
            path=path,
            size=stat.st_size,
            created=datetime.fromtimestamp(created, tz=timezone.utc),
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def status(self, address: str, slot: int) -> StreamStatus:
        stream = self._streams.get(stream_key(address, slot))
        if stream is None:
            return StreamStatus(active=False)
        return StreamStatus(
            active=True,
            duration=max(0.0, self._clock() - stream.started_at),
            output_path=stream.output_path,
            retry_count=stream.retry_count,
            state=stream.state,
        )

    def is_active(self, address: str, slot: int) -> bool:
        return stream_key(address, slot) in self._streams

    def active_keys(self) -> list[str]:
        return sorted(self._streams)

    async def aclose(self) -> None:
        """Stop every capture without waiting for the drain grace."""

        streams = list(self._streams.values())
        results = await asyncio.gather(
            *(self.stop_capture(stream.address, stream.slot, drain=False) for stream in streams),
            return_exceptions=True,
        )
        for stream, result in zip(streams, results):
            if isinstance(result, Exception):
                logger.error("Failed to stop capture %s", stream.key, exc_info=result)


__all__ = [
    "CaptureResult",
    "CaptureStream",
    "CaptureStreamManager",
    "ProcessHandle",
    "StreamState",
    "StreamStatus",
    "VerifiedRecording",
    "stream_key",
]
