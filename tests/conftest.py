from __future__ import annotations

import asyncio
import ftplib
import itertools
from pathlib import Path
from typing import Callable

import pytest

from hyperdeck_capture.config import CaptureSettings, DeviceSettings


class FakeHyperDeck:
    """Scripted stand-in for the recorder's control port."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.responses: dict[str, list[str]] = {}
        self.silent: set[str] = set()
        self.greeting = True
        self.status = "preview"
        self.active_slot = 1
        self.disk: dict[int, list[str]] = {1: [], 2: []}
        self.timeline: list[str] = []
        self.opened: list[tuple[str, int]] = []
        self.open_error: BaseException | None = None
        self.reader: asyncio.StreamReader | None = None
        self.writer: "_FakeWriter | None" = None

    async def open(self, host: str, port: int):
        if self.open_error is not None:
            raise self.open_error
        self.opened.append((host, port))
        self.reader = asyncio.StreamReader()
        self.writer = _FakeWriter(self)
        if self.greeting:
            self.send(
                "500 connection info:",
                "protocol version: 1.11",
                "model: HyperDeck Studio HD Mini",
                "",
            )
        return self.reader, self.writer

    def send(self, *lines: str) -> None:
        assert self.reader is not None
        self.reader.feed_data(("\r\n".join(lines) + "\r\n").encode("ascii"))

    def send_raw(self, data: bytes) -> None:
        assert self.reader is not None
        self.reader.feed_data(data)

    def hang_up(self) -> None:
        assert self.reader is not None
        self.reader.feed_eof()

    def handle(self, command: str) -> None:
        self.commands.append(command)
        if command in self.silent:
            return
        reply = self.reply_for(command)
        if reply:
            self.send(*reply)

    def reply_for(self, command: str) -> list[str]:
        if command in self.responses:
            return self.responses[command]
        lowered = command.lower()
        if lowered.startswith("slot select:"):
            self.active_slot = int(lowered.rsplit(":", 1)[1])
            return ["200 ok"]
        if lowered == "transport info":
            return [
                "208 transport info:",
                f"status: {self.status}",
                "speed: 0",
                f"slot id: {self.active_slot}",
                "timecode: 00:00:01:00",
                "video format: 1080p30",
                "",
            ]
        if lowered.startswith("disk list:"):
            slot = int(lowered.rsplit(":", 1)[1])
            lines = ["206 disk list:", f"slot id: {slot}"]
            for index, name in enumerate(self.disk.get(slot, []), start=1):
                lines.append(f"{index}: {name} H.264 1080p30 00:00:10:00")
            return lines + [""]
        if lowered == "clips get":
            lines = ["205 clips info:", f"clip count: {len(self.timeline)}"]
            for index, name in enumerate(self.timeline, start=1):
                lines.append(f"{index}: {name} 00:00:00:00 00:00:10:00")
            return lines + [""]
        if lowered.startswith("slot info:"):
            slot = int(lowered.rsplit(":", 1)[1])
            return [
                "202 slot info:",
                f"slot id: {slot}",
                "status: mounted",
                "volume name: Media",
                "recording time: 3600",
                "",
            ]
        if lowered in {"record", "stop"}:
            return ["200 ok"]
        return ["100 syntax error"]


class _FakeWriter:
    def __init__(self, deck: FakeHyperDeck) -> None:
        self._deck = deck
        self._buffer = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self._buffer += data
        while b"\r\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\r\n", 1)
            self._deck.handle(line.decode("ascii"))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        return None


_pids = itertools.count(1000)


class FakeProcess:
    """Mimics :class:`asyncio.subprocess.Process` for a capture run."""

    def __init__(self, argv: list[str], *, payload: bytes | None = b"\x00\x00\x00\x18ftypmp42") -> None:
        self.argv = argv
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False
        self._stderr = b""
        self._exited = asyncio.Event()
        if payload is not None:
            Path(argv[-1]).write_bytes(payload)

    async def communicate(self, input: bytes | None = None):
        del input
        await self._exited.wait()
        return None, self._stderr

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self._finish(255)

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)

    def crash(self, code: int = 1, stderr: bytes = b"Connection refused") -> None:
        self._stderr = stderr
        self._finish(code)

    def _finish(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()


class FakeLauncher:
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.calls: list[tuple[tuple[str, ...], dict[str, object]]] = []
        self.error: BaseException | None = None
        self.payload: bytes | None = b"\x00\x00\x00\x18ftypmp42"
        self.ignore_terminate = False

    async def __call__(self, *argv: str, **kwargs: object) -> FakeProcess:
        self.calls.append((argv, kwargs))
        if self.error is not None:
            raise self.error
        process = FakeProcess(list(argv), payload=self.payload)
        process.ignore_terminate = self.ignore_terminate
        self.processes.append(process)
        return process


class FakeFTPServer:
    """In-memory directory tree served through :class:`FakeFTP` sessions."""

    def __init__(self) -> None:
        self.directories: dict[str, dict[str, tuple[bytes, str]]] = {"ssd1": {}, "ssd2": {}}
        self.mlsd_supported = True
        self.login_error: BaseException | None = None
        self.retr_error: BaseException | None = None
        self.connections: list[tuple[str, int]] = []
        self.logins: list[tuple[str, str]] = []
        self.quits = 0

    def add(self, directory: str, name: str, data: bytes = b"media", modify: str = "20240101120000") -> None:
        self.directories.setdefault(directory, {})[name] = (data, modify)

    def factory(self) -> "FakeFTP":
        return FakeFTP(self)


class FakeFTP:
    def __init__(self, server: FakeFTPServer) -> None:
        self._server = server

    def connect(self, host: str, port: int = 21, timeout: float | None = None) -> str:
        del timeout
        self._server.connections.append((host, port))
        return "220 ready"

    def login(self, user: str = "", passwd: str = "") -> str:
        if self._server.login_error is not None:
            raise self._server.login_error
        self._server.logins.append((user, passwd))
        return "230 logged in"

    def _directory(self, path: str) -> dict[str, tuple[bytes, str]]:
        try:
            return self._server.directories[path]
        except KeyError:
            raise ftplib.error_perm(f"550 {path}: No such file or directory") from None

    def mlsd(self, path: str = "", facts: list[str] | None = None):
        del facts
        if not self._server.mlsd_supported:
            raise ftplib.error_perm("500 Unknown command MLSD")
        entries = self._directory(path)
        yield ".", {"type": "cdir"}
        for name, (data, modify) in entries.items():
            yield name, {"type": "file", "size": str(len(data)), "modify": modify}

    def nlst(self, path: str) -> list[str]:
        return [f"{path}/{name}" for name in self._directory(path)]

    def _lookup(self, path: str) -> tuple[bytes, str]:
        directory, _, name = path.rpartition("/")
        entries = self._directory(directory)
        if name not in entries:
            raise ftplib.error_perm(f"550 {path}: not found")
        return entries[name]

    def voidcmd(self, cmd: str) -> str:
        if cmd.startswith("MDTM "):
            return f"213 {self._lookup(cmd[5:])[1]}"
        return "200 ok"

    def size(self, path: str) -> int:
        return len(self._lookup(path)[0])

    def retrbinary(self, cmd: str, callback: Callable[[bytes], None], blocksize: int = 8192) -> str:
        data, _ = self._lookup(cmd[len("RETR "):])
        for start in range(0, len(data), blocksize):
            callback(data[start : start + blocksize])
            if self._server.retr_error is not None:
                raise self._server.retr_error
        return "226 transfer complete"

    def quit(self) -> str:
        self._server.quits += 1
        return "221 bye"

    def close(self) -> None:
        return None


@pytest.fixture
def deck() -> FakeHyperDeck:
    return FakeHyperDeck()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def ftp_server() -> FakeFTPServer:
    return FakeFTPServer()


@pytest.fixture
def device_settings() -> DeviceSettings:
    return DeviceSettings(
        connect_timeout=0.5,
        command_timeout=0.5,
        clip_list_timeout=0.3,
        poll_interval=0.01,
        min_command_spacing=0.0,
    )


@pytest.fixture
def capture_settings() -> CaptureSettings:
    return CaptureSettings(retry_delay=0.01, drain_grace=0.0, terminate_timeout=0.2)
