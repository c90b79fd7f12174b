"""Asynchronous client for the HyperDeck Ethernet control protocol.

The recorder speaks a line based text protocol on TCP port 9993. Every
command is answered by a block that starts with a numeric header such as
``200 ok`` or ``208 transport info:``. Headers that end in a colon open a
multi-line block of ``key: value`` fields terminated by a blank line.
Codes in the 1xx range report failures, 2xx report success and 5xx are
asynchronous notifications such as the ``500 connection info:`` greeting.

Only one command is ever in flight. Callers queue on an :class:`asyncio.Lock`
so responses can be attributed to the command that caused them.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable

from .config import DEFAULT_DEVICE_SETTINGS, DeviceSettings
from .errors import (
    ClipListTimeout,
    ConnectionTimeout,
    DeviceConnectionError,
    HyperDeckError,
    InvalidCommandError,
    NotConnected,
    ProtocolSyntaxError,
)
from .events import (
    ClipList,
    ClipRecord,
    ErrorEvent,
    EventBus,
    ResponseLine,
    SlotStatus,
    TransportInfo,
    TransportStatus,
)

logger = logging.getLogger(__name__)

Opener = Callable[..., Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

_HEADER_RE = re.compile(r"^(?P<code>\d{3})\s+(?P<text>[^:]*?)\s*(?P<colon>:)?\s*$")
_FIELD_RE = re.compile(r"^(?P<key>[^:]+?)\s*:\s*(?P<value>.*)$")
_TIMECODE = r"\d{2}:\d{2}:\d{2}[:;]\d{2}"
_MEDIA_CLIP_RE = re.compile(
    r"^(?P<index>\d+):\s+(?P<name>.+?\.(?:mp4|mov|mxf))(?:\s+.*?)?\s+"
    rf"(?P<duration>{_TIMECODE})\s*$",
    re.IGNORECASE,
)
_CLIP_RE = re.compile(
    rf"^(?P<index>\d+):\s+(?P<name>.+?)(?:\s+{_TIMECODE})?\s+(?P<duration>{_TIMECODE})\s*$"
)
_CLIP_COUNT_RE = re.compile(r"^clip count:\s*(?P<count>\d+)\s*$", re.IGNORECASE)
_SLOT_ID_RE = re.compile(r"^slot id:\s*(?P<slot>\d+)\s*$", re.IGNORECASE)
_SLOT_SELECT_RE = re.compile(
    r"^slot select:\s*(?:slot id:\s*)?(?P<slot>\d+)\s*$", re.IGNORECASE
)
_TRANSPORT_REPLIES = frozenset({"transport info"})
_LISTING_REPLIES = frozenset({"clips info", "disk list"})


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CommandKind(str, Enum):
    """Selects the parser used for the response to a command."""

    STATUS = "status"
    TRANSPORT = "transport"
    CLIP_LIST = "clip_list"

    @classmethod
    def for_command(cls, text: str) -> "CommandKind":
        lowered = text.strip().lower()
        if lowered.startswith(("clips get", "disk list")):
            return cls.CLIP_LIST
        if lowered.startswith("transport info"):
            return cls.TRANSPORT
        return cls.STATUS

    def accepts(self, header: "ResponseHeader") -> bool:
        """Return ``True`` when ``header`` can answer a command of this kind."""

        if header.is_error:
            return True
        text = header.text.lower()
        if self is CommandKind.TRANSPORT:
            return text in _TRANSPORT_REPLIES
        if self is CommandKind.CLIP_LIST:
            return text in _LISTING_REPLIES
        return text not in _TRANSPORT_REPLIES and text not in _LISTING_REPLIES


@dataclass(frozen=True, slots=True)
class ResponseHeader:
    code: int
    text: str
    multiline: bool

    @property
    def is_error(self) -> bool:
        return 100 <= self.code < 200

    @property
    def is_success(self) -> bool:
        return 200 <= self.code < 300

    @property
    def is_async(self) -> bool:
        return self.code >= 500


def parse_header(line: str) -> ResponseHeader | None:
    """Return the numeric header described by ``line`` if it is one."""

    match = _HEADER_RE.match(line)
    if match is None:
        return None
    return ResponseHeader(
        code=int(match.group("code")),
        text=match.group("text").strip(),
        multiline=match.group("colon") is not None,
    )


def parse_clip_line(line: str, slot: int) -> ClipRecord | None:
    """Parse ``index: name [details] duration`` into a clip record.

    Names ending in a known media extension may be followed by format
    columns. Any other name runs up to the trailing timecode(s).
    """

    text = line.strip()
    match = _MEDIA_CLIP_RE.match(text) or _CLIP_RE.match(text)
    if match is None:
        return None
    return ClipRecord(
        slot=slot,
        id=int(match.group("index")),
        name=match.group("name").strip(),
        duration=match.group("duration"),
    )


@dataclass(slots=True)
class ParsedBlock:
    header: ResponseHeader
    fields: dict[str, str] = field(default_factory=dict)
    lines: list[str] = field(default_factory=list)
    clips: list[ClipRecord] = field(default_factory=list)


@dataclass(slots=True)
class CommandResponse:
    """Outcome of :meth:`ProtocolClient.send_command`."""

    command: str
    code: int | None = None
    text: str = ""
    fields: dict[str, str] = field(default_factory=dict)
    lines: list[str] = field(default_factory=list)
    clips: list[ClipRecord] = field(default_factory=list)
    transport: TransportInfo | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.code is not None and 200 <= self.code < 300

    def raise_for_status(self) -> "CommandResponse":
        if self.code is not None and 100 <= self.code < 200:
            raise ProtocolSyntaxError(self.command, self.code, self.text)
        return self


class LineFramer:
    """Split a byte stream into CRLF or LF terminated text lines."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        lines: list[str] = []
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            lines.append(raw.rstrip(b"\r").decode(self._encoding, errors="replace"))
        return lines

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()


class StatusParser:
    """Collects one header plus ``key: value`` block."""

    def __init__(self) -> None:
        self._block: ParsedBlock | None = None

    @property
    def active(self) -> bool:
        return self._block is not None

    def reset(self) -> None:
        self._block = None

    def start(self, header: ResponseHeader, line: str, fallback_slot: int | None = None) -> ParsedBlock | None:
        del fallback_slot
        block = ParsedBlock(header=header, lines=[line])
        if not header.multiline:
            return block
        self._block = block
        return None

    def feed(self, line: str) -> ParsedBlock | None:
        block = self._block
        if block is None:
            return None
        if not line:
            return self.finish()
        block.lines.append(line)
        match = _FIELD_RE.match(line)
        if match is not None:
            block.fields[match.group("key").strip().lower()] = match.group("value").strip()
        return None

    def finish(self) -> ParsedBlock | None:
        block, self._block = self._block, None
        return block


class ClipListParser:
    """Collects clip entries from ``disk list`` and ``clips get`` replies.

    Clips are attributed to the latest ``slot id:`` line in the listing and
    otherwise to the slot the listing was requested for.
    """

    def __init__(self) -> None:
        self._block: ParsedBlock | None = None
        self._fallback_slot: int | None = None
        self._slot_context: int | None = None

    @property
    def active(self) -> bool:
        return self._block is not None

    @property
    def clips(self) -> list[ClipRecord]:
        return list(self._block.clips) if self._block is not None else []

    def reset(self) -> None:
        self._block = None
        self._slot_context = None
        self._fallback_slot = None

    def start(self, header: ResponseHeader, line: str, fallback_slot: int | None = None) -> ParsedBlock | None:
        self.reset()
        self._fallback_slot = fallback_slot
        self._block = ParsedBlock(header=header, lines=[line])
        if not header.multiline:
            return self.finish()
        return None

    def feed(self, line: str) -> ParsedBlock | None:
        block = self._block
        if block is None:
            return None
        if not line:
            return self.finish()
        block.lines.append(line)
        count = _CLIP_COUNT_RE.match(line)
        if count is not None:
            block.fields["clip count"] = count.group("count")
            if int(count.group("count")) == 0:
                return self.finish()
            return None
        slot = _SLOT_ID_RE.match(line)
        if slot is not None:
            self._slot_context = int(slot.group("slot"))
            block.fields["slot id"] = slot.group("slot")
            return None
        clip_slot = self._slot_context if self._slot_context is not None else self._fallback_slot
        clip = parse_clip_line(line, clip_slot if clip_slot is not None else 0)
        if clip is not None:
            block.clips.append(clip)
            return None
        match = _FIELD_RE.match(line)
        if match is not None:
            block.fields[match.group("key").strip().lower()] = match.group("value").strip()
        else:
            logger.debug("Ignoring unrecognised listing line: %s", line)
        return None

    def finish(self) -> ParsedBlock | None:
        block = self._block
        self.reset()
        return block


@dataclass(slots=True)
class DeviceSession:
    """State of the control connection to a single recorder."""

    address: str
    port: int
    state: ConnectionState = ConnectionState.CONNECTING
    current_slot: int | None = None
    in_flight: str | None = None
    protocol_version: str | None = None
    model: str | None = None
    device_info: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class _PendingCommand:
    text: str
    kind: CommandKind
    slot: int | None
    future: asyncio.Future[CommandResponse]
    answered: bool = False


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class ProtocolClient:
    """Owns the TCP session with a recorder and publishes parsed events."""

    def __init__(
        self,
        settings: DeviceSettings = DEFAULT_DEVICE_SETTINGS,
        *,
        events: EventBus | None = None,
        opener: Opener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.events = events or EventBus()
        self._opener = opener or asyncio.open_connection
        self._clock = clock
        self._session: DeviceSession | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._framer = LineFramer()
        self._status_parser = StatusParser()
        self._clip_parser = ClipListParser()
        self._route: StatusParser | ClipListParser | None = None
        self._route_owner: _PendingCommand | None = None
        self._pending: _PendingCommand | None = None
        self._abandoned: deque[_PendingCommand] = deque(maxlen=16)
        self._command_lock = asyncio.Lock()
        self._poll_gate = asyncio.Lock()
        self._pollers: dict[int, asyncio.Task[None]] = {}
        self._last_dispatch = float("-inf")

    # ------------------------------ state -------------------------------
    @property
    def session(self) -> DeviceSession | None:
        return self._session

    @property
    def state(self) -> ConnectionState:
        if self._session is None:
            return ConnectionState.DISCONNECTED
        return self._session.state

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def address(self) -> str | None:
        return self._session.address if self._session is not None else None

    @property
    def current_slot(self) -> int | None:
        return self._session.current_slot if self._session is not None else None

    @property
    def polled_slots(self) -> tuple[int, ...]:
        return tuple(sorted(slot for slot, task in self._pollers.items() if not task.done()))

    # ---------------------------- connection ----------------------------
    async def connect(self, address: str) -> DeviceSession:
        """Open the control connection to ``address``."""

        if self._session is not None:
            await self.disconnect()
        port = self.settings.control_port
        session = DeviceSession(address=address, port=port)
        self._session = session
        logger.info("Connecting to HyperDeck at %s:%s", address, port)
        try:
            reader, writer = await asyncio.wait_for(
                self._opener(address, port), timeout=self.settings.connect_timeout
            )
        except asyncio.TimeoutError as exc:
            self._session = None
            raise ConnectionTimeout(
                f"Timed out connecting to {address}:{port} after "
                f"{self.settings.connect_timeout:g}s"
            ) from exc
        except OSError as exc:
            self._session = None
            raise DeviceConnectionError(f"Unable to connect to {address}:{port}: {exc}") from exc
        if self._session is not session:  # pragma: no cover - disconnected while connecting
            writer.close()
            raise DeviceConnectionError(f"Connection to {address} was abandoned")
        self._reader = reader
        self._writer = writer
        self._framer.reset()
        self._reset_parsers()
        session.state = ConnectionState.CONNECTED
        self._read_task = asyncio.create_task(self._read_loop(reader))
        logger.info("Connected to HyperDeck at %s:%s", address, port)
        return session

    async def disconnect(self) -> None:
        """Close the connection and drop all session state."""

        pollers = list(self._pollers.values())
        self._pollers.clear()
        read_task, self._read_task = self._read_task, None
        writer, self._writer = self._writer, None
        self._reader = None
        session, self._session = self._session, None
        if session is not None:
            session.state = ConnectionState.DISCONNECTED
            logger.info("Disconnecting from HyperDeck at %s", session.address)
        self._fail_pending(DeviceConnectionError("Connection closed"))
        self._framer.reset()
        self._reset_parsers()
        self._last_dispatch = float("-inf")

        current = asyncio.current_task()
        tasks = [task for task in (*pollers, read_task) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError) as exc:  # pragma: no cover - platform specific
                logger.debug("Ignoring error while closing control socket: %s", exc)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        await self.disconnect()

    def _connection_lost(self, exc: BaseException | None) -> None:
        session = self._session
        if session is None or session.state is not ConnectionState.CONNECTED:
            return
        session.state = ConnectionState.DISCONNECTED
        self._session = None
        reason = str(exc) if exc is not None else "connection closed by device"
        logger.warning("Lost connection to HyperDeck at %s: %s", session.address, reason)
        for task in self._pollers.values():
            task.cancel()
        self._pollers.clear()
        self._fail_pending(DeviceConnectionError(f"Connection lost: {reason}"))
        self._reset_parsers()
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
        self.events.publish(
            ErrorEvent(message=f"Connection to {session.address} lost: {reason}", kind=DeviceConnectionError.kind)
        )

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.future.done():
            pending.future.set_exception(exc)

    def _reset_parsers(self) -> None:
        self._status_parser.reset()
        self._clip_parser.reset()
        self._route = None
        self._route_owner = None
        self._abandoned.clear()

    # ----------------------------- commands -----------------------------
    async def send_command(
        self,
        text: str,
        *,
        slot: int | None = None,
        kind: CommandKind | None = None,
        timeout: float | None = None,
    ) -> CommandResponse:
        """Send ``text`` and wait for the response block it produces.

        Responses that do not arrive within the command timeout resolve with
        ``timed_out`` set and whatever was collected so far. A reply that
        turns up after its command timed out is discarded.
        """

        if not self.connected:
            raise NotConnected("Not connected to a HyperDeck")
        command = text.strip()
        try:
            payload = f"{command}\r\n".encode("ascii")
        except UnicodeEncodeError as exc:
            raise InvalidCommandError(
                f"Command {command!r} contains characters the device cannot accept"
            ) from exc
        kind = kind or CommandKind.for_command(command)
        async with self._command_lock:
            session = self._session
            writer = self._writer
            if session is None or writer is None or not self.connected:
                raise NotConnected("Not connected to a HyperDeck")
            loop = asyncio.get_running_loop()
            target_slot = slot if slot is not None else session.current_slot
            pending = _PendingCommand(
                text=command, kind=kind, slot=target_slot, future=loop.create_future()
            )
            self._pending = pending
            session.in_flight = command
            try:
                writer.write(payload)
                selected = _SLOT_SELECT_RE.match(command)
                if selected is not None:
                    session.current_slot = int(selected.group("slot"))
                self._last_dispatch = self._clock()
                await writer.drain()
            except (OSError, ConnectionError) as exc:
                if self._pending is pending:
                    self._pending = None
                self._connection_lost(exc)
                raise DeviceConnectionError(f"Failed to send {command!r}: {exc}") from exc
            logger.debug("Sent command %r", command)

            if timeout is None:
                timeout = (
                    self.settings.clip_list_timeout
                    if kind is CommandKind.CLIP_LIST
                    else self.settings.command_timeout
                )
            try:
                return await asyncio.wait_for(pending.future, timeout=timeout)
            except asyncio.TimeoutError:
                if not pending.answered:
                    self._abandoned.append(pending)
                return self._timed_out(pending, timeout)
            finally:
                session.in_flight = None
                if self._pending is pending:
                    self._pending = None
                if self._route_owner is pending:
                    self._route_owner = None

    def _timed_out(self, pending: _PendingCommand, timeout: float) -> CommandResponse:
        response = CommandResponse(command=pending.text, timed_out=True)
        if pending.kind is CommandKind.CLIP_LIST:
            if self._route is self._clip_parser and self._route_owner is pending:
                response.clips = self._clip_parser.clips
            error = ClipListTimeout(
                f"Clip listing for {pending.text!r} did not complete within {timeout:g}s"
            )
            logger.warning("%s; returning %d clip(s)", error, len(response.clips))
        else:
            logger.warning("No response to %r within %.1fs", pending.text, timeout)
        return response

    # ---------------------------- read loop -----------------------------
    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    self._connection_lost(None)
                    return
                for line in self._framer.feed(data):
                    self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except (OSError, ConnectionError) as exc:
            self._connection_lost(exc)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("HyperDeck read loop crashed")
            self._connection_lost(exc)

    def _handle_line(self, line: str) -> None:
        if line:
            self.events.publish(ResponseLine(line))
        header = parse_header(line) if line else None
        route = self._route
        if route is not None:
            if header is None:
                block = route.feed(line)
                if block is not None:
                    self._complete_block(block)
                return
            # A new numeric line closes whatever block was still open.
            block = route.finish()
            if block is not None:
                self._complete_block(block)
        if header is None:
            if line:
                logger.debug("Ignoring unexpected line from device: %s", line)
            return

        pending = self._claim(header)
        if pending is not None:
            parser: StatusParser | ClipListParser = (
                self._clip_parser if pending.kind is CommandKind.CLIP_LIST else self._status_parser
            )
            owner: _PendingCommand | None = pending
            fallback = pending.slot if pending.slot is not None else self.current_slot
        else:
            parser = self._status_parser
            owner = None
            fallback = self.current_slot
        self._route = parser
        self._route_owner = owner
        block = parser.start(header, line, fallback)
        if block is not None:
            self._complete_block(block)

    def _claim(self, header: ResponseHeader) -> _PendingCommand | None:
        """Return the command ``header`` answers, if any.

        The device answers in order, so while timed-out commands are
        outstanding a reply the pending command cannot accept belongs to the
        oldest of them.
        """

        if header.is_async:
            return None
        pending = self._pending
        if self._abandoned and (
            pending is None or header.is_error or not pending.kind.accepts(header)
        ):
            stale = self._abandoned.popleft()
            logger.debug(
                "Discarding late %d %s reply to %r", header.code, header.text, stale.text
            )
            return None
        if pending is None:
            return None
        pending.answered = True
        self._abandoned.clear()
        return pending

    def _complete_block(self, block: ParsedBlock) -> None:
        owner = self._route_owner
        self._route = None
        self._route_owner = None
        header = block.header
        if header.is_error:
            logger.warning(
                "Device responded %d %s to %r",
                header.code,
                header.text,
                owner.text if owner is not None else None,
            )

        text = header.text.lower()
        transport: TransportInfo | None = None
        if text == "transport info":
            transport = self._transport_from_block(block, owner)
            self.events.publish(transport)
        elif text == "connection info":
            self._record_device_info(block.fields)
        elif "slot id" in block.fields and "status" in block.fields:
            slot = _parse_int(block.fields.get("slot id"))
            if slot is not None:
                self.events.publish(
                    SlotStatus(
                        slot=slot,
                        status=block.fields["status"],
                        recording_time=_parse_int(block.fields.get("recording time")),
                    )
                )

        if owner is None:
            if header.is_async and text != "connection info":
                logger.debug("Received asynchronous notification %d %s", header.code, header.text)
            return
        if owner.kind is CommandKind.CLIP_LIST:
            self.events.publish(ClipList(tuple(block.clips)))
        if self._pending is owner:
            self._pending = None
        if not owner.future.done():
            owner.future.set_result(
                CommandResponse(
                    command=owner.text,
                    code=header.code,
                    text=header.text,
                    fields=dict(block.fields),
                    lines=list(block.lines),
                    clips=list(block.clips),
                    transport=transport,
                )
            )

    def _transport_from_block(self, block: ParsedBlock, owner: _PendingCommand | None) -> TransportInfo:
        reported = _parse_int(block.fields.get("slot id"))
        if owner is not None and owner.slot is not None:
            slot = owner.slot
        elif reported is not None:
            slot = reported
        else:
            slot = self.current_slot or 0
        timecode = block.fields.get("timecode") or block.fields.get("display timecode")
        return TransportInfo(
            slot=slot,
            status=TransportStatus.parse(block.fields.get("status")),
            timecode=timecode,
            active_slot=reported,
        )

    def _record_device_info(self, fields: dict[str, str]) -> None:
        session = self._session
        if session is None:
            return
        session.device_info.update(fields)
        session.protocol_version = fields.get("protocol version", session.protocol_version)
        session.model = fields.get("model", session.model)
        logger.info(
            "HyperDeck reports model %s, protocol version %s",
            session.model or "unknown",
            session.protocol_version or "unknown",
        )

    # ----------------------------- queries ------------------------------
    async def select_slot(self, slot: int) -> CommandResponse:
        response = await self.send_command(f"slot select: slot id: {slot}", slot=slot)
        return response.raise_for_status()

    async def transport_info(self, slot: int | None = None) -> TransportInfo | None:
        response = await self.send_command("transport info", slot=slot, kind=CommandKind.TRANSPORT)
        response.raise_for_status()
        return response.transport

    async def get_clip_list(self, slot: int) -> list[ClipRecord]:
        """Return the clips stored on ``slot``."""

        response = await self.send_command(
            f"disk list: slot id: {slot}", slot=slot, kind=CommandKind.CLIP_LIST
        )
        response.raise_for_status()
        return response.clips

    async def current_clip(self, slot: int) -> ClipRecord | None:
        """Return the most recent clip on the timeline of ``slot``."""

        await self.select_slot(slot)
        response = await self.send_command("clips get", slot=slot, kind=CommandKind.CLIP_LIST)
        response.raise_for_status()
        if not response.clips:
            return None
        return response.clips[-1]

    async def check_slot_status(self, slot: int) -> bool:
        """Return ``True`` when media is mounted in ``slot``."""

        response = await self.send_command(f"slot info: slot id: {slot}", slot=slot)
        if response.timed_out or not response.ok:
            return False
        return response.fields.get("status", "").strip().lower() == "mounted"

    async def record(self, name: str | None = None) -> CommandResponse:
        command = f"record: name: {name}" if name else "record"
        return (await self.send_command(command)).raise_for_status()

    async def stop(self) -> CommandResponse:
        return (await self.send_command("stop")).raise_for_status()

    # ----------------------------- polling ------------------------------
    def start_polling(self, slot: int) -> None:
        """Poll ``transport info`` for ``slot`` until stopped."""

        if not self.connected:
            raise NotConnected("Cannot poll without a HyperDeck connection")
        existing = self._pollers.get(slot)
        if existing is not None and not existing.done():
            return
        self._pollers[slot] = asyncio.create_task(self._poll_loop(slot))
        logger.debug("Started transport polling for slot %s", slot)

    def start_polling_many(self, slots: Iterable[int]) -> None:
        for slot in slots:
            self.start_polling(slot)

    async def stop_polling(self, slot: int | None = None) -> None:
        """Stop the poller for ``slot`` or every poller when omitted."""

        if slot is None:
            tasks = list(self._pollers.values())
            self._pollers.clear()
        else:
            task = self._pollers.pop(slot, None)
            tasks = [task] if task is not None else []
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _polling(self, slot: int, task: asyncio.Task[None] | None) -> bool:
        return self.connected and self._pollers.get(slot) is task

    async def _poll_loop(self, slot: int) -> None:
        # wait_for may absorb a cancel that races a reply. The registry
        # entry is the stop signal.
        task = asyncio.current_task()
        while self._polling(slot, task):
            try:
                await self._poll_once(slot)
            except asyncio.CancelledError:
                raise
            except (NotConnected, DeviceConnectionError):
                return
            except HyperDeckError as exc:
                logger.warning("Transport poll for slot %s failed: %s", slot, exc)
            if not self._polling(slot, task):
                return
            await asyncio.sleep(self.settings.poll_interval)

    async def _poll_once(self, slot: int) -> None:
        async with self._poll_gate:
            wait = self._last_dispatch + self.settings.min_command_spacing - self._clock()
            if wait > 0:
                await asyncio.sleep(wait)
            await self.transport_info(slot)


__all__ = [
    "ClipListParser",
    "ClipRecord",
    "CommandKind",
    "CommandResponse",
    "ConnectionState",
    "DeviceSession",
    "LineFramer",
    "ParsedBlock",
    "ProtocolClient",
    "ResponseHeader",
    "StatusParser",
    "TransportStatus",
    "parse_clip_line",
    "parse_header",
]
