"""Command-line runner that monitors a HyperDeck until interrupted."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

from . import __version__
from .config import SLOT_IDS, MonitoringConfig, SettingsStore
from .capture import CaptureStreamManager
from .coordinator import RecordingCoordinator
from .errors import HyperDeckError
from .events import Event, EventBus
from .messages import event_to_message
from .protocol import ProtocolClient

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path("~/.config/hyperdeck-capture/settings.json")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the monitor CLI."""

    parser = argparse.ArgumentParser(
        prog="hyperdeck-capture",
        description="Capture HyperDeck recordings from the live proxy feed.",
    )
    parser.add_argument("address", help="IP address or host name of the HyperDeck.")
    parser.add_argument("destination", type=Path, help="Directory that receives captures.")
    parser.add_argument(
        "--slot",
        dest="slots",
        action="append",
        type=int,
        choices=SLOT_IDS,
        help="Slot to monitor; repeat for several. Defaults to every slot.",
    )
    parser.add_argument("--file-name", help="Base name used when the clip name is unknown.")
    parser.add_argument(
        "--no-capture",
        action="store_true",
        help="Watch transport state without starting ffmpeg captures.",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=DEFAULT_SETTINGS_PATH,
        help="JSON settings file (default: %(default)s).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print every event as a JSON message on stdout.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: %(default)s).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_coordinator(store: SettingsStore) -> RecordingCoordinator:
    events = EventBus()
    client = ProtocolClient(store.device, events=events)
    captures = CaptureStreamManager(store.capture, store.device)
    return RecordingCoordinator(client, captures)


def _print_event(event: Event) -> None:
    message = event_to_message(event)
    if message is not None:
        print(json.dumps(message), flush=True)


async def _monitor(
    coordinator: RecordingCoordinator, config: MonitoringConfig, stop: asyncio.Event
) -> None:
    clips = await coordinator.connect_device(config.device_address)
    for clip in clips:
        logger.info("Slot %s clip %s: %s (%s)", clip.slot, clip.id, clip.name, clip.duration)
    await coordinator.start_monitoring(config)
    try:
        await stop.wait()
    finally:
        stopped = await coordinator.stop_monitoring()
        if stopped.last_transferred_file:
            logger.info("Last recording: %s", stopped.last_transferred_file)
        await coordinator.aclose()


async def _run_async(args: argparse.Namespace) -> int:
    store = SettingsStore(args.settings.expanduser())
    config = MonitoringConfig(
        device_address=args.address,
        destination_path=args.destination.expanduser(),
        slots=tuple(args.slots or SLOT_IDS),
        file_name=args.file_name,
        capture_enabled=not args.no_capture,
    )
    coordinator = build_coordinator(store)
    if args.json:
        coordinator.events.subscribe(Event, _print_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            pass
    await _monitor(coordinator, config, stop)
    return 0


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run_async(args))
    except HyperDeckError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        return 130


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``hyperdeck-capture`` and ``python -m``."""

    return run(argv)


__all__ = ["build_coordinator", "build_parser", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
