"""List and download recordings from the recorder's FTP server."""
from __future__ import annotations

import asyncio
import ftplib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

from .config import DEFAULT_DEVICE_SETTINGS, DeviceSettings
from .errors import TransferError

logger = logging.getLogger(__name__)

FTPFactory = Callable[[], ftplib.FTP]
ProgressCallback = Callable[[int, "int | None"], None]

_UNSUPPORTED_CODES = {"500", "501", "502", "504"}
_PROGRESS_STEP = 1024 * 1024
_FTP_ERRORS = (ftplib.Error, OSError, EOFError)


@dataclass(frozen=True, slots=True)
class TrackedFile:
    """A media file stored on one of the recorder's slots."""

    name: str
    path: str
    slot: int
    size: int | None = None
    modified: datetime | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.slot, self.name)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "path": self.path,
            "slot": self.slot,
            "size": self.size,
            "modified": self.modified.isoformat() if self.modified else None,
        }


@dataclass(frozen=True, slots=True)
class CatalogSnapshot:
    """Files that existed when monitoring began."""

    keys: frozenset[tuple[int, str]]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_files(cls, files: Iterable[TrackedFile]) -> "CatalogSnapshot":
        return cls(frozenset(item.key for item in files))

    def __contains__(self, item: object) -> bool:
        if isinstance(item, TrackedFile):
            return item.key in self.keys
        return item in self.keys

    def __len__(self) -> int:
        return len(self.keys)

    def new_files(self, listing: Iterable[TrackedFile]) -> list[TrackedFile]:
        return [item for item in listing if item.key not in self.keys]


def _parse_ftp_time(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip().split(".", 1)[0]
    try:
        return datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_size(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def newest_file(files: Iterable[TrackedFile]) -> TrackedFile | None:
    """Return the most recently modified file, using the name as tie breaker."""

    floor = datetime.min.replace(tzinfo=timezone.utc)
    candidates = list(files)
    if not candidates:
        return None
    return max(candidates, key=lambda item: (item.modified or floor, item.name))


class FileTransferCatalog:
    """Catalogue the ``ssdN`` directories exposed over anonymous FTP."""

    def __init__(
        self,
        address: str,
        settings: DeviceSettings = DEFAULT_DEVICE_SETTINGS,
        *,
        ftp_factory: FTPFactory = ftplib.FTP,
    ) -> None:
        self.address = address
        self.settings = settings
        self._ftp_factory = ftp_factory

    # ------------------------------ helpers -----------------------------
    def _open(self) -> ftplib.FTP:
        ftp = self._ftp_factory()
        try:
            ftp.connect(self.address, self.settings.ftp_port, timeout=self.settings.ftp_timeout)
            ftp.login(self.settings.ftp_user, self.settings.ftp_password)
        except _FTP_ERRORS as exc:
            self._close(ftp)
            raise TransferError(f"FTP login to {self.address} failed: {exc}") from exc
        return ftp

    @staticmethod
    def _close(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except _FTP_ERRORS:
            ftp.close()

    def _is_media(self, name: str) -> bool:
        if not name or name.startswith("."):
            return False
        return name.lower().endswith(self.settings.media_extensions)

    def _list_slot(self, ftp: ftplib.FTP, slot: int) -> list[TrackedFile]:
        directory = self.settings.slot_directory(slot)
        try:
            entries = list(ftp.mlsd(directory, facts=["type", "size", "modify"]))
        except ftplib.error_perm as exc:
            if str(exc)[:3] not in _UNSUPPORTED_CODES:
                raise
            return self._list_slot_nlst(ftp, slot, directory)
        files: list[TrackedFile] = []
        for name, facts in entries:
            base = PurePosixPath(name).name
            if facts.get("type", "file").lower() != "file" or not self._is_media(base):
                continue
            files.append(
                TrackedFile(
                    name=base,
                    path=f"{directory}/{base}",
                    slot=slot,
                    size=_parse_size(facts.get("size")),
                    modified=_parse_ftp_time(facts.get("modify")),
                )
            )
        return files

    def _list_slot_nlst(self, ftp: ftplib.FTP, slot: int, directory: str) -> list[TrackedFile]:
        files: list[TrackedFile] = []
        ftp.voidcmd("TYPE I")
        for entry in ftp.nlst(directory):
            base = PurePosixPath(entry).name
            if not self._is_media(base):
                continue
            path = f"{directory}/{base}"
            size: int | None = None
            modified: datetime | None = None
            try:
                size = ftp.size(path)
            except ftplib.Error:
                logger.debug("SIZE unavailable for %s", path)
            try:
                reply = ftp.voidcmd(f"MDTM {path}")
                modified = _parse_ftp_time(reply[4:])
            except ftplib.Error:
                logger.debug("MDTM unavailable for %s", path)
            files.append(TrackedFile(name=base, path=path, slot=slot, size=size, modified=modified))
        return files

    def _list_files_sync(self, slots: Iterable[int]) -> list[TrackedFile]:
        ftp = self._open()
        files: list[TrackedFile] = []
        try:
            for slot in slots:
                try:
                    files.extend(self._list_slot(ftp, slot))
                except ftplib.Error as exc:
                    logger.warning(
                        "Skipping slot %s on %s: %s", slot, self.address, str(exc).strip()
                    )
        except (OSError, EOFError) as exc:
            raise TransferError(f"FTP listing on {self.address} failed: {exc}") from exc
        finally:
            self._close(ftp)
        files.sort(key=lambda item: item.name, reverse=True)
        return files

    def _download_sync(
        self,
        file: TrackedFile,
        target: Path,
        progress: ProgressCallback | None,
    ) -> Path:
        ftp = self._open()
        transferred = 0
        reported = 0
        step = _PROGRESS_STEP
        if file.size:
            step = max(1, min(step, file.size // 100))
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as handle:

                def _write(chunk: bytes) -> None:
                    nonlocal transferred, reported
                    handle.write(chunk)
                    transferred += len(chunk)
                    if progress is not None and transferred - reported >= step:
                        reported = transferred
                        progress(transferred, file.size)

                ftp.retrbinary(f"RETR {file.path}", _write)
        except _FTP_ERRORS as exc:
            target.unlink(missing_ok=True)
            raise TransferError(f"Failed to download {file.path} from {self.address}: {exc}") from exc
        finally:
            self._close(ftp)
        if progress is not None and transferred != reported:
            progress(transferred, file.size)
        return target

    def _exists_sync(self, slot: int, name: str) -> bool:
        ftp = self._open()
        try:
            files = self._list_slot(ftp, slot)
        except ftplib.Error as exc:
            logger.warning("Unable to list slot %s on %s: %s", slot, self.address, exc)
            return False
        except (OSError, EOFError) as exc:
            raise TransferError(f"FTP listing on {self.address} failed: {exc}") from exc
        finally:
            self._close(ftp)
        return any(item.name == name for item in files)

    # ------------------------------ control -----------------------------
    async def list_files(self, slots: Iterable[int]) -> list[TrackedFile]:
        """Return media files on ``slots`` sorted by name, newest first."""

        return await asyncio.to_thread(self._list_files_sync, list(slots))

    async def snapshot(self, slots: Iterable[int]) -> CatalogSnapshot:
        files = await self.list_files(slots)
        logger.info("Catalog snapshot of %s holds %d file(s)", self.address, len(files))
        return CatalogSnapshot.from_files(files)

    async def download(
        self,
        file: TrackedFile,
        dest_dir: str | os.PathLike[str],
        *,
        file_name: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Copy ``file`` into ``dest_dir``.

        ``progress`` is called on the event loop with the number of bytes
        received and the expected total when known.
        """

        target = Path(dest_dir) / (file_name or file.name)
        callback: ProgressCallback | None = None
        if progress is not None:
            loop = asyncio.get_running_loop()

            def _forward(done: int, total: int | None) -> None:
                loop.call_soon_threadsafe(progress, done, total)

            callback = _forward

        path = await asyncio.to_thread(self._download_sync, file, target, callback)
        logger.info("Downloaded %s to %s", file.path, path)
        return path

    async def exists(self, slot: int, name: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, slot, name)


__all__ = [
    "CatalogSnapshot",
    "FileTransferCatalog",
    "TrackedFile",
    "newest_file",
]
