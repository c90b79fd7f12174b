from __future__ import annotations

import asyncio
import ftplib
import logging
from datetime import datetime, timezone

import pytest

from hyperdeck_capture.catalog import (
    CatalogSnapshot,
    FileTransferCatalog,
    TrackedFile,
    newest_file,
)
from hyperdeck_capture.config import DeviceSettings
from hyperdeck_capture.errors import TransferError


def _catalog(ftp_server, settings: DeviceSettings | None = None) -> FileTransferCatalog:
    return FileTransferCatalog(
        "10.0.0.5", settings or DeviceSettings(), ftp_factory=ftp_server.factory
    )


def test_list_files_filters_media_and_sorts(ftp_server) -> None:
    ftp_server.add("ssd1", "A001.mp4", b"a" * 10, "20240101120000")
    ftp_server.add("ssd1", "A002.MP4", b"b" * 20, "20240101130000")
    ftp_server.add("ssd1", ".hidden.mp4")
    ftp_server.add("ssd1", "notes.txt")
    ftp_server.add("ssd2", "B001.mp4", b"c" * 5, "20240102080000")

    files = asyncio.run(_catalog(ftp_server).list_files([1, 2]))

    assert [item.name for item in files] == ["B001.mp4", "A002.MP4", "A001.mp4"]
    b001 = files[0]
    assert b001.slot == 2
    assert b001.path == "ssd2/B001.mp4"
    assert b001.size == 5
    assert b001.modified == datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)
    assert ftp_server.connections == [("10.0.0.5", 21)]
    assert ftp_server.logins == [("anonymous", "anonymous")]
    assert ftp_server.quits == 1


def test_list_files_falls_back_to_nlst(ftp_server) -> None:
    ftp_server.mlsd_supported = False
    ftp_server.add("ssd2", "B001.mp4", b"c" * 7, "20240102080000")
    ftp_server.add("ssd2", "B001.xml")

    files = asyncio.run(_catalog(ftp_server).list_files([2]))

    assert files == [
        TrackedFile(
            name="B001.mp4",
            path="ssd2/B001.mp4",
            slot=2,
            size=7,
            modified=datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc),
        )
    ]


def test_missing_slot_directory_is_skipped(ftp_server, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="hyperdeck_capture.catalog")
    del ftp_server.directories["ssd2"]
    ftp_server.add("ssd1", "A001.mp4")

    files = asyncio.run(_catalog(ftp_server).list_files([1, 2]))

    assert [item.name for item in files] == ["A001.mp4"]
    assert "Skipping slot 2" in caplog.text


def test_login_failure_raises_transfer_error(ftp_server) -> None:
    ftp_server.login_error = ftplib.error_perm("530 Login incorrect")

    with pytest.raises(TransferError) as excinfo:
        asyncio.run(_catalog(ftp_server).list_files([1]))

    assert excinfo.value.kind == "transfer_error"
    assert ftp_server.quits == 1


def test_custom_credentials_and_port(ftp_server) -> None:
    settings = DeviceSettings(ftp_port=2121, ftp_user="deck", ftp_password="secret")

    asyncio.run(_catalog(ftp_server, settings).list_files([1]))

    assert ftp_server.connections == [("10.0.0.5", 2121)]
    assert ftp_server.logins == [("deck", "secret")]


def test_download_reports_progress(ftp_server, tmp_path) -> None:
    payload = b"x" * 20000
    ftp_server.add("ssd1", "A001.mp4", payload)
    updates: list[tuple[int, int | None]] = []

    async def runner():
        catalog = _catalog(ftp_server)
        (source,) = await catalog.list_files([1])
        path = await catalog.download(
            source, tmp_path / "out", progress=lambda done, total: updates.append((done, total))
        )
        await asyncio.sleep(0)
        return path

    path = asyncio.run(runner())

    assert path == tmp_path / "out" / "A001.mp4"
    assert path.read_bytes() == payload
    assert updates[-1] == (20000, 20000)
    assert [done for done, _ in updates] == sorted(done for done, _ in updates)


def test_download_uses_requested_name(ftp_server, tmp_path) -> None:
    ftp_server.add("ssd2", "B001.mp4", b"clip")
    source = TrackedFile(name="B001.mp4", path="ssd2/B001.mp4", slot=2)

    path = asyncio.run(_catalog(ftp_server).download(source, tmp_path, file_name="final.mp4"))

    assert path == tmp_path / "final.mp4"
    assert path.read_bytes() == b"clip"


def test_failed_download_removes_partial_file(ftp_server, tmp_path) -> None:
    ftp_server.add("ssd1", "A001.mp4", b"y" * 20000)
    ftp_server.retr_error = EOFError()
    source = TrackedFile(name="A001.mp4", path="ssd1/A001.mp4", slot=1, size=20000)

    with pytest.raises(TransferError):
        asyncio.run(_catalog(ftp_server).download(source, tmp_path))

    assert not (tmp_path / "A001.mp4").exists()


def test_download_of_missing_file_raises(ftp_server, tmp_path) -> None:
    source = TrackedFile(name="gone.mp4", path="ssd1/gone.mp4", slot=1)

    with pytest.raises(TransferError):
        asyncio.run(_catalog(ftp_server).download(source, tmp_path))

    assert not (tmp_path / "gone.mp4").exists()


def test_exists(ftp_server) -> None:
    ftp_server.add("ssd1", "A001.mp4")

    async def runner() -> tuple[bool, bool, bool]:
        catalog = _catalog(ftp_server)
        return (
            await catalog.exists(1, "A001.mp4"),
            await catalog.exists(1, "A002.mp4"),
            await catalog.exists(3, "A001.mp4"),
        )

    assert asyncio.run(runner()) == (True, False, False)


def test_snapshot_reports_new_files(ftp_server) -> None:
    ftp_server.add("ssd1", "A001.mp4")

    async def runner() -> list[TrackedFile]:
        catalog = _catalog(ftp_server)
        snapshot = await catalog.snapshot([1, 2])
        assert len(snapshot) == 1
        assert (1, "A001.mp4") in snapshot
        ftp_server.add("ssd2", "A001.mp4")
        ftp_server.add("ssd1", "A002.mp4")
        return snapshot.new_files(await catalog.list_files([1, 2]))

    fresh = asyncio.run(runner())

    assert sorted(item.key for item in fresh) == [(1, "A002.mp4"), (2, "A001.mp4")]


def test_newest_file_prefers_modification_time() -> None:
    early = datetime(2024, 1, 1, tzinfo=timezone.utc)
    late = datetime(2024, 1, 2, tzinfo=timezone.utc)
    files = [
        TrackedFile(name="Z.mp4", path="ssd1/Z.mp4", slot=1, modified=early),
        TrackedFile(name="A.mp4", path="ssd2/A.mp4", slot=2, modified=late),
        TrackedFile(name="M.mp4", path="ssd1/M.mp4", slot=1),
    ]

    assert newest_file(files).name == "A.mp4"
    assert newest_file(files[2:]).name == "M.mp4"
    assert newest_file([]) is None


def test_snapshot_membership_accepts_files_and_keys() -> None:
    item = TrackedFile(name="A001.mp4", path="ssd1/A001.mp4", slot=1)
    snapshot = CatalogSnapshot.from_files([item])

    assert item in snapshot
    assert (1, "A001.mp4") in snapshot
    assert TrackedFile(name="A001.mp4", path="ssd2/A001.mp4", slot=2) not in snapshot
    assert item.to_dict()["modified"] is None
