"""Tests for temp-then-link part persistence."""

import asyncio
import errno
import os
import threading
from pathlib import Path

import pytest

import dropzone.ingest.writer as writer_module
from dropzone.ingest.sanitizer import sanitize
from dropzone.ingest.writer import UploadWriter, disambiguate
from dropzone.models.core import (
    Failed,
    FailureCause,
    ParseError,
    ParseErrorKind,
    Rejected,
    RejectReason,
    SafePath,
    Stored,
)


async def body(*chunks: bytes):
    for chunk in chunks:
        yield chunk


# -----------------------------------------------------------------------------
# disambiguate Tests
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("name", "attempt", "expected"),
    [
        ("report.csv", 0, "report.csv"),
        ("report.csv", 1, "report-1.csv"),
        ("README", 3, "README-3"),
        ("archive.tar.gz", 2, "archive.tar-2.gz"),
    ],
)
def test_disambiguate(name: str, attempt: int, expected: str) -> None:
    """Verify the numeric suffix goes before the extension."""
    assert disambiguate(name, attempt) == expected


def test_disambiguate_trims_stem_to_byte_limit() -> None:
    """Verify the suffix never pushes a full-length name past the limit."""
    name = "x" * 196 + ".txt"

    result = disambiguate(name, 1, max_bytes=200)

    assert result == "x" * 194 + "-1.txt"
    assert len(result.encode("utf-8")) <= 200


def test_disambiguate_trims_multibyte_stem() -> None:
    """Verify trimming drops whole characters from a multibyte stem."""
    result = disambiguate("文" * 65 + ".txt", 12, max_bytes=200)

    assert result == "文" * 64 + "-12.txt"
    assert len(result.encode("utf-8")) <= 200


# -----------------------------------------------------------------------------
# UploadWriter Tests
# -----------------------------------------------------------------------------


class TestUploadWriter:
    """Tests for UploadWriter.write."""

    async def test_stores_body(self, storage_root: Path, temp_files) -> None:
        """Verify the body lands under the requested name."""
        writer = UploadWriter(storage_root)

        outcome = await writer.write(SafePath(storage_root, "a.txt"), body(b"hel", b"lo"), max_bytes=100)

        assert outcome == Stored(name="a.txt", path=storage_root / "a.txt", byte_count=5)
        assert (storage_root / "a.txt").read_bytes() == b"hello"
        assert temp_files(storage_root) == []

    async def test_zero_byte_body(self, storage_root: Path) -> None:
        """Verify empty parts produce empty files."""
        outcome = await UploadWriter(storage_root).write(SafePath(storage_root, "empty.txt"), body(), max_bytes=10)

        assert isinstance(outcome, Stored)
        assert outcome.byte_count == 0
        assert (storage_root / "empty.txt").read_bytes() == b""

    async def test_existing_file_is_never_overwritten(self, storage_root: Path) -> None:
        """Verify a taken name gets a numeric suffix."""
        (storage_root / "report.csv").write_bytes(b"original")

        outcome = await UploadWriter(storage_root).write(SafePath(storage_root, "report.csv"), body(b"new"), 100)

        assert isinstance(outcome, Stored)
        assert outcome.name == "report-1.csv"
        assert (storage_root / "report.csv").read_bytes() == b"original"
        assert (storage_root / "report-1.csv").read_bytes() == b"new"

    async def test_concurrent_writes_get_distinct_names(self, storage_root: Path, stored_files) -> None:
        """Verify simultaneous writers never share a final name."""
        writer = UploadWriter(storage_root)
        target = SafePath(storage_root, "report.csv")

        outcomes = await asyncio.gather(*(writer.write(target, body(b"row%d" % i), 100) for i in range(3)))

        assert sorted(outcome.name for outcome in outcomes) == ["report-1.csv", "report-2.csv", "report.csv"]
        assert stored_files(storage_root) == ["report-1.csv", "report-2.csv", "report.csv"]

    async def test_collision_retries_exhausted(self, storage_root: Path, temp_files) -> None:
        """Verify the writer gives up once every candidate name is taken."""
        for name in ("a.txt", "a-1.txt", "a-2.txt"):
            (storage_root / name).write_bytes(b"taken")

        outcome = await UploadWriter(storage_root, collision_retries=2).write(
            SafePath(storage_root, "a.txt"), body(b"x"), 100
        )

        assert outcome == Failed(FailureCause.COLLISION_RETRY_EXHAUSTED, "a.txt")
        assert temp_files(storage_root) == []

    async def test_size_limit(self, storage_root: Path, temp_files, stored_files) -> None:
        """Verify oversized bodies are rejected and leave nothing behind."""
        outcome = await UploadWriter(storage_root).write(
            SafePath(storage_root, "big.bin"), body(b"x" * 6, b"x" * 6), max_bytes=10
        )

        assert outcome == Rejected(RejectReason.SIZE_LIMIT_EXCEEDED)
        assert temp_files(storage_root) == []
        assert stored_files(storage_root) == []

    async def test_body_error_propagates_and_cleans_up(self, storage_root: Path, temp_files, stored_files) -> None:
        """Verify a parse failure mid-body removes the temp file."""

        async def broken():
            yield b"partial"
            raise ParseError(ParseErrorKind.TRUNCATED_BODY)

        with pytest.raises(ParseError):
            await UploadWriter(storage_root).write(SafePath(storage_root, "a.txt"), broken(), 100)

        assert temp_files(storage_root) == []
        assert stored_files(storage_root) == []

    async def test_missing_root_is_io_error(self, tmp_path: Path) -> None:
        """Verify temp file creation failures are reported, not raised."""
        root = tmp_path / "gone"

        outcome = await UploadWriter(root).write(SafePath(root, "a.txt"), body(b"x"), 100)

        assert isinstance(outcome, Failed)
        assert outcome.cause is FailureCause.IO_ERROR

    async def test_link_failure_is_io_error(self, storage_root: Path, temp_files, stored_files, monkeypatch) -> None:
        """Verify a placement error other than a taken name fails the part and removes the temp file."""

        def refuse(src, dst):
            raise PermissionError(errno.EACCES, "Permission denied", str(dst))

        monkeypatch.setattr(writer_module.os, "link", refuse)

        outcome = await UploadWriter(storage_root).write(SafePath(storage_root, "a.txt"), body(b"x"), 100)

        assert isinstance(outcome, Failed)
        assert outcome.cause is FailureCause.IO_ERROR
        assert temp_files(storage_root) == []
        assert stored_files(storage_root) == []

    async def test_write_failure_is_io_error(self, storage_root: Path, temp_files, stored_files, monkeypatch) -> None:
        """Verify a full disk mid-body fails the part and removes the temp file."""
        real_fdopen = os.fdopen

        class FullDisk:
            def __init__(self, handle) -> None:
                self._handle = handle

            def write(self, data: bytes) -> int:
                raise OSError(errno.ENOSPC, "No space left on device")

            def close(self) -> None:
                self._handle.close()

        monkeypatch.setattr(writer_module.os, "fdopen", lambda fd, mode: FullDisk(real_fdopen(fd, mode)))

        outcome = await UploadWriter(storage_root).write(SafePath(storage_root, "a.txt"), body(b"x"), 100)

        assert isinstance(outcome, Failed)
        assert outcome.cause is FailureCause.IO_ERROR
        assert temp_files(storage_root) == []
        assert stored_files(storage_root) == []

    async def test_cancel_waits_for_pending_write(self, storage_root: Path, temp_files, monkeypatch) -> None:
        """Verify cancellation lets the in-flight write finish before the handle is closed."""
        real_fdopen = os.fdopen
        events: list[str] = []
        started = threading.Event()
        release = threading.Event()

        class SlowDisk:
            def __init__(self, handle) -> None:
                self._handle = handle

            def write(self, data: bytes) -> int:
                started.set()
                release.wait(5)
                events.append("write")
                return self._handle.write(data)

            def close(self) -> None:
                events.append("close")
                self._handle.close()

        monkeypatch.setattr(writer_module.os, "fdopen", lambda fd, mode: SlowDisk(real_fdopen(fd, mode)))

        task = asyncio.create_task(
            UploadWriter(storage_root).write(SafePath(storage_root, "a.txt"), body(b"x"), 100)
        )
        assert await asyncio.to_thread(started.wait, 5)
        task.cancel()
        await asyncio.sleep(0.05)
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert events[0] == "write"
        assert "close" in events
        assert temp_files(storage_root) == []

    async def test_multibyte_name_fits_filesystem(self, storage_root: Path, stored_files) -> None:
        """Verify a long CJK name survives sanitizing, collision suffixing and linking."""
        safe_path = sanitize("文" * 150 + ".txt", storage_root, max_length=200)
        writer = UploadWriter(storage_root, max_name_bytes=200)

        first = await writer.write(safe_path, body(b"a"), 100)
        second = await writer.write(safe_path, body(b"b"), 100)

        assert isinstance(first, Stored)
        assert isinstance(second, Stored)
        assert second.name == "文" * 64 + "-1.txt"
        assert stored_files(storage_root) == sorted([first.name, second.name])
