"""Tests for the per-request upload session."""

import asyncio
from pathlib import Path

import pytest

from dropzone.ingest.session import SessionState, UploadSession
from dropzone.ingest.writer import UploadWriter
from dropzone.models.core import (
    Failed,
    FailureCause,
    ParseErrorKind,
    Rejected,
    RejectReason,
    Stored,
    UploadRequest,
)


@pytest.fixture
def make_session(storage_root: Path):
    """Factory fixture for sessions writing into the test root."""

    def _make(**overrides) -> UploadSession:
        options = {
            "storage_root": storage_root,
            "max_part_bytes": 1024,
            "max_total_bytes": 64 * 1024,
            "max_header_bytes": 1024,
            "timeout": 5.0,
        }
        options.update(overrides)
        return UploadSession(UploadWriter(storage_root), **options)

    return _make


# -----------------------------------------------------------------------------
# Completed sessions
# -----------------------------------------------------------------------------


class TestCompletedSession:
    """Sessions that reach DONE."""

    async def test_all_parts_stored(self, make_session, make_upload_request, multipart, storage_root: Path) -> None:
        """Verify every valid part is stored in body order."""
        session = make_session()
        request = make_upload_request(multipart([("files", "a.txt", b"one"), ("files", "b.txt", b"two")]))

        result = await session.handle(request)

        assert session.state is SessionState.DONE
        assert result.success
        assert [item.index for item in result.outcomes] == [0, 1]
        assert [item.outcome.name for item in result.stored] == ["a.txt", "b.txt"]
        assert (storage_root / "b.txt").read_bytes() == b"two"

    async def test_unsafe_name_only_rejects_its_part(
        self, make_session, make_upload_request, multipart, storage_root: Path, stored_files
    ) -> None:
        """Verify a traversal name is rejected while its neighbours are stored."""
        body = multipart(
            [
                ("files", "a.txt", b"hello"),
                ("files", "../../etc/passwd", b"root:x:0:0"),
                ("files", "c.txt", b"after"),
            ]
        )

        result = await make_session().handle(make_upload_request(body))

        assert not result.aborted
        assert not result.success
        assert result.outcomes[1].outcome == Rejected(RejectReason.PATH_ESCAPE)
        assert result.outcomes[1].file_name == "../../etc/passwd"
        assert stored_files(storage_root) == ["a.txt", "c.txt"]

    async def test_oversized_part_is_rejected_and_skipped(
        self, make_session, make_upload_request, multipart, storage_root: Path, temp_files
    ) -> None:
        """Verify the part limit rejects one part and parsing carries on."""
        body = multipart([("files", "big.bin", b"x" * 2000), ("files", "small.txt", b"ok")])

        result = await make_session(max_part_bytes=1024).handle(make_upload_request(body))

        assert result.outcomes[0].outcome == Rejected(RejectReason.SIZE_LIMIT_EXCEEDED)
        assert isinstance(result.outcomes[1].outcome, Stored)
        assert temp_files(storage_root) == []

    async def test_part_without_filename(self, make_session, make_upload_request, multipart) -> None:
        """Verify plain form fields are reported as invalid names."""
        result = await make_session().handle(make_upload_request(multipart([("comment", None, b"hi")])))

        assert result.outcomes[0].outcome == Rejected(RejectReason.INVALID_NAME)
        assert result.outcomes[0].field_name == "comment"

    async def test_no_parts(self, make_session, make_upload_request, boundary: bytes) -> None:
        """Verify an empty multipart body is a successful no-op."""
        result = await make_session().handle(make_upload_request(b"--" + boundary + b"--\r\n"))

        assert result.success
        assert result.outcomes == []


# -----------------------------------------------------------------------------
# Aborted sessions
# -----------------------------------------------------------------------------


class TestAbortedSession:
    """Sessions that end in ABORTED."""

    async def test_missing_boundary(self, make_session, make_upload_request, multipart) -> None:
        """Verify a content type without boundary aborts before parsing."""
        session = make_session()

        result = await session.handle(
            make_upload_request(multipart([("files", "a.txt", b"x")]), content_type="multipart/form-data")
        )

        assert session.state is SessionState.ABORTED
        assert result.abort_reason is ParseErrorKind.MISSING_BOUNDARY
        assert result.outcomes == []

    async def test_truncated_body_keeps_earlier_parts(
        self, make_session, make_upload_request, multipart, storage_root: Path, stored_files, temp_files
    ) -> None:
        """Verify parts stored before the failure stay stored."""
        body = multipart([("files", "a.txt", b"first"), ("files", "b.txt", b"second part")])[:-20]

        result = await make_session().handle(make_upload_request(body))

        assert result.abort_reason is ParseErrorKind.TRUNCATED_BODY
        assert isinstance(result.outcomes[0].outcome, Stored)
        assert result.outcomes[1].outcome == Failed(ParseErrorKind.TRUNCATED_BODY, "stream ended in body")
        assert stored_files(storage_root) == ["a.txt"]
        assert temp_files(storage_root) == []

    async def test_request_too_large(
        self, make_session, make_upload_request, multipart, storage_root: Path, stored_files, temp_files
    ) -> None:
        """Verify the request limit aborts mid-part without leftovers."""
        body = multipart([("files", "big.bin", b"x" * 4096)])

        result = await make_session(max_total_bytes=2048, max_part_bytes=8192).handle(make_upload_request(body))

        assert result.abort_reason is ParseErrorKind.TOO_LARGE
        assert stored_files(storage_root) == []
        assert temp_files(storage_root) == []

    async def test_timeout(self, make_session, boundary: bytes, storage_root: Path, temp_files) -> None:
        """Verify a stalled client aborts the session."""

        async def stalled():
            yield b"--" + boundary + b'\r\nContent-Disposition: form-data; name="files"; filename="slow.txt"\r\n\r\n'
            yield b"some bytes"
            await asyncio.sleep(10)

        session = make_session(timeout=0.05)
        request = UploadRequest(content_type=f"multipart/form-data; boundary={boundary.decode()}", stream=stalled())

        result = await session.handle(request)

        assert session.state is SessionState.ABORTED
        assert result.abort_reason is FailureCause.TIMEOUT
        assert result.outcomes[0].outcome == Failed(FailureCause.CANCELLED)
        assert temp_files(storage_root) == []
