"""Test fixtures for dropzone unit tests."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from dropzone.core.lifespan import State
from dropzone.core.router import iter_chunks
from dropzone.events.storage import IngestLimits, storage_context
from dropzone.models.core import UploadRequest

BOUNDARY = "dropzone-test-boundary"
MULTIPART_CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


# -----------------------------------------------------------------------------
# Mock classes for Robyn Request
# -----------------------------------------------------------------------------


@dataclass
class MockHeaders:
    """Mock Headers object for Robyn Request."""

    _data: dict = field(default_factory=dict)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key] = value


@dataclass
class MockRequest:
    """Mock Request object for Robyn."""

    body: bytes | str = b""
    headers: MockHeaders = field(default_factory=MockHeaders)
    method: str = "POST"
    path: str = "/upload"
    files: dict = field(default_factory=dict)
    form_data: dict = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Multipart helpers
# -----------------------------------------------------------------------------


def encode_multipart(parts: Iterable[tuple[str, str | None, bytes]], boundary: str = BOUNDARY) -> bytes:
    """Build a multipart/form-data body from ``(field, filename, payload)`` triples."""
    body = bytearray()
    for field_name, file_name, payload in parts:
        disposition = f'form-data; name="{field_name}"'
        if file_name is not None:
            disposition += f'; filename="{file_name}"'
        body += f"--{boundary}\r\n".encode()
        body += f"Content-Disposition: {disposition}\r\n".encode()
        body += b"Content-Type: application/octet-stream\r\n\r\n"
        body += payload + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return bytes(body)


@pytest.fixture
def boundary() -> bytes:
    """Boundary used by every body built with ``multipart``."""
    return BOUNDARY.encode()


@pytest.fixture
def multipart():
    """Factory fixture building multipart bodies."""
    return encode_multipart


@pytest.fixture
def make_upload_request():
    """Factory fixture wrapping a body into a chunked UploadRequest."""

    def _make(
        body: bytes,
        *,
        content_type: str | None = MULTIPART_CONTENT_TYPE,
        chunk_size: int = 7,
        content_length: int | None = None,
    ) -> UploadRequest:
        return UploadRequest(
            content_type=content_type,
            stream=iter_chunks(body, chunk_size),
            content_length=content_length,
        )

    return _make


# -----------------------------------------------------------------------------
# Storage fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    """Empty storage root inside the test's temp dir."""
    root = tmp_path / "uploads"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def limits() -> IngestLimits:
    """Small limits so size tests stay cheap."""
    return IngestLimits(
        max_request_bytes=64 * 1024,
        max_part_bytes=1024,
        max_header_bytes=1024,
        max_filename_length=200,
        collision_retries=5,
        timeout=5.0,
    )


@pytest.fixture
def storage(storage_root: Path, limits: IngestLimits):
    """Locked storage root, released after the test."""
    with storage_context(storage_root, limits) as opened:
        yield opened


@pytest.fixture
def temp_files():
    """Lists in-flight temp files left in a root."""

    def _list(root: Path) -> list[Path]:
        return sorted(root.glob(".upload-*.part"))

    return _list


@pytest.fixture
def stored_files():
    """Lists stored file names in a root, skipping the lock and temp files."""

    def _list(root: Path) -> list[str]:
        return sorted(path.name for path in root.iterdir() if path.is_file() and not path.name.startswith("."))

    return _list


# -----------------------------------------------------------------------------
# State fixture
# -----------------------------------------------------------------------------


@pytest.fixture(scope="session")
def test_state() -> State:
    """Create a test state container."""
    return State()


@pytest.fixture
def global_dependencies(test_state: State) -> dict:
    """Setup global dependencies for tests."""
    yield {"state": test_state}
    test_state.clear()


@pytest.fixture
def make_mock_request():
    """Factory fixture to create mock requests."""

    def _make(
        body: bytes | str = b"",
        headers: dict | None = None,
        files: dict | None = None,
        form_data: dict | None = None,
    ) -> MockRequest:
        return MockRequest(
            body=body,
            headers=MockHeaders(dict(headers or {})),
            files=dict(files or {}),
            form_data=dict(form_data or {}),
        )

    return _make
