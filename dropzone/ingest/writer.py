"""Temp-then-link persistence of one part body into the storage root."""

import asyncio
import contextlib
import os
import tempfile
from collections.abc import AsyncIterable
from pathlib import Path
from typing import BinaryIO

from dropzone.core.logger import LogIcon, logger
from dropzone.ingest.sanitizer import DEFAULT_MAX_LENGTH, truncate_name
from dropzone.models.core import (
    Failed,
    FailureCause,
    Rejected,
    RejectReason,
    SafePath,
    Stored,
    WriteOutcome,
)

TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".part"


def disambiguate(name: str, attempt: int, max_bytes: int = DEFAULT_MAX_LENGTH) -> str:
    """``report.csv`` -> ``report-<attempt>.csv``; attempt 0 keeps the name.

    The stem is trimmed so the result stays within ``max_bytes`` UTF-8 bytes.
    """
    if attempt == 0:
        return name
    return truncate_name(name, max_bytes, f"-{attempt}")


async def _write_chunk(handle: BinaryIO, chunk: bytes) -> None:
    """Write ``chunk`` in a worker thread; a cancelled caller still waits for that thread to finish."""
    write = asyncio.ensure_future(asyncio.to_thread(handle.write, chunk))
    try:
        await asyncio.shield(write)
    except asyncio.CancelledError:
        # The handle is closed right after this returns
        await asyncio.wait({write})
        if not write.cancelled() and write.exception() is not None:
            logger.warning("Write interrupted by cancellation", icon=LogIcon.WARNING, error=str(write.exception()))
        raise


def _discard(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


class UploadWriter:
    """Streams a part body to a temporary file, then links it under a free final name.

    The final placement uses :func:`os.link`, which fails with ``FileExistsError``
    instead of replacing an existing file. That makes every claim of a final name
    atomic across concurrent requests without any in-process lock.
    """

    def __init__(
        self, root: Path, *, collision_retries: int = 100, max_name_bytes: int = DEFAULT_MAX_LENGTH
    ) -> None:
        self.root = root
        self.collision_retries = collision_retries
        self.max_name_bytes = max_name_bytes

    async def write(self, safe_path: SafePath, body: AsyncIterable[bytes], max_bytes: int) -> WriteOutcome:
        try:
            fd, temp_name = await asyncio.to_thread(
                tempfile.mkstemp, dir=self.root, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX
            )
        except OSError as ex:
            logger.error("Temp file creation failed", icon=LogIcon.ERROR, error=str(ex))
            return Failed(FailureCause.IO_ERROR, str(ex))

        temp_path = Path(temp_name)
        handle = os.fdopen(fd, "wb")
        try:
            written = await self._stream(handle, body, max_bytes)
            if written is None:
                logger.warning(
                    "Part exceeds size limit", icon=LogIcon.FORBIDDEN, name=safe_path.name, max_bytes=max_bytes
                )
                return Rejected(RejectReason.SIZE_LIMIT_EXCEEDED)
            await asyncio.to_thread(handle.close)
            return await asyncio.to_thread(self._place, temp_path, safe_path, written)
        except OSError as ex:
            logger.error("Write failed", icon=LogIcon.ERROR, name=safe_path.name, error=str(ex))
            return Failed(FailureCause.IO_ERROR, str(ex))
        finally:
            # Runs on success, rejection, I/O errors, parse errors and cancellation alike
            handle.close()
            _discard(temp_path)

    async def _stream(self, handle: BinaryIO, body: AsyncIterable[bytes], max_bytes: int) -> int | None:
        """Copy ``body`` into ``handle``; None once more than ``max_bytes`` arrive."""
        written = 0
        async for chunk in body:
            written += len(chunk)
            if written > max_bytes:
                return None
            await _write_chunk(handle, chunk)
        return written

    def _place(self, temp_path: Path, safe_path: SafePath, byte_count: int) -> WriteOutcome:
        for attempt in range(self.collision_retries + 1):
            name = disambiguate(safe_path.name, attempt, self.max_name_bytes)
            final_path = safe_path.root / name
            try:
                os.link(temp_path, final_path)
            except FileExistsError:
                logger.info("Name taken, retrying", icon=LogIcon.RETRY, name=name, attempt=attempt)
                continue
            logger.info("File stored", icon=LogIcon.FILE, name=name, bytes=byte_count)
            return Stored(name=name, path=final_path, byte_count=byte_count)

        logger.error(
            "Collision retries exhausted", icon=LogIcon.EXHAUSTION, name=safe_path.name, retries=self.collision_retries
        )
        return Failed(FailureCause.COLLISION_RETRY_EXHAUSTED, safe_path.name)
