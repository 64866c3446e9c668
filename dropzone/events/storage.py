"""Storage root lifespan event."""

import fcntl
import os
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from dropzone.core.lifespan import BaseEvent
from dropzone.core.logger import LogIcon, logger
from dropzone.core.settings import Settings
from dropzone.core.settings import settings as st
from dropzone.ingest.session import UploadSession
from dropzone.ingest.writer import TEMP_PREFIX, TEMP_SUFFIX, UploadWriter
from dropzone.models.core import UploadResult

LOCK_FILE_NAME = ".lock"


class StorageLockError(Exception):
    """Another process already serves this storage root."""


@dataclass(frozen=True, slots=True)
class IngestLimits:
    max_request_bytes: int
    max_part_bytes: int
    max_header_bytes: int
    max_filename_length: int
    collision_retries: int
    timeout: float | None

    @classmethod
    def from_settings(cls, config: Settings) -> "IngestLimits":
        return cls(
            max_request_bytes=config.MAX_REQUEST_BYTES,
            max_part_bytes=config.MAX_PART_BYTES,
            max_header_bytes=config.MAX_HEADER_BYTES,
            max_filename_length=config.MAX_FILENAME_LENGTH,
            collision_retries=config.COLLISION_RETRIES,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )


def acquire_root_lock(root: Path) -> TextIO:
    """Hold an exclusive, non-blocking lock on ``root/.lock`` for the process lifetime."""
    handle = (root / LOCK_FILE_NAME).open("w")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as ex:
        handle.close()
        raise StorageLockError(f"Storage root '{root}' is locked by another process") from ex
    return handle


def sweep_stale_temp_files(root: Path) -> int:
    """Remove temp files left behind by a crashed process."""
    removed = 0
    for path in root.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        removed += 1
    return removed


class Storage:
    """The locked storage root plus everything a request needs to write into it."""

    def __init__(self, root: Path, limits: IngestLimits, lock_handle: TextIO | None = None) -> None:
        self.root = root
        self.limits = limits
        self.writer = UploadWriter(
            root, collision_retries=limits.collision_retries, max_name_bytes=limits.max_filename_length
        )
        self.upload_count = 0
        self._lock_handle = lock_handle

    def new_session(self) -> UploadSession:
        return UploadSession(
            self.writer,
            storage_root=self.root,
            max_part_bytes=self.limits.max_part_bytes,
            max_total_bytes=self.limits.max_request_bytes,
            max_header_bytes=self.limits.max_header_bytes,
            max_filename_length=self.limits.max_filename_length,
            timeout=self.limits.timeout,
        )

    def record(self, result: UploadResult) -> None:
        self.upload_count += len(result.stored)

    def info(self) -> str:
        return f"Uploaded {self.upload_count} files to '{self.root}'"

    def close(self) -> None:
        if self._lock_handle is not None:
            fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
            self._lock_handle.close()
            self._lock_handle = None


def open_storage(root: Path, limits: IngestLimits) -> Storage:
    """Create, lock and clean the storage root."""
    root.mkdir(parents=True, exist_ok=True)
    root = root.resolve(strict=True)
    if not os.access(root, os.W_OK):
        raise PermissionError(f"Storage root '{root}' is not writable")
    lock_handle = acquire_root_lock(root)
    removed = sweep_stale_temp_files(root)
    if removed:
        logger.info("Removed stale temp files", icon=LogIcon.TOOL, count=removed)
    return Storage(root, limits, lock_handle)


@contextmanager
def storage_context(root: Path, limits: IngestLimits) -> Generator[Storage, None, None]:
    """Context manager for temporary storage usage."""
    storage = open_storage(root, limits)
    try:
        yield storage
    finally:
        storage.close()


class StorageEvent(BaseEvent[Storage]):
    """Manages the storage root lifecycle."""

    name = "storage"

    async def startup(self) -> Storage:
        storage = open_storage(st.STORAGE_ROOT, IngestLimits.from_settings(st))
        logger.info("Storage ready", icon=LogIcon.STORAGE, root=str(storage.root))
        return storage

    async def shutdown(self, instance: Storage) -> None:
        logger.info(instance.info(), icon=LogIcon.UPLOAD)
        instance.close()
