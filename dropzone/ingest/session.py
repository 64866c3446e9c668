"""One upload request, end to end: parse, sanitize, write, aggregate."""

import asyncio
from enum import StrEnum
from pathlib import Path

from dropzone.core.logger import LogIcon, logger
from dropzone.ingest.parser import MultipartPart, StreamingMultipartParser, extract_boundary
from dropzone.ingest.sanitizer import DEFAULT_MAX_LENGTH, sanitize
from dropzone.ingest.writer import UploadWriter
from dropzone.models.core import (
    Failed,
    FailureCause,
    ParseError,
    ParseErrorKind,
    PartOutcome,
    Rejected,
    UnsafeFileName,
    UploadRequest,
    UploadResult,
    WriteOutcome,
)


class SessionState(StrEnum):
    START = "start"
    PARSING_PARTS = "parsing_parts"
    SANITIZING = "sanitizing"
    WRITING = "writing"
    AGGREGATING = "aggregating"
    DONE = "done"
    ABORTED = "aborted"


class UploadSession:
    """Drives the parser, sanitizer and writer for a single request.

    Parts are handled strictly in body order. A bad name or an oversized part
    only affects that part; a parser failure or the timeout aborts the rest of
    the request. Parts stored before an abort stay stored.
    """

    def __init__(
        self,
        writer: UploadWriter,
        *,
        storage_root: Path,
        max_part_bytes: int,
        max_total_bytes: int,
        max_header_bytes: int,
        max_filename_length: int = DEFAULT_MAX_LENGTH,
        timeout: float | None = None,
    ) -> None:
        self.writer = writer
        self.storage_root = storage_root
        self.max_part_bytes = max_part_bytes
        self.max_total_bytes = max_total_bytes
        self.max_header_bytes = max_header_bytes
        self.max_filename_length = max_filename_length
        self.timeout = timeout
        self.state = SessionState.START
        self.result = UploadResult()

    async def handle(self, request: UploadRequest) -> UploadResult:
        try:
            async with asyncio.timeout(self.timeout):
                await self._run(request)
        except ParseError as ex:
            self._abort(ex.kind, ex.detail)
        except TimeoutError:
            self._abort(FailureCause.TIMEOUT, f"exceeded {self.timeout}s")
        else:
            self.state = SessionState.DONE
        return self.result

    async def _run(self, request: UploadRequest) -> None:
        boundary = extract_boundary(request.content_type)
        parser = StreamingMultipartParser(
            request.stream,
            boundary,
            max_total_bytes=self.max_total_bytes,
            max_header_bytes=self.max_header_bytes,
        )
        self.state = SessionState.PARSING_PARTS
        async for part in parser:
            try:
                outcome = await self._store_part(part)
            except ParseError as ex:
                self._record(part, Failed(ex.kind, ex.detail))
                raise
            except asyncio.CancelledError:
                self._record(part, Failed(FailureCause.CANCELLED))
                raise
            self._record(part, outcome)
            if not part.exhausted:
                await part.skip()
            self.state = SessionState.PARSING_PARTS
        self.state = SessionState.AGGREGATING

    async def _store_part(self, part: MultipartPart) -> WriteOutcome:
        """Sanitize the part's file name and hand the body to the writer.

        The body may be left partly unread (rejected name, size limit); the
        caller drains it once the outcome is recorded.
        """
        self.state = SessionState.SANITIZING
        try:
            safe_path = sanitize(part.file_name, self.storage_root, max_length=self.max_filename_length)
        except UnsafeFileName as ex:
            logger.warning("File name rejected", icon=LogIcon.SECURITY, reason=ex.reason, raw_name=part.file_name)
            return Rejected(ex.reason)

        self.state = SessionState.WRITING
        return await self.writer.write(safe_path, part, self.max_part_bytes)

    def _record(self, part: MultipartPart, outcome: WriteOutcome) -> None:
        self.result.outcomes.append(
            PartOutcome(
                index=len(self.result.outcomes),
                field_name=part.field_name,
                file_name=part.file_name,
                outcome=outcome,
            )
        )

    def _abort(self, reason: ParseErrorKind | FailureCause, detail: str | None) -> None:
        self.state = SessionState.ABORTED
        self.result.abort_reason = reason
        logger.warning(
            "Upload aborted",
            icon=LogIcon.PARSER if isinstance(reason, ParseErrorKind) else LogIcon.TIMEOUT,
            reason=reason,
            detail=detail,
            parts=len(self.result.outcomes),
        )
