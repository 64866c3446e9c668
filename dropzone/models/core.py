"""Core models for the upload ingestion pipeline."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path


class RejectReason(StrEnum):
    """Why a single part was refused before or while being stored."""

    INVALID_NAME = "invalid_name"
    PATH_ESCAPE = "path_escape"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"


class ParseErrorKind(StrEnum):
    """Request-level multipart decoding failures."""

    MISSING_BOUNDARY = "missing_boundary"
    MALFORMED_HEADERS = "malformed_headers"
    TRUNCATED_BODY = "truncated_body"
    TOO_LARGE = "too_large"
    HEADER_TOO_LARGE = "header_too_large"
    OUT_OF_ORDER_READ = "out_of_order_read"


class FailureCause(StrEnum):
    """Unexpected conditions that stopped a part from reaching storage."""

    COLLISION_RETRY_EXHAUSTED = "collision_retry_exhausted"
    IO_ERROR = "io_error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ParseError(Exception):
    """Raised by the multipart parser; fatal for the whole request."""

    def __init__(self, kind: ParseErrorKind, detail: str | None = None) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind}: {detail}" if detail else str(kind))


class UnsafeFileName(Exception):
    """Raised by the sanitizer when a client file name cannot be stored."""

    def __init__(self, reason: RejectReason, raw_name: str | None = None) -> None:
        self.reason = reason
        self.raw_name = raw_name
        super().__init__(f"{reason}: {raw_name!r}")


@dataclass(frozen=True, slots=True)
class SafePath:
    """Validated destination directly under the storage root."""

    root: Path
    name: str

    @property
    def path(self) -> Path:
        return self.root / self.name


@dataclass(frozen=True, slots=True)
class Stored:
    name: str
    path: Path
    byte_count: int


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: RejectReason


@dataclass(frozen=True, slots=True)
class Failed:
    cause: FailureCause | ParseErrorKind
    detail: str | None = None


WriteOutcome = Stored | Rejected | Failed


@dataclass(slots=True)
class UploadRequest:
    """Inbound upload: the content-type header plus the raw body as a chunk stream."""

    content_type: str | None
    stream: AsyncIterator[bytes]
    content_length: int | None = None


@dataclass(frozen=True, slots=True)
class PartOutcome:
    index: int
    field_name: str | None
    file_name: str | None
    outcome: WriteOutcome


@dataclass(slots=True)
class UploadResult:
    """Per-part outcomes of one request, in body order."""

    outcomes: list[PartOutcome] = field(default_factory=list)
    abort_reason: ParseErrorKind | FailureCause | None = None

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    @property
    def success(self) -> bool:
        return not self.aborted and all(isinstance(item.outcome, Stored) for item in self.outcomes)

    @property
    def stored(self) -> list[PartOutcome]:
        return [item for item in self.outcomes if isinstance(item.outcome, Stored)]

    @property
    def failures(self) -> list[PartOutcome]:
        return [item for item in self.outcomes if not isinstance(item.outcome, Stored)]
