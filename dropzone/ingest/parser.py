"""Incremental multipart/form-data decoding.

The parser is pull-based: callers iterate parts with ``async for`` and must
drain (or ``skip()``) each part body before asking for the next one. Only the
current header block and a streaming window of the current body are ever held
in memory.

The delimiter is ``CRLF--boundary``. The stream is scanned as if it started
with CRLF so the first delimiter is anchored the same way as the others. A
delimiter counts only when followed by ``--`` (close) or optional linear
whitespace and CRLF (next part); any other run of boundary-looking bytes is
payload.
"""

from collections.abc import AsyncIterator
from email.message import Message
from email.utils import collapse_rfc2231_value
from enum import IntEnum, StrEnum

from dropzone.models.core import ParseError, ParseErrorKind

CRLF = b"\r\n"
BLANK_LINE = b"\r\n\r\n"
LWSP = b" \t"
MAX_TRANSPORT_PADDING = 64
MAX_BOUNDARY_LENGTH = 70

# RFC 7230 token characters, used to validate header names
TOKEN_CHARS = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
    b"0123456789"
    b"!#$%&'*+-.^_`|~"
)


class ParserState(StrEnum):
    PREAMBLE = "preamble"
    HEADERS = "headers"
    BODY = "body"
    DONE = "done"


class _Delimiter(IntEnum):
    INCOMPLETE = 0
    DATA = 1
    NEXT = 2
    CLOSE = 3


def parse_options_header(value: str | None) -> tuple[str, dict[str, str]]:
    """Split ``type/subtype; key=value`` style header values.

    Parameters are decoded with :mod:`email` so quoted strings and RFC 2231
    (``filename*=UTF-8''...``) forms are handled.
    """
    if not value:
        return "", {}
    if ";" not in value:
        return value.strip().lower(), {}

    message = Message()
    message["content-type"] = value
    params = message.get_params()
    if not params:
        return value.split(";", 1)[0].strip().lower(), {}
    main_value = params.pop(0)[0].strip().lower()
    options: dict[str, str] = {}
    for key, param in params:
        if isinstance(param, tuple):
            param = collapse_rfc2231_value(param)
        options[key.lower()] = param
    return main_value, options


def extract_boundary(content_type: str | None) -> bytes:
    """Return the boundary token from a multipart content-type header."""
    _, params = parse_options_header(content_type)
    boundary = params.get("boundary", "")
    if not boundary or len(boundary) > MAX_BOUNDARY_LENGTH:
        raise ParseError(ParseErrorKind.MISSING_BOUNDARY, content_type)
    try:
        return boundary.encode("ascii")
    except UnicodeEncodeError as ex:
        raise ParseError(ParseErrorKind.MISSING_BOUNDARY, content_type) from ex


def parse_header_block(block: bytes) -> dict[str, str]:
    """Parse one part's header lines into a lower-cased name mapping."""
    headers: dict[str, str] = {}
    if not block:
        return headers
    for line in block.split(CRLF):
        name, sep, value = line.partition(b":")
        if not sep or not name or any(byte not in TOKEN_CHARS for byte in name):
            raise ParseError(ParseErrorKind.MALFORMED_HEADERS, repr(line[:64]))
        headers[name.decode("ascii").lower()] = value.strip(LWSP).decode("utf-8", errors="replace")
    return headers


class MultipartPart:
    """One part of a multipart body; the body is read through the parser."""

    __slots__ = ("_parser", "headers", "field_name", "file_name", "content_type", "exhausted", "bytes_read")

    def __init__(self, parser: "StreamingMultipartParser", headers: dict[str, str]) -> None:
        disposition, params = parse_options_header(headers.get("content-disposition"))
        if disposition != "form-data":
            raise ParseError(ParseErrorKind.MALFORMED_HEADERS, "missing form-data content-disposition")
        self._parser = parser
        self.headers = headers
        self.field_name = params.get("name")
        self.file_name = params.get("filename")
        self.content_type = headers.get("content-type")
        self.exhausted = False
        self.bytes_read = 0

    def __repr__(self) -> str:
        return f"MultipartPart(field_name={self.field_name!r}, file_name={self.file_name!r})"

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        while chunk := await self.read():
            yield chunk

    async def read(self) -> bytes:
        """Return the next body chunk, or ``b""`` once the part is drained."""
        if self.exhausted:
            return b""
        chunk = await self._parser._read_body(self)
        if chunk is None:
            self.exhausted = True
            return b""
        self.bytes_read += len(chunk)
        return chunk

    async def skip(self) -> None:
        """Drain and discard whatever is left of the body."""
        while await self.read():
            pass


class StreamingMultipartParser:
    """Pull parser over an async byte source, yielding :class:`MultipartPart`."""

    def __init__(
        self,
        source: AsyncIterator[bytes],
        boundary: bytes,
        *,
        max_total_bytes: int,
        max_header_bytes: int,
    ) -> None:
        self._source = source
        self._delimiter = CRLF + b"--" + boundary
        self._max_total_bytes = max_total_bytes
        self._max_header_bytes = max_header_bytes
        # Leading CRLF anchors a delimiter at the very start of the body
        self._buffer = bytearray(CRLF)
        self._eof = False
        self._state = ParserState.PREAMBLE
        self._current: MultipartPart | None = None
        self.bytes_consumed = 0

    @property
    def state(self) -> ParserState:
        return self._state

    def __aiter__(self) -> "StreamingMultipartParser":
        return self

    async def __anext__(self) -> MultipartPart:
        if self._current is not None and not self._current.exhausted:
            raise ParseError(ParseErrorKind.OUT_OF_ORDER_READ, "previous part body was not drained")
        self._current = None

        if self._state is ParserState.PREAMBLE:
            while await self._next_segment() is not None:
                pass
        if self._state is ParserState.DONE:
            raise StopAsyncIteration

        headers = parse_header_block(await self._read_header_block())
        part = MultipartPart(self, headers)
        self._current = part
        self._state = ParserState.BODY
        return part

    async def _read_body(self, part: MultipartPart) -> bytes | None:
        if part is not self._current or self._state is not ParserState.BODY:
            raise ParseError(ParseErrorKind.OUT_OF_ORDER_READ, "part is no longer current")
        return await self._next_segment()

    async def _fill(self) -> bool:
        """Pull one chunk from the source into the buffer; False at end of stream."""
        if self._eof:
            return False
        try:
            chunk = await anext(self._source, None)
        except (ConnectionError, EOFError) as ex:
            raise ParseError(ParseErrorKind.TRUNCATED_BODY, "client disconnected") from ex
        if chunk is None:
            self._eof = True
            return False
        self.bytes_consumed += len(chunk)
        if self.bytes_consumed > self._max_total_bytes:
            raise ParseError(ParseErrorKind.TOO_LARGE, f"request exceeds {self._max_total_bytes} bytes")
        self._buffer += chunk
        return True

    async def _need_more(self) -> None:
        if not await self._fill():
            raise ParseError(ParseErrorKind.TRUNCATED_BODY, f"stream ended in {self._state}")

    def _take(self, size: int) -> bytes:
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def _classify_delimiter(self) -> tuple[_Delimiter, int]:
        """Inspect the delimiter sitting at the start of the buffer."""
        buffer = self._buffer
        end = len(self._delimiter)
        if len(buffer) < end + 2:
            return _Delimiter.INCOMPLETE, 0
        if buffer[end : end + 2] == b"--":
            return _Delimiter.CLOSE, end + 2

        position = end
        while position < len(buffer) and buffer[position] in LWSP:
            position += 1
        if position - end > MAX_TRANSPORT_PADDING:
            return _Delimiter.DATA, 0
        if position + 2 > len(buffer):
            return _Delimiter.INCOMPLETE, 0
        if buffer[position : position + 2] == CRLF:
            return _Delimiter.NEXT, position + 2
        return _Delimiter.DATA, 0

    async def _next_segment(self) -> bytes | None:
        """Next run of bytes before the upcoming delimiter, or None once it is consumed."""
        delimiter = self._delimiter
        keep = len(delimiter) - 1
        start = 0
        while True:
            index = self._buffer.find(delimiter, start)
            if index == -1:
                cut = max(len(self._buffer) - keep, start)
                if cut > 0:
                    return self._take(cut)
                await self._need_more()
                continue
            if index > 0:
                return self._take(index)

            kind, consumed = self._classify_delimiter()
            match kind:
                case _Delimiter.INCOMPLETE:
                    await self._need_more()
                case _Delimiter.DATA:
                    start = 1
                case _Delimiter.NEXT:
                    del self._buffer[:consumed]
                    self._state = ParserState.HEADERS
                    return None
                case _Delimiter.CLOSE:
                    # The epilogue is never read
                    self._buffer.clear()
                    self._state = ParserState.DONE
                    return None

    async def _read_header_block(self) -> bytes:
        while True:
            if len(self._buffer) >= 2 and self._buffer.startswith(CRLF):
                del self._buffer[:2]
                return b""
            end = self._buffer.find(BLANK_LINE)
            if end != -1:
                if end > self._max_header_bytes:
                    raise ParseError(ParseErrorKind.HEADER_TOO_LARGE)
                block = self._take(end)
                del self._buffer[: len(BLANK_LINE)]
                return block
            if len(self._buffer) > self._max_header_bytes:
                raise ParseError(ParseErrorKind.HEADER_TOO_LARGE)
            await self._need_more()
