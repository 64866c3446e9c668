"""Router with upload-stream injection, response handling and access logging."""

import inspect
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from functools import wraps
from typing import Any
from urllib.parse import quote

import orjson
from asgi_correlation_id import correlation_id
from pydantic import BaseModel
from robyn import Request, Response, SubRouter, status_codes
from robyn.robyn import HttpMethod

from dropzone.core.logger import LogIcon, logger
from dropzone.core.settings import settings as st
from dropzone.ingest.parser import parse_options_header
from dropzone.models.core import UploadRequest

FILE_UPLOAD_ENDPOINTS: set[str] = set()
REQUEST_ID_HEADER = "x-request-id"
MULTIPART_FORM_DATA = "multipart/form-data"
UPLOAD_FIELD_NAME = "files"


def parse_endpoint_signature(sig: inspect.Signature) -> set[str]:
    """Names of the parameters that want the request body as an UploadRequest."""
    return {name for name, param in sig.parameters.items() if param.annotation is UploadRequest}


def get_header(request: Request, name: str) -> str | None:
    """Case-insensitive header lookup that tolerates plain dict headers."""
    headers = getattr(request, "headers", None)
    if headers is None:
        return None
    for candidate in (name, name.lower(), name.title()):
        value = headers.get(candidate)
        if value:
            return value
    return None


def body_bytes(request: Request) -> bytes:
    """Raw request body; Robyn hands over text bodies already decoded as UTF-8."""
    body = getattr(request, "body", b"") or b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


async def iter_chunks(data: bytes, chunk_size: int) -> AsyncIterator[bytes]:
    """Feed an in-memory body to the parser in bounded chunks."""
    view = memoryview(data)
    for offset in range(0, len(view), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


def choose_boundary(payloads: Iterable[bytes]) -> str:
    """Random boundary that occurs in none of ``payloads``."""
    payloads = list(payloads)
    while True:
        boundary = f"dropzone-{uuid.uuid4().hex}"
        token = boundary.encode("ascii")
        if not any(token in payload for payload in payloads):
            return boundary


def _disposition(field_name: str, file_name: str | None) -> bytes:
    # RFC 2231 form carries any client name through the header unchanged
    value = f"form-data; name*=UTF-8''{quote(field_name, safe='')}"
    if file_name is not None:
        value += f"; filename*=UTF-8''{quote(file_name, safe='')}"
    return f"Content-Disposition: {value}\r\n\r\n".encode("ascii")


async def reframe_form(
    files: dict[str, bytes],
    form_data: dict[str, str],
    boundary: str,
    chunk_size: int,
) -> AsyncIterator[bytes]:
    """Encode parts Robyn already decoded back into a multipart/form-data stream.

    Robyn keys files by their client file name and drops the field name, so
    every file is framed under the ``files`` field. Plain form fields follow
    as parts without a file name.
    """
    delimiter = f"--{boundary}\r\n".encode("ascii")
    for file_name, content in files.items():
        yield delimiter + _disposition(UPLOAD_FIELD_NAME, file_name)
        async for chunk in iter_chunks(_as_bytes(content), chunk_size):
            yield chunk
        yield b"\r\n"
    for field_name, value in form_data.items():
        yield delimiter + _disposition(field_name, None)
        yield _as_bytes(value) + b"\r\n"
    yield f"--{boundary}--\r\n".encode("ascii")


def build_upload_request(request: Request, chunk_size: int | None = None) -> UploadRequest:
    """Adapt a Robyn request into the stream the ingestion pipeline consumes.

    Robyn parses ``multipart/form-data`` bodies itself and exposes only
    ``request.files`` and ``request.form_data``, so those parts are re-framed
    under a fresh boundary. A multipart content type without a boundary, and
    any other content type, pass the body through as-is for the session to
    refuse.
    """
    chunk_size = chunk_size or st.CHUNK_SIZE
    content_type = get_header(request, "content-type")
    raw_length = get_header(request, "content-length")
    content_length = int(raw_length) if raw_length and raw_length.isdigit() else None

    media_type, params = parse_options_header(content_type)
    if media_type != MULTIPART_FORM_DATA or not params.get("boundary"):
        return UploadRequest(
            content_type=content_type,
            stream=iter_chunks(body_bytes(request), chunk_size),
            content_length=content_length,
        )

    files = {name: _as_bytes(content) for name, content in (getattr(request, "files", None) or {}).items()}
    form_data = dict(getattr(request, "form_data", None) or {})
    boundary = choose_boundary([*files.values(), *(_as_bytes(value) for value in form_data.values())])
    return UploadRequest(
        content_type=f"{MULTIPART_FORM_DATA}; boundary={boundary}",
        stream=reframe_form(files, form_data, boundary, chunk_size),
        content_length=content_length,
    )


def parse_response(result: Any) -> Response:
    """Convert handler result to Response."""
    match result:
        case Response():
            return result
        case BaseModel():
            return Response(
                status_code=status_codes.HTTP_200_OK,
                headers={"content-type": "application/json"},
                description=result.model_dump_json(by_alias=True, indent=4),
            )
        case dict():
            return Response(
                status_code=status_codes.HTTP_200_OK,
                headers={"content-type": "application/json"},
                description=orjson.dumps(result).decode(),
            )
        case _:
            return Response(
                status_code=status_codes.HTTP_200_OK,
                headers={},
                description=str(result),
            )


def _request_path(request: Request) -> str:
    url = getattr(request, "url", None)
    return getattr(url, "path", None) or getattr(request, "path", "")


HTTP_METHODS = (
    HttpMethod.GET,
    HttpMethod.POST,
    HttpMethod.PUT,
    HttpMethod.DELETE,
    HttpMethod.PATCH,
    HttpMethod.HEAD,
    HttpMethod.OPTIONS,
    HttpMethod.TRACE,
    HttpMethod.CONNECT,
)


def _create_method_wrapper(original_method: Callable, router_prefix: str = "") -> Callable:
    @wraps(original_method)
    def method_wrapper(*args, **kwargs) -> Callable:
        endpoint = args[0] if args else kwargs.get("endpoint", "")
        decorator = original_method(*args, **kwargs)

        def handler_decorator(handler: Callable) -> Callable:
            sig = inspect.signature(handler)
            upload_params = parse_endpoint_signature(sig)
            has_request_param = "request" in sig.parameters

            if upload_params:
                full_path = f"{router_prefix}{endpoint}".replace("//", "/")
                FILE_UPLOAD_ENDPOINTS.add(full_path)

            @wraps(handler)
            async def wrapped_handler(request: Request, **h_kwargs):
                correlation_id.set(get_header(request, REQUEST_ID_HEADER) or uuid.uuid4().hex)
                started = time.perf_counter()

                for param_name in upload_params:
                    h_kwargs[param_name] = build_upload_request(request)

                # Pass request to handler only if it declared it
                if has_request_param:
                    h_kwargs["request"] = request

                response = parse_response(await handler(**h_kwargs))
                logger.info(
                    f"{getattr(request, 'method', '')} {_request_path(request)} {response.status_code}",
                    icon=LogIcon.LATENCY,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
                return response

            # Build signature: always include request for Robyn injection
            new_params = [inspect.Parameter("request", inspect.Parameter.POSITIONAL_OR_KEYWORD, annotation=Request)]
            for name, param in sig.parameters.items():
                if name == "request" or name in upload_params:
                    continue
                new_params.append(param)

            wrapped_handler.__signature__ = sig.replace(parameters=new_params)  # type: ignore[attr-defined]
            return decorator(wrapped_handler)

        return handler_decorator

    return method_wrapper


class Router(SubRouter):
    """Enhanced SubRouter with upload-stream injection and response handling."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._wrap_methods()

    def _wrap_methods(self) -> None:
        """Wrap HTTP methods with parsing logic."""
        for method in HTTP_METHODS:
            method_name = str(method).split(".")[-1].lower()
            if hasattr(self, method_name):
                original_method = getattr(self, method_name)
                wrapped_method = _create_method_wrapper(original_method, self.prefix)
                setattr(self, method_name, wrapped_method)
