"""Upload endpoint: maps a multipart request onto an UploadSession and back to HTTP."""

from http import HTTPStatus
from pathlib import Path

from robyn import Response

from dropzone.core.lifespan import State, StateNotReady
from dropzone.core.logger import LogIcon, logger
from dropzone.core.router import MULTIPART_FORM_DATA, Router
from dropzone.events.storage import Storage
from dropzone.ingest.parser import parse_options_header
from dropzone.models.core import Failed, FailureCause, ParseErrorKind, UploadRequest, UploadResult
from dropzone.models.upload import UploadResponse

router = Router()

INDEX_PAGE = Path(__file__).parent.parent / "static" / "index.html"

_ABORT_STATUS = {
    ParseErrorKind.TOO_LARGE: HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
    FailureCause.TIMEOUT: HTTPStatus.REQUEST_TIMEOUT,
}


def status_for(result: UploadResult) -> int:
    """HTTP status for an upload result.

    200 when every part is stored, 207 when some parts were rejected, 500 when
    a part hit an unexpected failure, and 413/408/400 for aborted requests.
    """
    if result.abort_reason is not None:
        return _ABORT_STATUS.get(result.abort_reason, HTTPStatus.BAD_REQUEST)
    if result.success:
        return HTTPStatus.OK
    if any(isinstance(item.outcome, Failed) for item in result.failures):
        return HTTPStatus.INTERNAL_SERVER_ERROR
    return HTTPStatus.MULTI_STATUS


def json_response(status_code: int, body: UploadResponse) -> Response:
    return Response(
        status_code=int(status_code),
        headers={"content-type": "application/json"},
        description=body.model_dump_json(by_alias=True),
    )


async def dispatch_upload(upload: UploadRequest, storage: Storage) -> Response:
    """Validate the request envelope, run the session and build the response."""
    media_type, _ = parse_options_header(upload.content_type)
    if media_type != MULTIPART_FORM_DATA:
        logger.warning("Unsupported content type", icon=LogIcon.FORBIDDEN, content_type=upload.content_type)
        return json_response(
            HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
            UploadResponse.from_error("unsupported_media_type"),
        )

    if upload.content_length is not None and upload.content_length > storage.limits.max_request_bytes:
        logger.warning("Declared body too large", icon=LogIcon.FORBIDDEN, content_length=upload.content_length)
        return json_response(
            HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            UploadResponse.from_error(ParseErrorKind.TOO_LARGE),
        )

    result = await storage.new_session().handle(upload)
    storage.record(result)

    status_code = status_for(result)
    logger.info(
        "Upload handled",
        icon=LogIcon.UPLOAD,
        status=status_code,
        stored=len(result.stored),
        failed=len(result.failures),
    )
    return json_response(status_code, UploadResponse.from_result(result))


def _storage(global_dependencies: dict) -> Storage | None:
    state: State | None = global_dependencies.get("state")
    if state is None:
        return None
    try:
        return state.require("storage")
    except StateNotReady:
        return None


@router.post("/upload")
async def upload_files(upload: UploadRequest, global_dependencies) -> Response:
    """Store every file part of a multipart/form-data body."""
    storage = _storage(global_dependencies)
    if storage is None:
        logger.error("Storage is not ready", icon=LogIcon.ERROR)
        return json_response(
            HTTPStatus.SERVICE_UNAVAILABLE,
            UploadResponse.from_error("storage_unavailable"),
        )
    return await dispatch_upload(upload, storage)


@router.get("/info")
async def upload_info(global_dependencies) -> str:
    storage = _storage(global_dependencies)
    return storage.info() if storage else "Storage is not ready"


@router.get("/")
async def upload_page() -> Response:
    """Serve the drag-and-drop upload page."""
    return Response(
        status_code=int(HTTPStatus.OK),
        headers={"content-type": "text/html; charset=utf-8"},
        description=INDEX_PAGE.read_text(encoding="utf-8"),
    )
