"""Upload middleware for OpenAPI multipart/form-data patching."""

import orjson
from robyn import Response

from dropzone.core.logger import LogIcon, logger
from dropzone.core.router import FILE_UPLOAD_ENDPOINTS
from dropzone.middlewares.base import BaseMiddleware

UPLOAD_REQUEST_BODY = {
    "content": {
        "multipart/form-data": {
            "schema": {
                "type": "object",
                "properties": {
                    "files": {
                        "type": "array",
                        "items": {"type": "string", "format": "binary"},
                        "description": "Files to store; every part needs a filename",
                    }
                },
                "required": ["files"],
            }
        }
    },
    "required": True,
}


def patch_upload_paths(document: dict, endpoints: set[str]) -> int:
    """Set the multipart request body on every operation of ``endpoints``; returns how many."""
    patched = 0
    paths = document.get("paths", {})
    for endpoint in endpoints:
        for operation in paths.get(endpoint, {}).values():
            operation["requestBody"] = UPLOAD_REQUEST_BODY
            patched += 1
    return patched


class FileUploadOpenAPIMiddleware(BaseMiddleware):
    """Patches OpenAPI responses to use multipart/form-data for upload endpoints."""

    endpoints = frozenset(["/openapi.json"])

    def after(self, response: Response) -> Response:
        """Patch the OpenAPI document with multipart/form-data for upload endpoints."""
        if not FILE_UPLOAD_ENDPOINTS:
            return response

        try:
            document = orjson.loads(response.description)
        except orjson.JSONDecodeError as ex:
            logger.warning("OpenAPI document is not JSON", icon=LogIcon.WARNING, error=str(ex))
            return response

        if patch_upload_paths(document, FILE_UPLOAD_ENDPOINTS):
            response.description = orjson.dumps(document).decode()
        return response
