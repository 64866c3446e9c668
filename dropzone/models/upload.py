"""Response schemas for the upload endpoint."""

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from dropzone.models.core import Failed, PartOutcome, Rejected, Stored, UploadResult


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoredItem(_CamelModel):
    """A part that reached its final name under the storage root."""

    field_name: str | None
    file_name: str | None
    stored_name: str
    byte_count: int


class FailedItem(_CamelModel):
    """A part that was rejected or failed, with the taxonomy reason."""

    field_name: str | None
    file_name: str | None
    status: Literal["rejected", "failed"]
    reason: str
    detail: str | None = None


class UploadResponse(_CamelModel):
    """Itemized result of one upload request."""

    success: bool
    error: str | None = None
    stored: list[StoredItem] = []
    failed: list[FailedItem] = []

    @classmethod
    def from_result(cls, result: UploadResult) -> "UploadResponse":
        stored: list[StoredItem] = []
        failed: list[FailedItem] = []
        for item in result.outcomes:
            match item.outcome:
                case Stored(name=name, byte_count=byte_count):
                    stored.append(
                        StoredItem(
                            field_name=item.field_name,
                            file_name=item.file_name,
                            stored_name=name,
                            byte_count=byte_count,
                        )
                    )
                case Rejected(reason=reason):
                    failed.append(_failed_item(item, "rejected", str(reason)))
                case Failed(cause=cause, detail=detail):
                    failed.append(_failed_item(item, "failed", str(cause), detail))
        return cls(
            success=result.success,
            error=str(result.abort_reason) if result.abort_reason else None,
            stored=stored,
            failed=failed,
        )

    @classmethod
    def from_error(cls, error: str) -> "UploadResponse":
        return cls(success=False, error=error)


def _failed_item(
    item: PartOutcome,
    status: Literal["rejected", "failed"],
    reason: str,
    detail: str | None = None,
) -> FailedItem:
    return FailedItem(
        field_name=item.field_name,
        file_name=item.file_name,
        status=status,
        reason=reason,
        detail=detail,
    )
