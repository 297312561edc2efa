"""
Upload metadata collaborator.

Mode strategies learn which uploads (company datasets) exist, who owns
them and whether they are active through an UploadMetadataProvider.
The real provider lives with the database layer; InMemoryUploadMetadataProvider
serves tests and local runs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class UploadTableInfo(BaseModel):
    """
    One uploaded dataset.

    Attributes:
        table_name: Upload table name, also used as the upload id
        client_id: Owning tenant
        upload_date: When the dataset was uploaded (timezone-aware)
        record_count: Rows in the upload table
        file_type: Source file type (csv, xlsx, ...)
        status: Lifecycle status; only "active" uploads are fully usable
    """

    model_config = ConfigDict(frozen=True)

    table_name: str
    client_id: str
    upload_date: datetime
    record_count: int = Field(default=0, ge=0)
    file_type: str = "csv"
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@runtime_checkable
class UploadMetadataProvider(Protocol):
    """Read-only source of upload metadata."""

    async def get_upload_table_info(self) -> list[UploadTableInfo]:
        """All known uploads, across clients."""
        ...


class InMemoryUploadMetadataProvider:
    """Upload metadata held in a list, in insertion order."""

    def __init__(self, uploads: Iterable[UploadTableInfo] = ()) -> None:
        self._uploads: list[UploadTableInfo] = list(uploads)

    def add(self, upload: UploadTableInfo) -> None:
        self._uploads = [u for u in self._uploads if u.table_name != upload.table_name]
        self._uploads.append(upload)

    async def get_upload_table_info(self) -> list[UploadTableInfo]:
        return list(self._uploads)
