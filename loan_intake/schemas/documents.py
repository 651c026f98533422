from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DocumentUploadRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    document_type: str | None = Field(default=None, max_length=100)
    document_id: UUID | None = None
    # Validated by the review service so that rejections are audited.
    metadata: Any = None
    content_ref: str | None = Field(default=None, max_length=1024)


class DocumentVersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    document_id: UUID
    version_number: int
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    content_ref: str | None = None
    reviewed_by_user_id: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None


class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_id: UUID
    title: str
    document_type: str
    current_version_number: int
    created_at: datetime | None = None


class DocumentUploadResponse(BaseModel):
    document: DocumentOut
    version: DocumentVersionOut


class DocumentWithVersions(DocumentOut):
    versions: list[DocumentVersionOut] = Field(default_factory=list)


class DocumentListResponse(BaseModel):
    items: list[DocumentWithVersions]


class RequirementsResponse(BaseModel):
    product_type: str
    required: list[str]
    satisfied: list[str]
    missing: list[str]
    complete: bool
