from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ApplicationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)
    product_type: str = Field(default="standard", max_length=50)


class ApplicationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    owner_user_id: str
    name: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    product_type: str
    pipeline_state: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ApplicationListResponse(BaseModel):
    items: list[ApplicationOut]
    total: int


class PipelineChangeRequest(BaseModel):
    state: str = Field(min_length=1, max_length=30)
    override: bool = False
    reason: str | None = Field(default=None, max_length=500)


class PipelineStatesResponse(BaseModel):
    states: list[str]
