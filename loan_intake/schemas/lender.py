from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class LenderSubmissionCreate(BaseModel):
    application_id: UUID = Field(validation_alias=AliasChoices("application_id", "applicationId"))
    idempotency_key: str = Field(
        min_length=1, validation_alias=AliasChoices("idempotency_key", "idempotencyKey")
    )
    lender_id: str = Field(
        min_length=1, max_length=100, validation_alias=AliasChoices("lender_id", "lenderId")
    )


class LenderSubmissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_id: UUID
    lender_id: str
    idempotency_key: str
    status: str
    failure_reason: str | None = None
    payload_hash: str | None = None
    lender_response: dict[str, Any] | None = None
    response_received_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LenderSubmissionRetryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lender_submission_id: UUID
    attempt_number: int
    status: str
    failure_reason: str | None = None
    created_at: datetime | None = None


class LenderSubmissionDetail(LenderSubmissionOut):
    retries: list[LenderSubmissionRetryOut] = Field(default_factory=list)


class RetryResponse(BaseModel):
    retry: LenderSubmissionRetryOut
    submission: LenderSubmissionOut


class TransmissionStatus(BaseModel):
    application_id: UUID
    pipeline_state: str
    submission: LenderSubmissionDetail | None = None
