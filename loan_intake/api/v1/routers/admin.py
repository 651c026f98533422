from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.api import deps
from loan_intake.api.v1.routers.lender_submissions import submission_failure
from loan_intake.core.permissions import Capability
from loan_intake.schemas.lender import (
    LenderSubmissionOut,
    LenderSubmissionRetryOut,
    RetryResponse,
)
from loan_intake.services import lender_submissions
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import LoanIntakeError
from loan_intake.services.lender_gateway import LenderGateway

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/transmissions/{submission_id}/retry",
    response_model=RetryResponse,
    summary="Manually retry a failed lender submission",
)
async def retry_transmission(
    submission_id: UUID,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.LENDER_RETRY)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    gateway: LenderGateway = Depends(deps.get_gateway),
    db: AsyncSession = Depends(deps.get_db_session),
) -> RetryResponse:
    try:
        result = await lender_submissions.retry(db, ctx, gateway, submission_id)
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    body = RetryResponse(
        retry=LenderSubmissionRetryOut.model_validate(result.retry),
        submission=LenderSubmissionOut.model_validate(result.submission),
    )
    if result.retry.status == "failed":
        raise submission_failure(
            result.submission,
            status_code=status.HTTP_502_BAD_GATEWAY,
            message="Retry did not reach the lender",
            data=body.model_dump(),
            reason=result.retry.failure_reason,
        )
    return body
