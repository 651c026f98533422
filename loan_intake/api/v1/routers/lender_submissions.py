from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.api import deps
from loan_intake.api.v1.routers.applications import REPLAY_HEADER, load_accessible_application
from loan_intake.core.permissions import Capability
from loan_intake.models.lender_submission import LenderSubmission
from loan_intake.schemas.lender import (
    LenderSubmissionCreate,
    LenderSubmissionDetail,
    LenderSubmissionOut,
    LenderSubmissionRetryOut,
    TransmissionStatus,
)
from loan_intake.services import lender_submissions
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import LoanIntakeError
from loan_intake.services.lender_gateway import LenderGateway

router = APIRouter(prefix="/lender", tags=["lender"])


def submission_failure(
    submission: LenderSubmission,
    *,
    status_code: int,
    message: str,
    data: dict,
    reason: str | None = None,
) -> HTTPException:
    """Failed submissions are persisted facts; the row travels with the error."""
    reason = reason or submission.failure_reason or "lender_error"
    return HTTPException(
        status_code=status_code,
        detail={
            "code": reason,
            "message": message,
            "details": {
                "submission_id": str(submission.id),
                "failure_reason": reason,
            },
            "data": jsonable_encoder(data),
        },
    )


async def _detail(db: AsyncSession, submission: LenderSubmission) -> LenderSubmissionDetail:
    retries = await lender_submissions.list_retries(db, submission.id)
    return LenderSubmissionDetail(
        **LenderSubmissionOut.model_validate(submission).model_dump(),
        retries=[LenderSubmissionRetryOut.model_validate(item) for item in retries],
    )


@router.post(
    "/submissions",
    response_model=LenderSubmissionOut,
    status_code=201,
    summary="Submit an application to a lender",
)
async def create_submission(
    payload: LenderSubmissionCreate,
    response: Response,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.LENDER_SUBMIT)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    gateway: LenderGateway = Depends(deps.get_gateway),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LenderSubmissionOut:
    await load_accessible_application(db, auth, payload.application_id)
    try:
        result = await lender_submissions.submit(
            db,
            ctx,
            gateway,
            application_id=payload.application_id,
            idempotency_key=payload.idempotency_key,
            lender_id=payload.lender_id,
        )
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    submission = result.value
    out = LenderSubmissionOut.model_validate(submission)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers[REPLAY_HEADER] = "true"
        return out
    if submission.status == "failed":
        if submission.failure_reason == lender_submissions.MISSING_DOCUMENTS:
            raise submission_failure(
                submission,
                status_code=status.HTTP_400_BAD_REQUEST,
                message="Required documents have not been accepted",
                data=out.model_dump(),
            )
        raise submission_failure(
            submission,
            status_code=status.HTTP_502_BAD_GATEWAY,
            message="Lender gateway did not accept the submission",
            data=out.model_dump(),
        )
    return out


@router.get(
    "/submissions/{submission_id}",
    response_model=LenderSubmissionDetail,
    summary="Get a lender submission with its retries",
)
async def get_submission(
    submission_id: UUID,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.LENDER_VIEW)),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LenderSubmissionDetail:
    try:
        submission = await lender_submissions.get_submission(db, submission_id)
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    return await _detail(db, submission)


@router.get(
    "/applications/{application_id}/transmission",
    response_model=TransmissionStatus,
    summary="Latest lender transmission for an application",
)
async def get_transmission_status(
    application_id: UUID,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.LENDER_VIEW)),
    db: AsyncSession = Depends(deps.get_db_session),
) -> TransmissionStatus:
    application = await load_accessible_application(db, auth, application_id)
    submission = await lender_submissions.latest_for_application(db, application.id)
    return TransmissionStatus(
        application_id=application.id,
        pipeline_state=application.pipeline_state,
        submission=await _detail(db, submission) if submission is not None else None,
    )
