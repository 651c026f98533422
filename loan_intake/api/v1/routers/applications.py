from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.api import deps
from loan_intake.core.permissions import Capability
from loan_intake.models.application import Application
from loan_intake.schemas.applications import (
    ApplicationCreate,
    ApplicationListResponse,
    ApplicationOut,
    PipelineChangeRequest,
    PipelineStatesResponse,
)
from loan_intake.services import applications, authz
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import LoanIntakeError

router = APIRouter(prefix="/applications", tags=["applications"])

REPLAY_HEADER = "Idempotent-Replayed"


async def load_accessible_application(
    db: AsyncSession, auth: deps.AuthContext, application_id: UUID, *, for_update: bool = False
) -> Application:
    try:
        application = await applications.get_application(db, application_id, for_update=for_update)
        authz.ensure_application_access(auth, application)
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    return application


@router.post(
    "",
    response_model=ApplicationOut,
    status_code=201,
    summary="Create a loan application",
)
async def create_application(
    payload: ApplicationCreate,
    response: Response,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.APPLICATION_CREATE)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    db: AsyncSession = Depends(deps.get_db_session),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ApplicationOut:
    try:
        result = await applications.create_application(
            db,
            ctx,
            owner_user_id=auth.user_id,
            name=payload.name,
            metadata=payload.metadata,
            product_type=payload.product_type,
            idempotency_key=idempotency_key,
        )
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers[REPLAY_HEADER] = "true"
    return ApplicationOut.model_validate(result.value)


@router.get("", response_model=ApplicationListResponse, summary="List loan applications")
async def list_applications(
    owner_user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: deps.AuthContext = Depends(deps.get_auth_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ApplicationListResponse:
    if auth.has(Capability.APPLICATION_VIEW_ALL):
        owner_filter = owner_user_id
    elif auth.has(Capability.APPLICATION_VIEW_OWN):
        owner_filter = auth.user_id
    else:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "forbidden", "message": "Not allowed to list applications"},
        )
    items = await applications.list_applications(
        db, owner_user_id=owner_filter, limit=limit, offset=offset
    )
    return ApplicationListResponse(
        items=[ApplicationOut.model_validate(item) for item in items],
        total=len(items),
    )


@router.get(
    "/pipeline-states",
    response_model=PipelineStatesResponse,
    summary="List pipeline states",
)
async def list_pipeline_states(
    auth: deps.AuthContext = Depends(deps.get_auth_context),
) -> PipelineStatesResponse:
    return PipelineStatesResponse(states=applications.pipeline_states())


@router.get("/{application_id}", response_model=ApplicationOut, summary="Get a loan application")
async def get_application(
    application_id: UUID,
    auth: deps.AuthContext = Depends(deps.get_auth_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ApplicationOut:
    application = await load_accessible_application(db, auth, application_id)
    return ApplicationOut.model_validate(application)


@router.post(
    "/{application_id}/pipeline",
    response_model=ApplicationOut,
    summary="Change the pipeline state of an application",
)
async def change_pipeline_state(
    application_id: UUID,
    payload: PipelineChangeRequest,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.PIPELINE_CHANGE)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ApplicationOut:
    if payload.override and not auth.has(Capability.PIPELINE_OVERRIDE):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "forbidden",
                "message": "Override requires the pipeline.override capability",
                "details": {"capability": Capability.PIPELINE_OVERRIDE.value},
            },
        )
    try:
        application = await applications.change_state(
            db,
            ctx,
            application_id,
            payload.state,
            override_granted=payload.override,
            reason=payload.reason,
        )
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    return ApplicationOut.model_validate(application)
