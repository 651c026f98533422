from uuid import UUID

from fastapi import APIRouter, Depends, Header, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.api import deps
from loan_intake.api.v1.routers.applications import REPLAY_HEADER, load_accessible_application
from loan_intake.core.permissions import Capability
from loan_intake.schemas.documents import (
    DocumentListResponse,
    DocumentOut,
    DocumentUploadRequest,
    DocumentUploadResponse,
    DocumentVersionOut,
    DocumentWithVersions,
    RequirementsResponse,
)
from loan_intake.services import documents
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import LoanIntakeError

router = APIRouter(prefix="/applications/{application_id}", tags=["documents"])


@router.post(
    "/documents",
    response_model=DocumentUploadResponse,
    status_code=201,
    summary="Upload a document or a new version of an existing document",
)
async def upload_document(
    application_id: UUID,
    payload: DocumentUploadRequest,
    response: Response,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.DOCUMENT_UPLOAD)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    db: AsyncSession = Depends(deps.get_db_session),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> DocumentUploadResponse:
    await load_accessible_application(db, auth, application_id)
    try:
        result = await documents.upload_document(
            db,
            ctx,
            application_id,
            title=payload.title,
            document_type=payload.document_type,
            metadata=payload.metadata,
            content_ref=payload.content_ref,
            document_id=payload.document_id,
            idempotency_key=idempotency_key,
        )
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers[REPLAY_HEADER] = "true"
    return DocumentUploadResponse(
        document=DocumentOut.model_validate(result.value.document),
        version=DocumentVersionOut.model_validate(result.value.version),
    )


@router.get("/documents", response_model=DocumentListResponse, summary="List documents and versions")
async def list_documents(
    application_id: UUID,
    auth: deps.AuthContext = Depends(deps.get_auth_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> DocumentListResponse:
    await load_accessible_application(db, auth, application_id)
    histories = await documents.list_documents(db, application_id)
    return DocumentListResponse(
        items=[
            DocumentWithVersions(
                **DocumentOut.model_validate(history.document).model_dump(),
                versions=[DocumentVersionOut.model_validate(v) for v in history.versions],
            )
            for history in histories
        ]
    )


@router.get(
    "/requirements",
    response_model=RequirementsResponse,
    summary="Required document types and their satisfaction",
)
async def get_requirements(
    application_id: UUID,
    auth: deps.AuthContext = Depends(deps.get_auth_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> RequirementsResponse:
    application = await load_accessible_application(db, auth, application_id)
    evaluation = await documents.evaluate_requirements(db, application)
    return RequirementsResponse(
        product_type=application.product_type,
        required=sorted(evaluation.required),
        satisfied=sorted(evaluation.satisfied),
        missing=sorted(evaluation.missing),
        complete=evaluation.complete,
    )


async def _review(
    decision: str,
    application_id: UUID,
    document_id: UUID,
    version_id: UUID,
    ctx: ServiceContext,
    db: AsyncSession,
) -> DocumentVersionOut:
    try:
        version = await documents.review_version(
            db, ctx, application_id, document_id, version_id, decision
        )
    except LoanIntakeError as exc:
        await deps.raise_service_error(db, exc)
    await db.commit()
    return DocumentVersionOut.model_validate(version)


@router.post(
    "/documents/{document_id}/versions/{version_id}/accept",
    response_model=DocumentVersionOut,
    summary="Accept a pending document version",
)
async def accept_version(
    application_id: UUID,
    document_id: UUID,
    version_id: UUID,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.DOCUMENT_REVIEW)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> DocumentVersionOut:
    return await _review("accept", application_id, document_id, version_id, ctx, db)


@router.post(
    "/documents/{document_id}/versions/{version_id}/reject",
    response_model=DocumentVersionOut,
    summary="Reject a pending document version",
)
async def reject_version(
    application_id: UUID,
    document_id: UUID,
    version_id: UUID,
    auth: deps.AuthContext = Depends(deps.require_capability(Capability.DOCUMENT_REVIEW)),
    ctx: ServiceContext = Depends(deps.get_service_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> DocumentVersionOut:
    return await _review("reject", application_id, document_id, version_id, ctx, db)
