"""Idempotent lender submission and manual retry.

``(application_id, idempotency_key)`` is unique at the storage level. The
application row lock serialises concurrent submits for one application; the
constraint catches anything that slips past it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.core.settings import settings
from loan_intake.models.application import Application
from loan_intake.models.document import Document, DocumentVersion
from loan_intake.models.lender_submission import LenderSubmission, LenderSubmissionRetry
from loan_intake.services import applications
from loan_intake.services.audit import AuditEvent
from loan_intake.services.context import ServiceContext
from loan_intake.services.documents import evaluate_requirements
from loan_intake.services.errors import (
    InvalidStateError,
    StateError,
    ValidationError,
    not_found,
)
from loan_intake.services.idempotency import (
    IdempotentResult,
    request_fingerprint,
    validate_idempotency_key,
)
from loan_intake.services.lender_gateway import (
    GatewayRequest,
    GatewayResult,
    LenderGateway,
    call_gateway,
)
from loan_intake.services.pipeline_state import PipelineState, parse_state

logger = logging.getLogger(__name__)

SUBMITTABLE_STATES = frozenset({PipelineState.REQUIRES_DOCS, PipelineState.UNDER_REVIEW})
MISSING_DOCUMENTS = "missing_documents"


@dataclass
class RetryResult:
    retry: LenderSubmissionRetry
    submission: LenderSubmission


async def _build_packet(db: AsyncSession, application: Application, submitted_at) -> dict[str, Any]:
    stmt = (
        select(Document, DocumentVersion)
        .join(
            DocumentVersion,
            and_(
                DocumentVersion.document_id == Document.id,
                DocumentVersion.version_number == Document.current_version_number,
            ),
        )
        .where(Document.application_id == application.id, DocumentVersion.status == "ACCEPTED")
        .order_by(Document.document_type, Document.created_at)
    )
    rows = (await db.execute(stmt)).all()
    return {
        "application": {
            "id": str(application.id),
            "ownerUserId": application.owner_user_id,
            "name": application.name,
            "metadata": application.metadata_,
            "productType": application.product_type,
        },
        "documents": [
            {
                "documentId": str(document.id),
                "documentType": document.document_type,
                "title": document.title,
                "versionId": str(version.id),
                "version": version.version_number,
                "metadata": version.metadata_,
                "content": version.content_ref,
            }
            for document, version in rows
        ],
        "submittedAt": submitted_at.isoformat(),
    }


async def _find_by_key(
    db: AsyncSession, application_id, idempotency_key: str
) -> LenderSubmission | None:
    stmt = select(LenderSubmission).where(
        LenderSubmission.application_id == application_id,
        LenderSubmission.idempotency_key == idempotency_key,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def _replayed(
    ctx: ServiceContext, submission: LenderSubmission, lender_id: str
) -> IdempotentResult[LenderSubmission]:
    if submission.lender_id != lender_id:
        raise StateError(
            code="idempotency_conflict",
            message="Idempotency key was already used for a different lender",
            details={"lender_id": submission.lender_id},
        )
    ctx.audit.record(
        AuditEvent(
            action="lender_submission_replayed",
            resource_type="lender_submission",
            resource_id=submission.id,
            actor_id=ctx.actor_id,
            details={
                "application_id": str(submission.application_id),
                "status": submission.status,
            },
        )
    )
    return IdempotentResult(submission, replayed=True)


async def _advance_to_submitted(
    db: AsyncSession, ctx: ServiceContext, application: Application, *, reason: str
) -> None:
    state = parse_state(application.pipeline_state)
    if state not in SUBMITTABLE_STATES:
        return
    if state == PipelineState.REQUIRES_DOCS:
        await applications.transition(
            db, ctx, application, PipelineState.UNDER_REVIEW, reason="requirements_satisfied"
        )
    await applications.transition(
        db, ctx, application, PipelineState.LENDER_SUBMITTED, reason=reason
    )


def _apply_gateway_response(
    ctx: ServiceContext, submission: LenderSubmission, result: GatewayResult
) -> None:
    submission.lender_response = result.response
    submission.response_received_at = ctx.clock.now()
    submission.updated_at = ctx.clock.now()


async def submit(
    db: AsyncSession,
    ctx: ServiceContext,
    gateway: LenderGateway,
    *,
    application_id: Any,
    idempotency_key: str | None,
    lender_id: str,
) -> IdempotentResult[LenderSubmission]:
    idempotency_key = validate_idempotency_key(idempotency_key)
    if not idempotency_key:
        raise ValidationError(
            code="missing_fields",
            message="An idempotency key is required",
            details={"fields": ["idempotencyKey"]},
        )
    application = await applications.get_application(db, application_id, for_update=True)
    # Rollback expires the loaded application; keep the key for the recovery lookup.
    locked_id = application.id

    existing = await _find_by_key(db, locked_id, idempotency_key)
    if existing is not None:
        return _replayed(ctx, existing, lender_id)

    state = parse_state(application.pipeline_state)
    if state not in SUBMITTABLE_STATES:
        raise InvalidStateError(
            code="invalid_state",
            message="Application must be in UNDER_REVIEW or REQUIRES_DOCS to submit to lenders",
            details={"pipeline_state": state.value},
        )

    now = ctx.clock.now()
    submission = LenderSubmission(
        application_id=application.id,
        lender_id=lender_id,
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )
    evaluation = await evaluate_requirements(db, application)
    if not evaluation.complete:
        submission.status = "failed"
        submission.failure_reason = MISSING_DOCUMENTS
        submission.lender_response = {"missing_document_types": sorted(evaluation.missing)}
        result = None
    else:
        packet = await _build_packet(db, application, now)
        submission.payload = packet
        submission.payload_hash = request_fingerprint(packet)
        result = await call_gateway(
            gateway,
            GatewayRequest(
                application_id=str(application.id),
                lender_id=lender_id,
                packet=packet,
                attempt=0,
                idempotency_key=idempotency_key,
            ),
        )
        submission.status = "submitted" if result.success else "failed"
        submission.failure_reason = result.failure_reason
        _apply_gateway_response(ctx, submission, result)

    db.add(submission)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        existing = await _find_by_key(db, locked_id, idempotency_key)
        if existing is None:
            raise
        return _replayed(ctx, existing, lender_id)

    if submission.status == "submitted":
        await _advance_to_submitted(db, ctx, application, reason="lender_submission")

    ctx.audit.record(
        AuditEvent(
            action="lender_submission_created",
            resource_type="lender_submission",
            resource_id=submission.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            success=submission.status == "submitted",
            new_value={"status": submission.status, "failure_reason": submission.failure_reason},
            details={
                "application_id": str(application.id),
                "lender_id": lender_id,
                "payload_hash": submission.payload_hash,
                "gateway_called": result is not None,
            },
        )
    )
    await db.flush()
    if submission.status == "submitted":
        logger.info(
            "Lender submission created id=%s application=%s lender=%s",
            submission.id,
            application.id,
            lender_id,
        )
    else:
        logger.warning(
            "Lender submission failed id=%s application=%s lender=%s reason=%s",
            submission.id,
            application.id,
            lender_id,
            submission.failure_reason,
        )
    return IdempotentResult(submission)


async def get_submission(
    db: AsyncSession, submission_id: Any, *, for_update: bool = False
) -> LenderSubmission:
    stmt = select(LenderSubmission).where(
        LenderSubmission.id == applications.parse_id(submission_id, "lender_submission")
    )
    if for_update:
        stmt = stmt.with_for_update()
    submission = (await db.execute(stmt)).scalar_one_or_none()
    if submission is None:
        raise not_found("lender_submission", submission_id)
    return submission


async def list_retries(db: AsyncSession, submission_id: Any) -> list[LenderSubmissionRetry]:
    stmt = (
        select(LenderSubmissionRetry)
        .where(
            LenderSubmissionRetry.lender_submission_id
            == applications.parse_id(submission_id, "lender_submission")
        )
        .order_by(LenderSubmissionRetry.attempt_number)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def latest_for_application(db: AsyncSession, application_id: Any) -> LenderSubmission | None:
    stmt = (
        select(LenderSubmission)
        .where(
            LenderSubmission.application_id == applications.parse_id(application_id, "application")
        )
        .order_by(LenderSubmission.created_at.desc(), LenderSubmission.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def retry(
    db: AsyncSession,
    ctx: ServiceContext,
    gateway: LenderGateway,
    submission_id: Any,
) -> RetryResult:
    """Re-invoke the gateway once for a failed submission. Never called automatically."""
    submission = await get_submission(db, submission_id)
    # Lock order matches submit: application first, then the submission.
    application = await applications.get_application(
        db, submission.application_id, for_update=True
    )
    submission = await get_submission(db, submission.id, for_update=True)
    if submission.status != "failed":
        raise StateError(
            code="not_retryable",
            message="Only failed submissions can be retried",
            details={"submission_id": str(submission.id), "status": submission.status},
        )
    evaluation = await evaluate_requirements(db, application)
    if not evaluation.complete:
        raise StateError(
            code="not_retryable",
            message="Required documents have not been accepted",
            details={
                "submission_id": str(submission.id),
                "missing_document_types": sorted(evaluation.missing),
            },
        )
    last_attempt = await db.scalar(
        select(func.max(LenderSubmissionRetry.attempt_number)).where(
            LenderSubmissionRetry.lender_submission_id == submission.id
        )
    )
    attempt = (last_attempt or 0) + 1
    if attempt > settings.lender_retry_max_count:
        raise StateError(
            code="retry_exhausted",
            message="Retry limit reached for this submission",
            details={"max_retries": settings.lender_retry_max_count},
        )

    now = ctx.clock.now()
    packet = await _build_packet(db, application, now)
    submission.payload = packet
    submission.payload_hash = request_fingerprint(packet)
    result = await call_gateway(
        gateway,
        GatewayRequest(
            application_id=str(application.id),
            lender_id=submission.lender_id,
            packet=packet,
            attempt=attempt,
            idempotency_key=submission.idempotency_key,
        ),
    )
    retry_row = LenderSubmissionRetry(
        lender_submission_id=submission.id,
        attempt_number=attempt,
        status="submitted" if result.success else "failed",
        failure_reason=result.failure_reason,
        created_at=now,
    )
    db.add(retry_row)
    _apply_gateway_response(ctx, submission, result)
    if result.success:
        submission.status = "submitted"
        submission.failure_reason = None
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise StateError(
            code="not_retryable",
            message="A concurrent retry already recorded this attempt",
            details={"submission_id": str(submission_id), "attempt_number": attempt},
        ) from exc

    if result.success:
        await _advance_to_submitted(db, ctx, application, reason="lender_submission_retry")

    ctx.audit.record(
        AuditEvent(
            action="lender_submission_retried",
            resource_type="lender_submission",
            resource_id=submission.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            success=result.success,
            new_value={"status": retry_row.status, "failure_reason": retry_row.failure_reason},
            details={
                "application_id": str(application.id),
                "lender_id": submission.lender_id,
                "attempt_number": attempt,
            },
        )
    )
    await db.flush()
    logger.info(
        "Lender submission retried id=%s attempt=%s success=%s reason=%s",
        submission.id,
        attempt,
        result.success,
        result.failure_reason,
    )
    return RetryResult(retry=retry_row, submission=submission)
