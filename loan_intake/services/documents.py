from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.core.settings import settings
from loan_intake.models.application import Application
from loan_intake.models.document import Document, DocumentVersion
from loan_intake.services import applications, requirements_policy
from loan_intake.services.audit import AuditEvent
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import (
    StateError,
    UploadRejectedError,
    ValidationError,
    not_found,
)
from loan_intake.services.idempotency import (
    DOCUMENT_UPLOAD_SCOPE,
    IdempotentResult,
    request_fingerprint,
    validate_idempotency_key,
)
from loan_intake.services.pipeline_state import REVIEW_FROZEN_STATES, PipelineState, parse_state

logger = logging.getLogger(__name__)

REQUIRED_METADATA_FIELDS: dict[str, tuple[type, ...]] = {
    "fileName": (str,),
    "mimeType": (str,),
    "size": (int, float),
}

DECISIONS = {"accept": "ACCEPTED", "reject": "REJECTED"}


@dataclass(frozen=True)
class RequirementsEvaluation:
    required: frozenset[str]
    satisfied: frozenset[str]
    missing: frozenset[str] = field(default_factory=frozenset)

    @property
    def complete(self) -> bool:
        return not self.missing


@dataclass
class UploadedVersion:
    document: Document
    version: DocumentVersion


@dataclass
class DocumentHistory:
    document: Document
    versions: list[DocumentVersion]


async def evaluate_requirements(db: AsyncSession, application: Application) -> RequirementsEvaluation:
    """A required type is satisfied when one of its documents has an accepted current version."""
    # autoflush is off; pending review decisions must be visible to the query.
    await db.flush()
    required = requirements_policy.required_types(application.product_type)
    stmt = (
        select(Document.document_type)
        .join(
            DocumentVersion,
            and_(
                DocumentVersion.document_id == Document.id,
                DocumentVersion.version_number == Document.current_version_number,
            ),
        )
        .where(
            Document.application_id == application.id,
            DocumentVersion.status == "ACCEPTED",
        )
    )
    result = await db.execute(stmt)
    accepted = set(result.scalars().all())
    satisfied = frozenset(required & accepted)
    return RequirementsEvaluation(
        required=required,
        satisfied=satisfied,
        missing=frozenset(required - satisfied),
    )


def _reject_upload(
    ctx: ServiceContext,
    application: Application,
    *,
    code: str,
    message: str,
    details: dict[str, Any],
) -> UploadRejectedError:
    ctx.audit.record(
        AuditEvent(
            action="document_upload_rejected",
            resource_type="application",
            resource_id=application.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            success=False,
            details={"reason": code, **details},
        )
    )
    logger.info("Document upload rejected application=%s reason=%s", application.id, code)
    return UploadRejectedError(code=code, message=message, details=details)


def _validate_metadata(ctx: ServiceContext, application: Application, metadata: Any) -> dict:
    if not isinstance(metadata, dict):
        raise _reject_upload(
            ctx,
            application,
            code="invalid_metadata",
            message="Document metadata must be an object",
            details={},
        )
    missing = [
        name
        for name, kinds in REQUIRED_METADATA_FIELDS.items()
        if not isinstance(metadata.get(name), kinds) or isinstance(metadata.get(name), bool)
    ]
    if missing:
        raise _reject_upload(
            ctx,
            application,
            code="missing_fields",
            message="Document metadata is incomplete",
            details={"fields": missing},
        )
    return metadata


async def _load_document(
    db: AsyncSession, application: Application, document_id: Any
) -> Document:
    document_uuid = applications.parse_id(document_id, "document")
    stmt = (
        select(Document)
        .where(Document.id == document_uuid, Document.application_id == application.id)
        .with_for_update()
    )
    result = await db.execute(stmt)
    document = result.scalar_one_or_none()
    if document is None:
        raise not_found("document", document_id)
    return document


async def _replay_upload(
    db: AsyncSession, ctx: ServiceContext, key: str, request_hash: str
) -> IdempotentResult[UploadedVersion] | None:
    record = await ctx.idempotency.fetch(DOCUMENT_UPLOAD_SCOPE, key)
    if record is None:
        return None
    ctx.idempotency.ensure_matches(record, actor_user_id=ctx.actor_id, request_hash=request_hash)
    body = record.response_body
    version = await get_version(db, body["document_id"], body["version_id"])
    document = await db.get(Document, version.document_id)
    return IdempotentResult(UploadedVersion(document, version), replayed=True)


async def upload_document(
    db: AsyncSession,
    ctx: ServiceContext,
    application_id: Any,
    *,
    title: str,
    document_type: str | None,
    metadata: Any,
    content_ref: str | None = None,
    document_id: Any = None,
    idempotency_key: str | None = None,
) -> IdempotentResult[UploadedVersion]:
    idempotency_key = validate_idempotency_key(idempotency_key)
    application = await applications.get_application(db, application_id)
    request_hash = request_fingerprint(
        {
            "application_id": str(application.id),
            "document_id": str(document_id) if document_id else None,
            "title": title,
            "document_type": document_type,
            "metadata": metadata,
            "content_ref": content_ref,
        }
    )
    if idempotency_key:
        replay = await _replay_upload(db, ctx, idempotency_key, request_hash)
        if replay is not None:
            return replay

    metadata = _validate_metadata(ctx, application, metadata)

    document: Document | None = None
    if document_id is not None:
        document = await _load_document(db, application, document_id)
        if document_type is not None and document_type != document.document_type:
            raise _reject_upload(
                ctx,
                application,
                code="document_type_mismatch",
                message="Document type does not match the existing document",
                details={"expected": document.document_type, "received": document_type},
            )
        document_type = document.document_type

    requirement = (
        requirements_policy.requirement_for(application.product_type, document_type)
        if document_type
        else None
    )
    if requirement is None:
        raise _reject_upload(
            ctx,
            application,
            code="invalid_document_type",
            message="Document type is not allowed",
            details={
                "document_type": document_type,
                "allowed": requirements_policy.allowed_document_types(application.product_type),
            },
        )

    allowed_mime_types = requirements_policy.allowed_mime_types(
        application.product_type, document_type
    )
    if metadata["mimeType"] not in allowed_mime_types:
        raise _reject_upload(
            ctx,
            application,
            code="invalid_mime_type",
            message="Unsupported document mime type",
            details={"mime_type": metadata["mimeType"], "allowed": sorted(allowed_mime_types)},
        )
    if metadata["size"] > settings.document_max_size_bytes:
        raise _reject_upload(
            ctx,
            application,
            code="document_too_large",
            message="Document exceeds the maximum size",
            details={"size": metadata["size"], "max_size": settings.document_max_size_bytes},
        )

    if document is None and not requirement.multiple_allowed:
        existing_stmt = select(Document.id).where(
            Document.application_id == application.id,
            Document.document_type == document_type,
        )
        existing_id = (await db.execute(existing_stmt)).scalars().first()
        if existing_id is not None:
            raise _reject_upload(
                ctx,
                application,
                code="document_duplicate",
                message="Only one document of this type is allowed; upload a new version instead",
                details={"document_type": document_type, "document_id": str(existing_id)},
            )

    now = ctx.clock.now()
    if document is None:
        document = Document(
            application_id=application.id,
            title=title,
            document_type=document_type,
            current_version_number=1,
            created_at=now,
        )
        db.add(document)
        await db.flush()
    else:
        # Row lock held by _load_document serialises the counter.
        document.current_version_number = document.current_version_number + 1

    version = DocumentVersion(
        document_id=document.id,
        version_number=document.current_version_number,
        status="PENDING",
        metadata_=metadata,
        content_ref=content_ref,
        created_at=now,
    )
    db.add(version)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise StateError(
            code="version_conflict",
            message="Another upload claimed this version number",
            details={"document_id": str(document.id)},
        ) from exc

    ctx.audit.record(
        AuditEvent(
            action="document_uploaded",
            resource_type="document",
            resource_id=document.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            new_value={
                "document_type": document_type,
                "version_id": str(version.id),
                "version_number": version.version_number,
            },
            details={"application_id": str(application.id)},
        )
    )
    if idempotency_key:
        try:
            await ctx.idempotency.save(
                DOCUMENT_UPLOAD_SCOPE,
                idempotency_key,
                actor_user_id=ctx.actor_id,
                request_hash=request_hash,
                status_code=201,
                response_body={"document_id": str(document.id), "version_id": str(version.id)},
            )
        except IntegrityError:
            await db.rollback()
            replay = await _replay_upload(db, ctx, idempotency_key, request_hash)
            if replay is not None:
                return replay
            raise
    logger.info(
        "Document uploaded application=%s document=%s version=%s",
        application.id,
        document.id,
        version.version_number,
    )
    return IdempotentResult(UploadedVersion(document, version))


async def get_version(db: AsyncSession, document_id: Any, version_id: Any) -> DocumentVersion:
    stmt = select(DocumentVersion).where(
        DocumentVersion.id == applications.parse_id(version_id, "document_version"),
        DocumentVersion.document_id == applications.parse_id(document_id, "document"),
    )
    result = await db.execute(stmt)
    version = result.scalar_one_or_none()
    if version is None:
        raise not_found("document_version", version_id)
    return version


async def list_documents(db: AsyncSession, application_id: Any) -> list[DocumentHistory]:
    application_uuid = applications.parse_id(application_id, "application")
    documents_result = await db.execute(
        select(Document)
        .where(Document.application_id == application_uuid)
        .order_by(Document.created_at, Document.id)
    )
    documents = list(documents_result.scalars().all())
    if not documents:
        return []
    versions_result = await db.execute(
        select(DocumentVersion)
        .where(DocumentVersion.document_id.in_([doc.id for doc in documents]))
        .order_by(DocumentVersion.version_number)
    )
    by_document: dict[Any, list[DocumentVersion]] = {doc.id: [] for doc in documents}
    for version in versions_result.scalars().all():
        by_document[version.document_id].append(version)
    return [DocumentHistory(doc, by_document[doc.id]) for doc in documents]


async def review_version(
    db: AsyncSession,
    ctx: ServiceContext,
    application_id: Any,
    document_id: Any,
    version_id: Any,
    decision: str,
) -> DocumentVersion:
    status = DECISIONS.get(decision)
    if status is None:
        raise ValidationError(
            code="invalid_decision",
            message="Decision must be accept or reject",
            details={"decision": decision, "allowed": sorted(DECISIONS)},
        )
    application = await applications.get_application(db, application_id, for_update=True)
    document = await _load_document(db, application, document_id)
    version_stmt = (
        select(DocumentVersion)
        .where(
            DocumentVersion.id == applications.parse_id(version_id, "document_version"),
            DocumentVersion.document_id == document.id,
        )
        .with_for_update()
    )
    version = (await db.execute(version_stmt)).scalar_one_or_none()
    if version is None:
        raise not_found("document_version", version_id)
    if version.status != "PENDING":
        raise StateError(
            code="already_reviewed",
            message="Document version has already been reviewed",
            details={"version_id": str(version.id), "status": version.status},
        )
    if version.version_number != document.current_version_number:
        raise StateError(
            code="version_superseded",
            message="Only the current document version can be reviewed",
            details={
                "version_number": version.version_number,
                "current_version_number": document.current_version_number,
            },
        )

    version.status = status
    version.reviewed_by_user_id = ctx.actor_id
    version.reviewed_at = ctx.clock.now()

    evaluation = await evaluate_requirements(db, application)
    state = parse_state(application.pipeline_state)
    if state not in REVIEW_FROZEN_STATES:
        if state == PipelineState.REQUIRES_DOCS and evaluation.complete:
            await applications.transition(
                db, ctx, application, PipelineState.UNDER_REVIEW, reason="requirements_satisfied"
            )
        elif state == PipelineState.UNDER_REVIEW and not evaluation.complete:
            await applications.transition(
                db, ctx, application, PipelineState.REQUIRES_DOCS, reason="requirements_missing"
            )

    ctx.audit.record(
        AuditEvent(
            action="document_accepted" if status == "ACCEPTED" else "document_rejected",
            resource_type="document_version",
            resource_id=version.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            old_value={"status": "PENDING"},
            new_value={"status": status},
            details={
                "application_id": str(application.id),
                "document_id": str(document.id),
                "missing": sorted(evaluation.missing),
            },
        )
    )
    await db.flush()
    logger.info(
        "Document version reviewed version=%s decision=%s pipeline_state=%s",
        version.id,
        status,
        application.pipeline_state,
    )
    return version
