from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.models.application import Application
from loan_intake.services import requirements_policy
from loan_intake.services.audit import AuditEvent, model_snapshot
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import InvalidTransitionError, ValidationError, not_found
from loan_intake.services.idempotency import (
    APPLICATION_CREATE_SCOPE,
    IdempotentResult,
    request_fingerprint,
    validate_idempotency_key,
)
from loan_intake.services.pipeline_state import (
    PipelineState,
    attempt_requested_transition,
    attempt_transition,
    initial_state,
    parse_state,
)

logger = logging.getLogger(__name__)


def pipeline_states() -> list[str]:
    return [state.value for state in PipelineState]


def parse_id(value: Any, entity: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise not_found(entity, value) from exc


async def get_application(
    db: AsyncSession, application_id: Any, *, for_update: bool = False
) -> Application:
    stmt = select(Application).where(Application.id == parse_id(application_id, "application"))
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    application = result.scalar_one_or_none()
    if application is None:
        raise not_found("application", application_id)
    return application


async def list_applications(
    db: AsyncSession, *, owner_user_id: str | None = None, limit: int = 50, offset: int = 0
) -> list[Application]:
    stmt = select(Application).order_by(Application.created_at.desc(), Application.id)
    if owner_user_id is not None:
        stmt = stmt.where(Application.owner_user_id == owner_user_id)
    result = await db.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


async def list_for_owner(db: AsyncSession, owner_user_id: str) -> list[Application]:
    return await list_applications(db, owner_user_id=owner_user_id)


def _record_state_change(
    ctx: ServiceContext,
    application: Application,
    *,
    old_state: str,
    new_state: str,
    success: bool,
    override_granted: bool,
    reason: str | None,
) -> None:
    ctx.audit.record(
        AuditEvent(
            action="pipeline_state_changed",
            resource_type="application",
            resource_id=application.id,
            actor_id=ctx.actor_id,
            target_user_id=application.owner_user_id,
            success=success,
            old_value={"pipeline_state": old_state},
            new_value={"pipeline_state": new_state},
            details={"override": override_granted, "reason": reason},
        )
    )


async def transition(
    db: AsyncSession,
    ctx: ServiceContext,
    application: Application,
    requested: str | PipelineState,
    *,
    override_granted: bool = False,
    explicit: bool = False,
    reason: str | None = None,
) -> PipelineState:
    """Move an application to ``requested`` and audit the change.

    ``explicit`` marks a human request; those may not enter the states that are
    only ever reached automatically unless an override is granted.
    """
    current = parse_state(application.pipeline_state)
    target = parse_state(requested)
    attempt = attempt_requested_transition if explicit else attempt_transition
    try:
        next_state = attempt(current, target, override_granted)
    except InvalidTransitionError:
        logger.info(
            "Rejected pipeline transition application=%s from=%s to=%s",
            application.id,
            current.value,
            target.value,
        )
        _record_state_change(
            ctx,
            application,
            old_state=current.value,
            new_state=target.value,
            success=False,
            override_granted=override_granted,
            reason=reason,
        )
        raise

    application.pipeline_state = next_state.value
    application.updated_at = ctx.clock.now()
    _record_state_change(
        ctx,
        application,
        old_state=current.value,
        new_state=next_state.value,
        success=True,
        override_granted=override_granted,
        reason=reason,
    )
    if override_granted:
        ctx.audit.record(
            AuditEvent(
                action="admin_override",
                resource_type="application",
                resource_id=application.id,
                actor_id=ctx.actor_id,
                target_user_id=application.owner_user_id,
                old_value={"pipeline_state": current.value},
                new_value={"pipeline_state": next_state.value},
                details={"reason": reason},
            )
        )
    await db.flush()
    logger.info(
        "Pipeline transition application=%s from=%s to=%s override=%s",
        application.id,
        current.value,
        next_state.value,
        override_granted,
    )
    return next_state


async def _replay_creation(
    db: AsyncSession, ctx: ServiceContext, key: str, request_hash: str
) -> IdempotentResult[Application] | None:
    record = await ctx.idempotency.fetch(APPLICATION_CREATE_SCOPE, key)
    if record is None:
        return None
    ctx.idempotency.ensure_matches(record, actor_user_id=ctx.actor_id, request_hash=request_hash)
    application = await get_application(db, record.response_body["application_id"])
    return IdempotentResult(application, replayed=True)


async def create_application(
    db: AsyncSession,
    ctx: ServiceContext,
    *,
    owner_user_id: str,
    name: str,
    metadata: dict | None = None,
    product_type: str = requirements_policy.DEFAULT_PRODUCT_TYPE,
    idempotency_key: str | None = None,
) -> IdempotentResult[Application]:
    idempotency_key = validate_idempotency_key(idempotency_key)
    if not requirements_policy.is_supported_product_type(product_type):
        raise ValidationError(
            code="invalid_product_type",
            message="Unsupported product type",
            details={"product_type": product_type},
        )
    metadata = metadata or {}
    request_hash = request_fingerprint(
        {"owner": owner_user_id, "name": name, "metadata": metadata, "product_type": product_type}
    )
    if idempotency_key:
        replay = await _replay_creation(db, ctx, idempotency_key, request_hash)
        if replay is not None:
            return replay

    now = ctx.clock.now()
    application = Application(
        owner_user_id=owner_user_id,
        name=name,
        metadata_=metadata,
        product_type=product_type,
        pipeline_state=PipelineState.NEW.value,
        created_at=now,
        updated_at=now,
    )
    db.add(application)
    await db.flush()
    ctx.audit.record(
        AuditEvent(
            action="application_created",
            resource_type="application",
            resource_id=application.id,
            actor_id=ctx.actor_id,
            target_user_id=owner_user_id,
            new_value=model_snapshot(application),
        )
    )
    # A fresh application has no documents, so it starts complete only when
    # its product requires none.
    all_required_accepted = not requirements_policy.required_types(product_type)
    await transition(
        db,
        ctx,
        application,
        initial_state(all_required_accepted),
        reason="created",
    )
    if idempotency_key:
        try:
            await ctx.idempotency.save(
                APPLICATION_CREATE_SCOPE,
                idempotency_key,
                actor_user_id=ctx.actor_id,
                request_hash=request_hash,
                status_code=201,
                response_body={"application_id": str(application.id)},
            )
        except IntegrityError:
            await db.rollback()
            replay = await _replay_creation(db, ctx, idempotency_key, request_hash)
            if replay is not None:
                return replay
            raise
    logger.info("Application created id=%s owner=%s", application.id, owner_user_id)
    return IdempotentResult(application)


async def change_state(
    db: AsyncSession,
    ctx: ServiceContext,
    application_id: Any,
    requested_state: str,
    *,
    override_granted: bool = False,
    reason: str | None = None,
) -> Application:
    requested = parse_state(requested_state)
    application = await get_application(db, application_id, for_update=True)
    await transition(
        db,
        ctx,
        application,
        requested,
        override_granted=override_granted,
        explicit=True,
        reason=reason,
    )
    return application
