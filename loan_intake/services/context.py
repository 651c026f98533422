from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.services.audit import AuditSink, DatabaseAuditSink
from loan_intake.services.clock import Clock, SystemClock
from loan_intake.services.idempotency import IdempotencyStore


@dataclass
class ServiceContext:
    """Collaborators shared by the services for a single unit of work."""

    actor_id: str | None
    audit: AuditSink
    idempotency: IdempotencyStore
    clock: Clock = field(default_factory=SystemClock)

    @classmethod
    def for_session(
        cls, db: AsyncSession, actor_id: str | None, clock: Clock | None = None
    ) -> "ServiceContext":
        return cls(
            actor_id=actor_id,
            audit=DatabaseAuditSink(db),
            idempotency=IdempotencyStore(db),
            clock=clock or SystemClock(),
        )
