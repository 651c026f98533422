import uuid

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func

from loan_intake.db.base import Base, JsonType, UuidType


class IdempotencyKeyRecord(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("scope", "idempotency_key", name="uq_idempotency_keys_scope_key"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    scope = Column(String(64), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    actor_user_id = Column(String(255), nullable=True)
    request_hash = Column(String(64), nullable=True)
    status_code = Column(Integer, nullable=False)
    response_body = Column(JsonType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
