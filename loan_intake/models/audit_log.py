import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, String, func

from loan_intake.db.base import Base, JsonType, UuidType


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_resource", "resource_type", "resource_id"),)

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    actor_id = Column(String(255), nullable=True)
    action = Column(String(255), nullable=False, index=True)
    resource_type = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True)
    target_user_id = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    old_value = Column(JsonType, nullable=True)
    new_value = Column(JsonType, nullable=True)
    changes = Column(JsonType, nullable=True)
    summary = Column(String(512), nullable=True)
    details = Column(JsonType, nullable=True)
    request_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
