import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from loan_intake.db.base import Base, JsonType, UuidType

SUBMISSION_STATUSES = ("submitted", "failed")


class LenderSubmission(Base):
    __tablename__ = "lender_submissions"
    __table_args__ = (
        UniqueConstraint(
            "application_id", "idempotency_key", name="uq_lender_submissions_idempotency"
        ),
        CheckConstraint("status IN ('submitted', 'failed')", name="status"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    application_id = Column(
        UuidType,
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lender_id = Column(String(100), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    failure_reason = Column(String(100), nullable=True)
    payload = Column(JsonType, nullable=True)
    payload_hash = Column(String(64), nullable=True)
    lender_response = Column(JsonType, nullable=True)
    response_received_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class LenderSubmissionRetry(Base):
    __tablename__ = "lender_submission_retries"
    __table_args__ = (
        UniqueConstraint(
            "lender_submission_id", "attempt_number", name="uq_lender_submission_retries_attempt"
        ),
        CheckConstraint("attempt_number >= 1", name="attempt_number_positive"),
        CheckConstraint("status IN ('submitted', 'failed')", name="status"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    lender_submission_id = Column(
        UuidType,
        ForeignKey("lender_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    failure_reason = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
