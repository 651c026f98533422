import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Index, String, func

from loan_intake.db.base import Base, JsonType, UuidType

PIPELINE_STATES = (
    "NEW",
    "REQUIRES_DOCS",
    "UNDER_REVIEW",
    "LENDER_SUBMITTED",
    "APPROVED",
    "DECLINED",
)


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        CheckConstraint(
            "pipeline_state IN ('NEW', 'REQUIRES_DOCS', 'UNDER_REVIEW', 'LENDER_SUBMITTED', 'APPROVED', 'DECLINED')",
            name="pipeline_state",
        ),
        Index("ix_applications_owner_created", "owner_user_id", "created_at"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    # "metadata" is reserved on declarative classes.
    metadata_ = Column("metadata", JsonType, nullable=False, default=dict)
    product_type = Column(String(50), nullable=False, default="standard")
    pipeline_state = Column(String(30), nullable=False, default="NEW", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
