import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from loan_intake.db.base import Base, JsonType, UuidType

VERSION_STATUSES = ("PENDING", "ACCEPTED", "REJECTED")


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("current_version_number >= 1", name="current_version_positive"),
        Index("ix_documents_application_type", "application_id", "document_type"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    application_id = Column(
        UuidType,
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    document_type = Column(String(100), nullable=False)
    current_version_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_versions_number"),
        CheckConstraint("version_number >= 1", name="version_number_positive"),
        CheckConstraint("status IN ('PENDING', 'ACCEPTED', 'REJECTED')", name="status"),
    )

    id = Column(UuidType, primary_key=True, default=uuid.uuid4)
    document_id = Column(
        UuidType,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    metadata_ = Column("metadata", JsonType, nullable=False, default=dict)
    content_ref = Column(String(1024), nullable=True)
    reviewed_by_user_id = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
