from loan_intake.models.application import Application
from loan_intake.models.audit_log import AuditLog
from loan_intake.models.document import Document, DocumentVersion
from loan_intake.models.idempotency_key import IdempotencyKeyRecord
from loan_intake.models.lender_submission import LenderSubmission, LenderSubmissionRetry

__all__ = [
    "Application",
    "AuditLog",
    "Document",
    "DocumentVersion",
    "IdempotencyKeyRecord",
    "LenderSubmission",
    "LenderSubmissionRetry",
]
