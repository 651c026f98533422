from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(eq=False)
class LoanIntakeError(ValueError):
    """Base for errors surfaced to callers with a stable string code."""

    code: str
    message: str
    details: dict = field(default_factory=dict)

    status_code: ClassVar[int] = 400
    # The session holds an audit entry describing the failure that must be committed.
    commit_audit: ClassVar[bool] = False

    def __str__(self) -> str:
        return self.message


class ValidationError(LoanIntakeError):
    status_code = 400


class UploadRejectedError(ValidationError):
    commit_audit = True


class AuthorizationError(LoanIntakeError):
    status_code = 403


class NotFoundError(LoanIntakeError):
    status_code = 404


class StateError(LoanIntakeError):
    status_code = 409


class InvalidTransitionError(StateError):
    status_code = 400


class InvalidStateError(StateError):
    status_code = 400


def not_found(entity: str, entity_id) -> NotFoundError:
    return NotFoundError(
        code="not_found",
        message=f"{entity} not found",
        details={"entity": entity, "id": str(entity_id)},
    )
