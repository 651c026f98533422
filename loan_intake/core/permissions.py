from enum import Enum
from typing import Iterable, List


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    USER = "user"


class Capability(str, Enum):
    # Applications
    APPLICATION_CREATE = "application.create"
    APPLICATION_VIEW_OWN = "application.view_own"
    APPLICATION_VIEW_ALL = "application.view_all"

    # Pipeline
    PIPELINE_CHANGE = "pipeline.change"
    PIPELINE_OVERRIDE = "pipeline.override"

    # Documents
    DOCUMENT_UPLOAD = "document.upload"
    DOCUMENT_REVIEW = "document.review"

    # Lender transmission
    LENDER_SUBMIT = "lender.submit"
    LENDER_VIEW = "lender.view"
    LENDER_RETRY = "lender.retry"

    @classmethod
    def list_all(cls) -> List[str]:
        return [code.value for code in cls]

    @classmethod
    def normalize(cls, values: Iterable[str]) -> List[str]:
        """Return unique capability codes that are valid members."""
        seen = set()
        normalized: list[str] = []
        for value in values:
            try:
                code = cls(value)
            except ValueError:
                continue
            if code.value not in seen:
                seen.add(code.value)
                normalized.append(code.value)
        return normalized


ROLE_DEFAULT_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.STAFF: frozenset(
        {
            Capability.APPLICATION_CREATE,
            Capability.APPLICATION_VIEW_OWN,
            Capability.APPLICATION_VIEW_ALL,
            Capability.PIPELINE_CHANGE,
            Capability.DOCUMENT_UPLOAD,
            Capability.DOCUMENT_REVIEW,
            Capability.LENDER_SUBMIT,
            Capability.LENDER_VIEW,
        }
    ),
    Role.USER: frozenset(
        {
            Capability.APPLICATION_CREATE,
            Capability.APPLICATION_VIEW_OWN,
            Capability.DOCUMENT_UPLOAD,
        }
    ),
}


def capabilities_for(role: str | None, extra: Iterable[str] = ()) -> frozenset[str]:
    try:
        defaults = ROLE_DEFAULT_CAPABILITIES[Role(role)] if role else frozenset()
    except ValueError:
        defaults = frozenset()
    return frozenset({cap.value for cap in defaults} | set(Capability.normalize(extra)))
