from typing import TYPE_CHECKING

from loan_intake.core.permissions import Capability
from loan_intake.models.application import Application
from loan_intake.services.errors import AuthorizationError

if TYPE_CHECKING:
    from loan_intake.api.deps import AuthContext


def has_capability(auth: "AuthContext", capability: Capability | str) -> bool:
    code = capability.value if isinstance(capability, Capability) else capability
    return code in auth.capabilities


def can_access_application(auth: "AuthContext", application: Application) -> bool:
    """Owners see their own applications; staff and admins see all of them."""
    if has_capability(auth, Capability.APPLICATION_VIEW_ALL):
        return True
    return (
        has_capability(auth, Capability.APPLICATION_VIEW_OWN)
        and application.owner_user_id == auth.user_id
    )


def ensure_application_access(auth: "AuthContext", application: Application) -> None:
    if not can_access_application(auth, application):
        raise AuthorizationError(
            code="forbidden",
            message="Not allowed to access this application",
            details={"application_id": str(application.id)},
        )
