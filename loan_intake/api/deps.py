from dataclasses import dataclass
from typing import NoReturn

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.core.context import set_actor_id
from loan_intake.core.permissions import Capability, capabilities_for
from loan_intake.core.security import decode_token
from loan_intake.db.session import get_db
from loan_intake.services import authz
from loan_intake.services.clock import Clock, SystemClock
from loan_intake.services.context import ServiceContext
from loan_intake.services.errors import LoanIntakeError
from loan_intake.services.lender_gateway import LenderGateway, get_lender_gateway


@dataclass(slots=True)
class AuthContext:
    user_id: str
    role: str | None
    capabilities: frozenset[str]

    def has(self, capability: Capability) -> bool:
        return authz.has_capability(self, capability)


bearer_scheme = HTTPBearer(auto_error=False)


async def get_db_session(db: AsyncSession = Depends(get_db)) -> AsyncSession:
    return db


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = decode_token(credentials.credentials, expected_type="access")
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    user_sub = payload.get("sub")
    if not user_sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    role = payload.get("role")
    auth = AuthContext(
        user_id=str(user_sub),
        role=role,
        capabilities=capabilities_for(role, payload.get("caps") or ()),
    )
    set_actor_id(auth.user_id)
    return auth


def require_capability(capability: Capability):
    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not auth.has(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "forbidden",
                    "message": f"Missing capability: {capability.value}",
                    "details": {"capability": capability.value},
                },
            )
        return auth

    return dependency


def get_clock() -> Clock:
    return SystemClock()


def get_gateway() -> LenderGateway:
    return get_lender_gateway()


async def get_service_context(
    db: AsyncSession = Depends(get_db_session),
    auth: AuthContext = Depends(get_auth_context),
    clock: Clock = Depends(get_clock),
) -> ServiceContext:
    return ServiceContext.for_session(db, auth.user_id, clock)


async def raise_service_error(db: AsyncSession, exc: LoanIntakeError) -> NoReturn:
    """End the unit of work for a failed service call and surface the error.

    Rejections that carry an audit entry are committed; everything else rolls back.
    """
    if exc.commit_audit:
        await db.commit()
    else:
        await db.rollback()
    raise HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message, "details": exc.details},
    ) from exc
