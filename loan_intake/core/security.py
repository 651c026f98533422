from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from jose import JWTError, jwt

from loan_intake.core.settings import settings


def _signing_key() -> str:
    return settings.secret_key


def _verification_key() -> str:
    if settings.jwt_algorithm.startswith(("RS", "ES")):
        if not settings.jwt_public_key:
            raise ValueError("JWT public key not configured")
        return settings.jwt_public_key
    return settings.secret_key


def create_access_token(
    subject: str,
    *,
    role: str,
    capabilities: Iterable[str] = (),
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode: dict[str, Any] = {
        "sub": subject,
        "exp": expire,
        "type": "access",
        "role": role,
        "caps": list(capabilities),
    }
    return jwt.encode(to_encode, _signing_key(), algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str | None = None) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, _verification_key(), algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if expected_type and payload.get("type") != expected_type:
        raise ValueError(f"Unexpected token type: {payload.get('type')}")
    return payload
