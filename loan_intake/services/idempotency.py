"""Generic (scope, key) de-duplication records.

The store is bound to one session and created per unit of work. The unique
constraint on ``(scope, idempotency_key)`` decides concurrent races: the loser's
flush fails, it rolls back and reads the winner's record instead.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.core.settings import settings
from loan_intake.models.idempotency_key import IdempotencyKeyRecord
from loan_intake.services.errors import StateError, ValidationError

T = TypeVar("T")

APPLICATION_CREATE_SCOPE = "application_create"
DOCUMENT_UPLOAD_SCOPE = "document_upload"


@dataclass
class IdempotentResult(Generic[T]):
    value: T
    replayed: bool = False


def validate_idempotency_key(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    max_length = settings.idempotency_key_max_length
    if len(cleaned) > max_length:
        raise ValidationError(
            code="invalid_idempotency_key",
            message="Idempotency-Key is too long",
            details={"field": "Idempotency-Key", "max_length": max_length},
        )
    return cleaned


def request_fingerprint(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IdempotencyStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def fetch(self, scope: str, key: str) -> IdempotencyKeyRecord | None:
        stmt = select(IdempotencyKeyRecord).where(
            IdempotencyKeyRecord.scope == scope,
            IdempotencyKeyRecord.idempotency_key == key,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def save(
        self,
        scope: str,
        key: str,
        *,
        actor_user_id: str | None,
        request_hash: str | None,
        status_code: int,
        response_body: dict,
    ) -> IdempotencyKeyRecord:
        record = IdempotencyKeyRecord(
            scope=scope,
            idempotency_key=key,
            actor_user_id=actor_user_id,
            request_hash=request_hash,
            status_code=status_code,
            response_body=response_body,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    @staticmethod
    def ensure_matches(
        record: IdempotencyKeyRecord,
        *,
        actor_user_id: str | None,
        request_hash: str | None,
    ) -> None:
        """A key may only be replayed by the same actor with the same request body."""
        if record.actor_user_id != actor_user_id or (
            request_hash is not None and record.request_hash != request_hash
        ):
            raise StateError(
                code="idempotency_conflict",
                message="Idempotency-Key was already used for a different request",
                details={"scope": record.scope, "idempotency_key": record.idempotency_key},
            )
