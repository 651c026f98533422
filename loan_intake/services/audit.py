from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Protocol
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from loan_intake.core.context import get_request_id
from loan_intake.core.logging import get_audit_logger
from loan_intake.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
            UUID: lambda v: str(v),
        },
    )


def model_snapshot(model: Any, *, exclude: Iterable[str] | None = None) -> dict[str, Any]:
    if model is None:
        return {}
    excluded = set(exclude or [])
    data: dict[str, Any] = {}
    for attr in model.__mapper__.column_attrs:
        column = attr.columns[0]
        if column.name in excluded:
            continue
        data[column.name] = getattr(model, attr.key)
    return serialize_for_audit(data)


def _diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    if isinstance(old, dict) and isinstance(new, dict):
        keys = set(old.keys()) | set(new.keys())
        for key in sorted(keys, key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            changes.update(_diff_values(old.get(key), new.get(key), path))
        return changes
    if old != new:
        changes[prefix or "value"] = {"from": old, "to": new}
    return changes


def _build_summary(action: str, success: bool, changes: dict[str, dict[str, Any]] | None) -> str:
    label = action if success else f"{action} (failed)"
    if not changes:
        return label
    keys = list(changes.keys())
    snippet = ", ".join(keys[:3])
    suffix = "..." if len(keys) > 3 else ""
    return f"{label}: {snippet}{suffix}"


@dataclass
class AuditEvent:
    action: str
    resource_type: str
    resource_id: Any = None
    actor_id: str | None = None
    success: bool = True
    target_user_id: str | None = None
    old_value: Any | None = None
    new_value: Any | None = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class DatabaseAuditSink:
    """Writes audit rows into the caller's session so they share its transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def record(self, event: AuditEvent) -> AuditLog:
        serialized_old = serialize_for_audit(event.old_value) if event.old_value is not None else None
        serialized_new = serialize_for_audit(event.new_value) if event.new_value is not None else None
        changes = None
        if serialized_old is not None or serialized_new is not None:
            changes = _diff_values(serialized_old or {}, serialized_new or {})
            if not changes:
                changes = None
        details = serialize_for_audit(event.details) if event.details else None
        request_id = get_request_id()
        entry = AuditLog(
            actor_id=event.actor_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=str(event.resource_id) if event.resource_id is not None else None,
            target_user_id=event.target_user_id,
            success=event.success,
            old_value=serialized_old,
            new_value=serialized_new,
            changes=changes,
            summary=_build_summary(event.action, event.success, changes),
            details=details,
            request_id=None if request_id == "-" else request_id,
        )
        self.db.add(entry)
        get_audit_logger().info(
            entry.summary,
            extra={
                "event": {
                    "action": event.action,
                    "resource_type": event.resource_type,
                    "resource_id": entry.resource_id,
                    "actor_id": event.actor_id,
                    "success": event.success,
                    "details": details,
                }
            },
        )
        return entry
