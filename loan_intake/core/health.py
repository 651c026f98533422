from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text

from loan_intake.core.settings import settings
from loan_intake.db.session import engine

APP_VERSION = "0.1.0"


async def _check_db() -> dict[str, str]:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:  # pragma: no cover - exercised in runtime
        return {"status": "error", "error": str(exc)}


def _check_lender_gateway() -> dict[str, str]:
    mode = settings.lender_gateway_mode
    if mode == "http" and not settings.lender_gateway_url:
        return {"status": "error", "mode": mode, "error": "LENDER_GATEWAY_URL not set"}
    return {"status": "ok", "mode": mode}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def live_payload() -> dict[str, str]:
    return {"status": "ok", "timestamp": _now()}


async def ready_payload() -> dict[str, Any]:
    """Database and lender gateway configuration; ``ready`` only when both pass."""
    checks = {
        "api": {"status": "ok", "version": APP_VERSION},
        "database": await _check_db(),
        "lender_gateway": _check_lender_gateway(),
    }
    ready = all(check["status"] == "ok" for check in checks.values())
    return {
        "status": "ok" if ready else "degraded",
        "ready": ready,
        "environment": settings.environment,
        "version": APP_VERSION,
        "timestamp": _now(),
        "checks": checks,
    }
