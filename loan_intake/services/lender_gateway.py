"""Outbound lender capability: submit a packet, get success or a failure reason."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from loan_intake.core.settings import settings

logger = logging.getLogger(__name__)

SUPPORTED_LENDERS = frozenset({"default", "fastfund", "timeout"})


@dataclass
class GatewayRequest:
    application_id: str
    lender_id: str
    packet: dict[str, Any]
    # 0 for the initial submission, then the retry attempt number.
    attempt: int = 0
    # Caller key of the submission; distinguishes submissions for one application.
    idempotency_key: str = ""


@dataclass
class GatewayResult:
    success: bool
    failure_reason: str | None = None
    response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, reason: str, **response: Any) -> "GatewayResult":
        return cls(success=False, failure_reason=reason, response={"status": "failed", **response})


def lender_payload(lender_id: str, packet: dict[str, Any]) -> dict[str, Any]:
    """Shape the generic packet into what each lender expects."""
    if lender_id == "fastfund":
        application = packet["application"]
        return {
            "applicantName": application["name"],
            "productType": application["productType"],
            "businessMetadata": application["metadata"],
            "docs": [
                {
                    "type": doc["documentType"],
                    "title": doc["title"],
                    "version": doc["version"],
                    "meta": doc["metadata"],
                    "content": doc["content"],
                }
                for doc in packet["documents"]
            ],
            "submittedAt": packet["submittedAt"],
        }
    if lender_id == "timeout":
        return {"payload": packet, "submittedAt": packet["submittedAt"]}
    return {
        "application": packet["application"],
        "documents": packet["documents"],
        "submittedAt": packet["submittedAt"],
    }


class LenderGateway(ABC):
    @abstractmethod
    async def submit(self, request: GatewayRequest) -> GatewayResult:
        raise NotImplementedError


class SimulatedLenderGateway(LenderGateway):
    """In-process lender used outside production.

    The ``timeout`` lender never answers the first attempt, which exercises the
    failure and manual retry path end to end.
    """

    async def submit(self, request: GatewayRequest) -> GatewayResult:
        received_at = datetime.now(timezone.utc).isoformat()
        if request.lender_id not in SUPPORTED_LENDERS:
            return GatewayResult.failed("unsupported_lender", lender_id=request.lender_id)
        if request.lender_id == "timeout" and request.attempt == 0:
            return GatewayResult.failed(
                "lender_timeout", detail="Lender did not respond.", receivedAt=received_at
            )
        body = lender_payload(request.lender_id, request.packet)
        return GatewayResult(
            success=True,
            response={"status": "accepted", "receivedAt": received_at, "fields": sorted(body)},
        )


class HttpLenderGateway(LenderGateway):
    def __init__(self, base_url: str, *, timeout: float, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def submit(self, request: GatewayRequest) -> GatewayResult:
        url = f"{self.base_url}/lenders/{request.lender_id}/submissions"
        body = lender_payload(request.lender_id, request.packet)
        headers = {
            "Idempotency-Key": f"{request.application_id}:{request.idempotency_key}:{request.attempt}"
        }
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException:
            return GatewayResult.failed("lender_timeout", detail="Lender did not respond.")
        except httpx.TransportError as exc:
            logger.warning("Lender transport error lender=%s error=%s", request.lender_id, exc)
            return GatewayResult.failed("lender_unavailable", detail=str(exc))

        try:
            data = response.json()
        except ValueError:
            data = {"body": response.text}
        if not response.is_success:
            return GatewayResult.failed("lender_rejected", http_status=response.status_code, body=data)
        if not isinstance(data, dict):
            data = {"body": data}
        return GatewayResult(success=True, response={"status": "accepted", **data})


async def call_gateway(
    gateway: LenderGateway, request: GatewayRequest, *, timeout: float | None = None
) -> GatewayResult:
    """Invoke ``gateway`` exactly once, bounded by ``timeout`` seconds.

    Never raises: every outcome is classified into a ``GatewayResult`` so the
    caller can persist it.
    """
    limit = settings.lender_gateway_timeout_seconds if timeout is None else timeout
    try:
        return await asyncio.wait_for(gateway.submit(request), timeout=limit)
    except asyncio.TimeoutError:
        logger.warning(
            "Lender gateway timed out lender=%s application=%s after=%ss",
            request.lender_id,
            request.application_id,
            limit,
        )
        return GatewayResult.failed("lender_timeout", detail=f"No response within {limit}s.")
    except Exception:
        logger.exception(
            "Lender gateway failed lender=%s application=%s",
            request.lender_id,
            request.application_id,
        )
        return GatewayResult.failed("lender_error")


def get_lender_gateway() -> LenderGateway:
    if settings.lender_gateway_mode == "http":
        if not settings.lender_gateway_url:
            raise RuntimeError("LENDER_GATEWAY_URL must be set when LENDER_GATEWAY_MODE=http")
        return HttpLenderGateway(
            settings.lender_gateway_url, timeout=settings.lender_gateway_timeout_seconds
        )
    return SimulatedLenderGateway()
