import pytest
from fastapi.testclient import TestClient

from loan_intake.core import health
from loan_intake.core.settings import settings
from loan_intake.main import app


async def _db_ok():
    return {"status": "ok"}


async def _db_down():
    return {"status": "error", "error": "connection refused"}


def test_live_is_enveloped():
    resp = TestClient(app).get("/api/v1/health/live")
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == "ok"
    assert body["data"]["status"] == "ok"


def test_ready_reports_each_check(monkeypatch):
    monkeypatch.setattr(health, "_check_db", _db_ok)

    resp = TestClient(app).get("/api/v1/health/ready")

    data = resp.json()["data"]
    assert data["ready"] is True
    assert data["version"] == health.APP_VERSION
    assert set(data["checks"]) == {"api", "database", "lender_gateway"}
    assert data["checks"]["lender_gateway"] == {"status": "ok", "mode": "simulated"}


@pytest.mark.parametrize("path", ["/api/v1/health", "/api/v1/health/ready"])
def test_ready_degrades_when_database_is_down(monkeypatch, path):
    monkeypatch.setattr(health, "_check_db", _db_down)

    data = TestClient(app).get(path).json()["data"]

    assert data["status"] == "degraded"
    assert data["ready"] is False


def test_http_gateway_without_url_is_not_ready(monkeypatch):
    monkeypatch.setattr(health, "_check_db", _db_ok)
    monkeypatch.setattr(settings, "lender_gateway_mode", "http")
    monkeypatch.setattr(settings, "lender_gateway_url", None)

    data = TestClient(app).get("/api/v1/health/ready").json()["data"]

    assert data["checks"]["lender_gateway"]["status"] == "error"
    assert data["ready"] is False


def test_request_id_is_echoed_and_security_headers_set():
    resp = TestClient(app).get("/api/v1/health/live", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["Cache-Control"] == "no-store"
