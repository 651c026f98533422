import pytest

from conftest import make_application, make_auth
from loan_intake.services import applications
from loan_intake.services.errors import InvalidTransitionError
from loan_intake.services.idempotency import IdempotentResult


def _stub_get(monkeypatch, application):
    async def fake_get(db, application_id, *, for_update=False):
        return application

    monkeypatch.setattr(applications, "get_application", fake_get)


def test_create_application_returns_enveloped_201(client, fake_db, monkeypatch):
    application = make_application(owner_user_id="staff-1")
    captured = {}

    async def fake_create(db, ctx, **kwargs):
        captured.update(kwargs)
        captured["actor"] = ctx.actor_id
        return IdempotentResult(application)

    monkeypatch.setattr(applications, "create_application", fake_create)

    resp = client.post(
        "/api/v1/applications",
        json={"name": "Acme Bakery", "metadata": {"industry": "food"}},
        headers={"Idempotency-Key": "create-1"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["code"] == "created"
    assert body["data"]["id"] == str(application.id)
    assert body["data"]["pipeline_state"] == "REQUIRES_DOCS"
    assert captured["owner_user_id"] == "staff-1"
    assert captured["idempotency_key"] == "create-1"
    assert captured["metadata"] == {"industry": "food"}
    assert captured["actor"] == "staff-1"
    assert fake_db.commits == 1
    assert "Idempotent-Replayed" not in resp.headers


def test_create_application_replay_returns_200(client, monkeypatch):
    application = make_application()

    async def fake_create(db, ctx, **kwargs):
        return IdempotentResult(application, replayed=True)

    monkeypatch.setattr(applications, "create_application", fake_create)

    resp = client.post(
        "/api/v1/applications", json={"name": "Acme Bakery"}, headers={"Idempotency-Key": "k"}
    )

    assert resp.status_code == 200
    assert resp.headers["Idempotent-Replayed"] == "true"
    assert resp.json()["code"] == "replayed"


def test_create_application_requires_name(client):
    resp = client.post("/api/v1/applications", json={"metadata": {}})
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_list_is_limited_to_own_applications_for_users(client, auth_context, monkeypatch):
    user = make_auth("user", user_id="user-9")
    auth_context.user_id, auth_context.role, auth_context.capabilities = (
        user.user_id,
        user.role,
        user.capabilities,
    )
    seen = {}

    async def fake_list(db, *, owner_user_id=None, limit=50, offset=0):
        seen["owner"] = owner_user_id
        return [make_application(owner_user_id="user-9")]

    monkeypatch.setattr(applications, "list_applications", fake_list)

    resp = client.get("/api/v1/applications", params={"owner_user_id": "user-1"})

    assert resp.status_code == 200
    assert seen["owner"] == "user-9"
    assert resp.json()["data"]["total"] == 1


def test_get_application_of_another_owner_is_forbidden(client, auth_context, monkeypatch):
    auth_context.role = "user"
    auth_context.user_id = "user-2"
    auth_context.capabilities = make_auth("user").capabilities
    application = make_application(owner_user_id="user-1")
    _stub_get(monkeypatch, application)

    resp = client.get(f"/api/v1/applications/{application.id}")

    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


def test_pipeline_states_are_listed(client):
    resp = client.get("/api/v1/applications/pipeline-states")
    assert resp.status_code == 200
    assert resp.json()["data"]["states"] == [
        "NEW",
        "REQUIRES_DOCS",
        "UNDER_REVIEW",
        "LENDER_SUBMITTED",
        "APPROVED",
        "DECLINED",
    ]


def test_override_without_capability_is_forbidden(client, monkeypatch):
    async def fail_change(*args, **kwargs):
        raise AssertionError("service must not be called")

    monkeypatch.setattr(applications, "change_state", fail_change)
    application = make_application()

    resp = client.post(
        f"/api/v1/applications/{application.id}/pipeline",
        json={"state": "LENDER_SUBMITTED", "override": True},
    )

    assert resp.status_code == 403
    assert resp.json()["details"]["capability"] == "pipeline.override"


def test_invalid_transition_is_400_and_rolled_back(client, fake_db, monkeypatch):
    async def reject(db, ctx, application_id, state, **kwargs):
        raise InvalidTransitionError(
            code="invalid_transition",
            message="Transition not allowed",
            details={"from": "REQUIRES_DOCS", "to": state},
        )

    monkeypatch.setattr(applications, "change_state", reject)
    application = make_application()

    resp = client.post(
        f"/api/v1/applications/{application.id}/pipeline", json={"state": "LENDER_SUBMITTED"}
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "invalid_transition"
    assert body["details"] == {"from": "REQUIRES_DOCS", "to": "LENDER_SUBMITTED"}
    assert fake_db.rollbacks == 1
    assert fake_db.commits == 0


def test_admin_override_succeeds(client, auth_context, fake_db, monkeypatch):
    auth_context.role = "admin"
    auth_context.capabilities = make_auth("admin").capabilities
    application = make_application(pipeline_state="LENDER_SUBMITTED")
    seen = {}

    async def change(db, ctx, application_id, state, *, override_granted=False, reason=None):
        seen["override"] = override_granted
        seen["reason"] = reason
        return application

    monkeypatch.setattr(applications, "change_state", change)

    resp = client.post(
        f"/api/v1/applications/{application.id}/pipeline",
        json={"state": "LENDER_SUBMITTED", "override": True, "reason": "escalated"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["pipeline_state"] == "LENDER_SUBMITTED"
    assert seen == {"override": True, "reason": "escalated"}
    assert fake_db.commits == 1


@pytest.mark.parametrize("path", ["/api/v1/applications", "/api/v1/applications/pipeline-states"])
def test_requests_without_token_are_unauthorized(path):
    from fastapi.testclient import TestClient

    from loan_intake.main import app

    resp = TestClient(app).get(path)
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized"
