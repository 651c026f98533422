from conftest import make_application, make_auth, make_retry, make_submission
from loan_intake.services import applications, lender_submissions
from loan_intake.services.errors import StateError
from loan_intake.services.idempotency import IdempotentResult
from loan_intake.services.lender_submissions import RetryResult


def _stub_get(monkeypatch, application):
    async def fake_get(db, application_id, *, for_update=False):
        return application

    monkeypatch.setattr(applications, "get_application", fake_get)


def _payload(application, **overrides):
    body = {"applicationId": str(application.id), "idempotencyKey": "submit-1", "lenderId": "default"}
    body.update(overrides)
    return body


def test_submit_returns_201(client, fake_db, monkeypatch):
    application = make_application(pipeline_state="UNDER_REVIEW")
    submission = make_submission(application)
    _stub_get(monkeypatch, application)
    seen = {}

    async def fake_submit(db, ctx, gateway, **kwargs):
        seen.update(kwargs)
        return IdempotentResult(submission)

    monkeypatch.setattr(lender_submissions, "submit", fake_submit)

    resp = client.post("/api/v1/lender/submissions", json=_payload(application))

    assert resp.status_code == 201
    body = resp.json()
    assert body["code"] == "created"
    assert body["data"]["status"] == "submitted"
    assert seen["idempotency_key"] == "submit-1"
    assert seen["lender_id"] == "default"
    assert fake_db.commits == 1


def test_submit_replay_returns_200(client, monkeypatch):
    application = make_application(pipeline_state="LENDER_SUBMITTED")
    submission = make_submission(application)
    _stub_get(monkeypatch, application)

    async def fake_submit(db, ctx, gateway, **kwargs):
        return IdempotentResult(submission, replayed=True)

    monkeypatch.setattr(lender_submissions, "submit", fake_submit)

    resp = client.post("/api/v1/lender/submissions", json=_payload(application))

    assert resp.status_code == 200
    assert resp.headers["Idempotent-Replayed"] == "true"
    assert resp.json()["data"]["id"] == str(submission.id)


def test_missing_documents_is_400_and_persisted(client, fake_db, monkeypatch):
    application = make_application()
    submission = make_submission(
        application,
        status="failed",
        failure_reason="missing_documents",
        payload_hash=None,
        lender_response={"missing_document_types": ["bank_statement"]},
    )
    _stub_get(monkeypatch, application)

    async def fake_submit(db, ctx, gateway, **kwargs):
        return IdempotentResult(submission)

    monkeypatch.setattr(lender_submissions, "submit", fake_submit)

    resp = client.post("/api/v1/lender/submissions", json=_payload(application))

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "missing_documents"
    assert body["details"]["submission_id"] == str(submission.id)
    assert body["data"]["lender_response"] == {"missing_document_types": ["bank_statement"]}
    assert fake_db.commits == 1


def test_gateway_failure_is_502(client, fake_db, monkeypatch):
    application = make_application(pipeline_state="UNDER_REVIEW")
    submission = make_submission(application, status="failed", failure_reason="lender_timeout")
    _stub_get(monkeypatch, application)

    async def fake_submit(db, ctx, gateway, **kwargs):
        return IdempotentResult(submission)

    monkeypatch.setattr(lender_submissions, "submit", fake_submit)

    resp = client.post("/api/v1/lender/submissions", json=_payload(application, lenderId="timeout"))

    assert resp.status_code == 502
    body = resp.json()
    assert body["code"] == "lender_timeout"
    assert body["details"]["failure_reason"] == "lender_timeout"
    assert fake_db.commits == 1


def test_submit_requires_capability(client, auth_context):
    auth_context.role = "user"
    auth_context.capabilities = make_auth("user").capabilities

    resp = client.post("/api/v1/lender/submissions", json=_payload(make_application()))

    assert resp.status_code == 403


def test_submit_rejects_missing_fields(client):
    resp = client.post("/api/v1/lender/submissions", json={"lenderId": "default"})
    assert resp.status_code == 422


def test_submission_detail_lists_retries(client, monkeypatch):
    application = make_application()
    submission = make_submission(application, status="failed", failure_reason="lender_timeout")
    retry = make_retry(submission, status="failed", failure_reason="lender_timeout")

    async def fake_get(db, submission_id, *, for_update=False):
        return submission

    async def fake_retries(db, submission_id):
        return [retry]

    monkeypatch.setattr(lender_submissions, "get_submission", fake_get)
    monkeypatch.setattr(lender_submissions, "list_retries", fake_retries)

    resp = client.get(f"/api/v1/lender/submissions/{submission.id}")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["failure_reason"] == "lender_timeout"
    assert data["retries"][0]["attempt_number"] == 1


def test_transmission_status_without_submission(client, monkeypatch):
    application = make_application(pipeline_state="UNDER_REVIEW")
    _stub_get(monkeypatch, application)

    async def none_yet(db, application_id):
        return None

    monkeypatch.setattr(lender_submissions, "latest_for_application", none_yet)

    resp = client.get(f"/api/v1/lender/applications/{application.id}/transmission")

    assert resp.json()["data"] == {
        "application_id": str(application.id),
        "pipeline_state": "UNDER_REVIEW",
        "submission": None,
    }


def test_retry_requires_admin(client):
    resp = client.post(f"/api/v1/admin/transmissions/{make_application().id}/retry")
    assert resp.status_code == 403


def test_admin_retry_success(client, auth_context, fake_db, monkeypatch):
    auth_context.role = "admin"
    auth_context.capabilities = make_auth("admin").capabilities
    application = make_application(pipeline_state="LENDER_SUBMITTED")
    submission = make_submission(application)
    retry = make_retry(submission)

    async def fake_retry(db, ctx, gateway, submission_id):
        return RetryResult(retry=retry, submission=submission)

    monkeypatch.setattr(lender_submissions, "retry", fake_retry)

    resp = client.post(f"/api/v1/admin/transmissions/{submission.id}/retry")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["retry"]["status"] == "submitted"
    assert data["submission"]["status"] == "submitted"
    assert fake_db.commits == 1


def test_admin_retry_failure_is_502(client, auth_context, fake_db, monkeypatch):
    auth_context.role = "admin"
    auth_context.capabilities = make_auth("admin").capabilities
    application = make_application()
    submission = make_submission(application, status="failed", failure_reason="lender_timeout")
    retry = make_retry(submission, status="failed", failure_reason="lender_unavailable")

    async def fake_retry(db, ctx, gateway, submission_id):
        return RetryResult(retry=retry, submission=submission)

    monkeypatch.setattr(lender_submissions, "retry", fake_retry)

    resp = client.post(f"/api/v1/admin/transmissions/{submission.id}/retry")

    assert resp.status_code == 502
    body = resp.json()
    assert body["code"] == "lender_unavailable"
    assert body["data"]["retry"]["attempt_number"] == 1
    assert fake_db.commits == 1


def test_admin_retry_of_submitted_is_conflict(client, auth_context, fake_db, monkeypatch):
    auth_context.role = "admin"
    auth_context.capabilities = make_auth("admin").capabilities

    async def not_retryable(db, ctx, gateway, submission_id):
        raise StateError(code="not_retryable", message="Only failed submissions can be retried")

    monkeypatch.setattr(lender_submissions, "retry", not_retryable)

    resp = client.post(f"/api/v1/admin/transmissions/{make_application().id}/retry")

    assert resp.status_code == 409
    assert resp.json()["code"] == "not_retryable"
    assert fake_db.rollbacks == 1
