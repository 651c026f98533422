"""Global test fixtures and shared test infrastructure.

Provides:
- Environment variable defaults (must be set before any loan_intake import)
- An in-memory SQLite database built from the ORM metadata for service tests
- A fixed clock, a recording lender gateway and a ServiceContext per test
- FakeAsyncSession plus dependency overrides for router tests
- Model factories for router tests that never touch a database
"""

from __future__ import annotations

import os

# Environment defaults must be set before importing the app, which triggers
# pydantic Settings validation on import.
os.environ.setdefault("SECRET_KEY", "test-secret-key-boot")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LENDER_GATEWAY_MODE", "simulated")

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from loan_intake import models  # noqa: F401
from loan_intake.api import deps
from loan_intake.core.permissions import capabilities_for
from loan_intake.db.base import Base
from loan_intake.main import app
from loan_intake.models.application import Application
from loan_intake.models.audit_log import AuditLog
from loan_intake.models.document import Document, DocumentVersion
from loan_intake.models.lender_submission import LenderSubmission, LenderSubmissionRetry
from loan_intake.services import applications, documents
from loan_intake.services.clock import FixedClock
from loan_intake.services.context import ServiceContext
from loan_intake.services.lender_gateway import GatewayRequest, GatewayResult, LenderGateway

PDF_METADATA = {"fileName": "statement.pdf", "mimeType": "application/pdf", "size": 2048}
PNG_METADATA = {"fileName": "passport.png", "mimeType": "image/png", "size": 4096}


# ---------------------------------------------------------------------------
# Database-backed service fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ctx(db_session, clock) -> ServiceContext:
    return ServiceContext.for_session(db_session, "staff-1", clock)


def context_for(db_session: AsyncSession, actor_id: str, clock: FixedClock) -> ServiceContext:
    return ServiceContext.for_session(db_session, actor_id, clock)


class RecordingGateway(LenderGateway):
    """Returns queued outcomes (accepting once the queue is empty) and records every call."""

    def __init__(self, outcomes: list[GatewayResult] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[GatewayRequest] = []

    async def submit(self, request: GatewayRequest) -> GatewayResult:
        self.calls.append(request)
        if self.outcomes:
            return self.outcomes.pop(0)
        return GatewayResult(success=True, response={"status": "accepted"})


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


async def count_rows(db: AsyncSession, model: type) -> int:
    await db.flush()
    return await db.scalar(select(func.count()).select_from(model))


async def audit_actions(db: AsyncSession, action: str | None = None) -> list[AuditLog]:
    await db.flush()
    stmt = select(AuditLog).order_by(AuditLog.created_at)
    if action is not None:
        stmt = stmt.where(AuditLog.action == action)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def create_application(db: AsyncSession, ctx: ServiceContext, **overrides: Any) -> Application:
    params: dict[str, Any] = dict(owner_user_id="user-1", name="Acme Bakery", metadata={})
    params.update(overrides)
    result = await applications.create_application(db, ctx, **params)
    return result.value


async def upload(
    db: AsyncSession,
    ctx: ServiceContext,
    application: Application,
    document_type: str = "bank_statement",
    *,
    metadata: dict | None = None,
    document_id=None,
):
    result = await documents.upload_document(
        db,
        ctx,
        application.id,
        title=document_type.replace("_", " ").title(),
        document_type=document_type,
        metadata=metadata or (PNG_METADATA if document_type == "id_document" else PDF_METADATA),
        document_id=document_id,
    )
    return result.value


def miss_first_lookup(monkeypatch, target: Any, name: str) -> list:
    """Make the next call to ``target.name`` return None, as if it ran just before a
    concurrent writer committed. Later calls go through to the real lookup."""
    real = getattr(target, name)
    calls: list = []

    async def lookup(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return await real(*args, **kwargs)

    monkeypatch.setattr(target, name, lookup)
    return calls


async def ready_application(db: AsyncSession, ctx: ServiceContext) -> Application:
    """An application with both standard documents accepted, in UNDER_REVIEW."""
    application = await create_application(db, ctx)
    for document_type in ("bank_statement", "id_document"):
        uploaded = await upload(db, ctx, application, document_type)
        await documents.review_version(
            db, ctx, application.id, uploaded.document.id, uploaded.version.id, "accept"
        )
    return application


# ---------------------------------------------------------------------------
# Router fixtures (no database)
# ---------------------------------------------------------------------------


class FakeAsyncSession:
    """Fake ``AsyncSession`` recording the unit-of-work calls routers make."""

    def __init__(self) -> None:
        self.added: list[Any] = []
        self.commits = 0
        self.rollbacks = 0

    def add(self, obj: Any) -> None:
        self.added.append(obj)

    async def flush(self) -> None:
        return None

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def execute(self, stmt, *args, **kwargs):
        raise AssertionError("router tests must monkeypatch service calls")


def make_application(**overrides: Any) -> Application:
    now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    defaults: dict[str, Any] = dict(
        id=uuid4(),
        owner_user_id="user-1",
        name="Acme Bakery",
        metadata_={},
        product_type="standard",
        pipeline_state="REQUIRES_DOCS",
        created_at=now,
        updated_at=now,
    )
    defaults.update(overrides)
    return Application(**defaults)


def make_document(application: Application, **overrides: Any) -> Document:
    defaults: dict[str, Any] = dict(
        id=uuid4(),
        application_id=application.id,
        title="Bank Statement",
        document_type="bank_statement",
        current_version_number=1,
        created_at=datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
    )
    defaults.update(overrides)
    return Document(**defaults)


def make_version(document: Document, **overrides: Any) -> DocumentVersion:
    defaults: dict[str, Any] = dict(
        id=uuid4(),
        document_id=document.id,
        version_number=document.current_version_number,
        status="PENDING",
        metadata_=dict(PDF_METADATA),
        content_ref=None,
        created_at=datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
    )
    defaults.update(overrides)
    return DocumentVersion(**defaults)


def make_submission(application: Application, **overrides: Any) -> LenderSubmission:
    now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    defaults: dict[str, Any] = dict(
        id=uuid4(),
        application_id=application.id,
        lender_id="default",
        idempotency_key="key-1",
        status="submitted",
        failure_reason=None,
        payload_hash="0" * 64,
        lender_response={"status": "accepted"},
        response_received_at=now,
        created_at=now,
        updated_at=now,
    )
    defaults.update(overrides)
    return LenderSubmission(**defaults)


def make_retry(submission: LenderSubmission, **overrides: Any) -> LenderSubmissionRetry:
    defaults: dict[str, Any] = dict(
        id=uuid4(),
        lender_submission_id=submission.id,
        attempt_number=1,
        status="submitted",
        failure_reason=None,
        created_at=datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc),
    )
    defaults.update(overrides)
    return LenderSubmissionRetry(**defaults)


def make_auth(role: str = "staff", user_id: str = "staff-1") -> deps.AuthContext:
    return deps.AuthContext(user_id=user_id, role=role, capabilities=capabilities_for(role))


@pytest.fixture
def fake_db() -> FakeAsyncSession:
    return FakeAsyncSession()


@pytest.fixture
def auth_context() -> deps.AuthContext:
    return make_auth("staff")


@pytest.fixture
def override_deps(fake_db, auth_context):
    """Standard dependency overrides: db session, auth context, lender gateway."""

    async def _get_db():
        return fake_db

    async def _get_auth():
        return auth_context

    app.dependency_overrides[deps.get_db_session] = _get_db
    app.dependency_overrides[deps.get_auth_context] = _get_auth
    app.dependency_overrides[deps.get_gateway] = lambda: RecordingGateway()

    yield

    app.dependency_overrides.clear()


@pytest.fixture
def client(override_deps) -> TestClient:
    return TestClient(app)
