from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stagegate.core.auth import AuthUser, get_current_user
from stagegate.core.config import get_settings
from stagegate.core.database import Base, get_db
from stagegate.main import app
from stagegate.middleware.rate_limit import reset_rate_limiter
from stagegate.transitions.registry import stage_registry
from stagegate.transitions.seed import seed_default_stages


ALL_PERMISSIONS = [
    "stagegate.transitions.write",
    "stagegate.approvals.resolve",
    "stagegate.config.manage",
    "stagegate.history.read",
]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    stage_registry.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    stage_registry.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=[*ALL_PERMISSIONS, "project_manager"])

    seed_default_stages(db_session, "tenant-a")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/stagegate/pipeline-entries/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "x-tenant-id": "tenant-a"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "stagegate.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/stagegate/pipeline-entries/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_transition_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    entry = client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": "Log Entry"},
        headers={"x-tenant-id": "tenant-a"},
    )
    assert entry.status_code == 201
    entry_id = entry.json()["id"]

    moved = client.post(
        f"/api/stagegate/pipeline_entry/{entry_id}/transitions",
        json={"target_stage": "legal_review"},
        headers={"x-tenant-id": "tenant-a", "X-Correlation-Id": "abc-456"},
    )
    assert moved.status_code == 200

    transition_records = [record for record in caplog.records if record.name == "stagegate.transitions"]
    assert transition_records
    assert any(
        record.getMessage() == "transition.committed"
        and getattr(record, "entity_id", None) == entry_id
        and getattr(record, "from_stage", None) == "lead"
        and getattr(record, "to_stage", None) == "legal_review"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in transition_records
    )


def test_rejections_are_logged_with_kind(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    entry = client.post("/api/stagegate/pipeline-entries", json={}, headers={"x-tenant-id": "tenant-a"})
    rejected = client.post(
        f"/api/stagegate/pipeline_entry/{entry.json()['id']}/transitions",
        json={"target_stage": "lead"},
        headers={"x-tenant-id": "tenant-a"},
    )
    assert rejected.status_code == 422

    assert any(
        record.name == "stagegate.transitions"
        and record.getMessage() == "transition.rejected"
        and getattr(record, "kind", None) == "invalid_stage"
        for record in caplog.records
    )
