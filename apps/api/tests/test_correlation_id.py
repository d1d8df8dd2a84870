from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stagegate import events
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

TENANT_HEADERS = {"x-tenant-id": "tenant-a"}


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    stage_registry.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    stage_registry.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


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


def _create_entry(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": "Corr Entry"},
        headers={**TENANT_HEADERS, "X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/stagegate/pipeline-entries/{uuid.uuid4()}", headers=TENANT_HEADERS)
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "stagegate_pipeline_entry_get_failed"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(
        f"/api/stagegate/pipeline-entries/{uuid.uuid4()}",
        headers={**TENANT_HEADERS, "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    entry = _create_entry(client, "corr-event-0")

    response = client.post(
        f"/api/stagegate/pipeline_entry/{entry['id']}/transitions",
        json={"target_stage": "legal_review"},
        headers={**TENANT_HEADERS, "X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    committed = [item for item in events.published_events if item.get("event_type") == "stagegate.transition.committed"]
    assert committed
    assert committed[-1].get("correlation_id") == "corr-event-1"
    assert committed[-1].get("tenant_id") == "tenant-a"


def test_history_records_request_correlation_id(client: TestClient) -> None:
    entry = _create_entry(client, "corr-history-0")

    client.post(
        f"/api/stagegate/pipeline_entry/{entry['id']}/transitions",
        json={"target_stage": "moon"},
        headers={**TENANT_HEADERS, "X-Correlation-Id": "corr-history-1"},
    )
    attempts = client.get(f"/api/stagegate/pipeline_entry/{entry['id']}/attempts", headers=TENANT_HEADERS)

    assert attempts.status_code == 200
    assert [item["correlation_id"] for item in attempts.json()] == ["corr-history-1"]


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": "Rate Limit Entry 1"},
        headers={**TENANT_HEADERS, "X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": "Rate Limit Entry 2"},
        headers={**TENANT_HEADERS, "X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
