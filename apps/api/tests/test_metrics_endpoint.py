from __future__ import annotations

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    stage_registry.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    stage_registry.clear()


@pytest.fixture()
def roles() -> list[str]:
    return [
        "system.metrics.read",
        "stagegate.transitions.write",
        "stagegate.config.manage",
        "stagegate.history.read",
    ]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    seed_default_stages(db_session, "tenant-a")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_transition_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    entry = client.post("/api/stagegate/pipeline-entries", json={"name": "Metrics Entry"}, headers=TENANT_HEADERS)
    assert entry.status_code == 201

    moved = client.post(
        f"/api/stagegate/pipeline_entry/{entry.json()['id']}/transitions",
        json={"target_stage": "legal_review"},
        headers=TENANT_HEADERS,
    )
    assert moved.status_code == 200

    rejected = client.post(
        f"/api/stagegate/pipeline_entry/{entry.json()['id']}/transitions",
        json={"target_stage": "legal_review"},
        headers=TENANT_HEADERS,
    )
    assert rejected.status_code == 422

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "stagegate_transitions_total" in body
    assert "stagegate_transition_rejections_total" in body
    assert "stagegate_transition_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/stagegate/{id}/{id}/transitions"' in body
    assert 'outcome="allowed"' in body
    assert 'kind="invalid_stage"' in body


def test_metrics_require_metrics_role(client: TestClient, roles: list[str]) -> None:
    roles.remove("system.metrics.read")

    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
