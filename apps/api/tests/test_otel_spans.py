from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from stagegate.core.auth import AuthUser, get_current_user
from stagegate.core.config import get_settings
from stagegate.core.database import Base, get_db
from stagegate.main import app
from stagegate.middleware.rate_limit import reset_rate_limiter
from stagegate.otel import setup_inmemory_otel
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("stagegate-api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": "OTel Entry"},
        headers={"x-tenant-id": "tenant-a", "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_transition_span_contains_entity_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    entry = client.post("/api/stagegate/pipeline-entries", json={}, headers={"x-tenant-id": "tenant-a"})
    assert entry.status_code == 201

    moved = client.post(
        f"/api/stagegate/pipeline_entry/{entry.json()['id']}/transitions",
        json={"target_stage": "legal_review"},
        headers={"x-tenant-id": "tenant-a", "X-Correlation-Id": "otel-transition-1"},
    )
    assert moved.status_code == 200

    spans = span_exporter.get_finished_spans()
    transition_spans = [span for span in spans if span.name == "stagegate.transition.attempt"]
    assert transition_spans
    assert any(
        span.attributes.get("stagegate.entity_id") == entry.json()["id"]
        and span.attributes.get("stagegate.to_stage") == "legal_review"
        and span.attributes.get("stagegate.tenant_id") == "tenant-a"
        and span.attributes.get("correlation_id") == "otel-transition-1"
        for span in transition_spans
    )
