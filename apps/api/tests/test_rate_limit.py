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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    stage_registry.clear()
    yield
    reset_rate_limiter()
    stage_registry.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["stagegate.transitions.write", "stagegate.history.read"])

    seed_default_stages(db_session, "tenant-a")
    seed_default_stages(db_session, "tenant-b")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_entry(client: TestClient, tenant_id: str, index: int):
    return client.post(
        "/api/stagegate/pipeline-entries",
        json={"name": f"Rate Limit Entry {index}"},
        headers={"x-tenant-id": tenant_id},
    )


def test_mutating_stagegate_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [_create_entry(client, "tenant-a", index) for index in range(5)]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_tenants_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        assert _create_entry(client, "tenant-a", index).status_code == 201
    assert _create_entry(client, "tenant-a", 3).status_code == 429

    assert _create_entry(client, "tenant-b", 0).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = _create_entry(client, "tenant-a", 0)
    assert create.status_code == 201

    responses = [client.get("/api/stagegate/stages", headers={"x-tenant-id": "tenant-a"}) for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)
