from __future__ import annotations

import json
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stagegate import events
from stagegate.core.config import get_settings
from stagegate.core.database import Base
from stagegate.security.context import ActorContext
from stagegate.transitions.models import NotificationIntent, PipelineEntry, ProductionWorkflow, Project
from stagegate.transitions.provisioning import side_effect_dispatcher
from stagegate.transitions.registry import stage_registry
from stagegate.transitions.seed import seed_default_stages
from stagegate.transitions.service import transition_service

TENANT = "tenant-a"


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    stage_registry.clear()
    events.published_events.clear()
    yield
    stage_registry.clear()
    events.published_events.clear()
    get_settings.cache_clear()


def _manager() -> ActorContext:
    return ActorContext(user_id="mgr-1", tenant_id=TENANT, roles=["sales_manager"], correlation_id="corr-provision")


def _entry(session: Session, stage: str = "ready_for_approval", **values: object) -> PipelineEntry:
    seed_default_stages(session, TENANT)
    entry = PipelineEntry(tenant_id=TENANT, current_stage=stage, **values)
    session.add(entry)
    session.commit()
    return entry


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model)) or 0


def test_entering_project_stage_provisions_project_and_workflow(db_session: Session) -> None:
    entry = _entry(
        db_session,
        contact_name="Dana Reyes",
        category="commercial",
        estimated_value=Decimal("42000"),
        gross_profit=Decimal("9000"),
    )

    decision = transition_service.attempt_transition(db_session, _manager(), "pipeline_entry", entry.id, "project")

    assert decision.outcome == "allowed"
    assert decision.project_id is not None
    assert decision.production_workflow_id is not None

    project = db_session.get(Project, decision.project_id)
    assert project is not None
    assert project.pipeline_entry_id == entry.id
    assert project.name == "Dana Reyes"
    assert project.project_type == "commercial"
    assert project.selling_price == Decimal("42000")
    assert project.gross_profit == Decimal("9000")
    assert project.approved_by == "mgr-1"

    workflow = db_session.get(ProductionWorkflow, decision.production_workflow_id)
    assert workflow is not None
    assert workflow.project_id == project.id
    assert workflow.current_stage == "submit_documents"
    assert workflow.workflow_metadata["initialized_from"] == "pipeline_transition"

    intents = db_session.scalars(select(NotificationIntent).where(NotificationIntent.intent_type == "project_provisioned")).all()
    assert len(intents) == 1
    assert json.loads(intents[0].payload_json)["pipeline_entry_id"] == str(entry.id)

    provisioned = [item for item in events.published_events if item["event_type"] == "stagegate.project.provisioned"]
    assert provisioned
    assert provisioned[-1]["payload"]["project_id"] == str(project.id)


def test_repeated_provisioning_creates_exactly_one_of_each(db_session: Session) -> None:
    entry = _entry(db_session, stage="project", name="Warehouse reroof")

    results = []
    for _ in range(3):
        results.append(side_effect_dispatcher.on_stage_entered(db_session, entry, "project", _manager()))
        db_session.commit()

    assert all(result is not None for result in results)
    assert results[0].project_created is True
    assert results[0].production_workflow_created is True
    assert all(result.project_created is False for result in results[1:])
    assert all(result.production_workflow_created is False for result in results[1:])
    assert {result.project_id for result in results} == {results[0].project_id}
    assert {result.production_workflow_id for result in results} == {results[0].production_workflow_id}

    assert _count(db_session, Project) == 1
    assert _count(db_session, ProductionWorkflow) == 1


def test_leaving_and_re_entering_project_stage_is_idempotent(db_session: Session) -> None:
    entry = _entry(db_session)

    first = transition_service.attempt_transition(db_session, _manager(), "pipeline_entry", entry.id, "project")
    transition_service.attempt_transition(db_session, _manager(), "pipeline_entry", entry.id, "ready_for_approval")
    again = transition_service.attempt_transition(db_session, _manager(), "pipeline_entry", entry.id, "project")

    assert again.outcome == "allowed"
    assert again.project_id == first.project_id
    assert again.production_workflow_id == first.production_workflow_id
    assert _count(db_session, Project) == 1
    assert _count(db_session, ProductionWorkflow) == 1
    assert _count(db_session, NotificationIntent) == 1


def test_project_name_and_type_fallbacks(db_session: Session) -> None:
    entry = _entry(db_session, stage="project")

    result = side_effect_dispatcher.on_stage_entered(db_session, entry, "project", _manager())
    db_session.commit()

    assert result is not None
    project = db_session.get(Project, result.project_id)
    assert project is not None
    assert project.name == f"Project {date.today().isoformat()}"
    assert project.project_type == "roofing"


def test_other_stages_have_no_side_effects(db_session: Session) -> None:
    entry = _entry(db_session, stage="lead")

    assert side_effect_dispatcher.on_stage_entered(db_session, entry, "legal_review", _manager()) is None
    assert side_effect_dispatcher.has_side_effects("production", "project") is False
    assert _count(db_session, Project) == 0


def test_provision_endpoint_requires_provisioning_stage(db_session: Session) -> None:
    entry = _entry(db_session, stage="lead")

    with pytest.raises(HTTPException) as exc_info:
        transition_service.provision_pipeline_entry(db_session, _manager(), entry.id)
    assert exc_info.value.status_code == 422

    project_entry = _entry(db_session, stage="project", contact_name="Sam Ortiz")
    first = transition_service.provision_pipeline_entry(db_session, _manager(), project_entry.id)
    second = transition_service.provision_pipeline_entry(db_session, _manager(), project_entry.id)
    assert first.project_created is True
    assert second.project_created is False
    assert second.project_id == first.project_id
