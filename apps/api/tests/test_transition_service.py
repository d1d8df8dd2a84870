from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stagegate import events
from stagegate.core.config import get_settings
from stagegate.core.database import Base
from stagegate.security.context import ActorContext
from stagegate.transitions.history import transition_log
from stagegate.transitions.models import (
    PipelineEntry,
    ProductionWorkflow,
    Project,
    TransitionAttempt,
    TransitionHistoryRecord,
    TransitionIdempotencyKey,
    TransitionRule,
)
from stagegate.transitions.provisioning import side_effect_dispatcher
from stagegate.transitions.registry import stage_registry
from stagegate.transitions.schemas import PipelineEntryCreate
from stagegate.transitions.seed import seed_default_stages
from stagegate.transitions.service import StaleEntityError, transition_service

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


def _actor() -> ActorContext:
    return ActorContext(user_id="rep-1", tenant_id=TENANT, roles=["project_manager"], correlation_id="corr-svc")


@pytest.fixture()
def entry(db_session: Session) -> PipelineEntry:
    seed_default_stages(db_session, TENANT)
    created = PipelineEntry(tenant_id=TENANT, current_stage="lead", contact_name="Dana Reyes")
    db_session.add(created)
    db_session.commit()
    return created


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model)) or 0


def test_history_failure_rolls_back_stage_change(
    db_session: Session,
    entry: PipelineEntry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fail_record(*args: object, **kwargs: object) -> None:
        raise RuntimeError("history store unavailable")

    monkeypatch.setattr(transition_log, "record", fail_record)

    with pytest.raises(RuntimeError):
        transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")

    db_session.refresh(entry)
    assert entry.current_stage == "lead"
    assert entry.row_version == 1
    assert _count(db_session, TransitionHistoryRecord) == 0
    assert not [item for item in events.published_events if item["event_type"] == "stagegate.transition.committed"]


def test_provisioning_failure_rolls_back_stage_change(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seed_default_stages(db_session, TENANT)
    ready = PipelineEntry(tenant_id=TENANT, current_stage="ready_for_approval")
    db_session.add(ready)
    db_session.commit()

    def fail_provisioning(*args: object, **kwargs: object) -> None:
        raise RuntimeError("project store unavailable")

    monkeypatch.setattr(side_effect_dispatcher, "on_stage_entered", fail_provisioning)

    with pytest.raises(RuntimeError):
        transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", ready.id, "project")

    db_session.refresh(ready)
    assert ready.current_stage == "ready_for_approval"
    assert _count(db_session, TransitionHistoryRecord) == 0
    assert _count(db_session, Project) == 0
    assert _count(db_session, ProductionWorkflow) == 0


def test_stale_entity_is_retried(
    db_session: Session,
    entry: PipelineEntry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original = transition_service._apply_transition
    calls = {"count": 0}

    def flaky_apply(*args: object, **kwargs: object) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise StaleEntityError("concurrent writer")
        original(*args, **kwargs)

    monkeypatch.setattr(transition_service, "_apply_transition", flaky_apply)

    decision = transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")

    assert decision.outcome == "allowed"
    assert calls["count"] == 2
    assert _count(db_session, TransitionHistoryRecord) == 1


def test_retries_exhausted_returns_conflict(
    db_session: Session,
    entry: PipelineEntry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def always_stale(*args: object, **kwargs: object) -> None:
        raise StaleEntityError("concurrent writer")

    monkeypatch.setattr(transition_service, "_apply_transition", always_stale)

    with pytest.raises(HTTPException) as exc_info:
        transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")
    assert exc_info.value.status_code == 409
    db_session.refresh(entry)
    assert entry.current_stage == "lead"


def test_version_mismatch_is_detected(db_session: Session, entry: PipelineEntry, monkeypatch: pytest.MonkeyPatch) -> None:
    original = transition_service._apply_transition
    seen: list[type[BaseException]] = []

    def bump_then_apply(session: Session, entity: PipelineEntry, subject, decision, actor, reason, **kwargs: object) -> None:
        if not seen:
            subject.row_version = subject.row_version + 5
        try:
            original(session, entity, subject, decision, actor, reason, **kwargs)
        except StaleEntityError as exc:
            seen.append(type(exc))
            raise

    monkeypatch.setattr(transition_service, "_apply_transition", bump_then_apply)

    decision = transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")

    assert seen == [StaleEntityError]
    assert decision.outcome == "allowed"
    db_session.refresh(entry)
    assert entry.row_version == 2


def test_idempotency_key_replays_the_first_decision(db_session: Session, entry: PipelineEntry) -> None:
    first = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "legal_review", idempotency_key="move-1"
    )
    replay = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "legal_review", idempotency_key="move-1"
    )

    assert replay.outcome == "allowed"
    assert replay.history_id == first.history_id
    assert _count(db_session, TransitionHistoryRecord) == 1
    assert _count(db_session, TransitionIdempotencyKey) == 1

    with pytest.raises(HTTPException) as exc_info:
        transition_service.attempt_transition(
            db_session, _actor(), "pipeline_entry", entry.id, "legal", idempotency_key="move-1"
        )
    assert exc_info.value.status_code == 409


def _miss_idempotency_once(monkeypatch: pytest.MonkeyPatch) -> None:
    real = transition_service._load_idempotent
    calls = {"count": 0}

    def racing(*args, **kwargs):  # type: ignore[no-untyped-def]
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real(*args, **kwargs)

    monkeypatch.setattr(transition_service, "_load_idempotent", racing)


def test_concurrent_rejection_with_same_key_replays_stored_decision(
    db_session: Session, entry: PipelineEntry, monkeypatch: pytest.MonkeyPatch
) -> None:
    first = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "moon", idempotency_key="reject-1"
    )
    assert first.outcome == "rejected"
    _miss_idempotency_once(monkeypatch)

    replay = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "moon", idempotency_key="reject-1"
    )

    assert replay.outcome == "rejected"
    assert replay.kind == first.kind
    assert _count(db_session, TransitionAttempt) == 1
    assert _count(db_session, TransitionIdempotencyKey) == 1


def test_concurrent_gated_attempt_with_same_key_replays_stored_decision(
    db_session: Session, entry: PipelineEntry, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_session.add(
        TransitionRule(tenant_id=TENANT, workflow="pipeline", from_stage="lead", to_stage="legal_review", requires_approval=True)
    )
    db_session.commit()
    first = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "legal_review", idempotency_key="gate-1"
    )
    assert first.outcome == "requires_approval"
    _miss_idempotency_once(monkeypatch)

    replay = transition_service.attempt_transition(
        db_session, _actor(), "pipeline_entry", entry.id, "legal_review", idempotency_key="gate-1"
    )

    assert replay.outcome == "requires_approval"
    assert replay.approval_request_id == first.approval_request_id
    assert _count(db_session, TransitionAttempt) == 1
    assert _count(db_session, TransitionIdempotencyKey) == 1


def test_create_pipeline_entry_defaults_to_first_stage(db_session: Session, entry: PipelineEntry) -> None:
    created = transition_service.create_pipeline_entry(
        db_session,
        _actor(),
        PipelineEntryCreate(name="Warehouse reroof", category="commercial"),
    )
    assert created.current_stage == "lead"
    assert created.tenant_id == TENANT
    assert created.row_version == 1

    on_hold = transition_service.create_pipeline_entry(
        db_session,
        _actor(),
        PipelineEntryCreate(name="Paused", current_stage="hold_customer"),
    )
    assert on_hold.current_stage == "hold_customer"

    with pytest.raises(HTTPException) as exc_info:
        transition_service.create_pipeline_entry(db_session, _actor(), PipelineEntryCreate(current_stage="moon"))
    assert exc_info.value.status_code == 404


def test_history_and_attempts_are_read_in_order(db_session: Session, entry: PipelineEntry) -> None:
    transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")
    transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal_review")
    transition_service.attempt_transition(db_session, _actor(), "pipeline_entry", entry.id, "legal")

    history = transition_service.get_history(db_session, _actor(), "pipeline_entry", entry.id)
    assert [(item.from_stage, item.to_stage) for item in history] == [("lead", "legal_review"), ("legal_review", "legal")]
    assert history[0].metadata == {}
    assert history[0].actor_roles == ["project_manager"]

    attempts = transition_service.get_attempts(db_session, _actor(), "pipeline_entry", entry.id)
    assert len(attempts) == 1
    assert attempts[0].rejection_kind == "invalid_stage"
