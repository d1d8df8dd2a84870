from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagegate.transitions.conditions import is_present, resolve_path
from stagegate.transitions.models import StageValidation, TransitionHistoryRecord
from stagegate.transitions.subjects import TransitionSubject


def hours_in_stage(subject: TransitionSubject, now: datetime) -> Decimal:
    elapsed = now - subject.status_entered_at
    return Decimal(str(elapsed.total_seconds())) / Decimal("3600")


def run_validation(
    session: Session,
    validation: StageValidation,
    subject: TransitionSubject,
    *,
    now: datetime,
) -> bool:
    config = validation.config or {}
    if validation.kind == "document_required":
        return str(config.get("document_type")) in subject.documents
    if validation.kind == "field_required":
        fields = config.get("fields") or []
        for path in fields:
            exists, value = resolve_path(subject.context, str(path))
            if not exists or not is_present(value):
                return False
        return True
    if validation.kind == "time_based":
        required_hours = Decimal(str(config.get("min_hours_in_stage", 0)))
        return hours_in_stage(subject, now) >= required_hours
    if validation.kind == "dependency":
        return has_entered_stage(session, subject, str(config.get("stage")))
    raise ValueError(f"unsupported validation kind: {validation.kind}")


def has_entered_stage(session: Session, subject: TransitionSubject, stage_key: str) -> bool:
    if subject.current_stage == stage_key:
        return True
    record_id = session.scalar(
        select(TransitionHistoryRecord.id)
        .where(
            TransitionHistoryRecord.tenant_id == subject.tenant_id,
            TransitionHistoryRecord.entity_type == subject.entity_type,
            TransitionHistoryRecord.entity_id == subject.entity_id,
            TransitionHistoryRecord.to_stage == stage_key,
        )
        .limit(1)
    )
    return record_id is not None
