from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagegate.context import get_correlation_id
from stagegate.security.context import ActorContext
from stagegate.transitions.models import TransitionAttempt, TransitionHistoryRecord, utcnow
from stagegate.transitions.schemas import TransitionAttemptRead, TransitionHistoryRead
from stagegate.transitions.subjects import TransitionSubject


@dataclass(eq=False)
class TransitionLog:
    """Append-only transition history. Rows are added in the caller's transaction."""

    def record(
        self,
        session: Session,
        subject: TransitionSubject,
        from_stage: str,
        to_stage: str,
        actor: ActorContext,
        *,
        is_backward: bool = False,
        requires_approval: bool = False,
        approval_request_id: uuid.UUID | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionHistoryRecord:
        record = TransitionHistoryRecord(
            tenant_id=subject.tenant_id,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            from_stage=from_stage,
            to_stage=to_stage,
            actor_user_id=actor.user_id,
            actor_roles=list(actor.roles),
            occurred_at=utcnow(),
            is_backward=is_backward,
            requires_approval=requires_approval,
            approval_request_id=approval_request_id,
            reason=reason,
            metadata_json=dict(metadata or {}),
            correlation_id=actor.correlation_id or get_correlation_id(),
        )
        session.add(record)
        session.flush()
        return record

    def record_attempt(
        self,
        session: Session,
        subject: TransitionSubject,
        to_stage: str,
        actor: ActorContext,
        *,
        outcome: str,
        kind: str | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionAttempt:
        attempt = TransitionAttempt(
            tenant_id=subject.tenant_id,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            from_stage=subject.current_stage,
            to_stage=to_stage,
            actor_user_id=actor.user_id,
            occurred_at=utcnow(),
            outcome=outcome,
            rejection_kind=kind,
            message=message,
            metadata_json=dict(metadata or {}),
            correlation_id=actor.correlation_id or get_correlation_id(),
        )
        session.add(attempt)
        session.flush()
        return attempt

    def list_history(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[TransitionHistoryRead]:
        rows = session.scalars(
            select(TransitionHistoryRecord)
            .where(
                TransitionHistoryRecord.tenant_id == tenant_id,
                TransitionHistoryRecord.entity_type == entity_type,
                TransitionHistoryRecord.entity_id == entity_id,
            )
            .order_by(TransitionHistoryRecord.occurred_at.asc(), TransitionHistoryRecord.id.asc())
        ).all()
        return [TransitionHistoryRead.model_validate(row) for row in rows]

    def list_attempts(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[TransitionAttemptRead]:
        rows = session.scalars(
            select(TransitionAttempt)
            .where(
                TransitionAttempt.tenant_id == tenant_id,
                TransitionAttempt.entity_type == entity_type,
                TransitionAttempt.entity_id == entity_id,
            )
            .order_by(TransitionAttempt.occurred_at.asc(), TransitionAttempt.id.asc())
        ).all()
        return [TransitionAttemptRead.model_validate(row) for row in rows]


transition_log = TransitionLog()
