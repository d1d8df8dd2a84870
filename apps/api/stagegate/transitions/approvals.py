from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stagegate.security.context import ActorContext
from stagegate.transitions.models import ApprovalRequest, utcnow
from stagegate.transitions.schemas import ApprovalRequestRead
from stagegate.transitions.subjects import TransitionSubject

logger = logging.getLogger("stagegate.approvals")


class AlreadyResolvedError(HTTPException):
    def __init__(self, request_id: uuid.UUID, current_status: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"approval request {request_id} is already {current_status}",
        )
        self.request_id = request_id
        self.current_status = current_status


class PendingApprovalConflict(HTTPException):
    def __init__(self, pending: ApprovalRequest) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"approval request {pending.id} for {pending.from_stage} -> {pending.to_stage} "
                "is still pending for this entity"
            ),
        )
        self.request_id = pending.id
        self.from_stage = pending.from_stage
        self.to_stage = pending.to_stage


@dataclass(eq=False)
class ApprovalQueue:
    def find_pending(self, session: Session, subject: TransitionSubject) -> ApprovalRequest | None:
        return session.scalar(
            select(ApprovalRequest).where(
                ApprovalRequest.tenant_id == subject.tenant_id,
                ApprovalRequest.entity_type == subject.entity_type,
                ApprovalRequest.entity_id == subject.entity_id,
                ApprovalRequest.status == "pending",
            )
        )

    def request_approval(
        self,
        session: Session,
        subject: TransitionSubject,
        from_stage: str,
        to_stage: str,
        requested_by: str,
        *,
        notes: str | None = None,
        reason: str | None = None,
        priority: str = "standard",
    ) -> tuple[ApprovalRequest, bool]:
        """Return the pending request for this move, creating it when there is none.

        An entity holds at most one pending request. A pending request for a
        different move is a conflict. The partial unique index on pending
        requests settles concurrent creators: the loser re-reads the winner.
        """
        existing = self.find_pending(session, subject)
        if existing is not None:
            return _same_move(existing, from_stage, to_stage), False

        request = ApprovalRequest(
            tenant_id=subject.tenant_id,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            from_stage=from_stage,
            to_stage=to_stage,
            requested_by=requested_by,
            requested_at=utcnow(),
            status="pending",
            priority=priority,
            estimated_value=subject.value,
            reason=reason,
            notes=notes,
        )
        try:
            with session.begin_nested():
                session.add(request)
        except IntegrityError:
            winner = self.find_pending(session, subject)
            if winner is None:
                raise
            return _same_move(winner, from_stage, to_stage), False

        logger.info(
            "approval.requested",
            extra={
                "entity_type": subject.entity_type,
                "entity_id": str(subject.entity_id),
                "from_stage": from_stage,
                "to_stage": to_stage,
                "approval_request_id": str(request.id),
            },
        )
        return request, True

    def get_request(
        self,
        session: Session,
        tenant_id: str,
        request_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> ApprovalRequest:
        stmt = select(ApprovalRequest).where(ApprovalRequest.id == request_id, ApprovalRequest.tenant_id == tenant_id)
        if lock:
            stmt = stmt.with_for_update()
        request = session.scalar(stmt)
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval request not found")
        return request

    def mark_resolved(
        self,
        session: Session,
        request: ApprovalRequest,
        approver: ActorContext,
        decision: str,
        notes: str | None,
    ) -> ApprovalRequest:
        """Flip a pending request to its terminal status exactly once."""
        reviewed_at = utcnow()
        result = session.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request.id,
                ApprovalRequest.tenant_id == approver.tenant_id,
                ApprovalRequest.status == "pending",
            )
            .values(
                status=decision,
                reviewed_by=approver.user_id,
                reviewed_at=reviewed_at,
                review_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            current = self.get_request(session, approver.tenant_id, request.id)
            raise AlreadyResolvedError(current.id, current.status)
        session.refresh(request)
        return request

    def supersede_stale(
        self,
        session: Session,
        subject: TransitionSubject,
        current_stage: str,
    ) -> list[uuid.UUID]:
        """Close pending requests whose source stage the entity has left."""
        stale = list(
            session.scalars(
                select(ApprovalRequest.id).where(
                    ApprovalRequest.tenant_id == subject.tenant_id,
                    ApprovalRequest.entity_type == subject.entity_type,
                    ApprovalRequest.entity_id == subject.entity_id,
                    ApprovalRequest.status == "pending",
                    ApprovalRequest.from_stage != current_stage,
                )
            ).all()
        )
        if not stale:
            return []
        session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id.in_(stale), ApprovalRequest.status == "pending")
            .values(
                status="superseded",
                reviewed_at=utcnow(),
                review_notes=f"entity moved to {current_stage}",
            )
            .execution_options(synchronize_session=False)
        )
        for request_id in stale:
            logger.info(
                "approval.superseded",
                extra={
                    "approval_request_id": str(request_id),
                    "entity_type": subject.entity_type,
                    "entity_id": str(subject.entity_id),
                    "to_stage": current_stage,
                },
            )
        return stale

    def list_pending(self, session: Session, tenant_id: str) -> list[ApprovalRequestRead]:
        rows = session.scalars(
            select(ApprovalRequest)
            .where(ApprovalRequest.tenant_id == tenant_id, ApprovalRequest.status == "pending")
            .order_by(ApprovalRequest.requested_at.asc())
        ).all()
        return [ApprovalRequestRead.model_validate(row) for row in rows]


def _same_move(pending: ApprovalRequest, from_stage: str, to_stage: str) -> ApprovalRequest:
    if pending.from_stage != from_stage or pending.to_stage != to_stage:
        raise PendingApprovalConflict(pending)
    return pending


approval_queue = ApprovalQueue()
