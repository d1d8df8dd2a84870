from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from stagegate import events
from stagegate.core.config import get_settings
from stagegate.core.events import (
    APPROVAL_REQUESTED,
    APPROVAL_RESOLVED,
    PROJECT_PROVISIONED,
    TRANSITION_COMMITTED,
    TRANSITION_REJECTED,
)
from stagegate.metrics import observe_approval_resolution, observe_transition, observe_transition_conflict
from stagegate.otel import get_tracer
from stagegate.security.context import ActorContext
from stagegate.security.roles import is_manager
from stagegate.transitions.approvals import AlreadyResolvedError, ApprovalQueue, approval_queue
from stagegate.transitions.evaluator import REJECTED, REQUIRES_APPROVAL, Decision, TransitionEvaluator, transition_evaluator
from stagegate.transitions.history import TransitionLog, transition_log
from stagegate.transitions.models import (
    ApprovalRequest,
    PipelineEntry,
    ProductionWorkflow,
    TransitionIdempotencyKey,
    utcnow,
)
from stagegate.transitions.notifications import APPROVERS_RECIPIENT, queue_intent
from stagegate.transitions.production import production_evaluator
from stagegate.transitions.provisioning import SideEffectDispatcher, side_effect_dispatcher
from stagegate.transitions.registry import StageRegistry, stage_registry
from stagegate.transitions.schemas import (
    ENTITY_WORKFLOWS,
    ApprovalRequestRead,
    ApprovalResolutionRead,
    DecisionRead,
    PipelineEntryCreate,
    PipelineEntryRead,
    ProvisioningResultRead,
    TransitionAttemptRead,
    TransitionHistoryRead,
)
from stagegate.transitions.subjects import (
    TransitionSubject,
    subject_for_pipeline_entry,
    subject_for_production_workflow,
)

logger = logging.getLogger("stagegate.transitions")
tracer = get_tracer("stagegate.transitions")

TrackedEntity = PipelineEntry | ProductionWorkflow


class StaleEntityError(Exception):
    """The entity changed between evaluation and the conditional stage update."""


@dataclass(eq=False)
class TransitionService:
    """Owns the commit path: evaluate, move the stage, log, provision, notify."""

    registry: StageRegistry = stage_registry
    pipeline_evaluator: TransitionEvaluator = transition_evaluator
    production_evaluator: TransitionEvaluator = production_evaluator
    approvals: ApprovalQueue = approval_queue
    log: TransitionLog = transition_log
    dispatcher: SideEffectDispatcher = side_effect_dispatcher

    def attempt_transition(
        self,
        session: Session,
        actor: ActorContext,
        entity_type: str,
        entity_id: uuid.UUID,
        target_stage: str,
        reason: str | None = None,
        *,
        notes: str | None = None,
        priority: str = "standard",
        idempotency_key: str | None = None,
    ) -> Decision:
        workflow = _workflow_for(entity_type)
        endpoint = f"stagegate.transition:{entity_type}:{entity_id}"
        request_hash = _request_hash(
            {"target_stage": target_stage, "reason": reason, "notes": notes, "priority": priority}
        )
        stored = self._load_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash)
        if stored is not None:
            return stored

        retries = max(1, get_settings().transition_max_retries)
        started = time.perf_counter()
        with tracer.start_as_current_span("stagegate.transition.attempt") as span:
            span.set_attribute("stagegate.entity_type", entity_type)
            span.set_attribute("stagegate.entity_id", str(entity_id))
            span.set_attribute("stagegate.to_stage", target_stage)
            span.set_attribute("stagegate.tenant_id", actor.tenant_id)
            if actor.correlation_id:
                span.set_attribute("correlation_id", actor.correlation_id)

            for attempt in range(1, retries + 1):
                entity = self._load_entity(session, actor.tenant_id, entity_type, entity_id, lock=True)
                subject = _subject_for(entity)
                decision = self._evaluator_for(workflow).evaluate(session, subject, target_stage, actor, reason)
                span.set_attribute("stagegate.outcome", decision.outcome)

                if decision.is_rejected:
                    try:
                        self._record_rejection(session, subject, decision, actor)
                        self._store_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash, decision)
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        replay = self._load_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash)
                        if replay is not None:
                            return replay
                        raise
                    except Exception:
                        session.rollback()
                        raise
                    self._finish(workflow, decision, started, actor)
                    return decision

                if decision.outcome == REQUIRES_APPROVAL:
                    try:
                        created = self._open_approval(session, subject, decision, actor, reason, notes, priority)
                        self._store_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash, decision)
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        replay = self._load_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash)
                        if replay is not None:
                            return replay
                        raise
                    except Exception:
                        session.rollback()
                        raise
                    if created:
                        self._publish(APPROVAL_REQUESTED, actor, subject, decision)
                    self._finish(workflow, decision, started, actor)
                    return decision

                try:
                    self._apply_transition(session, entity, subject, decision, actor, reason)
                    self._store_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash, decision)
                    session.commit()
                except StaleEntityError:
                    session.rollback()
                    observe_transition_conflict(workflow)
                    logger.warning(
                        "transition.conflict",
                        extra={
                            "entity_type": entity_type,
                            "entity_id": str(entity_id),
                            "to_stage": target_stage,
                            "attempt": attempt,
                        },
                    )
                    continue
                except IntegrityError:
                    session.rollback()
                    replay = self._load_idempotent(session, actor.tenant_id, endpoint, idempotency_key, request_hash)
                    if replay is not None:
                        return replay
                    raise
                except Exception:
                    session.rollback()
                    raise

                self._publish(TRANSITION_COMMITTED, actor, subject, decision)
                if decision.project_id is not None:
                    self._publish(PROJECT_PROVISIONED, actor, subject, decision)
                self._finish(workflow, decision, started, actor)
                return decision

        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="entity was modified concurrently; retry the transition")

    def resolve_approval(
        self,
        session: Session,
        actor: ActorContext,
        request_id: uuid.UUID,
        decision: str,
        notes: str | None = None,
    ) -> ApprovalResolutionRead:
        if not is_manager(actor):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only approvers can resolve approval requests")

        request = self.approvals.get_request(session, actor.tenant_id, request_id, lock=True)
        if request.status != "pending":
            raise AlreadyResolvedError(request.id, request.status)

        if decision == "rejected":
            try:
                request = self.approvals.mark_resolved(session, request, actor, "rejected", notes)
                self._notify_requester(session, request.tenant_id, request, "rejected")
                session.commit()
            except Exception:
                session.rollback()
                raise
            observe_approval_resolution("rejected")
            self._publish_resolution(actor, request, None)
            return ApprovalResolutionRead(request=ApprovalRequestRead.model_validate(request))

        entity = self._load_entity(session, actor.tenant_id, request.entity_type, request.entity_id, lock=True)
        if entity.current_stage != request.from_stage:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"{request.entity_type} is in '{entity.current_stage}', "
                    f"not '{request.from_stage}' where approval was requested"
                ),
            )
        subject = _subject_for(entity)
        evaluator = self._evaluator_for(subject.workflow)
        outcome = evaluator.evaluate(session, subject, request.to_stage, actor, request.reason, approval_granted=True)
        if outcome.is_rejected:
            outcome.approval_request_id = request.id
            try:
                self._record_rejection(session, subject, outcome, actor)
                session.commit()
            except Exception:
                session.rollback()
                raise
            observe_transition(subject.workflow, outcome.outcome, 0.0, kind=outcome.kind)
            logger.info(
                "approval.blocked",
                extra={
                    "approval_request_id": str(request.id),
                    "entity_type": subject.entity_type,
                    "entity_id": str(subject.entity_id),
                    "kind": outcome.kind,
                },
            )
            return ApprovalResolutionRead(request=ApprovalRequestRead.model_validate(request), decision=outcome.to_read())

        outcome.approval_request_id = request.id
        outcome.requires_approval = True
        try:
            request = self.approvals.mark_resolved(session, request, actor, "approved", notes)
            self._apply_transition(session, entity, subject, outcome, actor, request.reason, approval_request_id=request.id)
            self._notify_requester(session, request.tenant_id, request, "approved")
            session.commit()
        except StaleEntityError as exc:
            session.rollback()
            observe_transition_conflict(subject.workflow)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="entity was modified concurrently; resolve the request again",
            ) from exc
        except Exception:
            session.rollback()
            raise

        observe_approval_resolution("approved")
        self._publish_resolution(actor, request, outcome)
        self._publish(TRANSITION_COMMITTED, actor, subject, outcome)
        if outcome.project_id is not None:
            self._publish(PROJECT_PROVISIONED, actor, subject, outcome)
        return ApprovalResolutionRead(request=ApprovalRequestRead.model_validate(request), decision=outcome.to_read())

    def get_history(
        self,
        session: Session,
        actor: ActorContext,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[TransitionHistoryRead]:
        self._load_entity(session, actor.tenant_id, entity_type, entity_id)
        return self.log.list_history(session, actor.tenant_id, entity_type, entity_id)

    def get_attempts(
        self,
        session: Session,
        actor: ActorContext,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[TransitionAttemptRead]:
        self._load_entity(session, actor.tenant_id, entity_type, entity_id)
        return self.log.list_attempts(session, actor.tenant_id, entity_type, entity_id)

    def get_pending_approvals(self, session: Session, actor: ActorContext) -> list[ApprovalRequestRead]:
        return self.approvals.list_pending(session, actor.tenant_id)

    def get_approval(self, session: Session, actor: ActorContext, request_id: uuid.UUID) -> ApprovalRequestRead:
        return ApprovalRequestRead.model_validate(self.approvals.get_request(session, actor.tenant_id, request_id))

    def create_pipeline_entry(self, session: Session, actor: ActorContext, dto: PipelineEntryCreate) -> PipelineEntryRead:
        if dto.current_stage:
            stage = self.registry.get_stage(session, actor.tenant_id, "pipeline", dto.current_stage)
        else:
            stage = self.registry.first_stage(session, actor.tenant_id, "pipeline")
        entry = PipelineEntry(
            tenant_id=actor.tenant_id,
            name=dto.name,
            contact_name=dto.contact_name,
            category=dto.category,
            estimated_value=dto.estimated_value,
            gross_profit=dto.gross_profit,
            current_stage=stage.key,
            status_entered_at=utcnow(),
            workflow_metadata=dict(dto.workflow_metadata),
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        logger.info(
            "pipeline_entry.created",
            extra={"entity_type": "pipeline_entry", "entity_id": str(entry.id), "to_stage": entry.current_stage},
        )
        return PipelineEntryRead.model_validate(entry)

    def get_pipeline_entry(self, session: Session, actor: ActorContext, entry_id: uuid.UUID) -> PipelineEntryRead:
        entry = self._load_entity(session, actor.tenant_id, "pipeline_entry", entry_id)
        return PipelineEntryRead.model_validate(entry)

    def provision_pipeline_entry(self, session: Session, actor: ActorContext, entry_id: uuid.UUID) -> ProvisioningResultRead:
        """Re-run provisioning for an entry already in the provisioning stage."""
        entry = self._load_entity(session, actor.tenant_id, "pipeline_entry", entry_id, lock=True)
        if entry.current_stage != get_settings().provisioning_stage_key:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"pipeline entry is in '{entry.current_stage}', not the provisioning stage",
            )
        try:
            result = self.dispatcher.on_stage_entered(session, entry, entry.current_stage, actor)
            session.commit()
        except Exception:
            session.rollback()
            raise
        if result is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage has no side effects")
        return result.to_read()

    def _evaluator_for(self, workflow: str) -> TransitionEvaluator:
        if workflow == "production":
            return self.production_evaluator
        return self.pipeline_evaluator

    def _load_entity(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> TrackedEntity:
        if entity_type == "pipeline_entry":
            stmt = select(PipelineEntry).where(and_(PipelineEntry.id == entity_id, PipelineEntry.tenant_id == tenant_id))
        elif entity_type == "production_workflow":
            stmt = (
                select(ProductionWorkflow)
                .where(and_(ProductionWorkflow.id == entity_id, ProductionWorkflow.tenant_id == tenant_id))
                .options(selectinload(ProductionWorkflow.project))
            )
        else:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown entity type '{entity_type}'")
        if lock:
            stmt = stmt.with_for_update()
        entity = session.scalar(stmt.execution_options(populate_existing=True))
        if entity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity_type} not found")
        return entity

    def _apply_transition(
        self,
        session: Session,
        entity: TrackedEntity,
        subject: TransitionSubject,
        decision: Decision,
        actor: ActorContext,
        reason: str | None,
        *,
        approval_request_id: uuid.UUID | None = None,
    ) -> None:
        model = type(entity)
        now = utcnow()
        result = session.execute(
            update(model)
            .where(
                and_(
                    model.id == subject.entity_id,
                    model.tenant_id == subject.tenant_id,
                    model.row_version == subject.row_version,
                )
            )
            .values(
                current_stage=decision.to_stage,
                status_entered_at=now,
                last_status_change_reason=reason,
                updated_at=now,
                row_version=model.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StaleEntityError(f"{subject.entity_type} {subject.entity_id} changed during the transition")
        session.expire(entity)
        self.approvals.supersede_stale(session, subject, decision.to_stage)

        record = self.log.record(
            session,
            subject,
            decision.from_stage,
            decision.to_stage,
            actor,
            is_backward=decision.is_backward,
            requires_approval=decision.requires_approval,
            approval_request_id=approval_request_id,
            reason=reason,
            metadata=decision.metadata,
        )
        decision.history_id = record.id

        if isinstance(entity, PipelineEntry):
            provisioned = self.dispatcher.on_stage_entered(session, entity, decision.to_stage, actor)
            if provisioned is not None:
                decision.project_id = provisioned.project_id
                decision.production_workflow_id = provisioned.production_workflow_id
                if provisioned.project_created:
                    queue_intent(
                        session,
                        tenant_id=subject.tenant_id,
                        intent_type="project_provisioned",
                        recipient=APPROVERS_RECIPIENT,
                        entity_type="project",
                        entity_id=provisioned.project_id,
                        payload={
                            "pipeline_entry_id": str(subject.entity_id),
                            "production_workflow_id": str(provisioned.production_workflow_id),
                        },
                    )

        logger.info(
            "transition.committed",
            extra={
                "entity_type": subject.entity_type,
                "entity_id": str(subject.entity_id),
                "workflow": subject.workflow,
                "from_stage": decision.from_stage,
                "to_stage": decision.to_stage,
                "outcome": decision.outcome,
            },
        )

    def _record_rejection(
        self,
        session: Session,
        subject: TransitionSubject,
        decision: Decision,
        actor: ActorContext,
    ) -> None:
        metadata: dict[str, Any] = dict(decision.metadata)
        if decision.approval_request_id is not None:
            metadata["approval_request_id"] = str(decision.approval_request_id)
        self.log.record_attempt(
            session,
            subject,
            decision.to_stage,
            actor,
            outcome=REJECTED,
            kind=decision.kind,
            message=decision.message,
            metadata=metadata,
        )
        logger.info(
            "transition.rejected",
            extra={
                "entity_type": subject.entity_type,
                "entity_id": str(subject.entity_id),
                "from_stage": decision.from_stage,
                "to_stage": decision.to_stage,
                "outcome": decision.outcome,
                "kind": decision.kind,
            },
        )

    def _open_approval(
        self,
        session: Session,
        subject: TransitionSubject,
        decision: Decision,
        actor: ActorContext,
        reason: str | None,
        notes: str | None,
        priority: str,
    ) -> bool:
        request, created = self.approvals.request_approval(
            session,
            subject,
            decision.from_stage,
            decision.to_stage,
            actor.user_id,
            notes=notes,
            reason=reason,
            priority=priority,
        )
        decision.approval_request_id = request.id
        self.log.record_attempt(
            session,
            subject,
            decision.to_stage,
            actor,
            outcome=REQUIRES_APPROVAL,
            message=decision.message,
            metadata={"approval_request_id": str(request.id), "created": created},
        )
        if created:
            queue_intent(
                session,
                tenant_id=subject.tenant_id,
                intent_type="approval_requested",
                recipient=APPROVERS_RECIPIENT,
                entity_type=subject.entity_type,
                entity_id=subject.entity_id,
                payload={
                    "approval_request_id": str(request.id),
                    "from_stage": decision.from_stage,
                    "to_stage": decision.to_stage,
                    "requested_by": actor.user_id,
                    "priority": priority,
                },
            )
        return created

    def _notify_requester(self, session: Session, tenant_id: str, request: ApprovalRequest, decision: str) -> None:
        queue_intent(
            session,
            tenant_id=tenant_id,
            intent_type=f"approval_{decision}",
            recipient=f"user:{request.requested_by}",
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            payload={
                "approval_request_id": str(request.id),
                "to_stage": request.to_stage,
                "reviewed_by": request.reviewed_by,
            },
        )

    def _finish(self, workflow: str, decision: Decision, started: float, actor: ActorContext) -> None:
        observe_transition(workflow, decision.outcome, time.perf_counter() - started, kind=decision.kind)
        if decision.is_rejected:
            self._publish(TRANSITION_REJECTED, actor, None, decision)

    def _publish(
        self,
        event_type: str,
        actor: ActorContext,
        subject: TransitionSubject | None,
        decision: Decision,
    ) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "tenant_id": actor.tenant_id,
                "correlation_id": actor.correlation_id,
                "version": 1,
                "payload": {
                    **decision.to_read().model_dump(mode="json"),
                    "workflow": subject.workflow if subject is not None else ENTITY_WORKFLOWS.get(decision.entity_type),
                },
            }
        )

    def _publish_resolution(self, actor: ActorContext, request: ApprovalRequest, decision: Decision | None) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": APPROVAL_RESOLVED,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "tenant_id": actor.tenant_id,
                "correlation_id": actor.correlation_id,
                "version": 1,
                "payload": {
                    "approval_request_id": str(request.id),
                    "status": request.status,
                    "entity_type": request.entity_type,
                    "entity_id": str(request.entity_id),
                    "to_stage": request.to_stage,
                    "history_id": str(decision.history_id) if decision and decision.history_id else None,
                },
            }
        )

    def _load_idempotent(
        self,
        session: Session,
        tenant_id: str,
        endpoint: str,
        key: str | None,
        request_hash: str,
    ) -> Decision | None:
        if not key:
            return None
        record = session.scalar(
            select(TransitionIdempotencyKey).where(
                and_(
                    TransitionIdempotencyKey.tenant_id == tenant_id,
                    TransitionIdempotencyKey.endpoint == endpoint,
                    TransitionIdempotencyKey.key == key,
                )
            )
        )
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency key payload mismatch")
        stored = DecisionRead.model_validate(json.loads(record.response_json))
        return Decision(**stored.model_dump())

    def _store_idempotent(
        self,
        session: Session,
        tenant_id: str,
        endpoint: str,
        key: str | None,
        request_hash: str,
        decision: Decision,
    ) -> None:
        if not key:
            return
        session.add(
            TransitionIdempotencyKey(
                tenant_id=tenant_id,
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(decision.to_read().model_dump(mode="json")),
            )
        )


def _workflow_for(entity_type: str) -> str:
    workflow = ENTITY_WORKFLOWS.get(entity_type)
    if workflow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown entity type '{entity_type}'")
    return workflow


def _subject_for(entity: TrackedEntity) -> TransitionSubject:
    if isinstance(entity, PipelineEntry):
        return subject_for_pipeline_entry(entity)
    return subject_for_production_workflow(entity)


def _request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


transition_service = TransitionService()
