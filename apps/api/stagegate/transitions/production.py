from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from stagegate.security.context import ActorContext
from stagegate.security.roles import is_manager
from stagegate.transitions.evaluator import GateFailure, TransitionEvaluator
from stagegate.transitions.models import ProductionWorkflow, Project, utcnow
from stagegate.transitions.registry import StageRegistry, stage_registry
from stagegate.transitions.schemas import DocumentFlagsUpdate, ProductionWorkflowRead, StageRead
from stagegate.transitions.subjects import TransitionSubject

logger = logging.getLogger("stagegate.production")

# Flags that must be set on the workflow before it may leave the stage.
EXIT_GATES: dict[str, tuple[str, ...]] = {
    "submit_documents": ("noc_uploaded", "permit_application_submitted"),
}


@dataclass(eq=False)
class ProductionTransitionEvaluator(TransitionEvaluator):
    """Evaluator for the production sub-workflow: strictly ordered forward progress."""

    def check_ordering(
        self,
        session: Session,
        subject: TransitionSubject,
        current: StageRead,
        target: StageRead,
    ) -> GateFailure | None:
        current_rank = self.registry.rank(session, subject.tenant_id, subject.workflow, current.key)
        target_rank = self.registry.rank(session, subject.tenant_id, subject.workflow, target.key)
        if current_rank is None or target_rank is None:
            return None
        if target_rank > current_rank + 1:
            return GateFailure(
                "skipped_stage",
                f"Cannot skip from {current.key} to {target.key}; complete the intermediate stages first",
            )
        return None

    def check_builtin_gates(
        self,
        subject: TransitionSubject,
        current: StageRead,
        target: StageRead,
        actor: ActorContext,
        reason: str | None,
        metadata: dict[str, Any],
    ) -> GateFailure | None:
        required = EXIT_GATES.get(current.key)
        if not required:
            return None
        missing = [flag for flag in required if not subject.flags.get(flag)]
        if not missing:
            return None
        if is_manager(actor) and (reason or "").strip():
            metadata["gate_bypassed"] = {"stage": current.key, "missing": missing}
            return None
        return GateFailure(
            "validation_failed",
            f"Cannot leave {current.key}: missing {', '.join(missing)}",
        )


@dataclass(eq=False)
class ProductionWorkflowService:
    registry: StageRegistry = stage_registry

    def create_workflow(
        self,
        session: Session,
        actor: ActorContext,
        project_id: uuid.UUID,
        *,
        initialized_from: str = "manual",
        commit: bool = True,
    ) -> tuple[ProductionWorkflow, bool]:
        """Create the workflow for a project, or return the existing one."""
        project = session.scalar(select(Project).where(Project.id == project_id, Project.tenant_id == actor.tenant_id))
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")

        first_stage = self.registry.first_stage(session, actor.tenant_id, "production")
        workflow = ProductionWorkflow(
            tenant_id=actor.tenant_id,
            project_id=project.id,
            current_stage=first_stage.key,
            status_entered_at=utcnow(),
            workflow_metadata={"initialized_from": initialized_from, "initialized_by": actor.user_id},
        )
        try:
            with session.begin_nested():
                session.add(workflow)
        except IntegrityError:
            existing = session.scalar(select(ProductionWorkflow).where(ProductionWorkflow.project_id == project.id))
            if existing is None:
                raise
            return existing, False

        if commit:
            session.commit()
            session.refresh(workflow)
        logger.info(
            "production_workflow.created",
            extra={"production_workflow_id": str(workflow.id), "project_id": str(project.id)},
        )
        return workflow, True

    def get_workflow(self, session: Session, tenant_id: str, workflow_id: uuid.UUID, *, lock: bool = False) -> ProductionWorkflow:
        stmt = (
            select(ProductionWorkflow)
            .where(ProductionWorkflow.id == workflow_id, ProductionWorkflow.tenant_id == tenant_id)
            .options(selectinload(ProductionWorkflow.project))
        )
        if lock:
            stmt = stmt.with_for_update()
        workflow = session.scalar(stmt)
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="production workflow not found")
        return workflow

    def update_document_flags(
        self,
        session: Session,
        actor: ActorContext,
        workflow_id: uuid.UUID,
        dto: DocumentFlagsUpdate,
    ) -> ProductionWorkflowRead:
        workflow = self.get_workflow(session, actor.tenant_id, workflow_id, lock=True)
        changes = dto.model_dump(exclude_none=True)
        for flag, value in changes.items():
            setattr(workflow, flag, value)
        workflow.row_version = workflow.row_version + 1
        workflow.updated_at = utcnow()
        session.commit()
        session.refresh(workflow)
        logger.info(
            "production_workflow.documents_updated",
            extra={"production_workflow_id": str(workflow.id), "status": ",".join(sorted(changes))},
        )
        return ProductionWorkflowRead.model_validate(workflow)


production_evaluator = ProductionTransitionEvaluator()
production_workflow_service = ProductionWorkflowService()
