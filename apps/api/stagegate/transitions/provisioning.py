from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stagegate.core.config import get_settings
from stagegate.metrics import observe_provisioning
from stagegate.security.context import ActorContext
from stagegate.transitions.models import PipelineEntry, ProductionWorkflow, Project, utcnow
from stagegate.transitions.production import ProductionWorkflowService, production_workflow_service
from stagegate.transitions.schemas import ProvisioningResultRead

logger = logging.getLogger("stagegate.provisioning")


class ProvisioningConflict(Exception):
    """A downstream entity already exists for the originating row."""

    def __init__(self, entity: str, origin_id: uuid.UUID) -> None:
        super().__init__(f"{entity} already provisioned for {origin_id}")
        self.entity = entity
        self.origin_id = origin_id


@dataclass(slots=True)
class ProvisioningResult:
    project_id: uuid.UUID
    production_workflow_id: uuid.UUID
    project_created: bool
    production_workflow_created: bool

    def to_read(self) -> ProvisioningResultRead:
        return ProvisioningResultRead(
            project_id=self.project_id,
            production_workflow_id=self.production_workflow_id,
            project_created=self.project_created,
            production_workflow_created=self.production_workflow_created,
        )


@dataclass(eq=False)
class SideEffectDispatcher:
    """Creates downstream entities when a pipeline entry enters a provisioning stage.

    Uniqueness constraints on the originating foreign keys decide who wins; an
    insert that violates them is a conflict and the existing row is reused.
    """

    workflows: ProductionWorkflowService = production_workflow_service

    def has_side_effects(self, workflow: str, stage_key: str) -> bool:
        return workflow == "pipeline" and stage_key == get_settings().provisioning_stage_key

    def on_stage_entered(
        self,
        session: Session,
        entry: PipelineEntry,
        stage_key: str,
        actor: ActorContext,
    ) -> ProvisioningResult | None:
        if not self.has_side_effects("pipeline", stage_key):
            return None

        project, project_created = self._provision_project(session, entry, actor)
        workflow, workflow_created = self._provision_workflow(session, project, actor)
        logger.info(
            "provisioning.completed",
            extra={
                "entity_id": str(entry.id),
                "project_id": str(project.id),
                "production_workflow_id": str(workflow.id),
                "status": "created" if project_created or workflow_created else "already_provisioned",
            },
        )
        return ProvisioningResult(
            project_id=project.id,
            production_workflow_id=workflow.id,
            project_created=project_created,
            production_workflow_created=workflow_created,
        )

    def _provision_project(self, session: Session, entry: PipelineEntry, actor: ActorContext) -> tuple[Project, bool]:
        settings = get_settings()
        project = Project(
            tenant_id=entry.tenant_id,
            pipeline_entry_id=entry.id,
            name=_project_name(entry),
            status="active",
            project_type=entry.category or settings.default_project_type,
            selling_price=entry.estimated_value,
            gross_profit=entry.gross_profit,
            approved_by=actor.user_id,
            approved_at=utcnow(),
        )
        try:
            self._insert(session, project, "project", entry.id)
        except ProvisioningConflict:
            observe_provisioning("project", "conflict")
            existing = session.scalar(select(Project).where(Project.pipeline_entry_id == entry.id))
            if existing is None:
                raise
            return existing, False
        observe_provisioning("project", "created")
        return project, True

    def _provision_workflow(self, session: Session, project: Project, actor: ActorContext) -> tuple[ProductionWorkflow, bool]:
        workflow, created = self.workflows.create_workflow(
            session,
            actor,
            project.id,
            initialized_from="pipeline_transition",
            commit=False,
        )
        observe_provisioning("production_workflow", "created" if created else "conflict")
        return workflow, created

    @staticmethod
    def _insert(session: Session, row: Project, entity: str, origin_id: uuid.UUID) -> None:
        try:
            with session.begin_nested():
                session.add(row)
        except IntegrityError as exc:
            raise ProvisioningConflict(entity, origin_id) from exc


def _project_name(entry: PipelineEntry) -> str:
    if entry.contact_name:
        return entry.contact_name
    if entry.name:
        return entry.name
    return f"Project {date.today().isoformat()}"


side_effect_dispatcher = SideEffectDispatcher()
