from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagegate.transitions.models import WorkflowStage
from stagegate.transitions.registry import StageRegistry, stage_registry
from stagegate.transitions.schemas import StageRead

logger = logging.getLogger("stagegate.seed")

# (key, label, position, stage_type, is_terminal)
StageSpec = tuple[str, str, int, str, bool]

PIPELINE_STAGES: tuple[StageSpec, ...] = (
    ("lead", "Lead", 1, "standard", False),
    ("legal_review", "Legal Review", 2, "standard", False),
    ("legal", "Legal", 3, "standard", False),
    ("contingency", "Contingency", 4, "standard", False),
    ("contingency_signed", "Contingency Signed", 5, "standard", False),
    ("ready_for_approval", "Ready for Approval", 6, "standard", False),
    ("project", "Project", 7, "standard", False),
    ("production", "Production", 8, "standard", False),
    ("final_payment", "Final Payment", 9, "standard", False),
    ("completed", "Completed", 10, "standard", False),
    ("closed", "Closed", 11, "standard", True),
    ("hold_mgr_review", "Hold: Manager Review", 101, "hold", False),
    ("hold_customer", "Hold: Customer", 102, "hold", False),
    ("hold_materials", "Hold: Materials", 103, "hold", False),
    ("lost", "Lost", 201, "end", True),
    ("canceled", "Canceled", 202, "end", True),
    ("duplicate", "Duplicate", 203, "end", True),
)

PRODUCTION_STAGES: tuple[StageSpec, ...] = (
    ("submit_documents", "Submit Documents", 1, "standard", False),
    ("permit_submitted", "Permit Submitted", 2, "standard", False),
    ("permit_approved", "Permit Approved", 3, "standard", False),
    ("materials_ordered", "Materials Ordered", 4, "standard", False),
    ("materials_on_hold", "Materials On Hold", 5, "standard", False),
    ("materials_delivered", "Materials Delivered", 6, "standard", False),
    ("in_progress", "In Progress", 7, "standard", False),
    ("complete", "Complete", 8, "standard", False),
    ("final_inspection", "Final Inspection", 9, "standard", False),
    ("final_check_needed", "Final Check Needed", 10, "standard", False),
    ("closed", "Closed", 11, "standard", True),
)

DEFAULT_CATALOGS: dict[str, tuple[StageSpec, ...]] = {
    "pipeline": PIPELINE_STAGES,
    "production": PRODUCTION_STAGES,
}


def seed_default_stages(
    session: Session,
    tenant_id: str,
    workflows: list[str] | None = None,
    *,
    registry: StageRegistry = stage_registry,
) -> list[StageRead]:
    """Insert the default catalogs for a tenant. Keys that already exist are left alone."""
    seeded: list[StageRead] = []
    for workflow in workflows or list(DEFAULT_CATALOGS):
        existing = set(
            session.scalars(
                select(WorkflowStage.key).where(
                    WorkflowStage.tenant_id == tenant_id,
                    WorkflowStage.workflow == workflow,
                )
            ).all()
        )
        added = 0
        for key, label, position, stage_type, is_terminal in DEFAULT_CATALOGS[workflow]:
            if key in existing:
                continue
            session.add(
                WorkflowStage(
                    tenant_id=tenant_id,
                    workflow=workflow,
                    key=key,
                    label=label,
                    position=position,
                    stage_type=stage_type,
                    is_terminal=is_terminal,
                )
            )
            added += 1
        session.commit()
        registry.invalidate(tenant_id, workflow)
        logger.info("stages.seeded", extra={"workflow": workflow, "count": added})
        seeded.extend(registry.get_stages(session, tenant_id, workflow))
    return seeded
