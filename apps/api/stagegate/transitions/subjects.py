from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import inspect

from stagegate.transitions.models import DOCUMENT_FLAG_FIELDS, PipelineEntry, ProductionWorkflow


@dataclass(slots=True)
class TransitionSubject:
    """Read-only view of a tracked entity as the evaluator sees it."""

    entity_type: str
    entity_id: uuid.UUID
    tenant_id: str
    workflow: str
    current_stage: str
    status_entered_at: datetime
    row_version: int
    value: Decimal | None = None
    category: str | None = None
    flags: dict[str, bool] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def documents(self) -> set[str]:
        metadata = self.context.get("workflow_metadata")
        listed = metadata.get("documents") if isinstance(metadata, dict) else None
        names = {str(item) for item in listed} if isinstance(listed, list) else set()
        names.update(name for name, enabled in self.flags.items() if enabled)
        return names


def as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_values(entity: Any) -> dict[str, Any]:
    mapper = inspect(entity).mapper
    return {column.key: getattr(entity, column.key) for column in mapper.column_attrs}


def subject_for_pipeline_entry(entry: PipelineEntry) -> TransitionSubject:
    context = _column_values(entry)
    context["workflow_metadata"] = dict(entry.workflow_metadata or {})
    return TransitionSubject(
        entity_type="pipeline_entry",
        entity_id=entry.id,
        tenant_id=entry.tenant_id,
        workflow="pipeline",
        current_stage=entry.current_stage,
        status_entered_at=as_aware(entry.status_entered_at),
        row_version=entry.row_version,
        value=entry.estimated_value,
        category=entry.category,
        flags={},
        context=context,
    )


def subject_for_production_workflow(workflow: ProductionWorkflow) -> TransitionSubject:
    context = _column_values(workflow)
    context["workflow_metadata"] = dict(workflow.workflow_metadata or {})
    project = workflow.project
    if project is not None:
        context["project"] = _column_values(project)
    return TransitionSubject(
        entity_type="production_workflow",
        entity_id=workflow.id,
        tenant_id=workflow.tenant_id,
        workflow="production",
        current_stage=workflow.current_stage,
        status_entered_at=as_aware(workflow.status_entered_at),
        row_version=workflow.row_version,
        value=project.selling_price if project is not None else None,
        category=project.project_type if project is not None else None,
        flags={name: bool(getattr(workflow, name)) for name in DOCUMENT_FLAG_FIELDS},
        context=context,
    )
