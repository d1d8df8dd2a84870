from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stagegate.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStage(Base):
    __tablename__ = "workflow_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_type: Mapped[str] = mapped_column(String(16), nullable=False, default="standard", server_default="standard")
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "workflow", "key", name="uq_workflow_stage_key"),
        UniqueConstraint("tenant_id", "workflow", "position", name="uq_workflow_stage_position"),
        CheckConstraint("workflow IN ('pipeline', 'production')", name="ck_workflow_stage_workflow"),
        CheckConstraint("stage_type IN ('standard', 'hold', 'end')", name="ck_workflow_stage_type"),
    )


class TransitionRule(Base):
    __tablename__ = "transition_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow: Mapped[str] = mapped_column(String(32), nullable=False)
    from_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    required_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    role_match: Mapped[str] = mapped_column(String(8), nullable=False, default="all", server_default="all")
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    requires_reason: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    min_time_in_stage_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    min_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    max_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    category_filter: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    extra_conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("role_match IN ('all', 'any')", name="ck_transition_rule_role_match"),
        CheckConstraint(
            "min_value IS NULL OR max_value IS NULL OR min_value <= max_value",
            name="ck_transition_rule_value_range",
        ),
    )


class StageValidation(Base):
    __tablename__ = "stage_validation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow: Mapped[str] = mapped_column(String(32), nullable=False)
    applies_to_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    phase: Mapped[str] = mapped_column(String(8), nullable=False, default="enter", server_default="enter")
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("phase IN ('enter', 'exit')", name="ck_stage_validation_phase"),
        CheckConstraint(
            "kind IN ('document_required', 'field_required', 'time_based', 'dependency')",
            name="ck_stage_validation_kind",
        ),
    )


class PipelineEntry(Base):
    __tablename__ = "pipeline_entry"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    estimated_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    gross_profit: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    current_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    status_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_status_change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    project: Mapped[Project | None] = relationship("Project", back_populates="pipeline_entry", uselist=False)


class Project(Base):
    __tablename__ = "project"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    pipeline_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_entry.id", ondelete="RESTRICT"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    project_type: Mapped[str] = mapped_column(String(64), nullable=False)
    selling_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    gross_profit: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pipeline_entry: Mapped[PipelineEntry] = relationship("PipelineEntry", back_populates="project")
    production_workflow: Mapped[ProductionWorkflow | None] = relationship(
        "ProductionWorkflow",
        back_populates="project",
        uselist=False,
    )

    __table_args__ = (UniqueConstraint("pipeline_entry_id", name="uq_project_pipeline_entry"),)


class ProductionWorkflow(Base):
    __tablename__ = "production_workflow"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("project.id", ondelete="RESTRICT"),
        nullable=False,
    )
    current_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    status_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_status_change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    noc_uploaded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    permit_application_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    permit_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    materials_ordered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    materials_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    work_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    final_inspection_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="production_workflow")

    __table_args__ = (UniqueConstraint("project_id", name="uq_production_workflow_project"),)


DOCUMENT_FLAG_FIELDS = (
    "noc_uploaded",
    "permit_application_submitted",
    "permit_approved",
    "materials_ordered",
    "materials_delivered",
    "work_completed",
    "final_inspection_passed",
)


class ApprovalRequest(Base):
    __tablename__ = "approval_request"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    from_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="standard", server_default="standard")
    estimated_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'rejected', 'superseded')", name="ck_approval_request_status"),
        CheckConstraint("priority IN ('standard', 'high', 'critical')", name="ck_approval_request_priority"),
    )


class TransitionHistoryRecord(Base):
    __tablename__ = "transition_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    from_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    is_backward: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    approval_request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_request.id", ondelete="RESTRICT"),
        nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)


class TransitionAttempt(Base):
    __tablename__ = "transition_attempt"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    from_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    rejection_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        CheckConstraint("outcome IN ('rejected', 'requires_approval')", name="ck_transition_attempt_outcome"),
    )


class NotificationIntent(Base):
    __tablename__ = "notification_intent"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    intent_type: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Queued", server_default="Queued")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TransitionIdempotencyKey(Base):
    __tablename__ = "transition_idempotency_key"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "endpoint", "key", name="uq_transition_idempotency_key"),)


Index("ix_workflow_stage_tenant_workflow", WorkflowStage.tenant_id, WorkflowStage.workflow, WorkflowStage.position)
Index(
    "ix_transition_rule_lookup",
    TransitionRule.tenant_id,
    TransitionRule.workflow,
    TransitionRule.from_stage,
    TransitionRule.to_stage,
)
Index("ix_stage_validation_lookup", StageValidation.tenant_id, StageValidation.workflow, StageValidation.applies_to_stage)
Index("ix_pipeline_entry_tenant_stage", PipelineEntry.tenant_id, PipelineEntry.current_stage)
Index("ix_production_workflow_tenant_stage", ProductionWorkflow.tenant_id, ProductionWorkflow.current_stage)
Index("ix_approval_request_tenant_status", ApprovalRequest.tenant_id, ApprovalRequest.status)
Index(
    "uq_approval_request_one_pending",
    ApprovalRequest.tenant_id,
    ApprovalRequest.entity_type,
    ApprovalRequest.entity_id,
    unique=True,
    postgresql_where=ApprovalRequest.status == "pending",
    sqlite_where=ApprovalRequest.status == "pending",
)
Index(
    "ix_transition_history_entity",
    TransitionHistoryRecord.tenant_id,
    TransitionHistoryRecord.entity_type,
    TransitionHistoryRecord.entity_id,
    TransitionHistoryRecord.occurred_at,
)
Index(
    "ix_transition_attempt_entity",
    TransitionAttempt.tenant_id,
    TransitionAttempt.entity_type,
    TransitionAttempt.entity_id,
    TransitionAttempt.occurred_at,
)
Index("ix_notification_intent_status", NotificationIntent.status, NotificationIntent.created_at)
