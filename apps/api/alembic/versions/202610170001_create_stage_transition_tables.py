"""create stage transition tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "workflow_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("workflow", sa.String(length=32), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("stage_type", sa.String(length=16), nullable=False, server_default="standard"),
        sa.Column("is_terminal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "workflow", "key", name="uq_workflow_stage_key"),
        sa.UniqueConstraint("tenant_id", "workflow", "position", name="uq_workflow_stage_position"),
        sa.CheckConstraint("workflow IN ('pipeline', 'production')", name="ck_workflow_stage_workflow"),
        sa.CheckConstraint("stage_type IN ('standard', 'hold', 'end')", name="ck_workflow_stage_type"),
    )
    op.create_index(
        "ix_workflow_stage_tenant_workflow",
        "workflow_stage",
        ["tenant_id", "workflow", "position"],
        unique=False,
    )

    op.create_table(
        "transition_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("workflow", sa.String(length=32), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=False),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("required_roles", sa.JSON(), nullable=False),
        sa.Column("role_match", sa.String(length=8), nullable=False, server_default="all"),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_reason", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("min_time_in_stage_hours", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("min_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("max_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("category_filter", sa.JSON(), nullable=True),
        sa.Column("extra_conditions", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("role_match IN ('all', 'any')", name="ck_transition_rule_role_match"),
        sa.CheckConstraint(
            "min_value IS NULL OR max_value IS NULL OR min_value <= max_value",
            name="ck_transition_rule_value_range",
        ),
    )
    op.create_index(
        "ix_transition_rule_lookup",
        "transition_rule",
        ["tenant_id", "workflow", "from_stage", "to_stage"],
        unique=False,
    )

    op.create_table(
        "stage_validation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("workflow", sa.String(length=32), nullable=False),
        sa.Column("applies_to_stage", sa.String(length=64), nullable=False),
        sa.Column("phase", sa.String(length=8), nullable=False, server_default="enter"),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("phase IN ('enter', 'exit')", name="ck_stage_validation_phase"),
        sa.CheckConstraint(
            "kind IN ('document_required', 'field_required', 'time_based', 'dependency')",
            name="ck_stage_validation_kind",
        ),
    )
    op.create_index(
        "ix_stage_validation_lookup",
        "stage_validation",
        ["tenant_id", "workflow", "applies_to_stage"],
        unique=False,
    )

    op.create_table(
        "pipeline_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("estimated_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("gross_profit", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("current_stage", sa.String(length=64), nullable=False),
        sa.Column("status_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_status_change_reason", sa.Text(), nullable=True),
        sa.Column("workflow_metadata", sa.JSON(), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_entry_tenant_stage",
        "pipeline_entry",
        ["tenant_id", "current_stage"],
        unique=False,
    )

    op.create_table(
        "project",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("pipeline_entry_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("project_type", sa.String(length=64), nullable=False),
        sa.Column("selling_price", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("gross_profit", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("approved_by", sa.String(length=255), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_entry_id"], ["pipeline_entry.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_entry_id", name="uq_project_pipeline_entry"),
    )

    op.create_table(
        "production_workflow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("current_stage", sa.String(length=64), nullable=False),
        sa.Column("status_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_status_change_reason", sa.Text(), nullable=True),
        sa.Column("workflow_metadata", sa.JSON(), nullable=False),
        sa.Column("noc_uploaded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("permit_application_submitted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("permit_approved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("materials_ordered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("materials_delivered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("work_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("final_inspection_passed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", name="uq_production_workflow_project"),
    )
    op.create_index(
        "ix_production_workflow_tenant_stage",
        "production_workflow",
        ["tenant_id", "current_stage"],
        unique=False,
    )

    op.create_table(
        "approval_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=False),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="standard"),
        sa.Column("estimated_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('pending', 'approved', 'rejected', 'superseded')", name="ck_approval_request_status"),
        sa.CheckConstraint("priority IN ('standard', 'high', 'critical')", name="ck_approval_request_priority"),
    )
    op.create_index(
        "ix_approval_request_tenant_status",
        "approval_request",
        ["tenant_id", "status"],
        unique=False,
    )
    op.create_index(
        "uq_approval_request_one_pending",
        "approval_request",
        ["tenant_id", "entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "transition_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=False),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=False),
        sa.Column("actor_roles", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_backward", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("approval_request_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(["approval_request_id"], ["approval_request.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_transition_history_entity",
        "transition_history",
        ["tenant_id", "entity_type", "entity_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "transition_attempt",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=False),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("rejection_kind", sa.String(length=32), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("outcome IN ('rejected', 'requires_approval')", name="ck_transition_attempt_outcome"),
    )
    op.create_index(
        "ix_transition_attempt_entity",
        "transition_attempt",
        ["tenant_id", "entity_type", "entity_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "notification_intent",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("intent_type", sa.String(length=64), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notification_intent_status",
        "notification_intent",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "transition_idempotency_key",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "endpoint", "key", name="uq_transition_idempotency_key"),
    )


def downgrade() -> None:
    op.drop_table("transition_idempotency_key")

    op.drop_index("ix_notification_intent_status", table_name="notification_intent")
    op.drop_table("notification_intent")

    op.drop_index("ix_transition_attempt_entity", table_name="transition_attempt")
    op.drop_table("transition_attempt")

    op.drop_index("ix_transition_history_entity", table_name="transition_history")
    op.drop_table("transition_history")

    op.drop_index("uq_approval_request_one_pending", table_name="approval_request")
    op.drop_index("ix_approval_request_tenant_status", table_name="approval_request")
    op.drop_table("approval_request")

    op.drop_index("ix_production_workflow_tenant_stage", table_name="production_workflow")
    op.drop_table("production_workflow")

    op.drop_table("project")

    op.drop_index("ix_pipeline_entry_tenant_stage", table_name="pipeline_entry")
    op.drop_table("pipeline_entry")

    op.drop_index("ix_stage_validation_lookup", table_name="stage_validation")
    op.drop_table("stage_validation")

    op.drop_index("ix_transition_rule_lookup", table_name="transition_rule")
    op.drop_table("transition_rule")

    op.drop_index("ix_workflow_stage_tenant_workflow", table_name="workflow_stage")
    op.drop_table("workflow_stage")
