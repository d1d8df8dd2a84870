from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Workflow = Literal["pipeline", "production"]
EntityType = Literal["pipeline_entry", "production_workflow"]
StageType = Literal["standard", "hold", "end"]
RoleMatch = Literal["all", "any"]
ValidationKind = Literal["document_required", "field_required", "time_based", "dependency"]
ValidationPhase = Literal["enter", "exit"]
ApprovalStatus = Literal["pending", "approved", "rejected", "superseded"]
ApprovalPriority = Literal["standard", "high", "critical"]
ApprovalDecision = Literal["approved", "rejected"]
DecisionOutcome = Literal["allowed", "requires_approval", "rejected"]
RejectionKind = Literal[
    "invalid_stage",
    "forbidden",
    "reason_required",
    "too_early",
    "threshold_violation",
    "validation_failed",
    "skipped_stage",
]

ENTITY_WORKFLOWS: dict[str, str] = {
    "pipeline_entry": "pipeline",
    "production_workflow": "production",
}


ConditionOp = Literal["eq", "neq", "in", "contains", "gt", "gte", "lt", "lte", "exists"]


class ConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()


class StageCreate(BaseModel):
    workflow: Workflow
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")
    label: str | None = Field(default=None, max_length=255)
    position: int = Field(ge=0)
    stage_type: StageType = "standard"
    is_terminal: bool = False


class StageUpdate(BaseModel):
    label: str | None = Field(default=None, min_length=1, max_length=255)
    stage_type: StageType | None = None
    is_terminal: bool | None = None
    is_active: bool | None = None


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    tenant_id: str
    workflow: Workflow
    key: str
    label: str
    position: int
    stage_type: StageType
    is_terminal: bool
    is_active: bool


class SeedStagesRequest(BaseModel):
    workflows: list[Workflow] = Field(default_factory=lambda: ["pipeline", "production"], min_length=1)


class TransitionRuleCreate(BaseModel):
    workflow: Workflow = "pipeline"
    from_stage: str = Field(min_length=1)
    to_stage: str = Field(min_length=1)
    name: str | None = Field(default=None, max_length=255)
    required_roles: list[str] = Field(default_factory=list)
    role_match: RoleMatch = "all"
    requires_approval: bool = False
    requires_reason: bool = False
    min_time_in_stage_hours: Decimal | None = Field(default=None, ge=Decimal("0"))
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    category_filter: list[str] | None = None
    extra_conditions: dict[str, Any] | None = None
    error_message: str | None = None
    priority: int = 100

    @model_validator(mode="after")
    def validate_value_range(self) -> "TransitionRuleCreate":
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must be less than or equal to max_value")
        if self.from_stage == self.to_stage:
            raise ValueError("from_stage and to_stage must differ")
        return self


class TransitionRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    workflow: Workflow
    from_stage: str
    to_stage: str
    name: str | None
    required_roles: list[str]
    role_match: RoleMatch
    requires_approval: bool
    requires_reason: bool
    min_time_in_stage_hours: Decimal | None
    min_value: Decimal | None
    max_value: Decimal | None
    category_filter: list[str] | None
    extra_conditions: dict[str, Any] | None
    error_message: str | None
    priority: int
    is_active: bool
    created_by: str | None
    created_at: datetime


class StageValidationCreate(BaseModel):
    workflow: Workflow = "pipeline"
    applies_to_stage: str = Field(min_length=1)
    phase: ValidationPhase = "enter"
    kind: ValidationKind
    config: dict[str, Any] = Field(default_factory=dict)
    error_message: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_config(self) -> "StageValidationCreate":
        if self.kind == "document_required":
            if not isinstance(self.config.get("document_type"), str) or not self.config["document_type"]:
                raise ValueError("document_required validations need config.document_type")
        elif self.kind == "field_required":
            fields = self.config.get("fields")
            if not isinstance(fields, list) or not fields or not all(isinstance(item, str) and item for item in fields):
                raise ValueError("field_required validations need a non-empty config.fields list")
        elif self.kind == "time_based":
            hours = self.config.get("min_hours_in_stage")
            if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0:
                raise ValueError("time_based validations need a non-negative config.min_hours_in_stage")
        elif self.kind == "dependency":
            if not isinstance(self.config.get("stage"), str) or not self.config["stage"]:
                raise ValueError("dependency validations need config.stage")
        return self


class StageValidationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    workflow: Workflow
    applies_to_stage: str
    phase: ValidationPhase
    kind: ValidationKind
    config: dict[str, Any]
    error_message: str
    is_active: bool
    created_at: datetime


class PipelineEntryCreate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    contact_name: str | None = Field(default=None, max_length=255)
    category: str | None = Field(default=None, max_length=64)
    estimated_value: Decimal | None = Field(default=None, ge=Decimal("0"))
    gross_profit: Decimal | None = None
    current_stage: str | None = None
    workflow_metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str | None
    contact_name: str | None
    category: str | None
    estimated_value: Decimal | None
    gross_profit: Decimal | None
    current_stage: str
    status_entered_at: datetime
    last_status_change_reason: str | None
    workflow_metadata: dict[str, Any]
    row_version: int
    created_at: datetime
    updated_at: datetime


class ProductionWorkflowCreate(BaseModel):
    project_id: UUID


class DocumentFlagsUpdate(BaseModel):
    noc_uploaded: bool | None = None
    permit_application_submitted: bool | None = None
    permit_approved: bool | None = None
    materials_ordered: bool | None = None
    materials_delivered: bool | None = None
    work_completed: bool | None = None
    final_inspection_passed: bool | None = None

    @model_validator(mode="after")
    def require_one_flag(self) -> "DocumentFlagsUpdate":
        if not self.model_dump(exclude_none=True):
            raise ValueError("at least one document flag must be provided")
        return self


class ProductionWorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    project_id: UUID
    current_stage: str
    status_entered_at: datetime
    last_status_change_reason: str | None
    workflow_metadata: dict[str, Any]
    noc_uploaded: bool
    permit_application_submitted: bool
    permit_approved: bool
    materials_ordered: bool
    materials_delivered: bool
    work_completed: bool
    final_inspection_passed: bool
    row_version: int
    created_at: datetime
    updated_at: datetime


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    pipeline_entry_id: UUID
    name: str
    status: str
    project_type: str
    selling_price: Decimal | None
    gross_profit: Decimal | None
    approved_by: str | None
    approved_at: datetime | None
    created_at: datetime


class TransitionRequest(BaseModel):
    target_stage: str = Field(min_length=1)
    reason: str | None = None
    notes: str | None = None
    priority: ApprovalPriority = "standard"

    @field_validator("reason", "notes")
    @classmethod
    def strip_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class DecisionRead(BaseModel):
    outcome: DecisionOutcome
    kind: RejectionKind | None = None
    message: str | None = None
    entity_type: EntityType
    entity_id: UUID
    from_stage: str
    to_stage: str
    is_backward: bool = False
    requires_approval: bool = False
    matched_rule_ids: list[UUID] = Field(default_factory=list)
    approval_request_id: UUID | None = None
    history_id: UUID | None = None
    project_id: UUID | None = None
    production_workflow_id: UUID | None = None


class ApprovalRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    entity_type: EntityType
    entity_id: UUID
    from_stage: str
    to_stage: str
    requested_by: str
    requested_at: datetime
    status: ApprovalStatus
    priority: ApprovalPriority
    estimated_value: Decimal | None
    reason: str | None
    notes: str | None
    reviewed_by: str | None
    reviewed_at: datetime | None
    review_notes: str | None


class ApprovalResolveRequest(BaseModel):
    decision: ApprovalDecision
    notes: str | None = None


class ApprovalResolutionRead(BaseModel):
    request: ApprovalRequestRead
    decision: DecisionRead | None = None


class TransitionHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: str
    entity_type: EntityType
    entity_id: UUID
    from_stage: str
    to_stage: str
    actor_user_id: str
    actor_roles: list[str]
    occurred_at: datetime
    is_backward: bool
    requires_approval: bool
    approval_request_id: UUID | None
    reason: str | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    correlation_id: str | None


class TransitionAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: str
    entity_type: EntityType
    entity_id: UUID
    from_stage: str
    to_stage: str
    actor_user_id: str
    occurred_at: datetime
    outcome: Literal["rejected", "requires_approval"]
    rejection_kind: RejectionKind | None
    message: str | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    correlation_id: str | None


class ProvisioningResultRead(BaseModel):
    project_id: UUID
    production_workflow_id: UUID
    project_created: bool
    production_workflow_created: bool
