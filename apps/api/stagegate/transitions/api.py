from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stagegate.context import get_correlation_id
from stagegate.core.auth import AuthUser, get_current_user as get_auth_user
from stagegate.core.database import get_db
from stagegate.security.context import ActorContext
from stagegate.transitions.evaluator import REJECTED, REQUIRES_APPROVAL, Decision
from stagegate.transitions.production import production_workflow_service
from stagegate.transitions.registry import stage_registry
from stagegate.transitions.rules import rule_store, validation_store
from stagegate.transitions.schemas import (
    ApprovalRequestRead,
    ApprovalResolutionRead,
    ApprovalResolveRequest,
    DecisionRead,
    DocumentFlagsUpdate,
    PipelineEntryCreate,
    PipelineEntryRead,
    ProductionWorkflowCreate,
    ProductionWorkflowRead,
    ProvisioningResultRead,
    SeedStagesRequest,
    StageCreate,
    StageRead,
    StageUpdate,
    StageValidationCreate,
    StageValidationRead,
    TransitionAttemptRead,
    TransitionHistoryRead,
    TransitionRequest,
    TransitionRuleCreate,
    TransitionRuleRead,
    Workflow,
)
from stagegate.transitions.seed import seed_default_stages
from stagegate.transitions.service import transition_service

API_PREFIX = "/api/stagegate"

PERMISSION_TRANSITIONS_WRITE = "stagegate.transitions.write"
PERMISSION_APPROVALS_RESOLVE = "stagegate.approvals.resolve"
PERMISSION_CONFIG_MANAGE = "stagegate.config.manage"
PERMISSION_HISTORY_READ = "stagegate.history.read"

config_router = APIRouter(prefix=API_PREFIX, tags=["stagegate.config"])
entries_router = APIRouter(prefix=API_PREFIX, tags=["stagegate.entries"])
approvals_router = APIRouter(prefix=API_PREFIX, tags=["stagegate.approvals"])
production_router = APIRouter(prefix=API_PREFIX, tags=["stagegate.production"])
transitions_router = APIRouter(prefix=API_PREFIX, tags=["stagegate.transitions"])

_DECISION_STATUS = {
    REQUIRES_APPROVAL: status.HTTP_202_ACCEPTED,
    REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_actor_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    x_tenant_id: str | None = Header(default=None, alias="x-tenant-id"),
) -> ActorContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorContext(
        user_id=auth_user.sub,
        tenant_id=(x_tenant_id or "").strip(),
        roles=list(auth_user.roles),
        correlation_id=correlation_id or None,
    )


def require_permission(actor: ActorContext, permission: str) -> None:
    if not actor.tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-tenant-id header is required")
    if not actor.has_permission(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def decision_response(decision: Decision) -> JSONResponse:
    return JSONResponse(
        status_code=_DECISION_STATUS.get(decision.outcome, status.HTTP_200_OK),
        content=decision.to_read().model_dump(mode="json"),
    )


@config_router.get("/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    workflow: Workflow = Query(default="pipeline"),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        return stage_registry.get_stages(db, actor.tenant_id, workflow)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_stage_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: StageCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> StageRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return stage_registry.create_stage(db, actor.tenant_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.patch("/stages/{workflow}/{key}", response_model=StageRead)
def update_stage(
    request: Request,
    workflow: Workflow,
    key: str,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> StageRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return stage_registry.update_stage(db, actor.tenant_id, workflow, key, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_stage_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/stages/seed", response_model=list[StageRead])
def seed_stages(
    request: Request,
    dto: SeedStagesRequest | None = None,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        workflows = list(dto.workflows) if dto is not None else None
        return seed_default_stages(db, actor.tenant_id, workflows)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_stage_seed_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.get("/rules", response_model=list[TransitionRuleRead])
def list_rules(
    request: Request,
    workflow: Workflow | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[TransitionRuleRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return rule_store.list_rules(db, actor.tenant_id, workflow)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/rules", response_model=TransitionRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: TransitionRuleCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> TransitionRuleRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return rule_store.create_rule(db, actor, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/rules/{rule_id}/deactivate", response_model=TransitionRuleRead)
def deactivate_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> TransitionRuleRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return rule_store.deactivate_rule(db, actor, rule_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_rule_deactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.get("/validations", response_model=list[StageValidationRead])
def list_validations(
    request: Request,
    workflow: Workflow | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[StageValidationRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return validation_store.list_validations(db, actor.tenant_id, workflow)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_validation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/validations", response_model=StageValidationRead, status_code=status.HTTP_201_CREATED)
def create_validation(
    request: Request,
    dto: StageValidationCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> StageValidationRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return validation_store.create_validation(db, actor, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_validation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@config_router.post("/validations/{validation_id}/deactivate", response_model=StageValidationRead)
def deactivate_validation(
    request: Request,
    validation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> StageValidationRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_CONFIG_MANAGE)
        return validation_store.deactivate_validation(db, actor, validation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_validation_deactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@entries_router.post("/pipeline-entries", response_model=PipelineEntryRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_entry(
    request: Request,
    dto: PipelineEntryCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> PipelineEntryRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_TRANSITIONS_WRITE)
        return transition_service.create_pipeline_entry(db, actor, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_pipeline_entry_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@entries_router.get("/pipeline-entries/{entry_id}", response_model=PipelineEntryRead)
def get_pipeline_entry(
    request: Request,
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> PipelineEntryRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        return transition_service.get_pipeline_entry(db, actor, entry_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_pipeline_entry_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@entries_router.post("/provisioning/pipeline-entries/{entry_id}", response_model=ProvisioningResultRead)
def provision_pipeline_entry(
    request: Request,
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ProvisioningResultRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_TRANSITIONS_WRITE)
        return transition_service.provision_pipeline_entry(db, actor, entry_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_provisioning_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@approvals_router.get("/approvals/pending", response_model=list[ApprovalRequestRead])
def list_pending_approvals(
    request: Request,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[ApprovalRequestRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_APPROVALS_RESOLVE)
        return transition_service.get_pending_approvals(db, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_approval_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@approvals_router.get("/approvals/{request_id}", response_model=ApprovalRequestRead)
def get_approval(
    request: Request,
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ApprovalRequestRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        return transition_service.get_approval(db, actor, request_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_approval_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@approvals_router.post("/approvals/{request_id}/resolve", response_model=ApprovalResolutionRead)
def resolve_approval(
    request: Request,
    request_id: uuid.UUID,
    dto: ApprovalResolveRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ApprovalResolutionRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_APPROVALS_RESOLVE)
        resolution = transition_service.resolve_approval(db, actor, request_id, dto.decision, dto.notes)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_approval_resolve_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    if resolution.decision is not None and resolution.decision.outcome == REJECTED:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=resolution.model_dump(mode="json"),
        )
    return resolution


@production_router.post(
    "/production-workflows",
    response_model=ProductionWorkflowRead,
    status_code=status.HTTP_201_CREATED,
)
def create_production_workflow(
    request: Request,
    dto: ProductionWorkflowCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ProductionWorkflowRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_TRANSITIONS_WRITE)
        workflow, created = production_workflow_service.create_workflow(db, actor, dto.project_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_production_workflow_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    body = ProductionWorkflowRead.model_validate(workflow)
    if not created:
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))
    return body


@production_router.get("/production-workflows/{workflow_id}", response_model=ProductionWorkflowRead)
def get_production_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ProductionWorkflowRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        workflow = production_workflow_service.get_workflow(db, actor.tenant_id, workflow_id)
        return ProductionWorkflowRead.model_validate(workflow)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_production_workflow_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@production_router.patch("/production-workflows/{workflow_id}/documents", response_model=ProductionWorkflowRead)
def update_document_flags(
    request: Request,
    workflow_id: uuid.UUID,
    dto: DocumentFlagsUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> ProductionWorkflowRead | JSONResponse:
    try:
        require_permission(actor, PERMISSION_TRANSITIONS_WRITE)
        return production_workflow_service.update_document_flags(db, actor, workflow_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_production_documents_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@transitions_router.post("/{entity_type}/{entity_id}/transitions", response_model=DecisionRead)
def attempt_transition(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    try:
        require_permission(actor, PERMISSION_TRANSITIONS_WRITE)
        decision = transition_service.attempt_transition(
            db,
            actor,
            entity_type,
            entity_id,
            dto.target_stage,
            dto.reason,
            notes=dto.notes,
            priority=dto.priority,
            idempotency_key=idempotency_key,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_transition_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return decision_response(decision)


@transitions_router.get("/{entity_type}/{entity_id}/history", response_model=list[TransitionHistoryRead])
def get_history(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[TransitionHistoryRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        return transition_service.get_history(db, actor, entity_type, entity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_history_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@transitions_router.get("/{entity_type}/{entity_id}/attempts", response_model=list[TransitionAttemptRead])
def get_attempts(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor_context),
) -> list[TransitionAttemptRead] | JSONResponse:
    try:
        require_permission(actor, PERMISSION_HISTORY_READ)
        return transition_service.get_attempts(db, actor, entity_type, entity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="stagegate_attempts_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


router = APIRouter()
router.include_router(config_router)
router.include_router(entries_router)
router.include_router(approvals_router)
router.include_router(production_router)
# Catch-all entity routes last so literal prefixes win.
router.include_router(transitions_router)
