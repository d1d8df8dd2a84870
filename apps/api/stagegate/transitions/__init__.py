from stagegate.transitions.api import router
from stagegate.transitions.approvals import AlreadyResolvedError, ApprovalQueue, PendingApprovalConflict, approval_queue
from stagegate.transitions.evaluator import Decision, TransitionEvaluator, transition_evaluator
from stagegate.transitions.history import TransitionLog, transition_log
from stagegate.transitions.models import (
    ApprovalRequest,
    NotificationIntent,
    PipelineEntry,
    ProductionWorkflow,
    Project,
    StageValidation,
    TransitionAttempt,
    TransitionHistoryRecord,
    TransitionRule,
    WorkflowStage,
)
from stagegate.transitions.production import (
    ProductionTransitionEvaluator,
    ProductionWorkflowService,
    production_evaluator,
    production_workflow_service,
)
from stagegate.transitions.provisioning import ProvisioningConflict, SideEffectDispatcher, side_effect_dispatcher
from stagegate.transitions.registry import StageRegistry, stage_registry
from stagegate.transitions.rules import RuleStore, ValidationStore, rule_store, validation_store
from stagegate.transitions.service import TransitionService, transition_service

__all__ = [
    "router",
    "WorkflowStage",
    "TransitionRule",
    "StageValidation",
    "PipelineEntry",
    "Project",
    "ProductionWorkflow",
    "ApprovalRequest",
    "TransitionHistoryRecord",
    "TransitionAttempt",
    "NotificationIntent",
    "StageRegistry",
    "stage_registry",
    "RuleStore",
    "ValidationStore",
    "rule_store",
    "validation_store",
    "Decision",
    "TransitionEvaluator",
    "transition_evaluator",
    "ProductionTransitionEvaluator",
    "ProductionWorkflowService",
    "production_evaluator",
    "production_workflow_service",
    "AlreadyResolvedError",
    "ApprovalQueue",
    "PendingApprovalConflict",
    "approval_queue",
    "ProvisioningConflict",
    "SideEffectDispatcher",
    "side_effect_dispatcher",
    "TransitionLog",
    "transition_log",
    "TransitionService",
    "transition_service",
]
