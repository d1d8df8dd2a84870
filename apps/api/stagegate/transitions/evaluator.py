from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from stagegate.core.config import get_settings
from stagegate.security.context import ActorContext
from stagegate.security.roles import holds_roles, is_manager
from stagegate.transitions.conditions import ConditionSyntaxError, evaluate_condition, parse_condition
from stagegate.transitions.models import TransitionRule, utcnow
from stagegate.transitions.registry import StageRegistry, is_backward, stage_registry
from stagegate.transitions.rules import RuleStore, ValidationStore, rule_store, validation_store
from stagegate.transitions.schemas import DecisionRead, StageRead
from stagegate.transitions.subjects import TransitionSubject
from stagegate.transitions.validations import hours_in_stage, run_validation

ALLOWED = "allowed"
REQUIRES_APPROVAL = "requires_approval"
REJECTED = "rejected"


@dataclass(slots=True)
class Decision:
    outcome: str
    entity_type: str
    entity_id: uuid.UUID
    from_stage: str
    to_stage: str
    kind: str | None = None
    message: str | None = None
    is_backward: bool = False
    requires_approval: bool = False
    matched_rule_ids: list[uuid.UUID] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    approval_request_id: uuid.UUID | None = None
    history_id: uuid.UUID | None = None
    project_id: uuid.UUID | None = None
    production_workflow_id: uuid.UUID | None = None

    @property
    def is_allowed(self) -> bool:
        return self.outcome == ALLOWED

    @property
    def is_rejected(self) -> bool:
        return self.outcome == REJECTED

    def to_read(self) -> DecisionRead:
        return DecisionRead(
            outcome=self.outcome,
            kind=self.kind,
            message=self.message,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            is_backward=self.is_backward,
            requires_approval=self.requires_approval,
            matched_rule_ids=list(self.matched_rule_ids),
            approval_request_id=self.approval_request_id,
            history_id=self.history_id,
            project_id=self.project_id,
            production_workflow_id=self.production_workflow_id,
        )


@dataclass(slots=True)
class GateFailure:
    kind: str
    message: str


@dataclass(eq=False)
class TransitionEvaluator:
    """Decides whether a proposed stage change is allowed, gated or rejected.

    Evaluation only reads: stages, rules, validations and history. Persisting
    the outcome is the caller's job.
    """

    registry: StageRegistry = stage_registry
    rules: RuleStore = rule_store
    validations: ValidationStore = validation_store

    def evaluate(
        self,
        session: Session,
        subject: TransitionSubject,
        target_key: str,
        actor: ActorContext,
        reason: str | None = None,
        *,
        now: datetime | None = None,
        approval_granted: bool = False,
    ) -> Decision:
        now = now or utcnow()
        decision = Decision(
            outcome=ALLOWED,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            from_stage=subject.current_stage,
            to_stage=target_key,
        )

        current = self.registry.find_stage(session, subject.tenant_id, subject.workflow, subject.current_stage)
        if current is None:
            return self._reject(decision, "invalid_stage", f"current stage '{subject.current_stage}' is not configured")
        target = self.registry.find_stage(session, subject.tenant_id, subject.workflow, target_key)
        if target is None or not target.is_active:
            return self._reject(decision, "invalid_stage", f"unknown stage '{target_key}'")
        if target.key == current.key:
            return self._reject(decision, "invalid_stage", f"entity is already in stage '{target_key}'")
        decision.is_backward = is_backward(current, target)

        failure = self.check_ordering(session, subject, current, target)
        if failure is not None:
            return self._reject(decision, failure.kind, failure.message)

        matched = [
            rule
            for rule in self.rules.find_rules(session, subject.tenant_id, subject.workflow, current.key, target.key)
            if _category_admits(rule, subject.category)
        ]
        decision.matched_rule_ids = [rule.id for rule in matched]
        for rule in matched:
            failure = self._check_rule(rule, subject, actor, reason, now)
            if failure is not None:
                return self._reject(decision, failure.kind, failure.message)

        failure = self._check_validations(session, subject, current, target, now)
        if failure is not None:
            return self._reject(decision, failure.kind, failure.message)

        failure = self.check_builtin_gates(subject, current, target, actor, reason, decision.metadata)
        if failure is not None:
            return self._reject(decision, failure.kind, failure.message)

        gated = any(rule.requires_approval for rule in matched)
        if gated and approval_granted:
            decision.requires_approval = True
        elif gated and get_settings().manager_bypasses_approval and is_manager(actor):
            decision.metadata["approval_bypassed"] = True
        elif gated:
            decision.outcome = REQUIRES_APPROVAL
            decision.requires_approval = True
            decision.message = "This transition requires manager approval"
        return decision

    def check_ordering(
        self,
        session: Session,
        subject: TransitionSubject,
        current: StageRead,
        target: StageRead,
    ) -> GateFailure | None:
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
        return None

    def _check_rule(
        self,
        rule: TransitionRule,
        subject: TransitionSubject,
        actor: ActorContext,
        reason: str | None,
        now: datetime,
    ) -> GateFailure | None:
        required_roles = list(rule.required_roles or [])
        if required_roles and not holds_roles(actor, required_roles, match=rule.role_match):
            quantifier = "one of" if rule.role_match == "any" else "all of"
            return GateFailure(
                "forbidden",
                f"This transition requires {quantifier} the following roles: {', '.join(required_roles)}",
            )

        if rule.requires_reason and not (reason or "").strip():
            return GateFailure("reason_required", "A reason is required for this transition")

        min_hours = rule.min_time_in_stage_hours
        if min_hours is not None and min_hours > 0 and hours_in_stage(subject, now) < Decimal(min_hours):
            return GateFailure(
                "too_early",
                f"Entity must remain in {subject.current_stage} for at least {_format_number(min_hours)} hours",
            )

        if rule.min_value is not None or rule.max_value is not None:
            value = subject.value
            if value is None:
                return GateFailure("threshold_violation", "Entity has no value to compare against the rule thresholds")
            if rule.min_value is not None and Decimal(value) < Decimal(rule.min_value):
                return GateFailure(
                    "threshold_violation",
                    f"Value {_format_number(value)} is below the minimum of {_format_number(rule.min_value)}",
                )
            if rule.max_value is not None and Decimal(value) > Decimal(rule.max_value):
                return GateFailure(
                    "threshold_violation",
                    f"Value {_format_number(value)} exceeds the maximum of {_format_number(rule.max_value)}",
                )

        if rule.extra_conditions:
            try:
                condition = parse_condition(rule.extra_conditions)
            except ConditionSyntaxError:
                return GateFailure("validation_failed", rule.error_message or "Transition rule conditions are malformed")
            if not evaluate_condition(condition, subject.context):
                return GateFailure("validation_failed", rule.error_message or "Transition conditions are not met")
        return None

    def _check_validations(
        self,
        session: Session,
        subject: TransitionSubject,
        current: StageRead,
        target: StageRead,
        now: datetime,
    ) -> GateFailure | None:
        checks = [
            *self.validations.find_validations(session, subject.tenant_id, subject.workflow, current.key, "exit"),
            *self.validations.find_validations(session, subject.tenant_id, subject.workflow, target.key, "enter"),
        ]
        for validation in checks:
            if not run_validation(session, validation, subject, now=now):
                return GateFailure("validation_failed", validation.error_message)
        return None

    @staticmethod
    def _reject(decision: Decision, kind: str, message: str) -> Decision:
        decision.outcome = REJECTED
        decision.kind = kind
        decision.message = message
        return decision


def _category_admits(rule: TransitionRule, category: str | None) -> bool:
    allowed = rule.category_filter or []
    if not allowed:
        return True
    return category is not None and category in allowed


def _format_number(value: Decimal | float | int) -> str:
    normalized = Decimal(str(value)).normalize()
    return f"{normalized:f}"


transition_evaluator = TransitionEvaluator()
