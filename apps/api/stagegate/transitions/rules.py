from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from stagegate.security.context import ActorContext
from stagegate.transitions.conditions import ConditionSyntaxError, parse_condition
from stagegate.transitions.models import StageValidation, TransitionRule
from stagegate.transitions.registry import StageRegistry, stage_registry
from stagegate.transitions.schemas import (
    StageValidationCreate,
    StageValidationRead,
    TransitionRuleCreate,
    TransitionRuleRead,
)

logger = logging.getLogger("stagegate.rules")


@dataclass(eq=False)
class RuleStore:
    registry: StageRegistry = stage_registry

    def find_rules(
        self,
        session: Session,
        tenant_id: str,
        workflow: str,
        from_stage: str,
        to_stage: str,
    ) -> list[TransitionRule]:
        stmt: Select[tuple[TransitionRule]] = (
            select(TransitionRule)
            .where(
                TransitionRule.tenant_id == tenant_id,
                TransitionRule.workflow == workflow,
                TransitionRule.from_stage == from_stage,
                TransitionRule.to_stage == to_stage,
                TransitionRule.is_active.is_(True),
            )
            .order_by(TransitionRule.priority.asc(), TransitionRule.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def list_rules(self, session: Session, tenant_id: str, workflow: str | None = None) -> list[TransitionRuleRead]:
        stmt = select(TransitionRule).where(TransitionRule.tenant_id == tenant_id)
        if workflow is not None:
            stmt = stmt.where(TransitionRule.workflow == workflow)
        rows = session.scalars(
            stmt.order_by(TransitionRule.from_stage.asc(), TransitionRule.to_stage.asc(), TransitionRule.priority.asc())
        ).all()
        return [TransitionRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, actor: ActorContext, dto: TransitionRuleCreate) -> TransitionRuleRead:
        source = self.registry.find_stage(session, actor.tenant_id, dto.workflow, dto.from_stage)
        target = self.registry.find_stage(session, actor.tenant_id, dto.workflow, dto.to_stage)
        if source is None or target is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="rule references an unknown stage")
        if source.is_terminal:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"terminal stage '{source.key}' cannot have outbound rules",
            )
        if dto.extra_conditions is not None:
            try:
                parse_condition(dto.extra_conditions)
            except ConditionSyntaxError as exc:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"invalid extra_conditions: {exc}",
                ) from exc

        rule = TransitionRule(
            tenant_id=actor.tenant_id,
            created_by=actor.user_id,
            **dto.model_dump(mode="python"),
        )
        session.add(rule)
        session.commit()
        session.refresh(rule)
        logger.info(
            "rule.created",
            extra={"workflow": rule.workflow, "from_stage": rule.from_stage, "to_stage": rule.to_stage},
        )
        return TransitionRuleRead.model_validate(rule)

    def deactivate_rule(self, session: Session, actor: ActorContext, rule_id: uuid.UUID) -> TransitionRuleRead:
        rule = session.scalar(
            select(TransitionRule).where(TransitionRule.id == rule_id, TransitionRule.tenant_id == actor.tenant_id)
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="rule not found")
        rule.is_active = False
        session.commit()
        session.refresh(rule)
        return TransitionRuleRead.model_validate(rule)


@dataclass(eq=False)
class ValidationStore:
    registry: StageRegistry = stage_registry

    def find_validations(
        self,
        session: Session,
        tenant_id: str,
        workflow: str,
        stage: str,
        phase: str = "enter",
    ) -> list[StageValidation]:
        stmt = (
            select(StageValidation)
            .where(
                StageValidation.tenant_id == tenant_id,
                StageValidation.workflow == workflow,
                StageValidation.applies_to_stage == stage,
                StageValidation.phase == phase,
                StageValidation.is_active.is_(True),
            )
            .order_by(StageValidation.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def list_validations(
        self,
        session: Session,
        tenant_id: str,
        workflow: str | None = None,
    ) -> list[StageValidationRead]:
        stmt = select(StageValidation).where(StageValidation.tenant_id == tenant_id)
        if workflow is not None:
            stmt = stmt.where(StageValidation.workflow == workflow)
        rows = session.scalars(stmt.order_by(StageValidation.applies_to_stage.asc(), StageValidation.created_at.asc())).all()
        return [StageValidationRead.model_validate(row) for row in rows]

    def create_validation(
        self,
        session: Session,
        actor: ActorContext,
        dto: StageValidationCreate,
    ) -> StageValidationRead:
        if self.registry.find_stage(session, actor.tenant_id, dto.workflow, dto.applies_to_stage) is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="validation references an unknown stage",
            )
        if dto.kind == "dependency" and self.registry.find_stage(
            session, actor.tenant_id, dto.workflow, dto.config["stage"]
        ) is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="dependency validation references an unknown stage",
            )

        validation = StageValidation(tenant_id=actor.tenant_id, **dto.model_dump(mode="python"))
        session.add(validation)
        session.commit()
        session.refresh(validation)
        return StageValidationRead.model_validate(validation)

    def deactivate_validation(
        self,
        session: Session,
        actor: ActorContext,
        validation_id: uuid.UUID,
    ) -> StageValidationRead:
        validation = session.scalar(
            select(StageValidation).where(
                StageValidation.id == validation_id,
                StageValidation.tenant_id == actor.tenant_id,
            )
        )
        if validation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="validation not found")
        validation.is_active = False
        session.commit()
        session.refresh(validation)
        return StageValidationRead.model_validate(validation)


rule_store = RuleStore()
validation_store = ValidationStore()
