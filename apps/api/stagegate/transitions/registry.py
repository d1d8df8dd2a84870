from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stagegate.core.config import get_settings
from stagegate.metrics import observe_stage_cache_hit, observe_stage_cache_miss
from stagegate.transitions.models import TransitionRule, WorkflowStage
from stagegate.transitions.schemas import StageCreate, StageRead, StageUpdate

logger = logging.getLogger("stagegate.registry")


@dataclass(slots=True)
class _CachedCatalog:
    stages: tuple[StageRead, ...]
    loaded_at: float


@dataclass(eq=False)
class StageRegistry:
    """Per-tenant ordered stage catalogs, read once and cached in process."""

    _cache: dict[tuple[str, str], _CachedCatalog] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get_stages(self, session: Session, tenant_id: str, workflow: str) -> list[StageRead]:
        key = (tenant_id, workflow)
        ttl = get_settings().stage_cache_ttl_seconds
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached.loaded_at < ttl:
                observe_stage_cache_hit()
                return list(cached.stages)

        observe_stage_cache_miss()
        rows = session.scalars(
            select(WorkflowStage)
            .where(WorkflowStage.tenant_id == tenant_id, WorkflowStage.workflow == workflow)
            .order_by(WorkflowStage.position.asc())
        ).all()
        stages = tuple(StageRead.model_validate(row) for row in rows)
        if stages:
            with self._lock:
                self._cache[key] = _CachedCatalog(stages=stages, loaded_at=now)
        return list(stages)

    def find_stage(self, session: Session, tenant_id: str, workflow: str, key: str) -> StageRead | None:
        for stage in self.get_stages(session, tenant_id, workflow):
            if stage.key == key:
                return stage
        return None

    def get_stage(self, session: Session, tenant_id: str, workflow: str, key: str) -> StageRead:
        stage = self.find_stage(session, tenant_id, workflow, key)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"stage '{key}' not found")
        return stage

    def first_stage(self, session: Session, tenant_id: str, workflow: str) -> StageRead:
        for stage in self.get_stages(session, tenant_id, workflow):
            if stage.is_active and stage.stage_type == "standard":
                return stage
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"tenant has no {workflow} stages configured",
        )

    def rank(self, session: Session, tenant_id: str, workflow: str, key: str) -> int | None:
        """Index of a stage within the active standard (ordered) part of the catalog."""
        ordered = [
            stage.key
            for stage in self.get_stages(session, tenant_id, workflow)
            if stage.stage_type == "standard" and stage.is_active
        ]
        try:
            return ordered.index(key)
        except ValueError:
            return None

    def create_stage(self, session: Session, tenant_id: str, dto: StageCreate) -> StageRead:
        stage = WorkflowStage(
            tenant_id=tenant_id,
            workflow=dto.workflow,
            key=dto.key,
            label=dto.label or dto.key.replace("_", " ").title(),
            position=dto.position,
            stage_type=dto.stage_type,
            is_terminal=dto.is_terminal,
        )
        session.add(stage)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage key or position already exists")
        session.refresh(stage)
        self.invalidate(tenant_id, dto.workflow)
        logger.info("stage.created", extra={"workflow": dto.workflow, "to_stage": dto.key})
        return StageRead.model_validate(stage)

    def update_stage(self, session: Session, tenant_id: str, workflow: str, key: str, dto: StageUpdate) -> StageRead:
        stage = session.scalar(
            select(WorkflowStage).where(
                WorkflowStage.tenant_id == tenant_id,
                WorkflowStage.workflow == workflow,
                WorkflowStage.key == key,
            )
        )
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"stage '{key}' not found")
        changes = dto.model_dump(exclude_none=True)
        if changes.get("is_terminal") and not stage.is_terminal:
            outbound = session.scalar(
                select(func.count())
                .select_from(TransitionRule)
                .where(
                    TransitionRule.tenant_id == tenant_id,
                    TransitionRule.workflow == workflow,
                    TransitionRule.from_stage == key,
                    TransitionRule.is_active.is_(True),
                )
            )
            if outbound:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"stage '{key}' has {outbound} active outbound rules and cannot become terminal",
                )
        for field_name, value in changes.items():
            setattr(stage, field_name, value)
        session.commit()
        session.refresh(stage)
        self.invalidate(tenant_id, workflow)
        return StageRead.model_validate(stage)

    def invalidate(self, tenant_id: str, workflow: str | None = None) -> None:
        with self._lock:
            if workflow is not None:
                self._cache.pop((tenant_id, workflow), None)
                return
            for cache_key in [item for item in self._cache if item[0] == tenant_id]:
                self._cache.pop(cache_key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def is_backward(current: StageRead, target: StageRead) -> bool:
    if current.stage_type != "standard" or target.stage_type != "standard":
        return False
    return target.position < current.position


stage_registry = StageRegistry()
