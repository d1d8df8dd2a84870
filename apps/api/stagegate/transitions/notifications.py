from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from stagegate.core.events import InternalEvent, event_bus
from stagegate.metrics import observe_notifications_dispatched
from stagegate.transitions.models import NotificationIntent, utcnow

logger = logging.getLogger("stagegate.notifications")

APPROVERS_RECIPIENT = "role:approver"


def queue_intent(
    session: Session,
    *,
    tenant_id: str,
    intent_type: str,
    recipient: str,
    entity_type: str,
    entity_id: uuid.UUID,
    payload: dict[str, Any],
) -> NotificationIntent:
    intent = NotificationIntent(
        tenant_id=tenant_id,
        intent_type=intent_type,
        recipient=recipient,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=json.dumps(payload, default=str),
        status="Queued",
    )
    session.add(intent)
    return intent


def queued_batch(limit: int) -> Select[tuple[NotificationIntent]]:
    """Oldest queued intents. Rows another dispatcher holds locked are skipped."""
    return (
        select(NotificationIntent)
        .where(NotificationIntent.status == "Queued")
        .order_by(NotificationIntent.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )


def dispatch_pending(session: Session, *, limit: int = 100) -> int:
    """Hand queued intents to the delivery collaborator and mark them dispatched."""
    intents = session.scalars(queued_batch(limit)).all()
    for intent in intents:
        envelope = {
            "intent_id": str(intent.id),
            "tenant_id": intent.tenant_id,
            "intent_type": intent.intent_type,
            "recipient": intent.recipient,
            "entity_type": intent.entity_type,
            "entity_id": str(intent.entity_id),
            "payload": json.loads(intent.payload_json),
        }
        event_bus.publish("stagegate.notification.dispatched", envelope)
        intent.status = "Dispatched"
        intent.dispatched_at = utcnow()
    session.commit()
    observe_notifications_dispatched(len(intents))
    if intents:
        logger.info("notifications.dispatched", extra={"intent_count": len(intents)})
    return len(intents)


def log_dispatched(event: InternalEvent) -> None:
    logger.info(
        "notification.handoff",
        extra={"event_name": event.name, "entity_type": event.payload.get("entity_type"), "status": "Dispatched"},
    )
