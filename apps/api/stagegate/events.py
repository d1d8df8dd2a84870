from __future__ import annotations

from typing import Any

from stagegate.context import get_correlation_id, get_tenant_id
from stagegate.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("tenant_id") is None:
        envelope["tenant_id"] = get_tenant_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
