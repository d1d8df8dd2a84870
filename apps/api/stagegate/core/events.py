from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

TRANSITION_COMMITTED = "stagegate.transition.committed"
TRANSITION_REJECTED = "stagegate.transition.rejected"
APPROVAL_REQUESTED = "stagegate.approval.requested"
APPROVAL_RESOLVED = "stagegate.approval.resolved"
PROJECT_PROVISIONED = "stagegate.project.provisioned"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def tenant_id(self) -> str | None:
        value = self.payload.get("tenant_id")
        return value if isinstance(value, str) else None


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()
