from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ActorContext:
    """Acting user as supplied by the auth layer: identity, tenant and role set."""

    user_id: str
    tenant_id: str
    roles: list[str] = field(default_factory=list)
    correlation_id: str | None = None
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)

    def has_permission(self, permission: str) -> bool:
        return permission in self.roles or "*" in self.roles
