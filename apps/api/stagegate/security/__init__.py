from stagegate.security.context import ActorContext
from stagegate.security.roles import effective_roles, holds_roles, is_manager

__all__ = ["ActorContext", "effective_roles", "holds_roles", "is_manager"]
