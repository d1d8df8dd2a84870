from __future__ import annotations

from collections.abc import Iterable

from stagegate.core.config import get_settings
from stagegate.security.context import ActorContext

_EFFECTIVE_ROLES_KEY = "roles.effective"


def effective_roles(actor: ActorContext) -> frozenset[str]:
    """Actor roles plus every alias that one of them satisfies.

    An alias such as ``manager`` is held when the actor holds any role it maps to.
    """
    cached = actor._cache.get(_EFFECTIVE_ROLES_KEY)
    if isinstance(cached, frozenset):
        return cached

    held = {role.lower() for role in actor.roles}
    for alias, members in get_settings().role_aliases.items():
        if held.intersection(member.lower() for member in members):
            held.add(alias.lower())
    result = frozenset(held)
    actor._cache[_EFFECTIVE_ROLES_KEY] = result
    return result


def holds_roles(actor: ActorContext, required: Iterable[str], *, match: str = "all") -> bool:
    wanted = [role.lower() for role in required]
    if not wanted:
        return True
    held = effective_roles(actor)
    if match == "any":
        return any(role in held for role in wanted)
    return all(role in held for role in wanted)


def is_manager(actor: ActorContext) -> bool:
    return holds_roles(actor, get_settings().manager_roles, match="any")
