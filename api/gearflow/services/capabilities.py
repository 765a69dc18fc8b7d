# gearflow/services/capabilities.py
"""
Role -> capability table. Every permission question goes through here.
"""
from __future__ import annotations
from dataclasses import dataclass
import enum

from gearflow.db_models import Role
from gearflow.errors import ForbiddenError


class Capability(str, enum.Enum):
    CREATE_OVERRIDE = "CREATE_OVERRIDE"
    ADJUST_STOCK = "ADJUST_STOCK"
    MANAGE_CATALOG = "MANAGE_CATALOG"


ROLE_CAPABILITIES = {
    Role.ADMIN: frozenset(Capability),
    Role.STAFF: frozenset({Capability.ADJUST_STOCK, Capability.MANAGE_CATALOG}),
    Role.STUDENT: frozenset(),
}

DENIED_MESSAGES = {
    Capability.CREATE_OVERRIDE: "Only admins can create overrides",
    Capability.ADJUST_STOCK: "Only staff or admins can adjust stock",
    Capability.MANAGE_CATALOG: "Only staff or admins can manage the catalog",
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as vouched for by the auth layer."""
    id: int
    role: Role


def has_capability(actor: Actor, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(actor.role, frozenset())


def require_capability(actor: Actor, capability: Capability) -> None:
    if not has_capability(actor, capability):
        raise ForbiddenError(DENIED_MESSAGES[capability])
