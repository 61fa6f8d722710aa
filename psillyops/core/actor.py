"""
Acting-user context passed explicitly into every service call.

The concrete role set lives in the host application. Services never compare
role strings; they ask ``actor.can(Capability.X)`` and the host decides which
roles carry which capabilities when it builds the Actor.

Usage:
    from psillyops.core.actor import Actor, Capability

    actor = Actor.for_role("user-42", "PRODUCTION")
    if actor.can(Capability.BYPASS_ASSIGNMENT):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class Capability(str, Enum):
    BYPASS_ASSIGNMENT = "bypass_assignment"   # act on steps claimed by others
    ASSIGN_STEPS = "assign_steps"             # set/clear any step assignee
    MANAGE_RUNS = "manage_runs"               # cancel / block / unblock runs
    MANAGE_TEMPLATES = "manage_templates"     # edit product step templates


DEFAULT_ADMIN_ROLES = frozenset({"ADMIN"})

# Capabilities granted to non-admin roles. Anything absent gets none.
ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "PRODUCTION": frozenset(),
    "WAREHOUSE": frozenset(),
    "REP": frozenset(),
}


@dataclass(frozen=True)
class Actor:
    """A user acting on the system, with capabilities already resolved."""
    id: str
    role: str | None = None
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_admin(self) -> bool:
        return self.can(Capability.BYPASS_ASSIGNMENT) and self.can(Capability.ASSIGN_STEPS)

    @classmethod
    def for_role(
        cls,
        user_id: str,
        role: str | None,
        admin_roles: Iterable[str] = DEFAULT_ADMIN_ROLES,
    ) -> "Actor":
        """Build an Actor using the default role → capability table."""
        normalized = (role or "").strip().upper() or None
        if normalized and normalized in {r.strip().upper() for r in admin_roles}:
            caps = frozenset(Capability)
        else:
            caps = ROLE_CAPABILITIES.get(normalized or "", frozenset())
        return cls(id=user_id, role=normalized, capabilities=caps)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "capabilities": sorted(c.value for c in self.capabilities),
        }
