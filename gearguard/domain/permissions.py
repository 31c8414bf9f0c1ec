from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class UserRole(StrEnum):
    ADMIN = "ADMIN"
    MAINTENANCE_MANAGER = "MAINTENANCE_MANAGER"
    TECHNICIAN = "TECHNICIAN"
    EMPLOYEE = "EMPLOYEE"


CAP_REQUEST_CREATE = "request.create"
CAP_REQUEST_MAINTAIN = "request.maintain"
CAP_REQUEST_ASSIGN = "request.assign"
CAP_REQUEST_DELETE_ANY = "request.delete_any"
CAP_TEAM_BYPASS = "team.bypass_membership"
CAP_EQUIPMENT_WRITE = "equipment.write"
CAP_CATALOG_WRITE = "catalog.write"
CAP_TEAM_WRITE = "team.write"
CAP_IDENTITY_WRITE = "identity.write"

ROLE_CAPABILITIES: dict[UserRole, frozenset[str]] = {
    UserRole.ADMIN: frozenset(
        {
            CAP_REQUEST_CREATE,
            CAP_REQUEST_MAINTAIN,
            CAP_REQUEST_ASSIGN,
            CAP_REQUEST_DELETE_ANY,
            CAP_TEAM_BYPASS,
            CAP_EQUIPMENT_WRITE,
            CAP_CATALOG_WRITE,
            CAP_TEAM_WRITE,
            CAP_IDENTITY_WRITE,
        }
    ),
    UserRole.MAINTENANCE_MANAGER: frozenset(
        {
            CAP_REQUEST_CREATE,
            CAP_REQUEST_MAINTAIN,
            CAP_REQUEST_ASSIGN,
            CAP_TEAM_BYPASS,
            CAP_EQUIPMENT_WRITE,
            CAP_CATALOG_WRITE,
            CAP_TEAM_WRITE,
        }
    ),
    UserRole.TECHNICIAN: frozenset({CAP_REQUEST_CREATE, CAP_REQUEST_MAINTAIN}),
    UserRole.EMPLOYEE: frozenset({CAP_REQUEST_CREATE}),
}

# Roles a user must hold to be put on a request or a team.
TECHNICIAN_ROLES: frozenset[UserRole] = frozenset({UserRole.TECHNICIAN, UserRole.MAINTENANCE_MANAGER})


def has_capability(role: UserRole, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a command, resolved once per request."""

    user_id: str
    company_id: str
    role: UserRole
    team_ids: frozenset[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return has_capability(self.role, capability)

    def is_member_of(self, team_id: str) -> bool:
        return team_id in self.team_ids
