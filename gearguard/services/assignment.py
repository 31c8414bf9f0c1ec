from __future__ import annotations

from dataclasses import dataclass

import structlog

from gearguard.domain.errors import ConflictError, ForbiddenError, InvalidReferenceError, InvalidTransitionError
from gearguard.domain.models import (
    Equipment,
    EquipmentCategory,
    MaintenanceRequest,
    MaintenanceTeam,
    TeamMember,
    User,
)
from gearguard.domain.permissions import CAP_TEAM_BYPASS, TECHNICIAN_ROLES, Actor
from gearguard.domain.state_machine import is_terminal_stage
from gearguard.infra.gateway import PersistenceGateway, RowLock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AssignmentDefaults:
    category_id: str | None = None
    team_id: str | None = None
    technician_id: str | None = None
    technician_from_equipment: bool = False


class AssignmentResolver:
    """Resolves who a request belongs to and checks that assignments are legal."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def resolve_defaults(
        self,
        equipment: Equipment | None,
        *,
        team_id: str | None = None,
        technician_id: str | None = None,
    ) -> AssignmentDefaults:
        if equipment is None:
            return AssignmentDefaults(team_id=team_id, technician_id=technician_id)
        return AssignmentDefaults(
            category_id=equipment.category_id,
            team_id=team_id or equipment.maintenance_team_id,
            technician_id=technician_id or equipment.technician_id,
            technician_from_equipment=technician_id is None and equipment.technician_id is not None,
        )

    def get_equipment(self, company_id: str, equipment_id: str) -> Equipment:
        equipment = self._gateway.find(Equipment, company_id, equipment_id)
        if equipment is None:
            raise InvalidReferenceError("invalid equipment")
        return equipment

    def validate_references(
        self,
        company_id: str,
        *,
        team_id: str | None = None,
        category_id: str | None = None,
    ) -> None:
        if team_id is not None and self._gateway.find(MaintenanceTeam, company_id, team_id) is None:
            raise InvalidReferenceError("invalid maintenance team")
        if category_id is not None and self._gateway.find(EquipmentCategory, company_id, category_id) is None:
            raise InvalidReferenceError("invalid equipment category")

    def get_technician(self, company_id: str, technician_id: str) -> User:
        technician = self._gateway.find(User, company_id, technician_id)
        if technician is None:
            raise InvalidReferenceError("invalid technician")
        return technician

    def is_eligible_technician(self, technician: User) -> bool:
        return technician.is_active and technician.role in TECHNICIAN_ROLES

    def is_team_member(self, company_id: str, team_id: str, user_id: str) -> bool:
        return self._gateway.find_one(TeamMember, company_id, team_id=team_id, user_id=user_id) is not None

    def membership_locks(self, company_id: str, team_id: str | None, technician_id: str | None) -> list[RowLock]:
        """Lock the membership an assignment relies on against a concurrent removal."""
        if team_id is None or technician_id is None:
            return []
        member = self._gateway.find_one(TeamMember, company_id, team_id=team_id, user_id=technician_id)
        if member is None:
            return []
        return [RowLock(TeamMember, company_id, member.id)]

    def validate_assignment(
        self,
        request: MaintenanceRequest,
        technician_id: str,
        actor: Actor,
        *,
        self_assign: bool = False,
    ) -> User:
        if is_terminal_stage(request.stage):
            raise InvalidTransitionError("closed request cannot be assigned", stage=request.stage)
        if self_assign and request.technician_id is not None:
            raise ConflictError("request is already assigned")

        technician = self.get_technician(request.company_id, technician_id)
        if not self.is_eligible_technician(technician):
            raise ForbiddenError("user cannot be assigned as technician")
        if (
            request.team_id is not None
            and not actor.can(CAP_TEAM_BYPASS)
            and not self.is_team_member(request.company_id, request.team_id, technician_id)
        ):
            raise ForbiddenError("technician is not a member of the assigned team")
        return technician

    def check_self_assignment(self, request: MaintenanceRequest, actor: Actor) -> None:
        """Lookup-free variant of :meth:`validate_assignment` for the acting user."""
        if actor.role not in TECHNICIAN_ROLES:
            raise ForbiddenError("only technicians can take a request")
        if request.technician_id is not None:
            raise ConflictError("request is already assigned")
        if request.team_id is not None and not actor.can(CAP_TEAM_BYPASS) and not actor.is_member_of(request.team_id):
            raise ForbiddenError("you are not a member of the assigned team")

    def resolve_technician_for_create(
        self,
        company_id: str,
        defaults: AssignmentDefaults,
        actor: Actor,
    ) -> str | None:
        """Validate the technician a new request starts with.

        An explicitly requested technician must satisfy the assignment rules. A
        technician inherited from the equipment is dropped instead of failing
        the request when they are no longer eligible.
        """
        if defaults.technician_id is None:
            return None
        technician = self._gateway.find(User, company_id, defaults.technician_id)
        if defaults.technician_from_equipment:
            if technician is None or not self.is_eligible_technician(technician):
                logger.info(
                    "request.default_technician_skipped",
                    technician_id=defaults.technician_id,
                )
                return None
            return technician.id

        if technician is None:
            raise InvalidReferenceError("invalid technician")
        if not self.is_eligible_technician(technician):
            raise ForbiddenError("user cannot be assigned as technician")
        if (
            defaults.team_id is not None
            and not actor.can(CAP_TEAM_BYPASS)
            and not self.is_team_member(company_id, defaults.team_id, technician.id)
        ):
            raise ForbiddenError("technician is not a member of the assigned team")
        return technician.id
