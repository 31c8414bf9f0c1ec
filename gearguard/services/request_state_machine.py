from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from gearguard.domain.errors import ForbiddenError, InvalidTransitionError
from gearguard.domain.models import MaintenanceRequest
from gearguard.domain.permissions import CAP_REQUEST_MAINTAIN, Actor, UserRole
from gearguard.domain.state_machine import RequestStage, can_transition, is_open_stage, is_terminal_stage
from gearguard.domain.timing import duration_hours, is_overdue
from gearguard.services.assignment import AssignmentResolver
from gearguard.services.equipment_sync import EquipmentEffect

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TransitionOptions:
    duration: float | None = None
    notes: str | None = None


@dataclass(frozen=True)
class TransitionOutcome:
    from_stage: RequestStage
    to_stage: RequestStage
    changes: dict[str, Any] = field(default_factory=dict)
    side_effect: EquipmentEffect | None = None
    self_assigned: bool = False

    @property
    def stage_changed(self) -> bool:
        return self.from_stage != self.to_stage


class RequestStateMachine:
    """Validates stage transitions and computes the request's next state.

    Nothing is written here. The outcome carries the request field changes and,
    when the request is linked to equipment, the equipment effect the caller
    must commit in the same transaction.
    """

    def __init__(self, resolver: AssignmentResolver) -> None:
        self._resolver = resolver

    def transition(
        self,
        request: MaintenanceRequest,
        target: RequestStage,
        actor: Actor,
        options: TransitionOptions | None = None,
        *,
        now: datetime,
    ) -> TransitionOutcome:
        options = options or TransitionOptions()
        if not actor.can(CAP_REQUEST_MAINTAIN):
            raise ForbiddenError("you do not have permission to perform maintenance actions")

        current = RequestStage(request.stage)
        if is_terminal_stage(current):
            raise InvalidTransitionError(f"request is already {current}", stage=current)
        if not can_transition(current, target):
            raise InvalidTransitionError(f"illegal transition: {current} -> {target}", stage=current)

        changes: dict[str, Any] = {"stage": target, "updated_at": now}
        self_assigned = False

        if target == RequestStage.IN_PROGRESS:
            if request.start_date is None:
                changes["start_date"] = now
            if request.technician_id is None and actor.role == UserRole.TECHNICIAN:
                self._resolver.check_self_assignment(request, actor)
                changes["technician_id"] = actor.user_id
                self_assigned = True

        if target == RequestStage.REPAIRED:
            changes["completion_date"] = now
            if options.duration is not None:
                changes["duration"] = options.duration
            else:
                duration = duration_hours(request.start_date, now)
                if duration is not None:
                    if duration < 0:
                        logger.warning("request.negative_duration", request_id=request.id, duration=duration)
                    changes["duration"] = duration

        if options.notes is not None:
            changes["notes"] = options.notes

        changes["is_overdue"] = is_open_stage(target) and is_overdue(request.scheduled_date, now)

        side_effect = None
        if request.equipment_id is not None:
            side_effect = EquipmentEffect.for_stage(target, now)

        return TransitionOutcome(
            from_stage=current,
            to_stage=target,
            changes=changes,
            side_effect=side_effect,
            self_assigned=self_assigned,
        )
