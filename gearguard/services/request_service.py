from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog

from gearguard.domain.errors import (
    ConflictError,
    EquipmentTerminalError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from gearguard.domain.models import (
    Equipment,
    MaintenanceRequest,
    MaintenanceRequestCreate,
    MaintenanceRequestUpdate,
    RequestPriority,
    RequestType,
    now_utc,
)
from gearguard.domain.permissions import (
    CAP_REQUEST_ASSIGN,
    CAP_REQUEST_CREATE,
    CAP_REQUEST_DELETE_ANY,
    CAP_REQUEST_MAINTAIN,
    CAP_TEAM_BYPASS,
    Actor,
    UserRole,
)
from gearguard.domain.state_machine import EquipmentStatus, RequestStage, is_open_stage, is_terminal_stage
from gearguard.domain.timing import is_overdue
from gearguard.infra.gateway import (
    ConditionalDelete,
    ConditionalUpdate,
    Insert,
    PersistenceGateway,
    RowLock,
    StaleWriteError,
    WriteOp,
)
from gearguard.infra.notifications import NotificationEvent, Notifier
from gearguard.services.assignment import AssignmentResolver
from gearguard.services.equipment_sync import EquipmentEffect, EquipmentSynchronizer
from gearguard.services.request_state_machine import RequestStateMachine, TransitionOptions

logger = structlog.get_logger(__name__)

# Fields that stay editable after a request reached a terminal stage.
CLOSED_EDITABLE_FIELDS = frozenset({"description", "notes", "duration"})
NON_NULLABLE_FIELDS = frozenset({"subject", "request_type", "priority"})


class MaintenanceRequestService:
    """Command handler of the maintenance request lifecycle.

    Every command reads through the gateway, validates, then commits its writes
    in one transaction conditioned on the values it read. Notifications are
    handed to the dispatcher only after the commit.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        dispatcher: Notifier,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._clock = clock
        self._resolver = AssignmentResolver(gateway)
        self._state_machine = RequestStateMachine(self._resolver)
        self._synchronizer = EquipmentSynchronizer()

    def _get_scoped_request(self, company_id: str, request_id: str) -> MaintenanceRequest:
        request = self._gateway.find(MaintenanceRequest, company_id, request_id)
        if request is None:
            raise NotFoundError("maintenance request not found")
        return request

    def _refresh_overdue(self, request: MaintenanceRequest, now: datetime) -> MaintenanceRequest:
        request.is_overdue = is_open_stage(request.stage) and is_overdue(request.scheduled_date, now)
        return request

    def _commit(self, operations: list[WriteOp]) -> None:
        try:
            self._gateway.transaction(operations)
        except StaleWriteError as exc:
            logger.info("request.stale_write", entity_id=exc.operation.entity_id)
            if isinstance(exc.operation, RowLock):
                raise ConflictError("team membership changed concurrently, reload and retry") from exc
            raise ConflictError("request was modified concurrently, reload and retry") from exc

    def _request_write(
        self,
        request: MaintenanceRequest,
        changes: Mapping[str, Any],
        **expected: Any,
    ) -> ConditionalUpdate:
        return ConditionalUpdate(
            model=MaintenanceRequest,
            company_id=request.company_id,
            entity_id=request.id,
            changes=changes,
            expected={"stage": request.stage, "technician_id": request.technician_id, **expected},
        )

    def _release_equipment(self, company_id: str, equipment_id: str) -> list[WriteOp]:
        """Return equipment held by a deleted in-progress request to ACTIVE."""
        equipment = self._gateway.find(Equipment, company_id, equipment_id)
        if equipment is None or equipment.status != EquipmentStatus.UNDER_MAINTENANCE:
            return []
        in_progress = self._gateway.count(
            MaintenanceRequest,
            company_id,
            equipment_id=equipment.id,
            stage=RequestStage.IN_PROGRESS,
        )
        if in_progress > 1:
            return []
        now = self._clock()
        return [self._synchronizer.build_write(equipment, EquipmentEffect(status=EquipmentStatus.ACTIVE), now)]

    def _notify(
        self,
        event_type: NotificationEvent,
        company_id: str,
        payload: dict[str, Any],
        actor_id: str | None,
    ) -> None:
        try:
            self._dispatcher.notify(event_type, company_id, payload, actor_id=actor_id)
        except Exception:
            logger.warning("notification.enqueue_failed", event_type=str(event_type), exc_info=True)

    def create_request(self, actor: Actor, payload: MaintenanceRequestCreate) -> MaintenanceRequest:
        if not actor.can(CAP_REQUEST_CREATE):
            raise ForbiddenError("you do not have permission to create requests")
        company_id = actor.company_id
        now = self._clock()

        equipment = None
        if payload.equipment_id is not None:
            equipment = self._resolver.get_equipment(company_id, payload.equipment_id)
            if equipment.status == EquipmentStatus.SCRAPPED:
                raise EquipmentTerminalError("cannot open a request for scrapped equipment", status=equipment.status)

        defaults = self._resolver.resolve_defaults(
            equipment,
            team_id=payload.team_id,
            technician_id=payload.technician_id,
        )
        self._resolver.validate_references(company_id, team_id=defaults.team_id, category_id=defaults.category_id)
        technician_id = self._resolver.resolve_technician_for_create(company_id, defaults, actor)

        request = MaintenanceRequest(
            company_id=company_id,
            subject=payload.subject,
            description=payload.description,
            request_type=payload.request_type,
            priority=payload.priority,
            stage=RequestStage.NEW,
            scheduled_date=payload.scheduled_date,
            is_overdue=is_overdue(payload.scheduled_date, now),
            equipment_id=payload.equipment_id,
            category_id=defaults.category_id,
            team_id=defaults.team_id,
            technician_id=technician_id,
            created_by_id=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        request_id = request.id
        locks = self._resolver.membership_locks(company_id, defaults.team_id, technician_id)
        self._commit([*locks, Insert(request)])
        logger.info("request.created", request_id=request_id, equipment_id=payload.equipment_id)

        self._notify(
            NotificationEvent.REQUEST_CREATED,
            company_id,
            {"request_id": request_id, "equipment_id": payload.equipment_id, "team_id": defaults.team_id},
            actor.user_id,
        )
        if technician_id is not None:
            self._notify(
                NotificationEvent.REQUEST_ASSIGNED,
                company_id,
                {"request_id": request_id, "technician_id": technician_id},
                actor.user_id,
            )
        return self._get_scoped_request(company_id, request_id)

    def list_requests(
        self,
        actor: Actor,
        *,
        stage: RequestStage | None = None,
        request_type: RequestType | None = None,
        priority: RequestPriority | None = None,
        equipment_id: str | None = None,
        team_id: str | None = None,
        technician_id: str | None = None,
        created_by_id: str | None = None,
        overdue: bool | None = None,
        search: str | None = None,
    ) -> list[MaintenanceRequest]:
        criteria: dict[str, Any] = {}
        if stage is not None:
            criteria["stage"] = stage
        if request_type is not None:
            criteria["request_type"] = request_type
        if priority is not None:
            criteria["priority"] = priority
        if equipment_id is not None:
            criteria["equipment_id"] = equipment_id
        if team_id is not None:
            criteria["team_id"] = team_id
        if technician_id is not None:
            criteria["technician_id"] = technician_id
        if created_by_id is not None:
            criteria["created_by_id"] = created_by_id

        now = self._clock()
        rows = [self._refresh_overdue(row, now) for row in self._gateway.find_all(MaintenanceRequest, actor.company_id, **criteria)]
        if actor.role == UserRole.TECHNICIAN:
            rows = [
                row
                for row in rows
                if row.technician_id == actor.user_id
                or row.created_by_id == actor.user_id
                or (row.team_id is not None and actor.is_member_of(row.team_id))
            ]
        if overdue is not None:
            rows = [row for row in rows if row.is_overdue == overdue]
        if search:
            needle = search.lower()
            rows = [
                row
                for row in rows
                if needle in row.subject.lower() or (row.description is not None and needle in row.description.lower())
            ]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows

    def get_request(self, actor: Actor, request_id: str) -> MaintenanceRequest:
        request = self._get_scoped_request(actor.company_id, request_id)
        return self._refresh_overdue(request, self._clock())

    def update_request(
        self,
        actor: Actor,
        request_id: str,
        payload: MaintenanceRequestUpdate,
    ) -> MaintenanceRequest:
        if not actor.can(CAP_REQUEST_MAINTAIN):
            raise ForbiddenError("you do not have permission to edit requests")
        request = self._get_scoped_request(actor.company_id, request_id)
        data = payload.model_dump(exclude_unset=True)
        for name in NON_NULLABLE_FIELDS:
            if name in data and data[name] is None:
                data.pop(name)
        if not data:
            return self._refresh_overdue(request, self._clock())

        if is_terminal_stage(request.stage) and set(data) - CLOSED_EDITABLE_FIELDS:
            raise InvalidTransitionError("closed request only accepts description, notes and duration edits", stage=request.stage)

        if "equipment_id" in data and data["equipment_id"] != request.equipment_id:
            # in-progress requests hold their equipment UNDER_MAINTENANCE
            if request.stage == RequestStage.IN_PROGRESS:
                raise InvalidTransitionError("equipment cannot change while the request is in progress", stage=request.stage)
            if data["equipment_id"] is None:
                data["category_id"] = None
            else:
                equipment = self._resolver.get_equipment(actor.company_id, data["equipment_id"])
                if equipment.status == EquipmentStatus.SCRAPPED:
                    raise EquipmentTerminalError("cannot link a request to scrapped equipment", status=equipment.status)
                data["category_id"] = equipment.category_id
        locks: list[RowLock] = []
        if data.get("team_id") is not None:
            self._resolver.validate_references(actor.company_id, team_id=data["team_id"])
            if (
                request.technician_id is not None
                and not actor.can(CAP_TEAM_BYPASS)
                and not self._resolver.is_team_member(actor.company_id, data["team_id"], request.technician_id)
            ):
                raise ForbiddenError("assigned technician is not a member of the new team")
            if is_open_stage(request.stage):
                locks = self._resolver.membership_locks(actor.company_id, data["team_id"], request.technician_id)

        now = self._clock()
        data["updated_at"] = now
        self._commit([*locks, self._request_write(request, data)])
        logger.info("request.updated", request_id=request.id, fields=sorted(data))
        return self.get_request(actor, request.id)

    def transition_stage(
        self,
        actor: Actor,
        request_id: str,
        target: RequestStage,
        options: TransitionOptions | None = None,
    ) -> MaintenanceRequest:
        request = self._get_scoped_request(actor.company_id, request_id)
        now = self._clock()
        outcome = self._state_machine.transition(request, target, actor, options, now=now)

        operations: list[WriteOp] = []
        if outcome.self_assigned:
            operations.extend(self._resolver.membership_locks(actor.company_id, request.team_id, actor.user_id))
        operations.append(self._request_write(request, outcome.changes))
        if outcome.side_effect is not None and request.equipment_id is not None:
            equipment = self._gateway.find(Equipment, actor.company_id, request.equipment_id)
            if equipment is None:
                logger.warning("request.equipment_missing", request_id=request.id, equipment_id=request.equipment_id)
            else:
                operations.append(self._synchronizer.build_write(equipment, outcome.side_effect, now))
        self._commit(operations)

        logger.info(
            "request.stage_changed",
            request_id=request.id,
            from_stage=str(outcome.from_stage),
            to_stage=str(outcome.to_stage),
            self_assigned=outcome.self_assigned,
        )
        if outcome.stage_changed:
            self._notify(
                NotificationEvent.STAGE_CHANGED,
                actor.company_id,
                {
                    "request_id": request.id,
                    "equipment_id": request.equipment_id,
                    "from_stage": str(outcome.from_stage),
                    "to_stage": str(outcome.to_stage),
                },
                actor.user_id,
            )
        if outcome.self_assigned:
            self._notify(
                NotificationEvent.REQUEST_ASSIGNED,
                actor.company_id,
                {"request_id": request.id, "technician_id": actor.user_id},
                actor.user_id,
            )
        if outcome.to_stage == RequestStage.SCRAP and request.equipment_id is not None:
            self._notify(
                NotificationEvent.EQUIPMENT_SCRAPPED,
                actor.company_id,
                {"equipment_id": request.equipment_id, "request_id": request.id},
                actor.user_id,
            )
        return self.get_request(actor, request.id)

    def assign_technician(self, actor: Actor, request_id: str, technician_id: str) -> MaintenanceRequest:
        if not actor.can(CAP_REQUEST_ASSIGN):
            raise ForbiddenError("only admins and maintenance managers can assign technicians")
        request = self._get_scoped_request(actor.company_id, request_id)
        self._resolver.validate_assignment(request, technician_id, actor)

        now = self._clock()
        locks = self._resolver.membership_locks(actor.company_id, request.team_id, technician_id)
        self._commit([*locks, self._request_write(request, {"technician_id": technician_id, "updated_at": now})])
        logger.info("request.assigned", request_id=request.id, technician_id=technician_id)
        self._notify(
            NotificationEvent.REQUEST_ASSIGNED,
            actor.company_id,
            {"request_id": request.id, "technician_id": technician_id},
            actor.user_id,
        )
        return self.get_request(actor, request.id)

    def self_assign(self, actor: Actor, request_id: str) -> MaintenanceRequest:
        if not actor.can(CAP_REQUEST_MAINTAIN):
            raise ForbiddenError("you do not have permission to take requests")
        request = self._get_scoped_request(actor.company_id, request_id)
        self._resolver.validate_assignment(request, actor.user_id, actor, self_assign=True)

        now = self._clock()
        taken = self._gateway.compare_and_swap(
            MaintenanceRequest,
            actor.company_id,
            request.id,
            {"stage": request.stage, "technician_id": None},
            {"technician_id": actor.user_id, "updated_at": now},
            locks=self._resolver.membership_locks(actor.company_id, request.team_id, actor.user_id),
        )
        if not taken:
            logger.info("request.self_assign_lost", request_id=request.id)
            raise ConflictError("request is already assigned")
        logger.info("request.self_assigned", request_id=request.id, technician_id=actor.user_id)
        self._notify(
            NotificationEvent.REQUEST_ASSIGNED,
            actor.company_id,
            {"request_id": request.id, "technician_id": actor.user_id},
            actor.user_id,
        )
        return self.get_request(actor, request.id)

    def update_schedule(
        self,
        actor: Actor,
        request_id: str,
        scheduled_date: datetime | None,
    ) -> MaintenanceRequest:
        if not actor.can(CAP_REQUEST_MAINTAIN):
            raise ForbiddenError("you do not have permission to schedule requests")
        request = self._get_scoped_request(actor.company_id, request_id)
        if is_terminal_stage(request.stage):
            raise InvalidTransitionError("closed request cannot be rescheduled", stage=request.stage)

        now = self._clock()
        changes = {
            "scheduled_date": scheduled_date,
            "is_overdue": is_overdue(scheduled_date, now),
            "updated_at": now,
        }
        self._commit([self._request_write(request, changes)])
        logger.info("request.scheduled", request_id=request.id, overdue=changes["is_overdue"])
        return self.get_request(actor, request.id)

    def delete_request(self, actor: Actor, request_id: str) -> None:
        request = self._get_scoped_request(actor.company_id, request_id)
        if request.stage != RequestStage.NEW and not actor.can(CAP_REQUEST_DELETE_ANY):
            raise InvalidTransitionError("only new requests can be deleted", stage=request.stage)
        if request.created_by_id != actor.user_id and not actor.can(CAP_REQUEST_MAINTAIN):
            raise ForbiddenError("you can only delete your own requests")
        operations: list[WriteOp] = [
            ConditionalDelete(
                model=MaintenanceRequest,
                company_id=request.company_id,
                entity_id=request.id,
                expected={"stage": request.stage},
            )
        ]
        if request.stage == RequestStage.IN_PROGRESS and request.equipment_id is not None:
            operations.extend(self._release_equipment(request.company_id, request.equipment_id))
        self._commit(operations)
        logger.info("request.deleted", request_id=request.id, stage=str(request.stage))
