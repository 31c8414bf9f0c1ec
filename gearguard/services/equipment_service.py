from __future__ import annotations

from typing import Any

import sqlalchemy as sa
import structlog
from sqlalchemy import func
from sqlmodel import Session, col, select

from gearguard.domain.errors import (
    ConflictError,
    EquipmentTerminalError,
    ForbiddenError,
    InvalidReferenceError,
    NotFoundError,
)
from gearguard.domain.models import (
    Equipment,
    EquipmentCategory,
    EquipmentCreate,
    EquipmentUpdate,
    MaintenanceRequest,
    MaintenanceTeam,
    User,
    WorkCenter,
    now_utc,
)
from gearguard.domain.permissions import CAP_EQUIPMENT_WRITE, TECHNICIAN_ROLES, Actor
from gearguard.domain.state_machine import OPEN_STAGES, EquipmentStatus, is_open_stage
from gearguard.domain.timing import is_overdue
from gearguard.infra.gateway import SqlPersistenceGateway
from gearguard.infra.notifications import NotificationEvent, Notifier, notification_dispatcher
from gearguard.services.equipment_sync import EquipmentEffect, EquipmentSynchronizer

logger = structlog.get_logger(__name__)

REFERENCE_FIELDS: tuple[tuple[str, type[Any], str], ...] = (
    ("owner_id", User, "invalid owner"),
    ("technician_id", User, "invalid technician"),
    ("maintenance_team_id", MaintenanceTeam, "invalid maintenance team"),
    ("category_id", EquipmentCategory, "invalid equipment category"),
    ("work_center_id", WorkCenter, "invalid work center"),
)


class EquipmentService:
    def __init__(self, gateway: SqlPersistenceGateway, dispatcher: Notifier | None = None) -> None:
        self._gateway = gateway
        self._dispatcher = dispatcher or notification_dispatcher
        self._synchronizer = EquipmentSynchronizer()

    def _session(self) -> Session:
        return self._gateway.session()

    def _get_scoped_equipment(self, session: Session, company_id: str, equipment_id: str) -> Equipment:
        equipment = session.exec(
            select(Equipment).where(Equipment.company_id == company_id).where(Equipment.id == equipment_id)
        ).first()
        if equipment is None:
            raise NotFoundError("equipment not found")
        return equipment

    def _count_open_requests(self, session: Session, company_id: str, equipment_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(MaintenanceRequest)
            .where(MaintenanceRequest.company_id == company_id)
            .where(MaintenanceRequest.equipment_id == equipment_id)
            .where(col(MaintenanceRequest.stage).in_(list(OPEN_STAGES)))
        )
        return int(session.exec(statement).one())

    def _check_references(self, session: Session, company_id: str, data: dict[str, Any]) -> None:
        for field_name, model, message in REFERENCE_FIELDS:
            ref_id = data.get(field_name)
            if ref_id is None:
                continue
            row = session.exec(select(model).where(model.company_id == company_id).where(model.id == ref_id)).first()
            if row is None:
                raise InvalidReferenceError(message)
            if field_name == "technician_id" and (not row.is_active or row.role not in TECHNICIAN_ROLES):
                raise InvalidReferenceError(message)

    def _require_write(self, actor: Actor) -> None:
        if not actor.can(CAP_EQUIPMENT_WRITE):
            raise ForbiddenError("only admins and maintenance managers can change equipment")

    def create_equipment(self, actor: Actor, payload: EquipmentCreate) -> Equipment:
        self._require_write(actor)
        with self._session() as session:
            data = payload.model_dump()
            self._check_references(session, actor.company_id, data)
            equipment = Equipment(company_id=actor.company_id, status=EquipmentStatus.ACTIVE, **data)
            session.add(equipment)
            session.commit()
            session.refresh(equipment)
        logger.info("equipment.created", equipment_id=equipment.id)
        return equipment

    def list_equipment(
        self,
        company_id: str,
        *,
        status: EquipmentStatus | None = None,
        category_id: str | None = None,
        team_id: str | None = None,
        health_below: int | None = None,
    ) -> list[Equipment]:
        with self._session() as session:
            statement = select(Equipment).where(Equipment.company_id == company_id)
            if status is not None:
                statement = statement.where(Equipment.status == status)
            if category_id is not None:
                statement = statement.where(Equipment.category_id == category_id)
            if team_id is not None:
                statement = statement.where(Equipment.maintenance_team_id == team_id)
            if health_below is not None:
                statement = statement.where(Equipment.health_percentage < health_below)
            return list(session.exec(statement.order_by(col(Equipment.created_at).desc())).all())

    def get_equipment(self, company_id: str, equipment_id: str) -> tuple[Equipment, int]:
        with self._session() as session:
            equipment = self._get_scoped_equipment(session, company_id, equipment_id)
            return equipment, self._count_open_requests(session, company_id, equipment_id)

    def update_equipment(self, actor: Actor, equipment_id: str, payload: EquipmentUpdate) -> Equipment:
        self._require_write(actor)
        data = payload.model_dump(exclude_unset=True)
        if "name" in data and data["name"] is None:
            data.pop("name")
        if "health_percentage" in data and data["health_percentage"] is None:
            data.pop("health_percentage")
        with self._session() as session:
            equipment = self._get_scoped_equipment(session, actor.company_id, equipment_id)
            self._check_references(session, actor.company_id, data)

            status = data.pop("status", None)
            if status is not None and status != equipment.status:
                if equipment.status == EquipmentStatus.SCRAPPED:
                    raise EquipmentTerminalError("scrapped equipment cannot change status", status=equipment.status)
                if self._count_open_requests(session, actor.company_id, equipment.id):
                    raise ConflictError("equipment status is driven by its active maintenance requests")
                equipment.status = status
                if status == EquipmentStatus.SCRAPPED:
                    equipment.scrap_date = now_utc()

            for key, value in data.items():
                setattr(equipment, key, value)
            equipment.updated_at = now_utc()
            session.add(equipment)
            session.commit()
            session.refresh(equipment)
        logger.info("equipment.updated", equipment_id=equipment.id, fields=sorted(payload.model_fields_set))
        return equipment

    def scrap_equipment(self, actor: Actor, equipment_id: str, reason: str | None = None) -> Equipment:
        self._require_write(actor)
        now = now_utc()
        with self._session() as session:
            equipment = self._get_scoped_equipment(session, actor.company_id, equipment_id)
            if equipment.status != EquipmentStatus.SCRAPPED and self._count_open_requests(session, actor.company_id, equipment.id):
                raise ConflictError("equipment status is driven by its active maintenance requests")
            changes = self._synchronizer.apply_side_effect(
                equipment,
                EquipmentEffect(status=EquipmentStatus.SCRAPPED, scrap_date=now),
                now,
            )
            for key, value in changes.items():
                setattr(equipment, key, value)
            if reason:
                note = f"[SCRAPPED] {reason}"
                equipment.description = f"{equipment.description}\n\n{note}" if equipment.description else note
            session.add(equipment)
            session.commit()
            session.refresh(equipment)

        logger.info("equipment.scrapped", equipment_id=equipment.id)
        try:
            self._dispatcher.notify(
                NotificationEvent.EQUIPMENT_SCRAPPED,
                actor.company_id,
                {"equipment_id": equipment.id, "request_id": None},
                actor_id=actor.user_id,
            )
        except Exception:
            logger.warning("notification.enqueue_failed", event_type="equipment.scrapped", exc_info=True)
        return equipment

    def delete_equipment(self, actor: Actor, equipment_id: str) -> None:
        self._require_write(actor)
        with self._session() as session:
            equipment = self._get_scoped_equipment(session, actor.company_id, equipment_id)
            if self._count_open_requests(session, actor.company_id, equipment.id):
                raise ConflictError("cannot delete equipment with active maintenance requests")
            # closed requests keep their history without the equipment link
            session.execute(
                sa.update(MaintenanceRequest)
                .where(MaintenanceRequest.company_id == actor.company_id)
                .where(MaintenanceRequest.equipment_id == equipment.id)
                .values(equipment_id=None)
            )
            session.delete(equipment)
            session.commit()
        logger.info("equipment.deleted", equipment_id=equipment_id)

    def list_equipment_requests(self, company_id: str, equipment_id: str) -> list[MaintenanceRequest]:
        with self._session() as session:
            self._get_scoped_equipment(session, company_id, equipment_id)
            statement = (
                select(MaintenanceRequest)
                .where(MaintenanceRequest.company_id == company_id)
                .where(MaintenanceRequest.equipment_id == equipment_id)
                .order_by(col(MaintenanceRequest.created_at).desc())
            )
            rows = list(session.exec(statement).all())
        now = now_utc()
        for row in rows:
            row.is_overdue = is_open_stage(row.stage) and is_overdue(row.scheduled_date, now)
        return rows
