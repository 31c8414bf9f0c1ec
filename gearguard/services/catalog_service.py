from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from gearguard.domain.errors import ConflictError, ForbiddenError
from gearguard.domain.models import CategoryCreate, EquipmentCategory, WorkCenter, WorkCenterCreate
from gearguard.domain.permissions import CAP_CATALOG_WRITE, Actor
from gearguard.infra.db import get_engine


class CatalogService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _require_write(self, actor: Actor) -> None:
        if not actor.can(CAP_CATALOG_WRITE):
            raise ForbiddenError("only admins and maintenance managers can change the catalog")

    def create_category(self, actor: Actor, payload: CategoryCreate) -> EquipmentCategory:
        self._require_write(actor)
        with self._session() as session:
            category = EquipmentCategory(company_id=actor.company_id, name=payload.name)
            session.add(category)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("category name already exists") from exc
            session.refresh(category)
            return category

    def list_categories(self, company_id: str) -> list[EquipmentCategory]:
        with self._session() as session:
            statement = (
                select(EquipmentCategory)
                .where(EquipmentCategory.company_id == company_id)
                .order_by(col(EquipmentCategory.name))
            )
            return list(session.exec(statement).all())

    def create_work_center(self, actor: Actor, payload: WorkCenterCreate) -> WorkCenter:
        self._require_write(actor)
        with self._session() as session:
            work_center = WorkCenter(company_id=actor.company_id, name=payload.name, code=payload.code)
            session.add(work_center)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("work center name already exists") from exc
            session.refresh(work_center)
            return work_center

    def list_work_centers(self, company_id: str) -> list[WorkCenter]:
        with self._session() as session:
            statement = select(WorkCenter).where(WorkCenter.company_id == company_id).order_by(col(WorkCenter.name))
            return list(session.exec(statement).all())
