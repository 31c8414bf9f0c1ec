from __future__ import annotations

import sqlalchemy as sa
import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from gearguard.domain.errors import ConflictError, ForbiddenError, InvalidReferenceError, NotFoundError
from gearguard.domain.models import (
    Equipment,
    MaintenanceRequest,
    MaintenanceTeam,
    TeamCreate,
    TeamMember,
    TeamMemberCreate,
    User,
)
from gearguard.domain.permissions import CAP_TEAM_WRITE, TECHNICIAN_ROLES, Actor
from gearguard.domain.state_machine import OPEN_STAGES
from gearguard.infra.gateway import SqlPersistenceGateway

logger = structlog.get_logger(__name__)


class TeamService:
    def __init__(self, gateway: SqlPersistenceGateway) -> None:
        self._gateway = gateway

    def _session(self) -> Session:
        return self._gateway.session()

    def _require_write(self, actor: Actor) -> None:
        if not actor.can(CAP_TEAM_WRITE):
            raise ForbiddenError("only admins and maintenance managers can change teams")

    def _get_scoped_team(self, session: Session, company_id: str, team_id: str) -> MaintenanceTeam:
        team = session.exec(
            select(MaintenanceTeam).where(MaintenanceTeam.company_id == company_id).where(MaintenanceTeam.id == team_id)
        ).first()
        if team is None:
            raise NotFoundError("team not found")
        return team

    def _get_member(
        self,
        session: Session,
        company_id: str,
        team_id: str,
        user_id: str,
        *,
        lock: bool = False,
    ) -> TeamMember:
        statement = (
            select(TeamMember)
            .where(TeamMember.company_id == company_id)
            .where(TeamMember.team_id == team_id)
            .where(TeamMember.user_id == user_id)
        )
        if lock:
            # assignments hold a shared lock on this row until they commit
            statement = statement.with_for_update()
        member = session.exec(statement).first()
        if member is None:
            raise NotFoundError("member not found in team")
        return member

    def _count_active_requests(self, session: Session, company_id: str, team_id: str, technician_id: str | None = None) -> int:
        statement = (
            select(func.count())
            .select_from(MaintenanceRequest)
            .where(MaintenanceRequest.company_id == company_id)
            .where(MaintenanceRequest.team_id == team_id)
            .where(col(MaintenanceRequest.stage).in_(list(OPEN_STAGES)))
        )
        if technician_id is not None:
            statement = statement.where(MaintenanceRequest.technician_id == technician_id)
        return int(session.exec(statement).one())

    def create_team(self, actor: Actor, payload: TeamCreate) -> MaintenanceTeam:
        self._require_write(actor)
        with self._session() as session:
            team = MaintenanceTeam(company_id=actor.company_id, name=payload.name, description=payload.description)
            session.add(team)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("team name already exists") from exc
            session.refresh(team)
        logger.info("team.created", team_id=team.id)
        return team

    def list_teams(self, company_id: str) -> list[MaintenanceTeam]:
        with self._session() as session:
            statement = (
                select(MaintenanceTeam)
                .where(MaintenanceTeam.company_id == company_id)
                .order_by(col(MaintenanceTeam.name))
            )
            return list(session.exec(statement).all())

    def get_team(self, company_id: str, team_id: str) -> tuple[MaintenanceTeam, list[TeamMember], int]:
        with self._session() as session:
            team = self._get_scoped_team(session, company_id, team_id)
            members = list(
                session.exec(
                    select(TeamMember)
                    .where(TeamMember.company_id == company_id)
                    .where(TeamMember.team_id == team_id)
                    .order_by(col(TeamMember.joined_at))
                ).all()
            )
            return team, members, self._count_active_requests(session, company_id, team_id)

    def delete_team(self, actor: Actor, team_id: str) -> None:
        self._require_write(actor)
        with self._session() as session:
            team = self._get_scoped_team(session, actor.company_id, team_id)
            equipment_count = session.exec(
                select(func.count())
                .select_from(Equipment)
                .where(Equipment.company_id == actor.company_id)
                .where(Equipment.maintenance_team_id == team_id)
            ).one()
            if equipment_count:
                raise ConflictError("cannot delete team with assigned equipment")
            if self._count_active_requests(session, actor.company_id, team_id):
                raise ConflictError("cannot delete team with active requests")

            session.execute(
                sa.update(MaintenanceRequest)
                .where(MaintenanceRequest.company_id == actor.company_id)
                .where(MaintenanceRequest.team_id == team_id)
                .values(team_id=None)
            )
            session.execute(
                sa.delete(TeamMember).where(TeamMember.company_id == actor.company_id).where(TeamMember.team_id == team_id)
            )
            session.delete(team)
            session.commit()
        logger.info("team.deleted", team_id=team_id)

    def add_member(self, actor: Actor, team_id: str, payload: TeamMemberCreate) -> TeamMember:
        self._require_write(actor)
        with self._session() as session:
            self._get_scoped_team(session, actor.company_id, team_id)
            user = session.exec(
                select(User).where(User.company_id == actor.company_id).where(User.id == payload.user_id)
            ).first()
            if user is None or not user.is_active or user.role not in TECHNICIAN_ROLES:
                raise InvalidReferenceError("invalid user or user cannot be added to team")

            existing = session.exec(
                select(TeamMember).where(TeamMember.team_id == team_id).where(TeamMember.user_id == payload.user_id)
            ).first()
            if existing is not None:
                raise ConflictError("user is already a team member")

            member = TeamMember(
                company_id=actor.company_id,
                team_id=team_id,
                user_id=payload.user_id,
                is_lead=payload.is_lead,
            )
            session.add(member)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("user is already a team member") from exc
            session.refresh(member)
        logger.info("team.member_added", team_id=team_id, user_id=payload.user_id)
        return member

    def update_member(self, actor: Actor, team_id: str, user_id: str, *, is_lead: bool) -> TeamMember:
        self._require_write(actor)
        with self._session() as session:
            self._get_scoped_team(session, actor.company_id, team_id)
            member = self._get_member(session, actor.company_id, team_id, user_id)
            member.is_lead = is_lead
            session.add(member)
            session.commit()
            session.refresh(member)
        return member

    def remove_member(self, actor: Actor, team_id: str, user_id: str) -> None:
        """Remove a member unless an active request of this team still assigns them."""
        self._require_write(actor)
        with self._session() as session:
            self._get_scoped_team(session, actor.company_id, team_id)
            member = self._get_member(session, actor.company_id, team_id, user_id, lock=True)
            if self._count_active_requests(session, actor.company_id, team_id, technician_id=user_id):
                raise ConflictError("cannot remove member with active requests")
            session.delete(member)
            session.commit()
        logger.info("team.member_removed", team_id=team_id, user_id=user_id)
