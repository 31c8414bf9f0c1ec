from __future__ import annotations

import hashlib
import os

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from gearguard.domain.errors import AuthError, ConflictError, ForbiddenError, NotFoundError
from gearguard.domain.models import (
    BootstrapAdminRequest,
    Company,
    CompanyCreate,
    TeamMember,
    User,
    UserCreate,
    UserUpdate,
)
from gearguard.domain.permissions import CAP_IDENTITY_WRITE, Actor, UserRole
from gearguard.infra.db import get_engine

PASSWORD_SALT = os.getenv("PASSWORD_SALT", "gearguard-dev-salt")

logger = structlog.get_logger(__name__)


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        return hashlib.sha256(f"{PASSWORD_SALT}:{raw_password}".encode()).hexdigest()

    def _get_scoped_user(self, session: Session, company_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.company_id == company_id).where(User.id == user_id)
        return session.exec(statement).first()

    def _require_write(self, actor: Actor) -> None:
        if not actor.can(CAP_IDENTITY_WRITE):
            raise ForbiddenError("only admins can manage users")

    def create_company(self, payload: CompanyCreate) -> Company:
        with self._session() as session:
            company = Company(name=payload.name)
            session.add(company)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("company name already exists") from exc
            session.refresh(company)
        logger.info("company.created", company_id=company.id)
        return company

    def get_company(self, company_id: str) -> Company:
        with self._session() as session:
            company = session.get(Company, company_id)
            if company is None:
                raise NotFoundError("company not found")
            return company

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.get(Company, payload.company_id) is None:
                raise NotFoundError("company not found")
            existing = session.exec(select(User).where(User.company_id == payload.company_id)).first()
            if existing is not None:
                raise ConflictError("company already initialized")

            admin = User(
                company_id=payload.company_id,
                username=payload.username,
                name=payload.name,
                password_hash=self._hash_password(payload.password),
                role=UserRole.ADMIN,
                is_active=True,
            )
            session.add(admin)
            session.commit()
            session.refresh(admin)
        logger.info("company.bootstrapped", company_id=payload.company_id, user_id=admin.id)
        return admin

    def dev_login(self, company_id: str, username: str, password: str) -> User:
        with self._session() as session:
            statement = select(User).where(User.company_id == company_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user

    def load_actor(self, company_id: str, user_id: str) -> Actor:
        """Build the caller's :class:`Actor` from the stored user and memberships."""
        with self._session() as session:
            user = self._get_scoped_user(session, company_id, user_id)
            if user is None:
                raise AuthError("user not found")
            if not user.is_active:
                raise AuthError("user disabled")
            team_ids = session.exec(
                select(TeamMember.team_id).where(TeamMember.company_id == company_id).where(TeamMember.user_id == user_id)
            ).all()
        return Actor(
            user_id=user.id,
            company_id=company_id,
            role=UserRole(user.role),
            team_ids=frozenset(team_ids),
        )

    def create_user(self, actor: Actor, payload: UserCreate) -> User:
        self._require_write(actor)
        with self._session() as session:
            user = User(
                company_id=actor.company_id,
                username=payload.username,
                name=payload.name,
                password_hash=self._hash_password(payload.password),
                role=payload.role,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in company") from exc
            session.refresh(user)
        logger.info("user.created", created_user_id=user.id, role=str(user.role))
        return user

    def list_users(self, company_id: str, *, role: UserRole | None = None) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.company_id == company_id)
            if role is not None:
                statement = statement.where(User.role == role)
            return list(session.exec(statement.order_by(col(User.username))).all())

    def get_user(self, company_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, company_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, actor: Actor, user_id: str, payload: UserUpdate) -> User:
        self._require_write(actor)
        with self._session() as session:
            user = self._get_scoped_user(session, actor.company_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if user.id == actor.user_id and (
                (payload.role is not None and payload.role != user.role) or payload.is_active is False
            ):
                raise ConflictError("you cannot demote or disable your own account")
            if payload.password is not None:
                user.password_hash = self._hash_password(payload.password)
            if payload.name is not None:
                user.name = payload.name
            if payload.role is not None:
                user.role = payload.role
            if payload.is_active is not None:
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
        logger.info("user.updated", updated_user_id=user.id)
        return user
