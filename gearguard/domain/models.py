from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from gearguard.domain.permissions import UserRole
from gearguard.domain.state_machine import EquipmentStatus, RequestStage


def now_utc() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=new_id, primary_key=True)
    event_type: str = Field(index=True)
    company_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Company(SQLModel, table=True):
    __tablename__ = "companies"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("company_id", "username", name="uq_users_company_username"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    username: str = Field(index=True)
    name: str | None = None
    password_hash: str
    role: UserRole = Field(default=UserRole.EMPLOYEE, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EquipmentCategory(SQLModel, table=True):
    __tablename__ = "equipment_categories"
    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_equipment_categories_company_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    name: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class WorkCenter(SQLModel, table=True):
    __tablename__ = "work_centers"
    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_work_centers_company_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    name: str = Field(max_length=100)
    code: str | None = Field(default=None, max_length=50)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class MaintenanceTeam(SQLModel, table=True):
    __tablename__ = "maintenance_teams"
    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_maintenance_teams_company_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    name: str = Field(max_length=100)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
        Index("ix_team_members_company_user", "company_id", "user_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    team_id: str = Field(foreign_key="maintenance_teams.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    is_lead: bool = Field(default=False)
    joined_at: datetime = Field(default_factory=now_utc, index=True)


class Equipment(SQLModel, table=True):
    __tablename__ = "equipment"
    __table_args__ = (Index("ix_equipment_company_status", "company_id", "status"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    name: str = Field(max_length=200)
    serial_number: str | None = Field(default=None, max_length=100)
    location: str | None = None
    description: str | None = None
    status: EquipmentStatus = Field(default=EquipmentStatus.ACTIVE, index=True)
    health_percentage: int = Field(default=100)
    scrap_date: datetime | None = None
    owner_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    technician_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    maintenance_team_id: str | None = Field(default=None, foreign_key="maintenance_teams.id", index=True)
    category_id: str | None = Field(default=None, foreign_key="equipment_categories.id", index=True)
    work_center_id: str | None = Field(default=None, foreign_key="work_centers.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class RequestType(StrEnum):
    CORRECTIVE = "CORRECTIVE"
    PREVENTIVE = "PREVENTIVE"


class RequestPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class MaintenanceRequest(SQLModel, table=True):
    __tablename__ = "maintenance_requests"
    __table_args__ = (
        Index("ix_maintenance_requests_company_stage", "company_id", "stage"),
        Index("ix_maintenance_requests_team_technician", "team_id", "technician_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    subject: str = Field(max_length=200)
    description: str | None = None
    request_type: RequestType = Field(default=RequestType.CORRECTIVE, index=True)
    priority: RequestPriority = Field(default=RequestPriority.MEDIUM, index=True)
    stage: RequestStage = Field(default=RequestStage.NEW, index=True)
    scheduled_date: datetime | None = Field(default=None, index=True)
    start_date: datetime | None = None
    completion_date: datetime | None = None
    duration: float | None = None
    is_overdue: bool = Field(default=False, index=True)
    notes: str | None = None
    equipment_id: str | None = Field(default=None, foreign_key="equipment.id", index=True)
    category_id: str | None = Field(default=None, foreign_key="equipment_categories.id", index=True)
    team_id: str | None = Field(default=None, foreign_key="maintenance_teams.id", index=True)
    technician_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    created_by_id: str = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=new_id)
    event_type: str
    company_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CompanyCreate(BaseModel):
    name: str = PydanticField(min_length=2, max_length=100)


class CompanyRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class UserCreate(BaseModel):
    username: str = PydanticField(min_length=3, max_length=100)
    password: str = PydanticField(min_length=8)
    name: str | None = None
    role: UserRole = UserRole.EMPLOYEE
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = PydanticField(default=None, min_length=8)
    name: str | None = None
    role: UserRole | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    company_id: str
    username: str
    name: str | None
    role: UserRole
    is_active: bool
    created_at: datetime


class DevLoginRequest(BaseModel):
    company_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    company_id: str
    username: str = PydanticField(min_length=3, max_length=100)
    password: str = PydanticField(min_length=8)
    name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: UserRole


class CategoryCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)


class CategoryRead(ORMReadModel):
    id: str
    company_id: str
    name: str
    created_at: datetime


class WorkCenterCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    code: str | None = PydanticField(default=None, max_length=50)


class WorkCenterRead(ORMReadModel):
    id: str
    company_id: str
    name: str
    code: str | None
    created_at: datetime


class EquipmentCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    serial_number: str | None = PydanticField(default=None, max_length=100)
    location: str | None = None
    description: str | None = None
    health_percentage: int = PydanticField(default=100, ge=0, le=100)
    owner_id: str | None = None
    technician_id: str | None = None
    maintenance_team_id: str | None = None
    category_id: str | None = None
    work_center_id: str | None = None


class EquipmentUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    serial_number: str | None = PydanticField(default=None, max_length=100)
    location: str | None = None
    description: str | None = None
    health_percentage: int | None = PydanticField(default=None, ge=0, le=100)
    status: EquipmentStatus | None = None
    owner_id: str | None = None
    technician_id: str | None = None
    maintenance_team_id: str | None = None
    category_id: str | None = None
    work_center_id: str | None = None


class EquipmentScrapRequest(BaseModel):
    reason: str | None = PydanticField(default=None, max_length=2000)


class EquipmentRead(ORMReadModel):
    id: str
    company_id: str
    name: str
    serial_number: str | None
    location: str | None
    description: str | None
    status: EquipmentStatus
    health_percentage: int
    scrap_date: datetime | None
    owner_id: str | None
    technician_id: str | None
    maintenance_team_id: str | None
    category_id: str | None
    work_center_id: str | None
    created_at: datetime
    updated_at: datetime


class EquipmentDetailRead(BaseModel):
    equipment: EquipmentRead
    open_request_count: int


class TeamCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    description: str | None = None


class TeamRead(ORMReadModel):
    id: str
    company_id: str
    name: str
    description: str | None
    created_at: datetime


class TeamMemberCreate(BaseModel):
    user_id: str
    is_lead: bool = False


class TeamMemberUpdate(BaseModel):
    is_lead: bool


class TeamMemberRead(ORMReadModel):
    id: str
    team_id: str
    user_id: str
    is_lead: bool
    joined_at: datetime


class TeamDetailRead(BaseModel):
    team: TeamRead
    members: list[TeamMemberRead]
    active_request_count: int


class MaintenanceRequestCreate(BaseModel):
    subject: str = PydanticField(min_length=3, max_length=200)
    description: str | None = PydanticField(default=None, max_length=2000)
    request_type: RequestType = RequestType.CORRECTIVE
    priority: RequestPriority = RequestPriority.MEDIUM
    equipment_id: str | None = None
    scheduled_date: datetime | None = None
    technician_id: str | None = None
    team_id: str | None = None


class MaintenanceRequestUpdate(BaseModel):
    subject: str | None = PydanticField(default=None, min_length=3, max_length=200)
    description: str | None = PydanticField(default=None, max_length=2000)
    request_type: RequestType | None = None
    priority: RequestPriority | None = None
    equipment_id: str | None = None
    team_id: str | None = None
    duration: float | None = PydanticField(default=None, ge=0)
    notes: str | None = PydanticField(default=None, max_length=2000)


class StageTransitionRequest(BaseModel):
    stage: RequestStage
    duration: float | None = PydanticField(default=None, ge=0)
    notes: str | None = PydanticField(default=None, max_length=2000)


class TechnicianAssignRequest(BaseModel):
    technician_id: str


class ScheduleUpdateRequest(BaseModel):
    scheduled_date: datetime | None


class MaintenanceRequestRead(ORMReadModel):
    id: str
    company_id: str
    subject: str
    description: str | None
    request_type: RequestType
    priority: RequestPriority
    stage: RequestStage
    scheduled_date: datetime | None
    start_date: datetime | None
    completion_date: datetime | None
    duration: float | None
    is_overdue: bool
    notes: str | None
    equipment_id: str | None
    category_id: str | None
    team_id: str | None
    technician_id: str | None
    created_by_id: str
    created_at: datetime
    updated_at: datetime
