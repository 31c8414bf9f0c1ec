"""maintenance core tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None

USER_ROLE = sa.Enum("ADMIN", "MAINTENANCE_MANAGER", "TECHNICIAN", "EMPLOYEE", name="userrole")
EQUIPMENT_STATUS = sa.Enum("ACTIVE", "UNDER_MAINTENANCE", "SCRAPPED", name="equipmentstatus")
REQUEST_STAGE = sa.Enum("NEW", "IN_PROGRESS", "REPAIRED", "SCRAP", name="requeststage")
REQUEST_TYPE = sa.Enum("CORRECTIVE", "PREVENTIVE", name="requesttype")
REQUEST_PRIORITY = sa.Enum("LOW", "MEDIUM", "HIGH", name="requestpriority")


def _company_scoped_index(table: str, *columns: str) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column])


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    _company_scoped_index("events", "event_type", "company_id", "ts", "actor_id")

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _company_scoped_index("audit_logs", "company_id", "actor_id", "ts")

    op.create_table(
        "companies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_companies_name", "companies", ["name"], unique=True)
    op.create_index("ix_companies_created_at", "companies", ["created_at"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("role", USER_ROLE, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "username", name="uq_users_company_username"),
    )
    _company_scoped_index("users", "company_id", "username", "role", "created_at")

    op.create_table(
        "equipment_categories",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "name", name="uq_equipment_categories_company_name"),
    )
    _company_scoped_index("equipment_categories", "company_id", "created_at")

    op.create_table(
        "work_centers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "name", name="uq_work_centers_company_name"),
    )
    _company_scoped_index("work_centers", "company_id", "created_at")

    op.create_table(
        "maintenance_teams",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "name", name="uq_maintenance_teams_company_name"),
    )
    _company_scoped_index("maintenance_teams", "company_id", "created_at")

    op.create_table(
        "team_members",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("is_lead", sa.Boolean(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["team_id"], ["maintenance_teams.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )
    _company_scoped_index("team_members", "company_id", "team_id", "user_id", "joined_at")
    op.create_index("ix_team_members_company_user", "team_members", ["company_id", "user_id"])

    op.create_table(
        "equipment",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("serial_number", sa.String(length=100), nullable=True),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("status", EQUIPMENT_STATUS, nullable=False),
        sa.Column("health_percentage", sa.Integer(), nullable=False),
        sa.Column("scrap_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("technician_id", sa.String(), nullable=True),
        sa.Column("maintenance_team_id", sa.String(), nullable=True),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("work_center_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["technician_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["maintenance_team_id"], ["maintenance_teams.id"]),
        sa.ForeignKeyConstraint(["category_id"], ["equipment_categories.id"]),
        sa.ForeignKeyConstraint(["work_center_id"], ["work_centers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _company_scoped_index(
        "equipment",
        "company_id",
        "status",
        "owner_id",
        "technician_id",
        "maintenance_team_id",
        "category_id",
        "work_center_id",
        "created_at",
    )
    op.create_index("ix_equipment_company_status", "equipment", ["company_id", "status"])

    op.create_table(
        "maintenance_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("request_type", REQUEST_TYPE, nullable=False),
        sa.Column("priority", REQUEST_PRIORITY, nullable=False),
        sa.Column("stage", REQUEST_STAGE, nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("is_overdue", sa.Boolean(), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("equipment_id", sa.String(), nullable=True),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("technician_id", sa.String(), nullable=True),
        sa.Column("created_by_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["equipment_id"], ["equipment.id"]),
        sa.ForeignKeyConstraint(["category_id"], ["equipment_categories.id"]),
        sa.ForeignKeyConstraint(["team_id"], ["maintenance_teams.id"]),
        sa.ForeignKeyConstraint(["technician_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _company_scoped_index(
        "maintenance_requests",
        "company_id",
        "request_type",
        "priority",
        "stage",
        "scheduled_date",
        "is_overdue",
        "equipment_id",
        "category_id",
        "team_id",
        "technician_id",
        "created_by_id",
        "created_at",
    )
    op.create_index("ix_maintenance_requests_company_stage", "maintenance_requests", ["company_id", "stage"])
    op.create_index(
        "ix_maintenance_requests_team_technician",
        "maintenance_requests",
        ["team_id", "technician_id"],
    )


def downgrade() -> None:
    for table in (
        "maintenance_requests",
        "equipment",
        "team_members",
        "maintenance_teams",
        "work_centers",
        "equipment_categories",
        "users",
        "companies",
        "audit_logs",
        "events",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in (REQUEST_PRIORITY, REQUEST_TYPE, REQUEST_STAGE, EQUIPMENT_STATUS, USER_ROLE):
        enum_type.drop(bind, checkfirst=True)
