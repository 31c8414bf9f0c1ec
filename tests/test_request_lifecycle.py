from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import delete, event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from gearguard.domain.errors import (
    ConflictError,
    EquipmentTerminalError,
    ForbiddenError,
    InvalidTransitionError,
)
from gearguard.domain.models import (
    Company,
    Equipment,
    EquipmentCategory,
    MaintenanceRequest,
    MaintenanceRequestCreate,
    MaintenanceRequestUpdate,
    MaintenanceTeam,
    TeamMember,
    User,
)
from gearguard.domain.permissions import Actor, UserRole
from gearguard.domain.state_machine import EquipmentStatus, RequestStage
from gearguard.infra.gateway import ConditionalUpdate, RowLock, SqlPersistenceGateway, WriteOp
from gearguard.services.request_service import MaintenanceRequestService
from gearguard.services.request_state_machine import TransitionOptions

START = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)

ADMIN = Actor(user_id="admin", company_id="company-a", role=UserRole.ADMIN)
MANAGER = Actor(user_id="manager", company_id="company-a", role=UserRole.MAINTENANCE_MANAGER)
TECH_1 = Actor(user_id="tech-1", company_id="company-a", role=UserRole.TECHNICIAN, team_ids=frozenset({"team-1"}))
TECH_2 = Actor(user_id="tech-2", company_id="company-a", role=UserRole.TECHNICIAN, team_ids=frozenset({"team-1"}))
OUTSIDER = Actor(user_id="tech-3", company_id="company-a", role=UserRole.TECHNICIAN)
EMPLOYEE = Actor(user_id="employee", company_id="company-a", role=UserRole.EMPLOYEE)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@dataclass
class _RecordingNotifier:
    sent: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    fail: bool = False

    def notify(
        self,
        event_type: str,
        company_id: str,
        payload_refs: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("dispatcher unavailable")
        self.sent.append((str(event_type), dict(payload_refs)))

    def types(self) -> list[str]:
        return [item[0] for item in self.sent]


@pytest.fixture()
def test_engine(tmp_path: Path) -> Engine:
    engine = create_engine(f"sqlite:///{tmp_path / 'lifecycle_test.db'}", connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        session.add(Company(id="company-a", name="Company A"))
        session.commit()
        for user_id, role in (
            ("admin", UserRole.ADMIN),
            ("manager", UserRole.MAINTENANCE_MANAGER),
            ("tech-1", UserRole.TECHNICIAN),
            ("tech-2", UserRole.TECHNICIAN),
            ("tech-3", UserRole.TECHNICIAN),
            ("employee", UserRole.EMPLOYEE),
        ):
            session.add(User(id=user_id, company_id="company-a", username=user_id, password_hash="x", role=role))
        session.add(EquipmentCategory(id="cat-1", company_id="company-a", name="Machines"))
        session.add(MaintenanceTeam(id="team-1", company_id="company-a", name="Mechanics"))
        session.commit()
        session.add(TeamMember(company_id="company-a", team_id="team-1", user_id="tech-1"))
        session.add(TeamMember(company_id="company-a", team_id="team-1", user_id="tech-2"))
        session.add(
            Equipment(
                id="eq-1",
                company_id="company-a",
                name="CNC mill",
                category_id="cat-1",
                maintenance_team_id="team-1",
                technician_id="tech-1",
            )
        )
        session.add(Equipment(id="eq-2", company_id="company-a", name="Forklift"))
        session.commit()
    return engine


@pytest.fixture()
def clock() -> _Clock:
    return _Clock(START)


@pytest.fixture()
def notifier() -> _RecordingNotifier:
    return _RecordingNotifier()


@pytest.fixture()
def service(test_engine: Engine, notifier: _RecordingNotifier, clock: _Clock) -> MaintenanceRequestService:
    return MaintenanceRequestService(SqlPersistenceGateway(test_engine), notifier, clock=clock)


def _equipment(engine: Engine, equipment_id: str) -> Equipment:
    with Session(engine) as session:
        equipment = session.get(Equipment, equipment_id)
        assert equipment is not None
        return equipment


def _open(service: MaintenanceRequestService, actor: Actor = EMPLOYEE, **fields: Any) -> MaintenanceRequest:
    payload = MaintenanceRequestCreate(subject=fields.pop("subject", "Spindle vibration"), **fields)
    return service.create_request(actor, payload)


def test_create_fills_defaults_from_equipment(service: MaintenanceRequestService, notifier: _RecordingNotifier) -> None:
    request = _open(service, equipment_id="eq-1")

    assert request.stage == RequestStage.NEW
    assert request.category_id == "cat-1"
    assert request.team_id == "team-1"
    assert request.technician_id == "tech-1"
    assert request.created_by_id == "employee"
    assert notifier.types() == ["request.created", "request.assigned"]


def test_create_explicit_values_override_equipment(service: MaintenanceRequestService) -> None:
    request = _open(service, MANAGER, equipment_id="eq-1", technician_id="tech-3")
    assert request.team_id == "team-1"
    assert request.technician_id == "tech-3"


def test_create_rejects_scrapped_equipment(service: MaintenanceRequestService) -> None:
    first = _open(service, equipment_id="eq-2")
    service.transition_stage(ADMIN, first.id, RequestStage.SCRAP)

    with pytest.raises(EquipmentTerminalError):
        _open(service, equipment_id="eq-2")


def test_stage_changes_drive_equipment_status(
    service: MaintenanceRequestService,
    test_engine: Engine,
    clock: _Clock,
) -> None:
    request = _open(service, equipment_id="eq-1")

    service.transition_stage(TECH_1, request.id, RequestStage.IN_PROGRESS)
    assert _equipment(test_engine, "eq-1").status == EquipmentStatus.UNDER_MAINTENANCE

    clock.now = START + timedelta(hours=3, minutes=30)
    repaired = service.transition_stage(TECH_1, request.id, RequestStage.REPAIRED)

    assert repaired.duration == 3.5
    assert repaired.completion_date is not None
    assert _equipment(test_engine, "eq-1").status == EquipmentStatus.ACTIVE


def test_scrap_sync_and_second_scrap_is_terminal(
    service: MaintenanceRequestService,
    test_engine: Engine,
    notifier: _RecordingNotifier,
) -> None:
    first = _open(service, equipment_id="eq-2")
    second = _open(service, equipment_id="eq-2")

    service.transition_stage(ADMIN, first.id, RequestStage.SCRAP)
    scrapped = _equipment(test_engine, "eq-2")
    assert scrapped.status == EquipmentStatus.SCRAPPED
    assert scrapped.scrap_date is not None
    assert "equipment.scrapped" in notifier.types()

    with pytest.raises(EquipmentTerminalError) as excinfo:
        service.transition_stage(ADMIN, second.id, RequestStage.SCRAP)
    assert excinfo.value.status == EquipmentStatus.SCRAPPED
    assert service.get_request(ADMIN, second.id).stage == RequestStage.NEW


def test_start_date_survives_reentry(service: MaintenanceRequestService, clock: _Clock) -> None:
    request = _open(service, equipment_id="eq-1")
    started = service.transition_stage(TECH_1, request.id, RequestStage.IN_PROGRESS)

    clock.now = START + timedelta(hours=1)
    again = service.transition_stage(TECH_1, request.id, RequestStage.IN_PROGRESS)

    assert again.start_date == started.start_date
    assert again.stage == RequestStage.IN_PROGRESS


def test_reentry_does_not_announce_stage_change(
    service: MaintenanceRequestService,
    notifier: _RecordingNotifier,
) -> None:
    request = _open(service)
    service.transition_stage(MANAGER, request.id, RequestStage.NEW)
    assert "request.stage_changed" not in notifier.types()


def test_closed_request_rejects_transitions(service: MaintenanceRequestService) -> None:
    request = _open(service, equipment_id="eq-1")
    service.transition_stage(ADMIN, request.id, RequestStage.REPAIRED)

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.transition_stage(ADMIN, request.id, RequestStage.IN_PROGRESS)
    assert excinfo.value.stage == RequestStage.REPAIRED


def test_employee_cannot_move_requests(service: MaintenanceRequestService) -> None:
    request = _open(service)
    with pytest.raises(ForbiddenError):
        service.transition_stage(EMPLOYEE, request.id, RequestStage.IN_PROGRESS)


def test_technician_start_self_assigns(service: MaintenanceRequestService, notifier: _RecordingNotifier) -> None:
    request = _open(service, team_id="team-1")
    started = service.transition_stage(TECH_2, request.id, RequestStage.IN_PROGRESS)

    assert started.technician_id == "tech-2"
    assert notifier.types()[-1] == "request.assigned"


def test_self_assign_conflict(service: MaintenanceRequestService) -> None:
    request = _open(service, team_id="team-1")

    taken = service.self_assign(TECH_1, request.id)
    assert taken.technician_id == "tech-1"

    with pytest.raises(ConflictError):
        service.self_assign(TECH_2, request.id)


def test_self_assign_outside_team_is_forbidden(service: MaintenanceRequestService) -> None:
    request = _open(service, team_id="team-1")
    with pytest.raises(ForbiddenError):
        service.self_assign(OUTSIDER, request.id)


class _BarrierGateway(SqlPersistenceGateway):
    """Holds every compare-and-swap until both racers have validated."""

    def __init__(self, engine: Engine, barrier: threading.Barrier) -> None:
        super().__init__(engine)
        self._barrier = barrier

    def compare_and_swap(
        self,
        model: type[Any],
        company_id: str,
        entity_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        locks: Sequence[RowLock] = (),
    ) -> bool:
        self._barrier.wait(timeout=5)
        return super().compare_and_swap(model, company_id, entity_id, expected, changes, locks)


def test_concurrent_self_assign_has_one_winner(
    test_engine: Engine,
    notifier: _RecordingNotifier,
    clock: _Clock,
) -> None:
    plain = MaintenanceRequestService(SqlPersistenceGateway(test_engine), notifier, clock=clock)
    request = _open(plain, team_id="team-1")
    racing = MaintenanceRequestService(_BarrierGateway(test_engine, threading.Barrier(2)), notifier, clock=clock)

    def _attempt(actor: Actor) -> str:
        try:
            racing.self_assign(actor, request.id)
        except ConflictError:
            return "conflict"
        return "won"

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_attempt, [TECH_1, TECH_2]))

    assert sorted(results) == ["conflict", "won"]
    winner = plain.get_request(ADMIN, request.id).technician_id
    assert winner in {"tech-1", "tech-2"}


def test_assign_requires_manager_and_team_rules(service: MaintenanceRequestService) -> None:
    request = _open(service, team_id="team-1")

    with pytest.raises(ForbiddenError):
        service.assign_technician(TECH_1, request.id, "tech-1")

    assigned = service.assign_technician(MANAGER, request.id, "tech-3")
    assert assigned.technician_id == "tech-3"
    reassigned = service.assign_technician(ADMIN, request.id, "tech-2")
    assert reassigned.technician_id == "tech-2"


class _InterferingGateway(SqlPersistenceGateway):
    """Moves the request to IN_PROGRESS right before the first transaction commits."""

    def __init__(self, engine: Engine, request_id: str) -> None:
        super().__init__(engine)
        self._request_id = request_id
        self._interfered = False

    def transaction(self, operations: Sequence[WriteOp]) -> None:
        if not self._interfered:
            self._interfered = True
            super().transaction(
                [
                    ConditionalUpdate(
                        MaintenanceRequest,
                        "company-a",
                        self._request_id,
                        {"stage": RequestStage.IN_PROGRESS},
                    )
                ]
            )
        super().transaction(operations)


class _MemberRemovingGateway(SqlPersistenceGateway):
    """Drops a team membership right before the first transaction runs."""

    def __init__(self, engine: Engine, user_id: str) -> None:
        super().__init__(engine)
        self._user_id = user_id
        self._removed = False

    def transaction(self, operations: Sequence[WriteOp]) -> None:
        if not self._removed:
            self._removed = True
            with self.session() as session:
                session.execute(delete(TeamMember).where(TeamMember.user_id == self._user_id))
                session.commit()
        super().transaction(operations)


def test_assignment_aborts_when_membership_disappears(
    test_engine: Engine,
    notifier: _RecordingNotifier,
    clock: _Clock,
) -> None:
    plain = MaintenanceRequestService(SqlPersistenceGateway(test_engine), notifier, clock=clock)
    assigned = _open(plain, team_id="team-1")
    taken = _open(plain, team_id="team-1")

    manager_side = MaintenanceRequestService(_MemberRemovingGateway(test_engine, "tech-2"), notifier, clock=clock)
    with pytest.raises(ConflictError) as excinfo:
        manager_side.assign_technician(MANAGER, assigned.id, "tech-2")
    assert excinfo.value.message == "team membership changed concurrently, reload and retry"
    assert plain.get_request(ADMIN, assigned.id).technician_id is None

    technician_side = MaintenanceRequestService(_MemberRemovingGateway(test_engine, "tech-1"), notifier, clock=clock)
    with pytest.raises(ConflictError):
        technician_side.self_assign(TECH_1, taken.id)
    assert plain.get_request(ADMIN, taken.id).technician_id is None


def test_lost_update_aborts_request_and_equipment_writes(
    service: MaintenanceRequestService,
    test_engine: Engine,
    notifier: _RecordingNotifier,
    clock: _Clock,
) -> None:
    request = _open(service, equipment_id="eq-2")
    racing = MaintenanceRequestService(_InterferingGateway(test_engine, request.id), notifier, clock=clock)

    with pytest.raises(ConflictError):
        racing.transition_stage(ADMIN, request.id, RequestStage.SCRAP)

    assert _equipment(test_engine, "eq-2").status == EquipmentStatus.ACTIVE
    assert service.get_request(ADMIN, request.id).stage == RequestStage.IN_PROGRESS


def test_overdue_is_recomputed(service: MaintenanceRequestService, clock: _Clock) -> None:
    request = _open(service, scheduled_date=START + timedelta(days=1))
    assert request.is_overdue is False

    clock.now = START + timedelta(days=2)
    assert service.get_request(ADMIN, request.id).is_overdue is True
    assert [row.id for row in service.list_requests(ADMIN, overdue=True)] == [request.id]

    rescheduled = service.update_schedule(MANAGER, request.id, START + timedelta(days=5))
    assert rescheduled.is_overdue is False

    clock.now = START + timedelta(days=6)
    repaired = service.transition_stage(ADMIN, request.id, RequestStage.REPAIRED)
    assert repaired.is_overdue is False


def test_repaired_duration_override(service: MaintenanceRequestService, clock: _Clock) -> None:
    request = _open(service)
    service.transition_stage(MANAGER, request.id, RequestStage.IN_PROGRESS)
    clock.now = START + timedelta(hours=8)

    repaired = service.transition_stage(
        MANAGER,
        request.id,
        RequestStage.REPAIRED,
        TransitionOptions(duration=2.0, notes="bearing replaced"),
    )

    assert repaired.duration == 2.0
    assert repaired.notes == "bearing replaced"


def test_update_request_fields(service: MaintenanceRequestService) -> None:
    request = _open(service)
    updated = service.update_request(
        MANAGER,
        request.id,
        MaintenanceRequestUpdate(subject="Spindle noise", equipment_id="eq-1", notes="check belts"),
    )
    assert updated.subject == "Spindle noise"
    assert updated.equipment_id == "eq-1"
    assert updated.category_id == "cat-1"
    assert updated.stage == RequestStage.NEW

    service.transition_stage(MANAGER, request.id, RequestStage.REPAIRED)
    with pytest.raises(InvalidTransitionError):
        service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(equipment_id="eq-2"))
    closed = service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(duration=4.0))
    assert closed.duration == 4.0


def test_equipment_link_is_fixed_while_in_progress(
    service: MaintenanceRequestService,
    test_engine: Engine,
) -> None:
    request = _open(service, equipment_id="eq-1")
    service.transition_stage(TECH_1, request.id, RequestStage.IN_PROGRESS)

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(equipment_id="eq-2"))
    assert excinfo.value.stage == RequestStage.IN_PROGRESS
    with pytest.raises(InvalidTransitionError):
        service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(equipment_id=None))

    unchanged_link = service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(equipment_id="eq-1", notes="belt"))
    assert unchanged_link.notes == "belt"

    service.transition_stage(TECH_1, request.id, RequestStage.REPAIRED)
    assert _equipment(test_engine, "eq-1").status == EquipmentStatus.ACTIVE
    assert _equipment(test_engine, "eq-2").status == EquipmentStatus.ACTIVE


def test_unlinking_equipment_clears_category(service: MaintenanceRequestService) -> None:
    request = _open(service, equipment_id="eq-1")
    assert request.category_id == "cat-1"

    unlinked = service.update_request(MANAGER, request.id, MaintenanceRequestUpdate(equipment_id=None))
    assert unlinked.equipment_id is None
    assert unlinked.category_id is None


def test_delete_rules(service: MaintenanceRequestService) -> None:
    own = _open(service)
    service.delete_request(EMPLOYEE, own.id)

    started = _open(service)
    service.transition_stage(MANAGER, started.id, RequestStage.IN_PROGRESS)
    with pytest.raises(InvalidTransitionError):
        service.delete_request(MANAGER, started.id)
    service.delete_request(ADMIN, started.id)

    assert service.list_requests(ADMIN) == []


def test_deleting_started_request_releases_equipment(
    service: MaintenanceRequestService,
    test_engine: Engine,
) -> None:
    first = _open(service, equipment_id="eq-2")
    second = _open(service, equipment_id="eq-2")
    service.transition_stage(MANAGER, first.id, RequestStage.IN_PROGRESS)
    service.transition_stage(MANAGER, second.id, RequestStage.IN_PROGRESS)

    service.delete_request(ADMIN, first.id)
    assert _equipment(test_engine, "eq-2").status == EquipmentStatus.UNDER_MAINTENANCE

    service.delete_request(ADMIN, second.id)
    assert _equipment(test_engine, "eq-2").status == EquipmentStatus.ACTIVE


def test_technician_sees_only_related_requests(service: MaintenanceRequestService) -> None:
    team_request = _open(service, team_id="team-1")
    _open(service)
    own = _open(service, OUTSIDER)

    assert {row.id for row in service.list_requests(TECH_1)} == {team_request.id}
    assert {row.id for row in service.list_requests(OUTSIDER)} == {own.id}
    assert len(service.list_requests(MANAGER)) == 3


def test_dispatcher_failure_does_not_fail_command(test_engine: Engine, clock: _Clock) -> None:
    broken = _RecordingNotifier(fail=True)
    service = MaintenanceRequestService(SqlPersistenceGateway(test_engine), broken, clock=clock)

    request = _open(service, equipment_id="eq-1")
    started = service.transition_stage(TECH_1, request.id, RequestStage.IN_PROGRESS)

    assert started.stage == RequestStage.IN_PROGRESS
