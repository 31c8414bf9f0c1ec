from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from gearguard import main as app_main
from gearguard.infra import audit, db, events
from gearguard.infra.notifications import notification_dispatcher


@pytest.fixture()
def teams_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "teams_api_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    notification_dispatcher.flush()
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create_company(client: TestClient, name: str) -> str:
    response = client.post("/api/identity/companies", json={"name": name})
    assert response.status_code == 201
    return response.json()["id"]


def _bootstrap_admin(client: TestClient, company_id: str, username: str, password: str) -> None:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"company_id": company_id, "username": username, "password": password},
    )
    assert response.status_code == 201


def _login(client: TestClient, company_id: str, username: str, password: str) -> str:
    response = client.post(
        "/api/identity/dev-login",
        json={"company_id": company_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _create_user(client: TestClient, admin_token: str, username: str, role: str) -> str:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": f"{username}-pass", "role": role},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_team(client: TestClient, token: str, name: str) -> str:
    response = client.post("/api/teams", json={"name": name}, headers=_auth_header(token))
    assert response.status_code == 201
    return response.json()["id"]


def test_team_membership_rules(teams_client: TestClient) -> None:
    company_id = _create_company(teams_client, "crew-members")
    _bootstrap_admin(teams_client, company_id, "admin", "admin-pass")
    admin = _login(teams_client, company_id, "admin", "admin-pass")
    tech_id = _create_user(teams_client, admin, "tech", "TECHNICIAN")
    employee_id = _create_user(teams_client, admin, "clerk", "EMPLOYEE")
    technician = _login(teams_client, company_id, "tech", "tech-pass")

    team_id = _create_team(teams_client, admin, "Electricians")
    duplicate = teams_client.post("/api/teams", json={"name": "Electricians"}, headers=_auth_header(admin))
    assert duplicate.status_code == 409

    forbidden = teams_client.post("/api/teams", json={"name": "Rogue"}, headers=_auth_header(technician))
    assert forbidden.status_code == 403

    not_technician = teams_client.post(
        f"/api/teams/{team_id}/members",
        json={"user_id": employee_id},
        headers=_auth_header(admin),
    )
    assert not_technician.status_code == 400
    assert not_technician.json()["detail"]["code"] == "invalid_reference"

    added = teams_client.post(
        f"/api/teams/{team_id}/members",
        json={"user_id": tech_id},
        headers=_auth_header(admin),
    )
    assert added.status_code == 201
    assert added.json()["is_lead"] is False

    again = teams_client.post(
        f"/api/teams/{team_id}/members",
        json={"user_id": tech_id},
        headers=_auth_header(admin),
    )
    assert again.status_code == 409

    lead = teams_client.patch(
        f"/api/teams/{team_id}/members/{tech_id}",
        json={"is_lead": True},
        headers=_auth_header(admin),
    )
    assert lead.status_code == 200
    assert lead.json()["is_lead"] is True

    detail = teams_client.get(f"/api/teams/{team_id}", headers=_auth_header(technician))
    assert detail.status_code == 200
    assert [item["user_id"] for item in detail.json()["members"]] == [tech_id]
    assert detail.json()["active_request_count"] == 0


def test_member_with_active_request_cannot_be_removed(teams_client: TestClient) -> None:
    company_id = _create_company(teams_client, "crew-active")
    _bootstrap_admin(teams_client, company_id, "admin", "admin-pass")
    admin = _login(teams_client, company_id, "admin", "admin-pass")
    tech_id = _create_user(teams_client, admin, "tech", "TECHNICIAN")
    team_id = _create_team(teams_client, admin, "Mechanics")
    member = teams_client.post(f"/api/teams/{team_id}/members", json={"user_id": tech_id}, headers=_auth_header(admin))
    assert member.status_code == 201

    technician = _login(teams_client, company_id, "tech", "tech-pass")
    request = teams_client.post(
        "/api/requests",
        json={"subject": "Gearbox noise", "team_id": team_id},
        headers=_auth_header(admin),
    )
    assert request.status_code == 201
    started = teams_client.patch(
        f"/api/requests/{request.json()['id']}/stage",
        json={"stage": "IN_PROGRESS"},
        headers=_auth_header(technician),
    )
    assert started.status_code == 200
    assert started.json()["technician_id"] == tech_id

    blocked = teams_client.delete(f"/api/teams/{team_id}/members/{tech_id}", headers=_auth_header(admin))
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["message"] == "cannot remove member with active requests"

    blocked_team = teams_client.delete(f"/api/teams/{team_id}", headers=_auth_header(admin))
    assert blocked_team.status_code == 409

    repaired = teams_client.patch(
        f"/api/requests/{request.json()['id']}/stage",
        json={"stage": "REPAIRED"},
        headers=_auth_header(technician),
    )
    assert repaired.status_code == 200

    removed = teams_client.delete(f"/api/teams/{team_id}/members/{tech_id}", headers=_auth_header(admin))
    assert removed.status_code == 204

    deleted = teams_client.delete(f"/api/teams/{team_id}", headers=_auth_header(admin))
    assert deleted.status_code == 204
    closed = teams_client.get(f"/api/requests/{request.json()['id']}", headers=_auth_header(admin))
    assert closed.json()["team_id"] is None


def test_team_with_equipment_cannot_be_deleted(teams_client: TestClient) -> None:
    company_id = _create_company(teams_client, "crew-equipment")
    _bootstrap_admin(teams_client, company_id, "admin", "admin-pass")
    admin = _login(teams_client, company_id, "admin", "admin-pass")
    team_id = _create_team(teams_client, admin, "Hydraulics")
    equipment = teams_client.post(
        "/api/equipment",
        json={"name": "Press", "maintenance_team_id": team_id},
        headers=_auth_header(admin),
    )
    assert equipment.status_code == 201

    blocked = teams_client.delete(f"/api/teams/{team_id}", headers=_auth_header(admin))
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["code"] == "conflict"

    listed = teams_client.get("/api/teams", headers=_auth_header(admin))
    assert [item["id"] for item in listed.json()] == [team_id]


def test_teams_are_company_scoped(teams_client: TestClient) -> None:
    company_a = _create_company(teams_client, "crew-a")
    company_b = _create_company(teams_client, "crew-b")
    _bootstrap_admin(teams_client, company_a, "admin", "admin-pass")
    _bootstrap_admin(teams_client, company_b, "admin", "admin-pass")
    admin_a = _login(teams_client, company_a, "admin", "admin-pass")
    admin_b = _login(teams_client, company_b, "admin", "admin-pass")
    tech_b = _create_user(teams_client, admin_b, "tech", "TECHNICIAN")

    team_a = _create_team(teams_client, admin_a, "Shared name")
    _create_team(teams_client, admin_b, "Shared name")

    hidden = teams_client.get(f"/api/teams/{team_a}", headers=_auth_header(admin_b))
    assert hidden.status_code == 404

    foreign_member = teams_client.post(
        f"/api/teams/{team_a}/members",
        json={"user_id": tech_b},
        headers=_auth_header(admin_a),
    )
    assert foreign_member.status_code == 400
