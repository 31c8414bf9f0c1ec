from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from gearguard.api.deps import CurrentActor
from gearguard.api.errors import handle_error
from gearguard.domain.errors import LifecycleError
from gearguard.domain.models import (
    TeamCreate,
    TeamDetailRead,
    TeamMemberCreate,
    TeamMemberRead,
    TeamMemberUpdate,
    TeamRead,
)
from gearguard.infra.audit import set_audit_context
from gearguard.infra.db import get_engine
from gearguard.infra.gateway import SqlPersistenceGateway
from gearguard.services.team_service import TeamService

router = APIRouter()


def get_team_service() -> TeamService:
    return TeamService(SqlPersistenceGateway(get_engine()))


Service = Annotated[TeamService, Depends(get_team_service)]


@router.post("", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(payload: TeamCreate, request: Request, actor: CurrentActor, service: Service) -> TeamRead:
    set_audit_context(request, action="team.create", detail={"what": {"name": payload.name}})
    try:
        return TeamRead.model_validate(service.create_team(actor, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("", response_model=list[TeamRead])
def list_teams(actor: CurrentActor, service: Service) -> list[TeamRead]:
    return [TeamRead.model_validate(item) for item in service.list_teams(actor.company_id)]


@router.get("/{team_id}", response_model=TeamDetailRead)
def get_team(team_id: str, actor: CurrentActor, service: Service) -> TeamDetailRead:
    try:
        team, members, active_count = service.get_team(actor.company_id, team_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return TeamDetailRead(
        team=TeamRead.model_validate(team),
        members=[TeamMemberRead.model_validate(item) for item in members],
        active_request_count=active_count,
    )


@router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(team_id: str, request: Request, actor: CurrentActor, service: Service) -> Response:
    set_audit_context(request, action="team.delete", detail={"what": {"team_id": team_id}})
    try:
        service.delete_team(actor, team_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{team_id}/members", response_model=TeamMemberRead, status_code=status.HTTP_201_CREATED)
def add_member(
    team_id: str,
    payload: TeamMemberCreate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TeamMemberRead:
    set_audit_context(
        request,
        action="team.member.add",
        detail={"what": {"team_id": team_id, "user_id": payload.user_id}},
    )
    try:
        return TeamMemberRead.model_validate(service.add_member(actor, team_id, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{team_id}/members/{user_id}", response_model=TeamMemberRead)
def update_member(
    team_id: str,
    user_id: str,
    payload: TeamMemberUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TeamMemberRead:
    set_audit_context(request, action="team.member.update", detail={"what": {"team_id": team_id, "user_id": user_id}})
    try:
        return TeamMemberRead.model_validate(service.update_member(actor, team_id, user_id, is_lead=payload.is_lead))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.delete("/{team_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    team_id: str,
    user_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> Response:
    set_audit_context(request, action="team.member.remove", detail={"what": {"team_id": team_id, "user_id": user_id}})
    try:
        service.remove_member(actor, team_id, user_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
