from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from gearguard.api.deps import CurrentActor
from gearguard.api.errors import handle_error
from gearguard.domain.errors import LifecycleError
from gearguard.domain.models import (
    MaintenanceRequestCreate,
    MaintenanceRequestRead,
    MaintenanceRequestUpdate,
    RequestPriority,
    RequestType,
    ScheduleUpdateRequest,
    StageTransitionRequest,
    TechnicianAssignRequest,
)
from gearguard.domain.state_machine import RequestStage
from gearguard.infra.audit import set_audit_context
from gearguard.infra.db import get_engine
from gearguard.infra.gateway import SqlPersistenceGateway
from gearguard.infra.notifications import notification_dispatcher
from gearguard.services.request_service import MaintenanceRequestService
from gearguard.services.request_state_machine import TransitionOptions

router = APIRouter()


def get_request_service() -> MaintenanceRequestService:
    return MaintenanceRequestService(SqlPersistenceGateway(get_engine()), notification_dispatcher)


Service = Annotated[MaintenanceRequestService, Depends(get_request_service)]


@router.post("", response_model=MaintenanceRequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: MaintenanceRequestCreate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(
        request,
        action="request.create",
        detail={"what": {"equipment_id": payload.equipment_id, "team_id": payload.team_id}},
    )
    try:
        row = service.create_request(actor, payload)
        return MaintenanceRequestRead.model_validate(row)
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("", response_model=list[MaintenanceRequestRead])
def list_requests(
    actor: CurrentActor,
    service: Service,
    stage: RequestStage | None = None,
    request_type: RequestType | None = None,
    priority: RequestPriority | None = None,
    equipment_id: str | None = None,
    team_id: str | None = None,
    technician_id: str | None = None,
    created_by_id: str | None = None,
    is_overdue: bool | None = None,
    search: str | None = None,
) -> list[MaintenanceRequestRead]:
    rows = service.list_requests(
        actor,
        stage=stage,
        request_type=request_type,
        priority=priority,
        equipment_id=equipment_id,
        team_id=team_id,
        technician_id=technician_id,
        created_by_id=created_by_id,
        overdue=is_overdue,
        search=search,
    )
    return [MaintenanceRequestRead.model_validate(item) for item in rows]


@router.get("/{request_id}", response_model=MaintenanceRequestRead)
def get_request(request_id: str, actor: CurrentActor, service: Service) -> MaintenanceRequestRead:
    try:
        return MaintenanceRequestRead.model_validate(service.get_request(actor, request_id))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.put("/{request_id}", response_model=MaintenanceRequestRead)
def update_request(
    request_id: str,
    payload: MaintenanceRequestUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(
        request,
        action="request.update",
        detail={"what": {"request_id": request_id, "fields": sorted(payload.model_fields_set)}},
    )
    try:
        return MaintenanceRequestRead.model_validate(service.update_request(actor, request_id, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{request_id}/stage", response_model=MaintenanceRequestRead)
def transition_stage(
    request_id: str,
    payload: StageTransitionRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(
        request,
        action="request.stage",
        detail={"what": {"request_id": request_id, "target_stage": payload.stage}},
    )
    options = TransitionOptions(duration=payload.duration, notes=payload.notes)
    try:
        row = service.transition_stage(actor, request_id, payload.stage, options)
        return MaintenanceRequestRead.model_validate(row)
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{request_id}/assign", response_model=MaintenanceRequestRead)
def assign_technician(
    request_id: str,
    payload: TechnicianAssignRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(
        request,
        action="request.assign",
        detail={"what": {"request_id": request_id, "technician_id": payload.technician_id}},
    )
    try:
        row = service.assign_technician(actor, request_id, payload.technician_id)
        return MaintenanceRequestRead.model_validate(row)
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{request_id}/self-assign", response_model=MaintenanceRequestRead)
def self_assign(
    request_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(request, action="request.self_assign", detail={"what": {"request_id": request_id}})
    try:
        return MaintenanceRequestRead.model_validate(service.self_assign(actor, request_id))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{request_id}/schedule", response_model=MaintenanceRequestRead)
def update_schedule(
    request_id: str,
    payload: ScheduleUpdateRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> MaintenanceRequestRead:
    set_audit_context(request, action="request.schedule", detail={"what": {"request_id": request_id}})
    try:
        row = service.update_schedule(actor, request_id, payload.scheduled_date)
        return MaintenanceRequestRead.model_validate(row)
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_request(
    request_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> Response:
    set_audit_context(request, action="request.delete", detail={"what": {"request_id": request_id}})
    try:
        service.delete_request(actor, request_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
