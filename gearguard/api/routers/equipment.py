from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from gearguard.api.deps import CurrentActor
from gearguard.api.errors import handle_error
from gearguard.domain.errors import LifecycleError
from gearguard.domain.models import (
    EquipmentCreate,
    EquipmentDetailRead,
    EquipmentRead,
    EquipmentScrapRequest,
    EquipmentUpdate,
    MaintenanceRequestRead,
)
from gearguard.domain.state_machine import EquipmentStatus
from gearguard.infra.audit import set_audit_context
from gearguard.infra.db import get_engine
from gearguard.infra.gateway import SqlPersistenceGateway
from gearguard.services.equipment_service import EquipmentService

router = APIRouter()


def get_equipment_service() -> EquipmentService:
    return EquipmentService(SqlPersistenceGateway(get_engine()))


Service = Annotated[EquipmentService, Depends(get_equipment_service)]


@router.post("", response_model=EquipmentRead, status_code=status.HTTP_201_CREATED)
def create_equipment(
    payload: EquipmentCreate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> EquipmentRead:
    set_audit_context(request, action="equipment.create", detail={"what": {"name": payload.name}})
    try:
        return EquipmentRead.model_validate(service.create_equipment(actor, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("", response_model=list[EquipmentRead])
def list_equipment(
    actor: CurrentActor,
    service: Service,
    status_filter: Annotated[EquipmentStatus | None, Query(alias="status")] = None,
    category_id: str | None = None,
    team_id: str | None = None,
    health_below: Annotated[int | None, Query(ge=0, le=100)] = None,
) -> list[EquipmentRead]:
    rows = service.list_equipment(
        actor.company_id,
        status=status_filter,
        category_id=category_id,
        team_id=team_id,
        health_below=health_below,
    )
    return [EquipmentRead.model_validate(item) for item in rows]


@router.get("/{equipment_id}", response_model=EquipmentDetailRead)
def get_equipment(equipment_id: str, actor: CurrentActor, service: Service) -> EquipmentDetailRead:
    try:
        equipment, open_count = service.get_equipment(actor.company_id, equipment_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return EquipmentDetailRead(equipment=EquipmentRead.model_validate(equipment), open_request_count=open_count)


@router.put("/{equipment_id}", response_model=EquipmentRead)
def update_equipment(
    equipment_id: str,
    payload: EquipmentUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> EquipmentRead:
    set_audit_context(
        request,
        action="equipment.update",
        detail={"what": {"equipment_id": equipment_id, "fields": sorted(payload.model_fields_set)}},
    )
    try:
        return EquipmentRead.model_validate(service.update_equipment(actor, equipment_id, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch("/{equipment_id}/scrap", response_model=EquipmentRead)
def scrap_equipment(
    equipment_id: str,
    payload: EquipmentScrapRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> EquipmentRead:
    set_audit_context(request, action="equipment.scrap", detail={"what": {"equipment_id": equipment_id}})
    try:
        return EquipmentRead.model_validate(service.scrap_equipment(actor, equipment_id, payload.reason))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.delete("/{equipment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_equipment(
    equipment_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> Response:
    set_audit_context(request, action="equipment.delete", detail={"what": {"equipment_id": equipment_id}})
    try:
        service.delete_equipment(actor, equipment_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{equipment_id}/requests", response_model=list[MaintenanceRequestRead])
def list_equipment_requests(
    equipment_id: str,
    actor: CurrentActor,
    service: Service,
) -> list[MaintenanceRequestRead]:
    try:
        rows = service.list_equipment_requests(actor.company_id, equipment_id)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    return [MaintenanceRequestRead.model_validate(item) for item in rows]
