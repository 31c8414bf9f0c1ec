from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from gearguard.api.deps import CurrentActor
from gearguard.api.errors import handle_error
from gearguard.domain.errors import LifecycleError
from gearguard.domain.models import CategoryCreate, CategoryRead, WorkCenterCreate, WorkCenterRead
from gearguard.infra.audit import set_audit_context
from gearguard.services.catalog_service import CatalogService

router = APIRouter()


def get_catalog_service() -> CatalogService:
    return CatalogService()


Service = Annotated[CatalogService, Depends(get_catalog_service)]


@router.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
def create_category(payload: CategoryCreate, request: Request, actor: CurrentActor, service: Service) -> CategoryRead:
    set_audit_context(request, action="catalog.category.create", detail={"what": {"name": payload.name}})
    try:
        return CategoryRead.model_validate(service.create_category(actor, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("/categories", response_model=list[CategoryRead])
def list_categories(actor: CurrentActor, service: Service) -> list[CategoryRead]:
    return [CategoryRead.model_validate(item) for item in service.list_categories(actor.company_id)]


@router.post("/work-centers", response_model=WorkCenterRead, status_code=status.HTTP_201_CREATED)
def create_work_center(
    payload: WorkCenterCreate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> WorkCenterRead:
    set_audit_context(request, action="catalog.work_center.create", detail={"what": {"name": payload.name}})
    try:
        return WorkCenterRead.model_validate(service.create_work_center(actor, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("/work-centers", response_model=list[WorkCenterRead])
def list_work_centers(actor: CurrentActor, service: Service) -> list[WorkCenterRead]:
    return [WorkCenterRead.model_validate(item) for item in service.list_work_centers(actor.company_id)]
