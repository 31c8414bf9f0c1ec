from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from gearguard.api.deps import CurrentActor, require_capability
from gearguard.api.errors import handle_error
from gearguard.domain.errors import LifecycleError
from gearguard.domain.models import (
    BootstrapAdminRequest,
    CompanyCreate,
    CompanyRead,
    DevLoginRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from gearguard.domain.permissions import CAP_IDENTITY_WRITE, UserRole
from gearguard.infra.audit import set_audit_context
from gearguard.infra.auth import create_access_token
from gearguard.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Service = Annotated[IdentityService, Depends(get_identity_service)]


@router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(payload: CompanyCreate, service: Service) -> CompanyRead:
    try:
        return CompanyRead.model_validate(service.create_company(payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(company_id: str, actor: CurrentActor, service: Service) -> CompanyRead:
    if actor.company_id != company_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": "company not found"},
        )
    try:
        return CompanyRead.model_validate(service.get_company(company_id))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.bootstrap_admin(payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.company_id, payload.username, payload.password)
    except LifecycleError as exc:
        handle_error(exc)
        raise
    token = create_access_token(user_id=user.id, company_id=user.company_id, role=str(user.role))
    return TokenResponse(access_token=token, role=user.role)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_IDENTITY_WRITE))],
)
def create_user(payload: UserCreate, request: Request, actor: CurrentActor, service: Service) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.create",
        detail={"what": {"username": payload.username, "role": payload.role}},
    )
    try:
        return UserRead.model_validate(service.create_user(actor, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.get("/users", response_model=list[UserRead])
def list_users(actor: CurrentActor, service: Service, role: UserRole | None = None) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(actor.company_id, role=role)]


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, actor: CurrentActor, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(actor.company_id, user_id))
    except LifecycleError as exc:
        handle_error(exc)
        raise


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_capability(CAP_IDENTITY_WRITE))],
)
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> UserRead:
    set_audit_context(request, action="identity.user.update", detail={"what": {"user_id": user_id}})
    try:
        return UserRead.model_validate(service.update_user(actor, user_id, payload))
    except LifecycleError as exc:
        handle_error(exc)
        raise
