from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from gearguard.domain.errors import AuthError
from gearguard.domain.permissions import Actor
from gearguard.infra.auth import decode_access_token
from gearguard.infra.tenant import set_request_context
from gearguard.services.identity_service import IdentityService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("company_id"), claims.get("sub"))
    return claims


def get_current_actor(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> Actor:
    # Role and team membership are read fresh so revoked access applies at once.
    try:
        return IdentityService().load_actor(claims["company_id"], claims["sub"])
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.to_detail()) from exc


def require_capability(capability: str) -> Callable[[Actor], Actor]:
    def _checker(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if not actor.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "forbidden", "message": f"Missing capability: {capability}"},
            )
        return actor

    return _checker


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
