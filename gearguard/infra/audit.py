from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from gearguard.domain.models import AuditLog, now_utc
from gearguard.infra.db import engine

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAUDITED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
SYSTEM_COMPANY = "system"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    company_id: str
    actor_id: str | None
    action: str
    resource: str
    method: str
    status_code: int
    detail: dict[str, Any] = field(default_factory=dict)


def write_audit_log(entry: AuditEntry) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                company_id=entry.company_id,
                actor_id=entry.actor_id,
                action=entry.action,
                resource=entry.resource,
                method=entry.method,
                status_code=entry.status_code,
                detail=entry.detail,
            )
        )
        session.commit()


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def outcome_for(status_code: int) -> str:
    # 409 covers stale writes and scrapped equipment, kept apart from plain validation failures
    if status_code >= 500:
        return "error"
    if status_code == 409:
        return "conflict"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def _default_action(request: Request) -> str:
    route = request.scope.get("route")
    tags = getattr(route, "tags", None) or []
    name = getattr(route, "name", None)
    if tags and name:
        return f"{tags[0]}.{name}"
    return f"{request.method}:{request.url.path}"


def _audit_context(request: Request) -> dict[str, Any]:
    context = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    return context if isinstance(context, dict) else {}


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Attach the business action and its subject to the audit row of this request."""
    context = dict(_audit_context(request))
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = _deep_merge(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def build_audit_entry(request: Request, status_code: int) -> AuditEntry:
    context = _audit_context(request)
    claims = getattr(request.state, "claims", {})
    company_id = claims.get("company_id") or SYSTEM_COMPANY
    actor_id = claims.get("sub")
    path = request.url.path
    route = request.scope.get("route")

    detail: dict[str, Any] = {
        "who": {"company_id": company_id, "actor_id": actor_id},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": path,
            "route": getattr(route, "path", path),
            "client_ip": request.client.host if request.client is not None else None,
            "request_id": getattr(request.state, "request_id", None),
        },
        "what": {"method": request.method, **request.path_params},
        "result": {"status_code": status_code, "outcome": outcome_for(status_code)},
    }
    extra = context.get("detail")
    if isinstance(extra, dict):
        detail = _deep_merge(detail, extra)

    action = context.get("action")
    resource = context.get("resource")
    return AuditEntry(
        company_id=company_id,
        actor_id=actor_id,
        action=action if isinstance(action, str) else _default_action(request),
        resource=resource if isinstance(resource, str) else path,
        method=request.method,
        status_code=status_code,
        detail=detail,
    )


class AuditMiddleware(BaseHTTPMiddleware):
    """Records one audit row per write request, rejected commands included."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.url.path in UNAUDITED_PATHS or request.method not in WRITE_METHODS:
            return response

        entry = build_audit_entry(request, response.status_code)
        try:
            write_audit_log(entry)
        except Exception:
            logger.error("audit.write_failed", action=entry.action, resource=entry.resource, exc_info=True)
        return response
