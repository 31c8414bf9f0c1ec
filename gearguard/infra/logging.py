from __future__ import annotations

import logging
import os
import uuid
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from gearguard.infra.tenant import get_company_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
REQUEST_ID_HEADER = "X-Request-ID"


def add_request_context(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    company_id = get_company_id()
    user_id = get_user_id()
    if company_id is not None:
        event_dict.setdefault("company_id", company_id)
    if user_id is not None:
        event_dict.setdefault("user_id", user_id)
    return event_dict


def setup_logging() -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, LOG_LEVEL, logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER, str(uuid.uuid4()))
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
