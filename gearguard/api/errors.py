from __future__ import annotations

import structlog
from fastapi import HTTPException, status

from gearguard.domain.errors import (
    AuthError,
    ConflictError,
    EquipmentTerminalError,
    ForbiddenError,
    InvalidReferenceError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS: dict[type[LifecycleError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidReferenceError: status.HTTP_400_BAD_REQUEST,
    EquipmentTerminalError: status.HTTP_409_CONFLICT,
    AuthError: status.HTTP_401_UNAUTHORIZED,
}


def handle_error(exc: LifecycleError) -> None:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info("command.rejected", code=exc.code, status_code=status_code, reason=exc.message)
    raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc
