from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    code = "lifecycle_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class NotFoundError(LifecycleError):
    code = "not_found"


class ForbiddenError(LifecycleError):
    code = "forbidden"


class ConflictError(LifecycleError):
    code = "conflict"


class InvalidReferenceError(LifecycleError):
    code = "invalid_reference"


class InvalidTransitionError(LifecycleError):
    code = "invalid_transition"

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage

    def to_detail(self) -> dict[str, Any]:
        return {**super().to_detail(), "stage": self.stage}


class EquipmentTerminalError(LifecycleError):
    code = "equipment_terminal"

    def __init__(self, message: str, *, status: str) -> None:
        super().__init__(message)
        self.status = status

    def to_detail(self) -> dict[str, Any]:
        return {**super().to_detail(), "status": self.status}


class AuthError(LifecycleError):
    code = "unauthorized"
