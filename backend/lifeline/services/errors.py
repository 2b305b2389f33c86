"""
Emergency service error taxonomy.

Every error carries a stable ``code`` and a user-facing ``message``; the API
layer maps the class to an HTTP status (see ``lifeline.main``).
"""

from __future__ import annotations

from typing import Any

EMERGENCY_NOT_FOUND = "Emergency not found"
UNAUTHORIZED = "Unauthorized to access this emergency"
HELPER_ALREADY_ASSIGNED = "Helper already assigned to this emergency"
HELPER_NOT_REQUESTED = "Helper has not been requested for this emergency"
HELPER_NOT_ASSIGNED = "Helper not assigned to this emergency"
EMERGENCY_ALREADY_RESOLVED = "Emergency is already resolved"
INVALID_LOCATION = "Invalid location coordinates"
CONCURRENT_UPDATE = "Emergency was modified concurrently, please retry"


class EmergencyError(Exception):
    code = "EMERGENCY_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(EmergencyError):
    code = "VALIDATION_ERROR"

    def __init__(self, errors: list[dict[str, str]], message: str | None = None):
        self.errors = errors
        super().__init__(
            message or "Validation failed: " + ", ".join(e["message"] for e in errors)
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NotFoundError(EmergencyError):
    code = "EMERGENCY_NOT_FOUND"

    def __init__(self, message: str = EMERGENCY_NOT_FOUND, *, code: str | None = None):
        super().__init__(message, code=code)


class UnauthorizedError(EmergencyError):
    code = "UNAUTHORIZED"

    def __init__(self, message: str = UNAUTHORIZED, *, code: str | None = None):
        super().__init__(message, code=code)


class InvalidStateError(EmergencyError):
    code = "INVALID_STATE"


class ConflictError(EmergencyError):
    code = "CONCURRENT_UPDATE"

    def __init__(self, message: str = CONCURRENT_UPDATE):
        super().__init__(message)


class CollaboratorError(EmergencyError):
    """GeoIndex / notification failure. Never escapes the lifecycle service."""

    code = "COLLABORATOR_ERROR"
