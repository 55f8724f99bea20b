"""
auth/errors.py -- Typed domain errors raised by the auth core.

Every rule violation in the service, session manager, and authenticator raises
an ApiError subclass carrying its HTTP status code and optional structured
details. The core never converts these into responses; api/main.py installs
one handler that renders every ApiError into the error envelope.

Layer rule: no imports from api/. Pure Python -- no framework types here.
"""

from __future__ import annotations

from typing import Any

# Keys whose values are never logged or echoed back in error details.
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "currentPassword",
        "newPassword",
        "current_password",
        "new_password",
        "refreshToken",
        "refresh_token",
        "accessToken",
        "access_token",
        "token",
    }
)

REDACTED = "[REDACTED]"


class ApiError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code: int = 500
    default_message: str = "Internal Server Error"

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = redact(details) if details is not None else None
        super().__init__(self.message)


class BadRequestError(ApiError):
    status_code = 400
    default_message = "Bad Request"


class UnauthorizedError(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ApiError):
    status_code = 409
    default_message = "Resource already exists"


class InternalError(ApiError):
    status_code = 500
    default_message = "Internal Server Error"


def redact(value: Any) -> Any:
    """Return a copy of value with every sensitive field replaced by [REDACTED].

    Walks nested dicts and lists. Non-container values are returned unchanged.
    """
    if isinstance(value, dict):
        return {k: (REDACTED if k in SENSITIVE_FIELDS and v else redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value
