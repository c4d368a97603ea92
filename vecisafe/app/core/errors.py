"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes grouped by taxonomy
      (validation, authorization, lookup, infrastructure)
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Every error carries a machine-readable ``error_code`` plus a ``details``
dict naming the offending ``field`` where one exists, so a client can
render a localised message without parsing ``message``.

Usage:
    from vecisafe.app.core.errors import InvalidLocationError, NotFoundError

    raise InvalidLocationError("latitude", 95.0)
    raise NotFoundError("Alert", alert_id="ALR-...")
"""

from __future__ import annotations

import logging
import math
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vecisafe.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class VecisafeError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}

    @property
    def field(self) -> Optional[str]:
        return self.details.get("field")


# ── Validation ──

def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class ValidationError(VecisafeError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code=error_code,
            details=d,
        )


class InvalidLocationError(ValidationError):
    """Latitude / longitude outside the valid range."""

    def __init__(self, field: str, value: Any):
        super().__init__(
            f"Invalid {field}: {value!r}",
            field=field,
            error_code="INVALID_LOCATION",
            value=value if _is_finite_number(value) else repr(value),
        )


class InvalidPhoneFormatError(ValidationError):
    """Phone number failed the shape check. The number itself is not echoed."""

    def __init__(self) -> None:
        super().__init__(
            "Phone number is not in a recognised format",
            field="phone_number",
            error_code="INVALID_PHONE_FORMAT",
        )


class CodeMismatchError(ValidationError):
    """Verification code does not match the issued code."""

    def __init__(self, remaining_attempts: int):
        super().__init__(
            "Verification code does not match",
            field="code",
            error_code="CODE_MISMATCH",
            remaining_attempts=remaining_attempts,
        )


class CodeExpiredError(ValidationError):
    """Verification code TTL elapsed; a new code must be requested."""

    def __init__(self) -> None:
        super().__init__(
            "Verification code has expired",
            field="code",
            error_code="CODE_EXPIRED",
        )


class VerificationAttemptsExceededError(ValidationError):
    """Too many wrong codes; the session was reset to anonymous."""

    def __init__(self, max_attempts: int):
        super().__init__(
            f"Verification failed {max_attempts} times; request a new code",
            field="code",
            error_code="VERIFICATION_ATTEMPTS_EXCEEDED",
            max_attempts=max_attempts,
        )


class InvalidSessionStateError(VecisafeError):
    """Operation not allowed in the session's current phase (409)."""

    def __init__(self, session_id: str, phase: str, operation: str):
        super().__init__(
            message=f"Cannot {operation} while session is {phase}",
            status_code=409,
            error_code="INVALID_SESSION_STATE",
            details={
                "session_id": session_id,
                "phase": phase,
                "operation": operation,
            },
        )


class DeviceAlreadyRegisteredError(VecisafeError):
    """Device id is already bound to a live session (409)."""

    def __init__(self, device_id: str):
        super().__init__(
            message="Device already has a session; restore it with its device token",
            status_code=409,
            error_code="DEVICE_ALREADY_REGISTERED",
            details={"device_id": device_id},
        )


# ── Authorization ──

class UnauthenticatedError(VecisafeError):
    """Caller must hold a verified session (401)."""

    def __init__(self, message: str = "A verified session is required", **details: Any):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
            details=details,
        )


class ForbiddenError(VecisafeError):
    """Caller is not allowed to touch this resource (403)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            message=f"Not allowed to modify {resource}",
            status_code=403,
            error_code="FORBIDDEN",
            details={"resource": resource, **identifiers},
        )


# ── Lookup ──

class NotFoundError(VecisafeError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


# ── Infrastructure ──

class StorageUnavailableError(VecisafeError):
    """Backing store could not complete the write (503). Not retried here."""

    def __init__(self, store: str, message: str = ""):
        super().__init__(
            message=f"Storage '{store}' unavailable: {message}",
            status_code=503,
            error_code="STORAGE_UNAVAILABLE",
            details={"store": store},
        )


class LocationUnavailableError(VecisafeError):
    """No location reading could be obtained (422)."""

    def __init__(self, message: str = "Location reading unavailable"):
        super().__init__(
            message=message,
            status_code=422,
            error_code="LOCATION_UNAVAILABLE",
            details={"field": "location"},
        )


class ExternalServiceError(VecisafeError):
    """External transport call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(VecisafeError)
    async def handle_domain_error(request: Request, exc: VecisafeError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
