"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, Iterable

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidTransitionError(AppException):
    """Raised when a shipment cannot move to the requested state from its current one."""

    def __init__(self, transition: str, current_status: str, allowed_statuses: Iterable[str]):
        self.transition = transition
        self.current_status = current_status
        self.allowed_statuses = list(allowed_statuses)
        super().__init__(
            message=(
                f"Cannot {transition.replace('_', ' ')} shipment in status '{current_status}'. "
                f"Allowed statuses: {', '.join(self.allowed_statuses)}"
            ),
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "transition": transition,
                "current_status": current_status,
                "allowed_statuses": self.allowed_statuses,
            }
        )


class DuplicateIdentifierError(AppException):
    """Raised when a unique shipment identifier could not be allocated."""

    def __init__(self, field: str, attempts: int):
        super().__init__(
            message=f"Could not allocate a unique {field} after {attempts} attempts",
            error_code="ERR_CONFLICT_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"field": field, "attempts": attempts}
        )


class DriverNotEligibleError(AppException):
    """Raised when a driver is missing or cannot take the requested assignment."""

    def __init__(self, driver_id: int, reason: str):
        super().__init__(
            message=f"Eligible driver with ID {driver_id} not found: {reason}",
            error_code="ERR_DRIVER_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"driver_id": driver_id, "reason": reason}
        )


class UnsupportedStatusTargetError(AppException):
    """Raised when a status can only be entered through a dedicated operation."""

    def __init__(self, target_status: str, operation: str):
        super().__init__(
            message=f"Status '{target_status}' cannot be set directly; use the {operation} operation",
            error_code="ERR_BAD_REQUEST_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"status": target_status, "operation": operation}
        )


class ConcurrentModificationError(AppException):
    """Raised when another request updated the shipment between read and write."""

    def __init__(self, shipment_id: Any):
        super().__init__(
            message=f"Shipment with ID {shipment_id} was modified concurrently, retry the request",
            error_code="ERR_CONFLICT_003",
            status_code=status.HTTP_409_CONFLICT,
            details={"id": shipment_id}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


def _missing_fields(errors: list) -> list:
    """Collect body field names reported as missing by pydantic."""
    fields = []
    for error in errors:
        if error.get("type") != "missing":
            continue
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        if loc:
            fields.append(".".join(loc))
    return fields


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handler for Pydantic validation errors.

    Missing required fields are reported as 400 with their names so booking
    clients can highlight them; any other validation problem is a 422.
    """
    errors = exc.errors()
    missing = _missing_fields(errors)
    if missing:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error_code": "ERR_MISSING_FIELDS",
                "message": "Missing required fields",
                "details": {
                    "missing_fields": missing
                }
            }
        )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                    for e in errors
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
