"""
core/errors.py — Error taxonomy, result type, and the HTTP boundary.

Every service operation returns a Result: Ok(value) on success or
Err(ServiceError) on failure. Routes hand the result to ``unwrap()``,
which is the only place a ServiceError is turned into an HTTP status.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = logging.getLogger("rsl.api")

T = TypeVar("T")


class ErrorCode(str, Enum):
    INVALID_CLIENT = "invalid_client"
    INVALID_REQUEST = "invalid_request"
    INVALID_GRANT = "invalid_grant"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    ACCESS_DENIED = "access_denied"
    PERMISSION_DENIED = "permission_denied"
    USER_TYPE_NOT_ALLOWED = "user_type_not_allowed"
    GEOGRAPHIC_RESTRICTION = "geographic_restriction"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_FAILED = "payment_failed"
    LICENSE_NOT_FOUND = "license_not_found"
    INVALID_RSL_DOCUMENT = "invalid_rsl_document"
    WEBHOOK_NOT_FOUND = "webhook_not_found"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    INVALID_TRANSACTION_STATUS = "invalid_transaction_status"
    INVALID_URL = "invalid_url"
    INVALID_EVENTS = "invalid_events"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"


STATUS_CODES = {
    ErrorCode.INVALID_CLIENT: 401,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_GRANT: 400,
    ErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INSUFFICIENT_SCOPE: 403,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.USER_TYPE_NOT_ALLOWED: 403,
    ErrorCode.GEOGRAPHIC_RESTRICTION: 403,
    ErrorCode.PAYMENT_REQUIRED: 402,
    ErrorCode.PAYMENT_FAILED: 402,
    ErrorCode.LICENSE_NOT_FOUND: 404,
    ErrorCode.INVALID_RSL_DOCUMENT: 400,
    ErrorCode.WEBHOOK_NOT_FOUND: 404,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSACTION_STATUS: 400,
    ErrorCode.INVALID_URL: 400,
    ErrorCode.INVALID_EVENTS: 400,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


@dataclass(frozen=True)
class ServiceError:
    code: ErrorCode
    description: str
    details: dict = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return STATUS_CODES.get(self.code, 500)

    def to_dict(self) -> dict:
        body = {"error": self.code.value, "error_description": self.description}
        body.update(self.details)
        return body


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: ServiceError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def fail(code: ErrorCode, description: str, **details: Any) -> Err:
    """Shorthand for building an Err result."""
    return Err(ServiceError(code, description, details))


class ApiError(Exception):
    """Carries a ServiceError out of a route to the registered handler."""

    def __init__(self, error: ServiceError):
        super().__init__(error.description)
        self.error = error


def unwrap(result: "Result[T]") -> T:
    """Return the Ok value or raise ApiError for the boundary handler."""
    if isinstance(result, Err):
        raise ApiError(result.error)
    return result.value


def error_response(error: ServiceError, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


def install_error_handlers(app: FastAPI, debug: bool = False) -> None:
    """Register the exception handlers that render the error taxonomy."""

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        headers = None
        if exc.error.code in (ErrorCode.UNAUTHORIZED, ErrorCode.INVALID_CLIENT):
            headers = {"WWW-Authenticate": "Bearer"}
        return error_response(exc.error, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        description = f"{location}: {message}" if location else message
        return error_response(ServiceError(ErrorCode.INVALID_REQUEST, description))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.error(
            f"Unhandled error on {request.method} {request.url.path} "
            f"from {request.client.host if request.client else 'unknown'}: {exc}",
            exc_info=True,
        )
        details = {"details": str(exc)} if debug else {}
        return error_response(
            ServiceError(ErrorCode.INTERNAL_ERROR, "Internal server error", details)
        )
