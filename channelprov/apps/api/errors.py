from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from channelprov.apps.api.response import error_response, is_versioned_request
from channelprov.core.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidTransitionError,
    ProvisioningError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Workflow error kinds as HTTP statuses and stable error codes.
_KIND_STATUS: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.VALIDATION: (400, "PROVISIONING_VALIDATION"),
    ErrorKind.PERMISSION: (403, "PROVISIONING_PERMISSION_DENIED"),
    ErrorKind.NOT_FOUND: (404, "PROVISIONING_NOT_FOUND"),
    ErrorKind.UPSTREAM_UNAVAILABLE: (503, "PROVIDER_UNAVAILABLE"),
    ErrorKind.UPSTREAM_ERROR: (502, "PROVIDER_ERROR"),
    ErrorKind.TIMEOUT: (503, "PROVIDER_TIMEOUT"),
    ErrorKind.IDEMPOTENT_CONFLICT: (409, "CONFLICT"),
}


def _json_error(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    message = "Request failed"
    details: dict[str, Any] | None = None
    # Routes raise either a plain message or {"code", "message", ...extra}.
    if isinstance(exc.detail, dict):
        extra = dict(exc.detail)
        code = str(extra.pop("code", None) or code)
        message = str(extra.pop("message", None) or message)
        details = extra or None
    elif isinstance(exc.detail, str):
        message = exc.detail
    return _json_error(request, exc.status_code, code, message, details, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    return _json_error(
        request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", {"errors": exc.errors()}
    )


async def provisioning_exception_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    status_code, code = _KIND_STATUS.get(exc.kind, (502, "PROVIDER_ERROR"))
    details: dict[str, Any] = {"kind": exc.kind.value}
    if exc.step:
        details["step"] = exc.step
    if exc.cause is not None and exc.cause.code is not None:
        details["provider_code"] = exc.cause.code
    return _json_error(request, status_code, code, exc.message, details)


async def transition_exception_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return _json_error(request, 409, "INVALID_STATUS_TRANSITION", str(exc))


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("provider_configuration_missing path=%s error=%s", request.url.path, exc)
    return _json_error(request, 503, "PROVIDER_NOT_CONFIGURED", str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces and provider payloads stay in the server log.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _json_error(request, 500, "INTERNAL_ERROR", "Internal server error")


EXCEPTION_HANDLERS: dict[type[Exception], Callable[[Request, Any], Awaitable[JSONResponse]]] = {
    StarletteHTTPException: http_exception_handler,
    RequestValidationError: validation_exception_handler,
    ProvisioningError: provisioning_exception_handler,
    InvalidTransitionError: transition_exception_handler,
    ConfigurationError: configuration_exception_handler,
    Exception: unhandled_exception_handler,
}
