"""Error envelope and exception handlers.

Every failure leaves the service as::

    {"error_code": "...", "message": "...", "request_id": "..."}

with an optional ``details`` member (field errors, current version).  Codes
come from :mod:`groupbuy_core.errors`; this module owns only the mapping
onto HTTP status codes.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from groupbuy_core.errors import CoreError, IdempotencyInProgress
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

STATUS_BY_CODE: dict[str, int] = {
    "CROSS_TENANT_DENIED": 403,
    "IDEMPOTENCY_CONFLICT": 422,
    "IDEMPOTENCY_IN_PROGRESS": 409,
    "WEBHOOK_SIGNATURE_INVALID": 401,
    "STALE_ORDER_STATE": 409,
    "ILLEGAL_TRANSITION": 409,
    "VALIDATION_ERROR": 422,
    "RATE_LIMITED": 429,
    "NOT_FOUND": 404,
    "TENANT_NOT_FOUND": 404,
    "UNAUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
    "INTERNAL_ERROR": 500,
}

# HTTPException statuses raised by FastAPI itself or by dependencies.
_CODE_BY_STATUS: dict[int, str] = {
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "") or ""


def error_response(
    request: Request,
    error_code: str,
    message: str,
    *,
    status_code: int | None = None,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the envelope response for *error_code*.

    Middleware that short-circuits a request (authentication, rate
    limiting) uses this too, so every error shares one shape.
    """
    request_id = request_id_of(request)
    content: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "request_id": request_id,
    }
    if details is not None:
        content["details"] = details
    out_headers = dict(headers or {})
    if request_id:
        out_headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=status_code or STATUS_BY_CODE.get(error_code, 500),
        content=content,
        headers=out_headers,
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for err in exc.errors():
        # Drop the leading "body"/"header"/"path" location segment.
        loc = [str(part) for part in err.get("loc", ())]
        field = ".".join(loc[1:]) if len(loc) > 1 else ".".join(loc)
        errors.append({"field": field, "message": str(err.get("msg", "invalid value"))})
    return errors


def install_error_handlers(app: FastAPI) -> None:
    """Register the envelope handlers on *app*."""

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
        status_code = STATUS_BY_CODE.get(exc.error_code, 500)
        headers: dict[str, str] = {}
        if isinstance(exc, IdempotencyInProgress):
            headers["Retry-After"] = str(exc.retry_after)
        if status_code >= 500:
            logger.error("Core error on %s: %s", request.url.path, exc.message)
            return error_response(request, "INTERNAL_ERROR", "Internal server error")
        logger.info("Request rejected path=%s code=%s", request.url.path, exc.error_code)
        return error_response(
            request,
            exc.error_code,
            exc.message,
            status_code=status_code,
            details=exc.details,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            "VALIDATION_ERROR",
            "Request validation failed",
            details=_field_errors(exc),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code >= 500:
            code = "INTERNAL_ERROR"
        else:
            code = _CODE_BY_STATUS.get(exc.status_code, "VALIDATION_ERROR")
        return error_response(
            request,
            code,
            str(exc.detail),
            status_code=exc.status_code,
            headers=dict(exc.headers or {}),
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return error_response(request, "INTERNAL_ERROR", "Internal server error")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return error_response(request, "INTERNAL_ERROR", "Internal server error")
