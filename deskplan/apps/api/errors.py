from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from deskplan.apps.api.response import error_envelope
from deskplan.core.errors import AppError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    402: "PAYMENT_FAILED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "SUBSCRIPTION_LIMIT_REACHED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or default_code)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return default_code, detail, None
    return default_code, "Request failed", None


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    # Domain errors already carry status, code and structured details.
    if exc.status_code >= 500:
        logger.warning("app_error code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    payload = error_envelope(request, code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI's HTTPException and Starlette routing errors (404/405).
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(
        content=jsonable_encoder(payload),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_envelope(
        request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=jsonable_encoder(payload), status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("unhandled_exception path=%s", request.url.path)
    payload = error_envelope(request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
