from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apptnotify.apps.api.response import error_response
from apptnotify.core.errors import AppointmentNotifyError, AuthError, RateLimitExceeded


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_headers(exc: AppointmentNotifyError) -> dict[str, str]:
    # Retry hints and auth challenges travel as headers next to the envelope.
    headers: dict[str, str] = {}
    if isinstance(exc, AuthError):
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after_s)
        headers["X-RateLimit-Remaining"] = "0"
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(exc.reset_at)
    return headers


def render_app_error(request: Request, exc: AppointmentNotifyError) -> JSONResponse:
    # 5xx messages are replaced so internal detail never reaches the client.
    message = exc.message if exc.status_code < 500 or exc.status_code == 503 else "Internal server error"
    payload = error_response(request=request, code=exc.code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=error_headers(exc))


def render_internal_error(request: Request) -> JSONResponse:
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        return code, message
    if isinstance(detail, str):
        return _default_code(status_code), detail
    return _default_code(status_code), "Request failed"


async def app_error_handler(request: Request, exc: AppointmentNotifyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    return render_app_error(request, exc)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routing errors (404, 405) use the same envelope as application errors.
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return render_internal_error(request)
