from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from apptnotify.apps.api.errors import (
    app_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from apptnotify.apps.api.response import API_VERSION, CORRELATION_HEADER, get_correlation_id
from apptnotify.apps.api.routes.dead_letters import router as dead_letters_router
from apptnotify.apps.api.routes.health import router as health_router
from apptnotify.apps.api.routes.notifications import router as notifications_router
from apptnotify.apps.api.routes.suppressions import router as suppressions_router
from apptnotify.apps.api.routes.webhooks import router as webhooks_router
from apptnotify.core.config import get_settings
from apptnotify.core.errors import AppointmentNotifyError
from apptnotify.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):  # type: ignore[override]
        # Resolve once so the pipeline, audit rows and log lines share one id.
        correlation_id = get_correlation_id(request)
        response = await call_next(request)
        response.headers.setdefault(CORRELATION_HEADER, correlation_id)
        return response

    @app.exception_handler(AppointmentNotifyError)
    async def _app_error_handler(request: Request, exc: AppointmentNotifyError):
        return await app_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(notifications_router, prefix=prefix)
    app.include_router(suppressions_router, prefix=prefix)
    app.include_router(dead_letters_router, prefix=prefix)
    app.include_router(webhooks_router, prefix=prefix)
    return app


app = create_app()
