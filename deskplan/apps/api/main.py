from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from deskplan.apps.api.errors import (
    app_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from deskplan.apps.api.response import API_VERSION
from deskplan.apps.api.routes.health import router as health_router
from deskplan.apps.api.routes.ops import router as ops_router
from deskplan.apps.api.routes.plans import router as plans_router
from deskplan.apps.api.routes.subscriptions import router as subscriptions_router
from deskplan.apps.api.routes.usage import router as usage_router
from deskplan.core.errors import AppError
from deskplan.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Deskplan API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError):
        return await app_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(plans_router, prefix=f"/{API_VERSION}")
    app.include_router(subscriptions_router, prefix=f"/{API_VERSION}")
    # Ticket services call the limit routes before every mutation.
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
