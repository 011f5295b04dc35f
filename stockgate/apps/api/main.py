from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from stockgate.apps.api.errors import (
    gateway_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from stockgate.apps.api.pipeline import RequestPipeline, build_pipeline
from stockgate.apps.api.response import API_PREFIX, API_VERSION
from stockgate.apps.api.routes.health import router as health_router
from stockgate.apps.api.routes.tenant import router as tenant_router
from stockgate.core.config import get_settings
from stockgate.core.errors import GatewayError
from stockgate.core.logging import configure_logging
from stockgate.services.telemetry import record_request


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {f"{API_PREFIX}/health", f"{API_PREFIX}/info"}


def create_app(pipeline: RequestPipeline | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Own the pipeline for the process lifetime: sweeper up front, every connection closed on exit.
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_pipeline(settings)
        app.state.pipeline.start()
        logger.info("gateway_started app=%s", settings.app_name)
        try:
            yield
        finally:
            await app.state.pipeline.aclose()
            logger.info("gateway_stopped app=%s", settings.app_name)

    app = FastAPI(title="Stockgate API", version=API_VERSION, lifespan=lifespan)
    # Injected pipelines are usable even when the server skips lifespan events.
    app.state.pipeline = pipeline

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Process-Time-Ms"] = f"{latency_ms:.2f}"
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_exception_handler(request: Request, exc: GatewayError):
        return await gateway_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Public endpoints first, then tenant-scoped routes that pass through the pipeline.
    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(tenant_router, prefix=API_PREFIX)

    def custom_openapi() -> dict:
        # Inject bearer auth into every tenant-scoped operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Stockgate API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
