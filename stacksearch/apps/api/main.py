from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stacksearch.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from stacksearch.apps.api.response import API_VERSION
from stacksearch.apps.api.routes.analytics import router as analytics_router
from stacksearch.apps.api.routes.credentials import router as credentials_router
from stacksearch.apps.api.routes.field_patterns import router as field_patterns_router
from stacksearch.apps.api.routes.health import router as health_router
from stacksearch.apps.api.routes.indexes import router as indexes_router
from stacksearch.apps.api.routes.indexing import router as indexing_router
from stacksearch.apps.api.routes.oauth import router as oauth_router
from stacksearch.apps.api.routes.search import router as search_router
from stacksearch.apps.api.routes.webhooks import router as webhooks_router
from stacksearch.core.errors import StackSearchError
from stacksearch.core.logging import configure_logging
from stacksearch.services.container import ServiceContainer, build_container
from stacksearch.services.resilience import drain_background_tasks
from stacksearch.services.telemetry import record_request


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = ("/v1", "/docs", "/openapi.json", "/redoc")

_ROUTERS = (
    health_router,
    oauth_router,
    credentials_router,
    indexes_router,
    indexing_router,
    field_patterns_router,
    search_router,
    analytics_router,
    webhooks_router,
)


def route_class_for_path(path: str) -> str:
    # Coarse buckets for latency telemetry.
    trimmed = path[len(f"/{API_VERSION}") :] if path.startswith(f"/{API_VERSION}/") else path
    if trimmed.startswith("/search"):
        return "search"
    if trimmed.startswith("/indexing") or trimmed.startswith("/webhooks"):
        return "indexing"
    if trimmed.startswith("/health") or trimmed.startswith("/ops"):
        return "ops"
    return "admin"


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the API.

    Passing a prebuilt container skips provider construction in the lifespan;
    tests use this to run against in-memory fakes.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = container is None
        active = container or await build_container()
        app.state.container = active
        if active.settings.credential_refresh_enabled:
            active.scheduler.start()
        try:
            yield
        finally:
            await active.scheduler.stop()
            await drain_background_tasks()
            if owned:
                await active.aclose()

    app = FastAPI(title="stacksearch API", lifespan=lifespan)
    if container is not None:
        # Available before startup so ASGITransport clients work without lifespan events.
        app.state.container = container

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            route_class=route_class_for_path(request.url.path),
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        # Unversioned aliases are deprecated in favour of /v1.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = '</v1/docs>; rel="successor-version"'
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(StackSearchError)
    async def _domain_exception_handler(request: Request, exc: StackSearchError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="stacksearch API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="stacksearch API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["StackApiKey"] = {"type": "apiKey", "in": "header", "name": "X-Stack-Api-Key"}
        security_schemes["AdminBearer"] = {"type": "http", "scheme": "bearer"}
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
