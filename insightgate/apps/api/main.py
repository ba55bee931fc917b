from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from insightgate.apps.api.deps import build_analysis_service
from insightgate.apps.api.errors import (
    http_exception_handler,
    insightgate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from insightgate.apps.api.response import API_VERSION
from insightgate.apps.api.routes.admin import router as admin_router
from insightgate.apps.api.routes.analyze import router as analyze_router
from insightgate.apps.api.routes.health import router as health_router
from insightgate.core.config import get_settings
from insightgate.core.errors import InsightGateError
from insightgate.core.logging import configure_logging
from insightgate.services.analysis import AnalysisService
from insightgate.services.maintenance import run_cache_sweeper


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    stop = asyncio.Event()
    sweeper: asyncio.Task | None = None
    if settings.cache_sweep_interval_s > 0:
        if app.state.analysis_service is None:
            app.state.analysis_service = build_analysis_service(settings)
        sweeper = asyncio.create_task(
            run_cache_sweeper(app.state.analysis_service, settings.cache_sweep_interval_s, stop)
        )
        logger.info("cache_sweeper_started interval_s=%d", settings.cache_sweep_interval_s)
    try:
        yield
    finally:
        stop.set()
        if sweeper is not None:
            await sweeper


def create_app(analysis_service: AnalysisService | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="InsightGate API", lifespan=_lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    # Injected in tests; otherwise built on first request.
    app.state.analysis_service = analysis_service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(InsightGateError, insightgate_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(analyze_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="InsightGate API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
