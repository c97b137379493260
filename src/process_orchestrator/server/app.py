"""FastAPI app factory.

Endpoints are thin wrappers over `OrchestrationCore`; background ticks run in scheduler
threads tied to the app lifespan.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from process_orchestrator import __version__
from process_orchestrator.config import CoreSettings
from process_orchestrator.core import OrchestrationCore
from process_orchestrator.errors import ExternalDependencyError, OrchestrationError
from process_orchestrator.runtime import RuntimeRejectedError, RuntimeTimeoutError
from process_orchestrator.server.api_router import router as api_router

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "validation": 422,
    "conflict": 409,
    "forbidden": 403,
    "not_found": 404,
}


def _status_for(error: OrchestrationError) -> int:
    if isinstance(error, RuntimeTimeoutError):
        return 504
    if isinstance(error, RuntimeRejectedError):
        return 502
    if isinstance(error, ExternalDependencyError):
        return 503
    return _STATUS_BY_KIND.get(error.kind, 500)


def create_app(
    settings: CoreSettings | None = None,
    core: OrchestrationCore | None = None,
) -> FastAPI:
    settings = settings or (core.settings if core is not None else CoreSettings())
    core = core or OrchestrationCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        schedulers = core.build_schedulers() if settings.scheduler_enabled else []
        for scheduler in schedulers:
            scheduler.start()
        try:
            yield
        finally:
            for scheduler in schedulers:
                scheduler.stop()
            core.close()

    app = FastAPI(
        title="Process Orchestrator",
        version=__version__,
        description="REST API over the workflow orchestration core.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and core for request handlers.
    app.state.settings = settings
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(
        _request: Request, exc: OrchestrationError
    ) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.warning("Request failed on external dependency", extra={"error": str(exc)})
        body: dict[str, object] = {"detail": str(exc), "kind": exc.kind}
        if isinstance(exc, ExternalDependencyError):
            body["retryable"] = exc.retryable
        return JSONResponse(status_code=status, content=body)

    app.include_router(api_router, prefix="/api")
    return app
