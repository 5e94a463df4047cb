"""FastAPI application factory for the kubemirror health endpoints.

Usage::

    from kubemirror.api.app import create_app

    app = create_app(registry=registry)

Routes:
    GET /healthz  -- liveness; 200 while the process is serving.
    GET /readyz   -- 200 once every watch has synced and the registry runs,
                     503 otherwise.  The body lists per-collection object counts.
    GET /metrics  -- Prometheus exposition format.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubemirror.models.resources import WatchState

_log = structlog.get_logger(component="api.app")


def create_app(registry: Any) -> FastAPI:
    """Create the health/metrics application for *registry*.

    Args:
        registry: The WatchRegistry whose readiness is reported.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from kubemirror import __version__

    app = FastAPI(
        title="kubemirror",
        summary="Kubernetes resource mirror health endpoints",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.registry = registry

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/readyz")
    async def readyz(request: Request) -> JSONResponse:
        reg = request.app.state.registry
        state = reg.state
        ready = bool(reg.synced) and state == WatchState.RUNNING
        collections = {str(key): reg.count(key) for key in reg.keys()}
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "state": str(state), "collections": collections},
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "detail": "An unexpected error occurred."},
        )

    return app
