"""FastAPI application factory.

The components are stored on ``app.state`` so route handlers reach them
through ``request.app.state``; any of them may be None when the matching
component is disabled, in which case its routes answer 503.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubesync.api.routes import router
from kubesync.api.schemas import ErrorResponse

if TYPE_CHECKING:
    from kubesync.delivery.controller import ProgressiveDeliveryController
    from kubesync.models.config import KubeSyncConfig
    from kubesync.observability.events import EventStream
    from kubesync.reconcile.loop import DriftLoop

_log = structlog.get_logger(component="api.app")


def create_app(
    loop: DriftLoop | None = None,
    delivery: ProgressiveDeliveryController | None = None,
    events: EventStream | None = None,
    config: KubeSyncConfig | None = None,
) -> FastAPI:
    """Build the REST application around the running components."""
    from kubesync import __version__

    app = FastAPI(
        title="kubesync",
        version=__version__,
        description="GitOps reconciliation and progressive-delivery controller.",
    )
    app.state.loop = loop
    app.state.delivery = delivery
    app.state.events = events
    app.state.config = config

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=str(exc.errors())).model_dump(),
        )

    @app.exception_handler(Exception)
    async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        _log.error("unhandled_api_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router, prefix="/api/v1")
    return app


# Name used by the application bootstrap.
build_app = create_app
