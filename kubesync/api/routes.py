"""FastAPI route handlers for the kubesync REST API.

All routes are registered on a single APIRouter that ``app.py`` mounts
under the ``/api/v1`` prefix.

Error code conventions:
    404 NOT_FOUND      -- unknown release or rollout
    409 CONFLICT       -- operator action collides with one already in flight
    503 UNAVAILABLE    -- the component serving the request is not running
    500 INTERNAL_ERROR -- unexpected server-side failure
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from kubesync.api.schemas import (
    ActionResponse,
    CycleResponse,
    ErrorResponse,
    EventListResponse,
    EventResponse,
    HealthResponse,
    RolloutResponse,
    StatusResponse,
)
from kubesync.errors import KubeSyncError, NotFound, OperatorConflict

_log = structlog.get_logger(component="api.routes")

router = APIRouter()

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


def _error_from(exc: KubeSyncError) -> JSONResponse:
    """Map a controller error onto the standard envelope."""
    if isinstance(exc, NotFound):
        return _error(404, "NOT_FOUND", str(exc))
    if isinstance(exc, OperatorConflict):
        return _error(409, "CONFLICT", str(exc))
    return _error(503, "UNAVAILABLE", str(exc))


def _unavailable(component: str) -> JSONResponse:
    return _error(503, "UNAVAILABLE", f"{component} is not running")


# ---------------------------------------------------------------------------
# Health and status
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Lightweight liveness probe.  Always returns 200 if the process is up.",
)
async def get_health(request: Request) -> HealthResponse:
    """``GET /api/v1/health``"""
    from kubesync import __version__

    loop = request.app.state.loop
    return HealthResponse(
        status="ok",
        version=__version__,
        app_health=loop.health.value if loop is not None else "unknown",
        loop_running=bool(loop is not None and loop.running),
    )


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Get application sync status",
    description="Sync status, aggregate and per-resource health, halted resources and the last cycle.",
    responses={503: {"model": ErrorResponse}},
)
async def get_status(request: Request) -> StatusResponse:
    """``GET /api/v1/status``"""
    loop = request.app.state.loop
    if loop is None:
        return _unavailable("drift loop")  # type: ignore[return-value]

    report = loop.last_report
    delivery = request.app.state.delivery
    rollouts = [RolloutResponse.from_status(s) for s in delivery.statuses()] if delivery is not None else []
    return StatusResponse(
        app=loop.app_name,
        sync_status=loop.sync_status.value,
        health=loop.health.value,
        phase=loop.phase.value,
        paused=loop.paused,
        revision=report.revision if report is not None else "",
        resource_health=(
            {str(k): v.value for k, v in sorted(report.resource_health.items())} if report is not None else {}
        ),
        halted={str(k): reason for k, reason in sorted(loop.halted.items())},
        last_cycle=CycleResponse.from_report(report) if report is not None else None,
        rollouts=rollouts,
    )


# ---------------------------------------------------------------------------
# Sync controls
# ---------------------------------------------------------------------------


@router.post(
    "/sync",
    response_model=ActionResponse,
    status_code=202,
    summary="Request a manual sync",
    description=(
        "Queues an operator sync.  It applies even while auto-sync is paused and "
        "clears halted resources.  Poll ``/status`` for the result."
    ),
    responses=_ERROR_RESPONSES,
)
async def post_sync(request: Request) -> ActionResponse:
    """``POST /api/v1/sync``"""
    loop = request.app.state.loop
    if loop is None:
        return _unavailable("drift loop")  # type: ignore[return-value]
    try:
        loop.request_sync()
    except KubeSyncError as exc:
        return _error_from(exc)  # type: ignore[return-value]
    _log.info("manual_sync_requested")
    return ActionResponse(action="sync", detail="sync queued")


@router.post("/sync/pause", response_model=ActionResponse, summary="Pause auto-sync", responses=_ERROR_RESPONSES)
async def post_pause(request: Request) -> ActionResponse:
    """``POST /api/v1/sync/pause``"""
    loop = request.app.state.loop
    if loop is None:
        return _unavailable("drift loop")  # type: ignore[return-value]
    loop.pause()
    return ActionResponse(action="pause", detail="auto-sync paused; diffs still run")


@router.post("/sync/resume", response_model=ActionResponse, summary="Resume auto-sync", responses=_ERROR_RESPONSES)
async def post_resume(request: Request) -> ActionResponse:
    """``POST /api/v1/sync/resume``"""
    loop = request.app.state.loop
    if loop is None:
        return _unavailable("drift loop")  # type: ignore[return-value]
    loop.resume()
    return ActionResponse(action="resume", detail="auto-sync resumed")


@router.post(
    "/webhook",
    response_model=ActionResponse,
    status_code=202,
    summary="Source change notification",
    description="Called by the source of truth on push; the next cycle starts immediately.",
    responses=_ERROR_RESPONSES,
)
async def post_webhook(request: Request) -> ActionResponse:
    """``POST /api/v1/webhook``"""
    loop = request.app.state.loop
    if loop is None:
        return _unavailable("drift loop")  # type: ignore[return-value]
    loop.trigger()
    return ActionResponse(action="webhook", detail="cycle triggered")


# ---------------------------------------------------------------------------
# Rollouts
# ---------------------------------------------------------------------------


@router.get("/rollouts", response_model=list[RolloutResponse], summary="List rollouts", responses=_ERROR_RESPONSES)
async def list_rollouts(request: Request) -> list[RolloutResponse]:
    """``GET /api/v1/rollouts``"""
    delivery = request.app.state.delivery
    if delivery is None:
        return _unavailable("delivery controller")  # type: ignore[return-value]
    return [RolloutResponse.from_status(s) for s in delivery.statuses()]


@router.get(
    "/rollouts/{name}",
    response_model=RolloutResponse,
    summary="Get rollout status",
    responses=_ERROR_RESPONSES,
)
async def get_rollout(request: Request, name: str) -> RolloutResponse:
    """``GET /api/v1/rollouts/{name}``"""
    delivery = request.app.state.delivery
    if delivery is None:
        return _unavailable("delivery controller")  # type: ignore[return-value]
    try:
        return RolloutResponse.from_status(delivery.status(name))
    except KubeSyncError as exc:
        return _error_from(exc)  # type: ignore[return-value]


@router.post(
    "/rollouts/{name}/promote",
    response_model=RolloutResponse,
    summary="Promote a rollout",
    description="Ends a manual pause, skips remaining canary steps and cuts the bake period short.",
    responses=_ERROR_RESPONSES,
)
async def post_promote(request: Request, name: str) -> RolloutResponse:
    """``POST /api/v1/rollouts/{name}/promote``"""
    delivery = request.app.state.delivery
    if delivery is None:
        return _unavailable("delivery controller")  # type: ignore[return-value]
    try:
        status = delivery.promote(name)
    except KubeSyncError as exc:
        return _error_from(exc)  # type: ignore[return-value]
    return RolloutResponse.from_status(status)


@router.post(
    "/rollouts/{name}/rollback",
    response_model=RolloutResponse,
    summary="Roll back a rollout",
    description="Restores all traffic to the previous track and deletes the new one.",
    responses=_ERROR_RESPONSES,
)
async def post_rollback(request: Request, name: str) -> RolloutResponse:
    """``POST /api/v1/rollouts/{name}/rollback``"""
    delivery = request.app.state.delivery
    if delivery is None:
        return _unavailable("delivery controller")  # type: ignore[return-value]
    try:
        status = delivery.rollback(name)
    except KubeSyncError as exc:
        return _error_from(exc)  # type: ignore[return-value]
    return RolloutResponse.from_status(status)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.get("/events", response_model=EventListResponse, summary="Recent sync events")
async def get_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    resource: str | None = Query(default=None, description="Filter by ``Kind/namespace/name``."),
) -> EventListResponse:
    """``GET /api/v1/events?limit={n}&resource={key}``"""
    events = request.app.state.events
    if events is None:
        return EventListResponse()
    return EventListResponse(events=[EventResponse.from_event(e) for e in events.recent(limit=limit, key=resource)])
