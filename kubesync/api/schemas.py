"""Pydantic response models for the kubesync REST API.

All models use Pydantic v2 syntax.  Field descriptions are also used
by FastAPI to generate the OpenAPI spec.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from kubesync.models.delivery import RolloutStatus
from kubesync.models.events import SyncEvent
from kubesync.models.sync import CycleReport, SyncResult

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope returned for all 4xx and 5xx responses."""

    error: str = Field(
        ...,
        description="Machine-readable error code.",
        examples=["NOT_FOUND", "CONFLICT", "UNAVAILABLE", "INTERNAL_ERROR"],
    )
    detail: str = Field(
        ...,
        description="Human-readable description of the error.",
        examples=["unknown release 'web'"],
    )


class ActionResponse(BaseModel):
    """Acknowledgement for operator actions that run asynchronously."""

    accepted: bool = True
    action: str
    detail: str = ""


# ---------------------------------------------------------------------------
# Health and status
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response body for ``GET /api/v1/health``."""

    status: str = Field(..., description="Always ``ok`` while the process is running.", examples=["ok"])
    version: str = Field(..., description="kubesync version string.", examples=["0.1.0"])
    app_health: str = Field(
        ...,
        description="Aggregate health of the managed application.",
        examples=["healthy", "progressing", "degraded", "unknown"],
    )
    loop_running: bool


class SyncResultResponse(BaseModel):
    resource: str
    outcome: str
    delta_kind: str
    error: str | None = None
    error_class: str | None = None
    attempts: int = 0
    applied_at: str

    @classmethod
    def from_result(cls, result: SyncResult) -> SyncResultResponse:
        return cls(
            resource=str(result.key),
            outcome=result.outcome.value,
            delta_kind=result.delta_kind.value,
            error=result.error,
            error_class=result.error_class,
            attempts=result.attempts,
            applied_at=result.applied_at.isoformat(),
        )


class CycleResponse(BaseModel):
    """Summary of the most recent reconciliation cycle."""

    cycle_id: str
    revision: str
    started_at: str
    finished_at: str | None = None
    changes: int
    results: list[SyncResultResponse] = Field(default_factory=list)
    ownership_violations: list[str] = Field(default_factory=list)
    unreadable: list[str] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_report(cls, report: CycleReport) -> CycleResponse:
        return cls(
            cycle_id=report.cycle_id,
            revision=report.revision,
            started_at=report.started_at.isoformat(),
            finished_at=report.finished_at.isoformat() if report.finished_at else None,
            changes=len(report.changes),
            results=[SyncResultResponse.from_result(r) for r in report.results],
            ownership_violations=[str(k) for k in report.ownership_violations],
            unreadable=[str(k) for k in report.unreadable],
            error=report.error,
        )


class StatusResponse(BaseModel):
    """Response body for ``GET /api/v1/status``."""

    app: str
    sync_status: str = Field(..., examples=["synced", "out_of_sync", "unknown"])
    health: str = Field(..., examples=["healthy", "progressing", "degraded", "unknown"])
    phase: str = Field(..., examples=["idle", "diffing", "syncing", "assessing"])
    paused: bool
    revision: str = ""
    resource_health: dict[str, str] = Field(default_factory=dict)
    halted: dict[str, str] = Field(default_factory=dict, description="Halted resource -> reason.")
    last_cycle: CycleResponse | None = None
    rollouts: list[RolloutResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Rollouts
# ---------------------------------------------------------------------------


class TrackResponse(BaseModel):
    name: str
    version: str
    traffic_weight: int
    health: str
    resources: list[str] = Field(default_factory=list)


class RolloutResponse(BaseModel):
    """Operator-visible rollout state of one release."""

    release: str
    strategy: str
    phase: str = Field(..., examples=["progressing", "paused", "promoted", "completed", "rolled_back"])
    from_version: str | None = None
    to_version: str
    message: str = ""
    step_index: int = 0
    active_track: str | None = None
    tracks: list[TrackResponse] = Field(default_factory=list)
    started_at: str
    updated_at: str

    @classmethod
    def from_status(cls, status: RolloutStatus) -> RolloutResponse:
        return cls(
            release=status.release,
            strategy=status.strategy.value,
            phase=status.phase.value,
            from_version=status.from_version,
            to_version=status.to_version,
            message=status.message,
            step_index=status.step_index,
            active_track=status.active_track.value if status.active_track else None,
            tracks=[
                TrackResponse(
                    name=t.name.value,
                    version=t.version,
                    traffic_weight=t.traffic_weight,
                    health=t.health.value,
                    resources=[str(k) for k in t.resource_keys],
                )
                for _, t in sorted(status.tracks.items())
            ],
            started_at=status.started_at.isoformat(),
            updated_at=status.updated_at.isoformat(),
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventResponse(BaseModel):
    event_id: str
    app: str
    cycle_id: str
    key: str
    delta_kind: str
    outcome: str | None = None
    health: str | None = None
    message: str = ""
    timestamp: str

    @classmethod
    def from_event(cls, event: SyncEvent) -> EventResponse:
        return cls.model_validate(event.to_dict())


class EventListResponse(BaseModel):
    events: list[EventResponse] = Field(default_factory=list)


StatusResponse.model_rebuild()
