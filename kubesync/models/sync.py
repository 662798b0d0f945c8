"""Deltas, sync results and per-cycle reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from kubesync.models.health import HealthStatus
from kubesync.models.resources import FieldChange, ResourceKey, ResourceSpec


class DeltaKind(StrEnum):
    """What the executor must do to converge a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class SyncOutcome(StrEnum):
    """Result of applying a single delta."""

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncStatus(StrEnum):
    """Application-level comparison result (desired vs live)."""

    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    UNKNOWN = "unknown"


class LoopPhase(StrEnum):
    """Drift loop state machine phases."""

    IDLE = "idle"
    DIFFING = "diffing"
    SYNCING = "syncing"
    ASSESSING = "assessing"


@dataclass(frozen=True)
class Delta:
    """A change the executor should apply to one resource.

    ``declared`` is the field subset the submitter owns (the desired spec for
    the drift loop, the replica count for the autoscaler, the routing spec for
    the delivery controller).  ``excluded`` lists dotted paths the submitter
    must not touch.  Together they let the executor rebuild the delta against
    a fresher live object without widening its field scope.

    Generated fresh every cycle; never persisted.
    """

    key: ResourceKey
    kind: DeltaKind
    from_spec: ResourceSpec | None = None
    to_spec: ResourceSpec | None = None
    changes: tuple[FieldChange, ...] = ()
    from_version: str | None = None
    declared: ResourceSpec | None = None
    excluded: frozenset[str] = frozenset()

    @property
    def is_change(self) -> bool:
        return self.kind != DeltaKind.NOOP


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one delta apply, kept in the per-key sync history."""

    key: ResourceKey
    outcome: SyncOutcome
    delta_kind: DeltaKind
    error: str | None = None
    error_class: str | None = None
    attempts: int = 0
    applied_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    revision: str = ""


@dataclass
class CycleReport:
    """Everything one reconciliation cycle observed and did."""

    cycle_id: str
    revision: str = ""
    deltas: list[Delta] = field(default_factory=list)
    results: list[SyncResult] = field(default_factory=list)
    resource_health: dict[ResourceKey, HealthStatus] = field(default_factory=dict)
    health: HealthStatus = HealthStatus.UNKNOWN
    ownership_violations: list[ResourceKey] = field(default_factory=list)
    unreadable: list[ResourceKey] = field(default_factory=list)
    halted: list[ResourceKey] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    finished_at: datetime | None = None

    @property
    def changes(self) -> list[Delta]:
        return [d for d in self.deltas if d.is_change]

    @property
    def idle(self) -> bool:
        """True for a pure idle tick: no error and nothing to converge."""
        return self.error is None and not self.changes

    @property
    def partial(self) -> bool:
        """True when some deltas applied while others failed or were skipped."""
        outcomes = {r.outcome for r in self.results}
        return SyncOutcome.APPLIED in outcomes and len(outcomes) > 1

    def outcome_of(self, key: ResourceKey) -> SyncOutcome | None:
        for result in self.results:
            if result.key == key:
                return result.outcome
        return None
