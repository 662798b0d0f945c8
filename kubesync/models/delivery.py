"""Release declarations, tracks and rollout status for progressive delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from kubesync.models.health import HealthStatus
from kubesync.models.resources import ResourceKey, ResourceSpec


class Strategy(StrEnum):
    """How traffic moves from the active track to the new one."""

    BLUE_GREEN = "blue_green"
    CANARY = "canary"


class TrackName(StrEnum):
    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> TrackName:
        return TrackName.GREEN if self is TrackName.BLUE else TrackName.BLUE


class RolloutPhase(StrEnum):
    """Lifecycle of a single rollout.

    ``PROMOTED`` means traffic has moved and the previous track is baking;
    ``COMPLETED`` means the previous track has been deleted.
    """

    PENDING = "pending"
    PROGRESSING = "progressing"
    PAUSED = "paused"
    PROMOTED = "promoted"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    @property
    def finished(self) -> bool:
        return self in (RolloutPhase.COMPLETED, RolloutPhase.ROLLED_BACK, RolloutPhase.ABORTED)


@dataclass(frozen=True)
class ReleaseSpec:
    """Declared release for one service.

    ``bake_period_s`` and, for canary, ``canary_steps`` have no defaults:
    there is no single sensible value, so every release must state them.
    """

    name: str
    namespace: str
    version: str
    template: ResourceSpec
    bake_period_s: float
    strategy: Strategy = Strategy.BLUE_GREEN
    replicas: int = 1
    port: int = 80
    target_port: int = 8080
    canary_steps: tuple[int, ...] = ()
    step_bake_s: float = 0.0
    health_timeout_s: float = 300.0
    auto_promote: bool = True

    def __post_init__(self) -> None:
        if not self.name or not self.version:
            raise ValueError("release name and version are required")
        if self.bake_period_s < 0:
            raise ValueError(f"bake_period_s must be >= 0, got {self.bake_period_s}")
        if self.health_timeout_s <= 0:
            raise ValueError(f"health_timeout_s must be > 0, got {self.health_timeout_s}")
        if self.strategy == Strategy.CANARY:
            if not self.canary_steps:
                raise ValueError(f"canary release {self.name!r} requires canary_steps")
            previous = 0
            for step in self.canary_steps:
                if not previous < step <= 100:
                    raise ValueError(f"canary_steps must be strictly increasing within 1..100, got {self.canary_steps}")
                previous = step

    @property
    def weight_steps(self) -> tuple[int, ...]:
        """Traffic weights the new track passes through, always ending at 100."""
        if self.strategy == Strategy.BLUE_GREEN:
            return (100,)
        if self.canary_steps[-1] == 100:
            return self.canary_steps
        return (*self.canary_steps, 100)

    @property
    def routing_key(self) -> ResourceKey:
        return ResourceKey("TrafficSplit", self.namespace, self.name)

    def track_keys(self, track: TrackName) -> tuple[ResourceKey, ResourceKey]:
        """Workload and service keys of *track*'s resource set."""
        name = f"{self.name}-{track.value}"
        return (
            ResourceKey("Deployment", self.namespace, name),
            ResourceKey("Service", self.namespace, name),
        )


@dataclass
class ReleaseTrack:
    """One side of a blue/green pair."""

    name: TrackName
    version: str
    resource_keys: tuple[ResourceKey, ...]
    traffic_weight: int = 0
    health: HealthStatus = HealthStatus.UNKNOWN


@dataclass
class RolloutStatus:
    """Operator-visible state of the latest rollout of a release."""

    release: str
    from_version: str | None
    to_version: str
    strategy: Strategy
    phase: RolloutPhase = RolloutPhase.PENDING
    message: str = ""
    step_index: int = 0
    active_track: TrackName | None = None
    tracks: dict[TrackName, ReleaseTrack] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def touch(self, phase: RolloutPhase | None = None, message: str | None = None) -> None:
        if phase is not None:
            self.phase = phase
        if message is not None:
            self.message = message
        self.updated_at = datetime.now(tz=UTC)
