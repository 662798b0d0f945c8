"""Autoscale policies and decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from kubesync.models.resources import ResourceKey


class ScaleDirection(StrEnum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class AutoscalePolicy:
    """Declared scaling bounds and per-metric utilization targets (percent)."""

    target: ResourceKey
    min_replicas: int
    max_replicas: int
    metric_targets: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.min_replicas < 1:
            raise ValueError(f"min_replicas must be >= 1, got {self.min_replicas}")
        if self.max_replicas < self.min_replicas:
            raise ValueError(f"max_replicas ({self.max_replicas}) must be >= min_replicas ({self.min_replicas})")
        if not self.metric_targets:
            raise ValueError(f"autoscale policy for {self.target} declares no metric targets")
        for metric, target in self.metric_targets.items():
            if target <= 0:
                raise ValueError(f"target utilization for {metric!r} must be > 0, got {target}")


@dataclass(frozen=True)
class AutoscaleDecision:
    """Recomputed each evaluation tick; only the latest one is retained."""

    resource_key: ResourceKey
    current_replicas: int
    desired_replicas: int
    reason: str
    decided_at: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def direction(self) -> ScaleDirection:
        return ScaleDirection.UP if self.desired_replicas > self.current_replicas else ScaleDirection.DOWN
