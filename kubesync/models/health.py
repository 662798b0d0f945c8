"""Health states shared by the assessor, the drift loop and delivery."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class HealthStatus(StrEnum):
    """Per-resource and aggregate health."""

    UNKNOWN = "unknown"
    PROGRESSING = "progressing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class HealthVerdict:
    """An evaluator's opinion about one live resource.

    ``terminal`` marks a DEGRADED verdict that no amount of waiting will fix
    (crash loop, failed job), as opposed to one produced by a grace timeout.
    """

    status: HealthStatus
    message: str = ""
    terminal: bool = False
