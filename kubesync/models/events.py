"""Status events and operator alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4


class Severity(StrEnum):
    """Alert severity level."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SyncEvent:
    """One entry of the structured status stream.

    Read-only for consumers (dashboards, alerting); control logic never
    reads these back.
    """

    app: str
    cycle_id: str
    key: str
    delta_kind: str
    outcome: str | None = None
    health: str | None = None
    message: str = ""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "event_id": self.event_id,
            "app": self.app,
            "cycle_id": self.cycle_id,
            "key": self.key,
            "delta_kind": self.delta_kind,
            "outcome": self.outcome,
            "health": self.health,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Alert:
    """Something an operator has to look at."""

    app: str
    severity: Severity
    title: str
    detail: str
    resources: tuple[str, ...] = ()
    alert_id: str = field(default_factory=lambda: str(uuid4()))
    raised_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
