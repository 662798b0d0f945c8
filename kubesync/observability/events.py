"""Structured status event stream.

Every applied, failed or skipped delta and every health rollup is emitted
here as a :class:`~kubesync.models.events.SyncEvent`.  Events are logged
and kept in a bounded ring for ``GET /api/v1/events``; nothing in the
control path reads them back.
"""

from __future__ import annotations

from collections import deque
from typing import Final

from kubesync.models.events import SyncEvent
from kubesync.observability.logging import get_logger

_log = get_logger("events")

_DEFAULT_CAPACITY: Final[int] = 1000


class EventStream:
    """Bounded in-memory ring of recent status events."""

    def __init__(self, capacity: int = _DEFAULT_CAPACITY) -> None:
        self._events: deque[SyncEvent] = deque(maxlen=max(1, capacity))

    def emit(self, event: SyncEvent) -> None:
        self._events.append(event)
        _log.info("sync_event", **{k: v for k, v in event.to_dict().items() if k != "timestamp"})

    def recent(self, limit: int = 100, key: str | None = None) -> list[SyncEvent]:
        """Return up to *limit* most recent events, newest first."""
        out: list[SyncEvent] = []
        for event in reversed(self._events):
            if key is not None and event.key != key:
                continue
            out.append(event)
            if len(out) >= limit:
                break
        return out

    def __len__(self) -> int:
        return len(self._events)
