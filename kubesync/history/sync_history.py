"""Bounded per-resource sync history.

Keeps the last *N* :class:`~kubesync.models.sync.SyncResult` objects per
:class:`~kubesync.models.resources.ResourceKey` in a ring buffer.  The drift
loop reads it to back off resources that keep failing across cycles, and
the operator surface reads it for status.

Thread-safety: this class is NOT thread-safe.  All callers must be on the
same asyncio event loop.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

from kubesync.models.resources import ResourceKey
from kubesync.models.sync import SyncOutcome, SyncResult
from kubesync.observability.logging import get_logger

if TYPE_CHECKING:
    from kubesync.history.sqlite_store import SQLiteHistoryStore

_log = get_logger("sync_history")

_DEFAULT_MAX_RESULTS: Final[int] = 10


@dataclass(frozen=True)
class HistoryStats:
    resource_count: int
    result_count: int
    failing_count: int


class SyncHistory:
    """In-memory ring buffer of sync results per resource.

    Args:
        max_results: Results retained per resource.
        persistence: Optional SQLite store that receives every recorded result.
    """

    def __init__(
        self,
        max_results: int = _DEFAULT_MAX_RESULTS,
        persistence: SQLiteHistoryStore | None = None,
    ) -> None:
        self._max_results = max(1, max_results)
        self._buffers: dict[ResourceKey, deque[SyncResult]] = {}
        self._persistence = persistence

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, result: SyncResult) -> None:
        """Append *result* to the buffer for its key."""
        buf = self._buffers.get(result.key)
        if buf is None:
            buf = deque(maxlen=self._max_results)
            self._buffers[result.key] = buf
        buf.append(result)
        if self._persistence is not None:
            self._persistence.enqueue(result)
        _log.debug(
            "sync_result_recorded",
            resource=str(result.key),
            outcome=result.outcome.value,
            buffer_depth=len(buf),
        )

    def restore(self, results: list[SyncResult]) -> None:
        """Seed the buffers from persisted results (oldest first) without re-persisting."""
        for result in results:
            buf = self._buffers.setdefault(result.key, deque(maxlen=self._max_results))
            buf.append(result)

    def forget(self, key: ResourceKey) -> None:
        self._buffers.pop(key, None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def results(self, key: ResourceKey) -> list[SyncResult]:
        """Return the retained results for *key*, oldest first."""
        return list(self._buffers.get(key, ()))

    def latest(self, key: ResourceKey) -> SyncResult | None:
        buf = self._buffers.get(key)
        return buf[-1] if buf else None

    def keys(self) -> list[ResourceKey]:
        return sorted(self._buffers)

    def consecutive_failures(self, key: ResourceKey) -> int:
        """Number of FAILED results since the last APPLIED one.

        SKIPPED results neither count nor reset the streak.
        """
        count = 0
        for result in reversed(self._buffers.get(key, ())):
            if result.outcome == SyncOutcome.APPLIED:
                break
            if result.outcome == SyncOutcome.FAILED:
                count += 1
        return count

    def next_attempt_at(
        self,
        key: ResourceKey,
        base: float,
        factor: float,
        cap: float,
    ) -> datetime | None:
        """Earliest time *key* should be retried after repeated failed cycles.

        Returns None when there is no failure since the last successful apply.
        """
        failures = self.consecutive_failures(key)
        if failures == 0:
            return None
        last_failed = next(r for r in reversed(self._buffers[key]) if r.outcome == SyncOutcome.FAILED)
        delay = min(base * factor ** (failures - 1), cap)
        return last_failed.applied_at + timedelta(seconds=delay)

    def stats(self) -> HistoryStats:
        return HistoryStats(
            resource_count=len(self._buffers),
            result_count=sum(len(b) for b in self._buffers.values()),
            failing_count=sum(1 for k in self._buffers if self.consecutive_failures(k) > 0),
        )
