"""SQLite persistence for the sync history.

Feature-flagged: only active when ``KUBESYNC_SYNC_HISTORY_PERSISTENCE_ENABLED``
is set.  The in-memory :class:`~kubesync.history.sync_history.SyncHistory`
stays authoritative; this store lets status and cross-cycle backoff survive a
controller restart.

Write model:
- WAL mode + single writer (serialised via asyncio).
- Results are batched and flushed every 500 ms via a background task.
- If a flush takes longer than 50 ms the store falls back to no-op mode and
  increments ``kubesync_history_backpressure_total``.

Retention: at most ``max_results`` rows per resource and nothing older than
``retention_hours``, pruned every 5 minutes.

Schema::

    CREATE TABLE sync_results (
        id          INTEGER PRIMARY KEY,
        kind        TEXT,
        namespace   TEXT,
        name        TEXT,
        outcome     TEXT,
        delta_kind  TEXT,
        error       TEXT,
        error_class TEXT,
        attempts    INTEGER,
        revision    TEXT,
        applied_at  DATETIME
    );
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import UTC, datetime, timedelta
from typing import Final

import aiosqlite

from kubesync.models.resources import ResourceKey
from kubesync.models.sync import DeltaKind, SyncOutcome, SyncResult
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import history_backpressure_total, store_errors_total

_logger = get_logger("sqlite_store")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SCHEMA_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS sync_results (
    id          INTEGER PRIMARY KEY,
    kind        TEXT     NOT NULL,
    namespace   TEXT     NOT NULL,
    name        TEXT     NOT NULL,
    outcome     TEXT     NOT NULL,
    delta_kind  TEXT     NOT NULL,
    error       TEXT,
    error_class TEXT,
    attempts    INTEGER  NOT NULL,
    revision    TEXT     NOT NULL,
    applied_at  DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_results_resource
    ON sync_results (kind, namespace, name);

CREATE INDEX IF NOT EXISTS idx_sync_results_time
    ON sync_results (applied_at);
"""

_FLUSH_INTERVAL_SECONDS: Final[float] = 0.5
_CLEANUP_INTERVAL_SECONDS: Final[float] = 300.0
_BACKPRESSURE_THRESHOLD_MS: Final[float] = 50.0

_DEFAULT_MAX_RESULTS: Final[int] = 10
_DEFAULT_RETENTION_HOURS: Final[float] = 24.0


class SQLiteHistoryStore:
    """Async, batch-flushed SQLite persistence for sync results.

    Args:
        db_path:         Path to the SQLite database file.
        max_results:     Rows retained per resource.
        retention_hours: Maximum row age in hours.
    """

    def __init__(
        self,
        db_path: str,
        max_results: int = _DEFAULT_MAX_RESULTS,
        retention_hours: float = _DEFAULT_RETENTION_HOURS,
    ) -> None:
        self._db_path = db_path
        self._max_results = max(1, max_results)
        self._retention = timedelta(hours=retention_hours)

        self._db: aiosqlite.Connection | None = None
        self._pending: list[SyncResult] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._degraded: bool = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, start_background: bool = True) -> None:
        """Open the database, apply the schema and start background tasks."""
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(_SCHEMA_DDL)
        await self._db.commit()

        _logger.info("sqlite_store_opened", db_path=self._db_path)

        if start_background:
            self._flush_task = asyncio.create_task(self._flush_loop(), name="history_flush")
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="history_cleanup")

    async def close(self) -> None:
        """Flush pending writes, cancel background tasks and close the database."""
        for task in (self._flush_task, self._cleanup_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self._pending and self._db and not self._degraded:
            await self.flush()

        if self._db:
            await self._db.close()
            self._db = None

        _logger.info("sqlite_store_closed", db_path=self._db_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def enqueue(self, result: SyncResult) -> None:
        """Queue *result* for the next batch flush; dropped when degraded."""
        if self._degraded:
            return
        self._pending.append(result)

    async def flush(self) -> None:
        """Write all pending results in a single transaction."""
        if not self._pending or self._db is None:
            return

        batch = self._pending[:]
        self._pending.clear()

        t_start = time.monotonic()
        try:
            await self._db.executemany(
                """
                INSERT INTO sync_results
                    (kind, namespace, name, outcome, delta_kind, error, error_class, attempts, revision, applied_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.key.kind,
                        r.key.namespace,
                        r.key.name,
                        r.outcome.value,
                        r.delta_kind.value,
                        r.error,
                        r.error_class,
                        r.attempts,
                        r.revision,
                        r.applied_at.isoformat(),
                    )
                    for r in batch
                ],
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            store_errors_total.labels(store="history", error_class="sqlite").inc()
            _logger.error("sqlite_flush_error", error=str(exc), batch_size=len(batch))
            return

        elapsed_ms = (time.monotonic() - t_start) * 1000.0
        if elapsed_ms > _BACKPRESSURE_THRESHOLD_MS:
            history_backpressure_total.inc()
            _logger.warning(
                "sqlite_backpressure",
                write_latency_ms=elapsed_ms,
                threshold_ms=_BACKPRESSURE_THRESHOLD_MS,
            )
            self._degraded = True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_recent(self) -> list[SyncResult]:
        """Return every retained result within the retention window, oldest first."""
        if self._db is None:
            return []

        cutoff = (datetime.now(tz=UTC) - self._retention).isoformat()
        rows = await self._db.execute_fetchall(
            """
            SELECT kind, namespace, name, outcome, delta_kind, error, error_class, attempts, revision, applied_at
            FROM sync_results
            WHERE applied_at >= ?
            ORDER BY applied_at ASC, id ASC
            """,
            (cutoff,),
        )

        results: list[SyncResult] = []
        for row in rows:
            try:
                applied_at = datetime.fromisoformat(row[9])
                if applied_at.tzinfo is None:
                    applied_at = applied_at.replace(tzinfo=UTC)
                results.append(
                    SyncResult(
                        key=ResourceKey(row[0], row[1], row[2]),
                        outcome=SyncOutcome(row[3]),
                        delta_kind=DeltaKind(row[4]),
                        error=row[5],
                        error_class=row[6],
                        attempts=int(row[7]),
                        revision=row[8],
                        applied_at=applied_at,
                    )
                )
            except ValueError as exc:
                _logger.error("sqlite_load_parse_error", error=str(exc), kind=row[0], name=row[2])

        return results

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Delete expired rows and enforce the per-resource cap."""
        if self._db is None:
            return

        cutoff = (datetime.now(tz=UTC) - self._retention).isoformat()
        await self._db.execute("DELETE FROM sync_results WHERE applied_at < ?", (cutoff,))

        rows = await self._db.execute_fetchall(
            """
            SELECT kind, namespace, name, COUNT(*) AS cnt
            FROM sync_results
            GROUP BY kind, namespace, name
            HAVING cnt > ?
            """,
            (self._max_results,),
        )
        for kind, namespace, name, count in rows:
            await self._db.execute(
                """
                DELETE FROM sync_results
                WHERE id IN (
                    SELECT id FROM sync_results
                    WHERE kind = ? AND namespace = ? AND name = ?
                    ORDER BY applied_at ASC, id ASC
                    LIMIT ?
                )
                """,
                (kind, namespace, name, count - self._max_results),
            )
        await self._db.commit()

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(_FLUSH_INTERVAL_SECONDS)
            if self._pending and not self._degraded:
                await self.flush()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(_CLEANUP_INTERVAL_SECONDS)
            try:
                await self.cleanup()
            except aiosqlite.Error as exc:
                _logger.error("sqlite_cleanup_error", error=str(exc))
