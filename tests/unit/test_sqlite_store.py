"""Unit tests for kubesync.history.sqlite_store.SQLiteHistoryStore."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from kubesync.history.sqlite_store import SQLiteHistoryStore
from kubesync.models.resources import ResourceKey
from kubesync.models.sync import DeltaKind, SyncOutcome, SyncResult

_KEY = ResourceKey("Deployment", "prod", "web")


def _result(
    outcome: SyncOutcome = SyncOutcome.APPLIED,
    at: datetime | None = None,
    key: ResourceKey = _KEY,
) -> SyncResult:
    return SyncResult(
        key=key,
        outcome=outcome,
        delta_kind=DeltaKind.UPDATE,
        error="boom" if outcome == SyncOutcome.FAILED else None,
        error_class="validation_rejected" if outcome == SyncOutcome.FAILED else None,
        attempts=2,
        revision="abc123",
        applied_at=at or datetime.now(tz=UTC),
    )


@pytest.fixture
async def store(tmp_path: Path) -> SQLiteHistoryStore:
    s = SQLiteHistoryStore(str(tmp_path / "history.db"), max_results=3, retention_hours=1)
    await s.open(start_background=False)
    yield s  # type: ignore[misc]
    await s.close()


class TestSQLiteHistoryStore:
    async def test_flush_and_load_round_trip_fields(self, store: SQLiteHistoryStore) -> None:
        original = _result(SyncOutcome.FAILED)
        store.enqueue(original)
        await store.flush()
        loaded = await store.load_recent()
        assert loaded == [original]

    async def test_load_returns_oldest_first(self, store: SQLiteHistoryStore) -> None:
        now = datetime.now(tz=UTC)
        store.enqueue(_result(at=now))
        store.enqueue(_result(at=now - timedelta(minutes=5)))
        await store.flush()
        loaded = await store.load_recent()
        assert [r.applied_at for r in loaded] == [now - timedelta(minutes=5), now]

    async def test_load_skips_rows_outside_retention(self, store: SQLiteHistoryStore) -> None:
        store.enqueue(_result(at=datetime.now(tz=UTC) - timedelta(hours=2)))
        store.enqueue(_result())
        await store.flush()
        assert len(await store.load_recent()) == 1

    async def test_cleanup_enforces_per_resource_cap(self, store: SQLiteHistoryStore) -> None:
        now = datetime.now(tz=UTC)
        other = ResourceKey("Service", "prod", "web")
        for i in range(5):
            store.enqueue(_result(at=now - timedelta(seconds=10 - i)))
        store.enqueue(_result(key=other))
        await store.flush()
        await store.cleanup()
        loaded = await store.load_recent()
        assert len([r for r in loaded if r.key == _KEY]) == 3
        assert len([r for r in loaded if r.key == other]) == 1
        assert min(r.applied_at for r in loaded if r.key == _KEY) == now - timedelta(seconds=8)

    async def test_close_flushes_pending(self, tmp_path: Path) -> None:
        path = str(tmp_path / "h.db")
        first = SQLiteHistoryStore(path)
        await first.open(start_background=False)
        first.enqueue(_result())
        await first.close()

        second = SQLiteHistoryStore(path)
        await second.open(start_background=False)
        try:
            assert len(await second.load_recent()) == 1
        finally:
            await second.close()

    async def test_degraded_store_drops_results(self, store: SQLiteHistoryStore) -> None:
        store._degraded = True
        store.enqueue(_result())
        assert store._pending == []

    async def test_unopened_store_reads_empty(self, tmp_path: Path) -> None:
        s = SQLiteHistoryStore(str(tmp_path / "never.db"))
        assert await s.load_recent() == []
        await s.flush()
