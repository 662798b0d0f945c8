"""Bounded sync-result history with optional SQLite persistence."""

from kubesync.history.sqlite_store import SQLiteHistoryStore
from kubesync.history.sync_history import HistoryStats, SyncHistory

__all__ = ["HistoryStats", "SQLiteHistoryStore", "SyncHistory"]
