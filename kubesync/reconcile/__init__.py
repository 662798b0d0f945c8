"""Diffing, ordered apply and the drift loop."""

from kubesync.reconcile.differ import Differ, DiffResult
from kubesync.reconcile.executor import RetryPolicy, SyncExecutor

__all__ = ["DiffResult", "Differ", "RetryPolicy", "SyncExecutor"]
