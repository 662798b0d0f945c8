"""Sync executor: the single path through which live state is mutated.

Deltas from the drift loop, the delivery controller and the autoscaler are
all applied here:

- in dependency-tier order (see :mod:`kubesync.reconcile.ordering`)
- with per-key serialisation, so two writers never race on one object
- with stale-write protection: the live object is re-read right before the
  write and the delta is rebuilt from that fresh object when its version
  moved, never blindly overwritten
- with bounded exponential back-off on transient failures
- with failure isolation: dependents of a failed resource are skipped,
  independent resources continue
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from kubesync.errors import KubeSyncError, NotFound, OwnershipViolation, error_class_of, is_transient
from kubesync.history.sync_history import SyncHistory
from kubesync.models.resources import ResourceKey, ResourceSpec
from kubesync.models.sync import Delta, DeltaKind, SyncOutcome, SyncResult
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import (
    apply_backoff_seconds,
    apply_results_total,
    apply_retries_total,
    stale_rebuilds_total,
)
from kubesync.reconcile.dependencies import DependencyGraph
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.ordering import order_deltas
from kubesync.store.base import LiveStateStore

_log = get_logger("sync_executor")

_T = TypeVar("_T")

# Skip reasons that are not failures of their own and must not cascade
_CONVERGED = "already converged"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off, mirroring the declared sync retry policy."""

    limit: int = 5
    base_seconds: float = 5.0
    factor: float = 2.0
    cap_seconds: float = 180.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        return min(self.base_seconds * self.factor ** (attempt - 1), self.cap_seconds)


class SyncExecutor:
    """Applies deltas to a :class:`~kubesync.store.base.LiveStateStore`.

    Args:
        store:        Live cluster store.
        differ:       Used to rebuild stale deltas against fresh objects.
        history:      Receives every :class:`SyncResult`.
        retry:        Transient-failure retry policy.
        call_timeout: Timeout applied to every store call, in seconds.
        sleep:        Injected for tests.
    """

    def __init__(
        self,
        store: LiveStateStore,
        differ: Differ,
        history: SyncHistory | None = None,
        *,
        retry: RetryPolicy | None = None,
        call_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._differ = differ
        self._history = history
        self._retry = retry or RetryPolicy()
        self._call_timeout = call_timeout
        self._sleep = sleep
        self._locks: defaultdict[ResourceKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    def lock_for(self, key: ResourceKey) -> asyncio.Lock:
        return self._locks[key]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply(
        self,
        deltas: Iterable[Delta],
        *,
        revision: str = "",
        skip: Mapping[ResourceKey, tuple[str, str]] | None = None,
    ) -> list[SyncResult]:
        """Apply *deltas* in dependency order and return one result per change.

        Args:
            deltas:   Deltas from one submitter; NOOPs are ignored.
            revision: Desired-state revision recorded on each result.
            skip:     Keys the caller has excluded this round, mapped to
                      ``(error_class, reason)``.  They are reported SKIPPED and
                      their dependents are skipped too.
        """
        ordered = order_deltas(deltas)
        if not ordered:
            return []

        skip = skip or {}
        graph = DependencyGraph.build(
            {d.key: d.from_spec if d.kind == DeltaKind.DELETE else d.to_spec for d in ordered}
        )
        blocked: dict[ResourceKey, ResourceKey] = {}
        results: list[SyncResult] = []

        for delta in ordered:
            if delta.key in skip:
                error_class, reason = skip[delta.key]
                result = self._finish(delta, SyncOutcome.SKIPPED, revision, error=reason, error_class=error_class)
            elif delta.key in blocked:
                result = self._finish(
                    delta,
                    SyncOutcome.SKIPPED,
                    revision,
                    error=f"depends on {blocked[delta.key]}, which was not applied",
                    error_class="dependency_failed",
                )
            else:
                result = await self.apply_one(delta, revision=revision, record=False)

            self._record(result)
            results.append(result)

            if result.outcome != SyncOutcome.APPLIED and result.error_class is not None:
                # Deletes run in reverse tier order, so their dependencies come next
                downstream = (
                    graph.dependencies(delta.key) if delta.kind == DeltaKind.DELETE else graph.dependents(delta.key)
                )
                for key in downstream:
                    blocked.setdefault(key, delta.key)

        return results

    async def apply_one(self, delta: Delta, *, revision: str = "", record: bool = True) -> SyncResult:
        """Apply one delta under its key lock, retrying transient failures."""
        async with self.lock_for(delta.key):
            attempts = 0
            while True:
                attempts += 1
                try:
                    applied = await self._apply_fresh(delta)
                except (KubeSyncError, TimeoutError) as exc:
                    error_class = error_class_of(exc)
                    if not is_transient(exc) or attempts >= self._retry.limit:
                        _log.warning(
                            "delta_apply_failed",
                            resource=str(delta.key),
                            delta_kind=delta.kind.value,
                            error=str(exc),
                            error_class=error_class,
                            attempts=attempts,
                        )
                        result = self._finish(
                            delta,
                            SyncOutcome.FAILED,
                            revision,
                            error=str(exc) or error_class,
                            error_class=error_class,
                            attempts=attempts,
                        )
                        break
                    delay = self._retry.delay(attempts)
                    apply_retries_total.labels(error_class=error_class).inc()
                    apply_backoff_seconds.observe(delay)
                    _log.debug(
                        "delta_apply_retry",
                        resource=str(delta.key),
                        error_class=error_class,
                        attempt=attempts,
                        delay_s=delay,
                    )
                    await self._sleep(delay)
                    continue

                if applied is None:
                    result = self._finish(delta, SyncOutcome.SKIPPED, revision, error=_CONVERGED, attempts=attempts)
                else:
                    result = self._finish(applied, SyncOutcome.APPLIED, revision, attempts=attempts)
                    _log.info(
                        "delta_applied",
                        resource=str(delta.key),
                        delta_kind=applied.kind.value,
                        changed_fields=[c.path for c in applied.changes],
                        attempts=attempts,
                    )
                break

        if record:
            self._record(result)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[_T]) -> _T:
        async with asyncio.timeout(self._call_timeout):
            return await awaitable

    async def _apply_fresh(self, delta: Delta) -> Delta | None:
        """Re-read the live object, rebuild *delta* if stale, then write.

        Returns the delta actually applied, or None when the resource had
        already converged.
        """
        key = delta.key
        fresh = await self._call(self._store.get(key))
        fresh_version = fresh.resource_version if fresh is not None else None

        if delta.kind == DeltaKind.DELETE:
            if fresh is None:
                return None
            if fresh_version != delta.from_version:
                stale_rebuilds_total.labels(kind=key.kind).inc()
                if not self._differ.in_universe(fresh):
                    raise OwnershipViolation(f"{key} is no longer owned by {self._differ.owner}", key=key)
                delta = Delta(key=key, kind=DeltaKind.DELETE, from_spec=fresh.spec, from_version=fresh_version)
            try:
                await self._call(self._store.delete(key, fresh_version))
            except NotFound:
                return None
            return delta

        if fresh_version != delta.from_version:
            stale_rebuilds_total.labels(kind=key.kind).inc()
            _log.info(
                "stale_delta_rebuilt",
                resource=str(key),
                expected_version=delta.from_version,
                live_version=fresh_version,
            )
            if fresh is not None and not fresh.owned_by(self._differ.owner):
                raise OwnershipViolation(f"{key} exists without the ownership marker", key=key)
            declared: ResourceSpec = delta.declared if delta.declared is not None else delta.to_spec or {}
            delta = self._differ.diff_resource(key, declared, fresh, excluded=delta.excluded)
            if not delta.is_change:
                return None

        assert delta.to_spec is not None
        await self._call(self._store.write(key, delta.to_spec, delta.from_version))
        return delta

    def _finish(
        self,
        delta: Delta,
        outcome: SyncOutcome,
        revision: str,
        *,
        error: str | None = None,
        error_class: str | None = None,
        attempts: int = 0,
    ) -> SyncResult:
        apply_results_total.labels(kind=delta.key.kind, delta_kind=delta.kind.value, outcome=outcome.value).inc()
        return SyncResult(
            key=delta.key,
            outcome=outcome,
            delta_kind=delta.kind,
            error=error,
            error_class=error_class,
            attempts=attempts,
            revision=revision,
        )

    def _record(self, result: SyncResult) -> None:
        if self._history is not None:
            self._history.record(result)
