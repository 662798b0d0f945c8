"""Drift loop: the top-level reconciliation state machine.

One cycle runs ``IDLE -> DIFFING -> SYNCING -> ASSESSING -> IDLE``:

1. Pull one immutable desired snapshot and the owned live objects.
2. Diff them.  An empty change set ends the cycle (pure idle tick).
3. Apply the changes through the sync executor.
4. Re-read and assess health.  With self-heal disabled, resources that end
   up DEGRADED are halted and an alert asks for manual intervention.

Cycles run on a fixed interval or when :meth:`DriftLoop.trigger` is called
(webhook).  Source and store outages never mutate live state; the loop backs
off exponentially until they recover.  Once the stable set is in sync the
release declarations go to the delivery controller and the autoscale
policies to the autoscaler.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar
from uuid import uuid4

from kubesync.errors import ComponentStopped, KubeSyncError, OperatorConflict, error_class_of
from kubesync.health.assessor import HealthAssessor, aggregate_health
from kubesync.history.sync_history import SyncHistory
from kubesync.models.events import Alert, Severity, SyncEvent
from kubesync.models.health import HealthStatus
from kubesync.models.resources import OWNER_LABEL, DesiredState, LiveResource, ResourceKey, spec_hash
from kubesync.models.sync import CycleReport, Delta, DeltaKind, LoopPhase, SyncOutcome, SyncStatus
from kubesync.observability.events import EventStream
from kubesync.observability.logging import bind_cycle, clear_cycle, get_logger
from kubesync.observability.metrics import (
    drift_deltas_total,
    halted_resources,
    out_of_sync_resources,
    ownership_violations_total,
    set_app_health,
    store_errors_total,
    sync_cycle_duration_seconds,
    sync_cycles_total,
)
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.executor import SyncExecutor
from kubesync.store.base import DesiredStateSource, LiveStateStore

if TYPE_CHECKING:
    from kubesync.autoscale.engine import AutoscaleEngine
    from kubesync.delivery.controller import ProgressiveDeliveryController
    from kubesync.notifications.manager import NotificationDispatcher

_log = get_logger("drift_loop")

_T = TypeVar("_T")


@dataclass(frozen=True)
class LoopSettings:
    """Drift loop policy; defaults mirror the sync configuration defaults."""

    interval_seconds: float = 30.0
    auto_sync: bool = True
    self_heal: bool = True
    prune: bool = True
    backoff_base_seconds: float = 5.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 180.0
    call_timeout: float = 10.0


class DriftLoop:
    """Continuously converges one application's live state to its desired state."""

    def __init__(
        self,
        app_name: str,
        source: DesiredStateSource,
        store: LiveStateStore,
        differ: Differ,
        executor: SyncExecutor,
        assessor: HealthAssessor,
        history: SyncHistory,
        *,
        settings: LoopSettings | None = None,
        events: EventStream | None = None,
        notifier: NotificationDispatcher | None = None,
        delivery: ProgressiveDeliveryController | None = None,
        autoscaler: AutoscaleEngine | None = None,
    ) -> None:
        self._app = app_name
        self._source = source
        self._store = store
        self._differ = differ
        self._executor = executor
        self._assessor = assessor
        self._history = history
        self._settings = settings or LoopSettings()
        self._events = events
        self._notifier = notifier
        self._delivery = delivery
        self._autoscaler = autoscaler

        self._phase = LoopPhase.IDLE
        self._paused = not self._settings.auto_sync
        self._sync_status = SyncStatus.UNKNOWN
        self._health = HealthStatus.UNKNOWN
        self._last_report: CycleReport | None = None
        self._halted: dict[ResourceKey, str] = {}
        self._rejected: dict[ResourceKey, str] = {}
        self._consecutive_errors = 0

        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._manual_requested = False
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def app_name(self) -> str:
        return self._app

    @property
    def phase(self) -> LoopPhase:
        return self._phase

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def health(self) -> HealthStatus:
        return self._health

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    @property
    def halted(self) -> dict[ResourceKey, str]:
        return dict(self._halted)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"drift_loop:{self._app}")
        _log.info("drift_loop_started", app=self._app, interval_s=self._settings.interval_seconds)

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._phase = LoopPhase.IDLE
        self._manual_requested = False
        _log.info("drift_loop_stopped", app=self._app)

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def trigger(self) -> None:
        """Run the next cycle now (e.g. on a source webhook)."""
        self._wake.set()

    def request_sync(self) -> None:
        """Operator-requested sync: applies even while paused and clears halts.

        Raises:
            ComponentStopped: the loop task is not running.
            OperatorConflict: a manual sync is already pending.
        """
        if not self.running:
            raise ComponentStopped("the drift loop is not running")
        if self._manual_requested:
            raise OperatorConflict("a manual sync is already pending")
        self._manual_requested = True
        self._wake.set()

    def pause(self) -> None:
        self._paused = True
        _log.info("auto_sync_paused", app=self._app)

    def resume(self) -> None:
        self._paused = False
        self._wake.set()
        _log.info("auto_sync_resumed", app=self._app)

    # ------------------------------------------------------------------
    # One reconciliation cycle
    # ------------------------------------------------------------------

    async def reconcile_once(self, manual: bool = False) -> CycleReport:
        """Run one full cycle and return its report.

        Args:
            manual: Operator-requested; applies while paused and clears halts.
        """
        async with self._cycle_lock:
            report = CycleReport(cycle_id=uuid4().hex[:12])
            bind_cycle(self._app, report.cycle_id)
            t_start = time.monotonic()
            try:
                await self._cycle(report, manual)
            except (KubeSyncError, TimeoutError) as exc:
                report.error = str(exc) or error_class_of(exc)
                store_errors_total.labels(
                    store="source" if error_class_of(exc) == "source_unavailable" else "live",
                    error_class=error_class_of(exc),
                ).inc()
                _log.warning("sync_cycle_aborted", error=report.error, error_class=error_class_of(exc))
            finally:
                self._phase = LoopPhase.IDLE
                report.finished_at = datetime.now(tz=UTC)
                sync_cycle_duration_seconds.labels(app=self._app).observe(time.monotonic() - t_start)
                sync_cycles_total.labels(app=self._app, result=self._cycle_result(report)).inc()
                self._last_report = report
                _log.info(
                    "sync_cycle_complete",
                    revision=report.revision,
                    changes=len(report.changes),
                    applied=sum(1 for r in report.results if r.outcome == SyncOutcome.APPLIED),
                    failed=sum(1 for r in report.results if r.outcome == SyncOutcome.FAILED),
                    skipped=sum(1 for r in report.results if r.outcome == SyncOutcome.SKIPPED),
                    health=report.health.value,
                    duration_s=round(time.monotonic() - t_start, 3),
                )
                clear_cycle()
            return report

    async def _cycle(self, report: CycleReport, manual: bool) -> None:
        # DIFFING
        self._phase = LoopPhase.DIFFING
        desired = await self._call(self._source.fetch_desired())
        report.revision = desired.revision

        live = await self._read_live(desired, report)
        diff = self._differ.diff(desired, live, report.unreadable)
        report.deltas = diff.deltas
        report.ownership_violations = diff.ownership_violations
        self._record_diff(report)

        for key, verdict in self._assessor.assess_all(desired.resources, live).items():
            report.resource_health[key] = verdict.status
        report.health = aggregate_health(report.resource_health.values())
        self._set_health(report.health)

        if manual and self._halted:
            _log.info("halts_cleared", resources=[str(k) for k in self._halted])
            self._halted.clear()
            halted_resources.labels(app=self._app).set(0)

        changes = report.changes
        # Deletes held back while prune is disabled are reported, not applied
        unpruned = [d for d in changes if d.kind == DeltaKind.DELETE and not self._settings.prune]
        if unpruned:
            _log.info("prune_disabled_skip", resources=[str(d.key) for d in unpruned])
            changes = [d for d in changes if d.kind != DeltaKind.DELETE]
        if not changes:
            if unpruned:
                self._sync_status = SyncStatus.OUT_OF_SYNC
            else:
                self._sync_status = SyncStatus.SYNCED if not report.unreadable else SyncStatus.UNKNOWN
            await self._hand_off(desired, report)
            return

        self._sync_status = SyncStatus.OUT_OF_SYNC
        if self._paused and not manual:
            _log.info("auto_sync_paused_skip", pending=len(changes))
            return

        # SYNCING
        self._phase = LoopPhase.SYNCING
        apply_set, skip = self._select(changes, desired, manual)
        report.results = await self._executor.apply(apply_set, revision=desired.revision, skip=skip)
        for result in report.results:
            if result.error_class == "validation_rejected" and result.outcome == SyncOutcome.FAILED:
                declared = desired.resources.get(result.key)
                if declared is not None:
                    self._rejected[result.key] = spec_hash(declared)

        # ASSESSING
        self._phase = LoopPhase.ASSESSING
        applied = [r.key for r in report.results if r.outcome == SyncOutcome.APPLIED]
        for key in applied:
            self._assessor.restart(key)
        fetch = await self._call(self._store.fetch_live(desired.resources))
        verdicts = self._assessor.assess_all(desired.resources, fetch.resources)
        report.resource_health = {key: v.status for key, v in verdicts.items()}
        report.health = aggregate_health(report.resource_health.values())
        self._set_health(report.health)
        self._emit_results(report)

        if report.health == HealthStatus.DEGRADED and not self._settings.self_heal:
            await self._halt(report, {k: v.message for k, v in verdicts.items() if v.status == HealthStatus.DEGRADED})

        if self._in_sync_after(report, len(apply_set)):
            self._sync_status = SyncStatus.OUT_OF_SYNC if unpruned else SyncStatus.SYNCED
            await self._hand_off(desired, report)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopping:
            manual = self._manual_requested
            self._manual_requested = False
            report = await self.reconcile_once(manual=manual)

            if report.error is not None:
                self._consecutive_errors += 1
                delay = min(
                    self._settings.backoff_base_seconds
                    * self._settings.backoff_factor ** (self._consecutive_errors - 1),
                    self._settings.backoff_cap_seconds,
                )
                _log.info("drift_loop_backoff", delay_s=delay, consecutive_errors=self._consecutive_errors)
            else:
                self._consecutive_errors = 0
                delay = self._settings.interval_seconds

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            self._wake.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[_T]) -> _T:
        async with asyncio.timeout(self._settings.call_timeout):
            return await awaitable

    async def _read_live(self, desired: DesiredState, report: CycleReport) -> dict[ResourceKey, LiveResource]:
        """Owned objects via label selector, plus any desired key not listed."""
        listing = await self._call(self._store.list_owned({OWNER_LABEL: self._app}))
        live = {res.key: res for res in listing.resources}
        for kind, exc in listing.failed_kinds.items():
            _log.warning("live_kind_unlisted", kind=kind, error=str(exc))
        missing = [k for k in desired.resources if k not in live and k.kind not in listing.failed_kinds]
        # Desired keys of an unlisted kind count as unreadable
        unreadable = {k for k in desired.resources if k.kind in listing.failed_kinds}
        if missing:
            fetch = await self._call(self._store.fetch_live(missing))
            live.update(fetch.resources)
            unreadable.update(fetch.errors)
            for key, exc in fetch.errors.items():
                _log.warning("live_read_failed", resource=str(key), error=str(exc))
        report.unreadable = sorted(unreadable)
        return live

    def _select(
        self,
        changes: list[Delta],
        desired: DesiredState,
        manual: bool,
    ) -> tuple[list[Delta], dict[ResourceKey, tuple[str, str]]]:
        """Split changes into the apply set and the keys reported as skipped."""
        apply_set: list[Delta] = []
        skip: dict[ResourceKey, tuple[str, str]] = {}
        now = datetime.now(tz=UTC)
        retry = self._executor.retry

        for delta in changes:
            key = delta.key
            apply_set.append(delta)

            if key in self._rejected:
                declared = desired.resources.get(key)
                if declared is not None and spec_hash(declared) == self._rejected[key]:
                    skip[key] = ("validation_rejected", "rejected by the platform; waiting for a desired-state change")
                    continue
                # A corrected spec is tried at once, without waiting out the failure backoff
                del self._rejected[key]
                if key not in self._halted:
                    continue

            if key in self._halted:
                skip[key] = ("halted", "halted after degrading; manual sync required")
                continue

            if not manual:
                next_at = self._history.next_attempt_at(key, retry.base_seconds, retry.factor, retry.cap_seconds)
                if next_at is not None and next_at > now:
                    skip[key] = ("backoff", f"backing off after failures until {next_at.isoformat()}")

        return apply_set, skip

    async def _halt(self, report: CycleReport, degraded: dict[ResourceKey, str]) -> None:
        newly = sorted(k for k in degraded if k not in self._halted)
        for key in degraded:
            self._halted[key] = degraded[key]
        report.halted = sorted(degraded)
        halted_resources.labels(app=self._app).set(len(self._halted))
        if not newly:
            return
        _log.error("resources_halted", resources=[str(k) for k in newly])
        if self._notifier is not None:
            await self._notifier.dispatch(
                Alert(
                    app=self._app,
                    severity=Severity.ERROR,
                    title="Manual intervention required",
                    detail=(
                        "Resources are degraded after sync and self-heal is disabled; "
                        "auto-sync is halted for them until an operator sync."
                    ),
                    resources=tuple(str(k) for k in newly),
                )
            )

    async def _hand_off(self, desired: DesiredState, report: CycleReport) -> None:
        if report.unreadable or report.health == HealthStatus.DEGRADED:
            return
        if self._autoscaler is not None:
            self._autoscaler.set_policies(desired.autoscale_policies)
        if self._delivery is not None:
            await self._delivery.observe(desired)

    @staticmethod
    def _in_sync_after(report: CycleReport, attempted: int) -> bool:
        return (
            not report.unreadable
            and len(report.results) == attempted
            and all(r.outcome == SyncOutcome.APPLIED for r in report.results)
        )

    def _record_diff(self, report: CycleReport) -> None:
        for delta in report.changes:
            drift_deltas_total.labels(app=self._app, delta_kind=delta.kind.value).inc()
        out_of_sync_resources.labels(app=self._app).set(len(report.changes))
        if report.ownership_violations:
            ownership_violations_total.labels(app=self._app).inc(len(report.ownership_violations))
        if self._events is None:
            return
        for key in report.ownership_violations:
            self._events.emit(
                SyncEvent(
                    app=self._app,
                    cycle_id=report.cycle_id,
                    key=str(key),
                    delta_kind=DeltaKind.NOOP.value,
                    message="live resource lacks the ownership marker; left untouched",
                )
            )

    def _emit_results(self, report: CycleReport) -> None:
        if self._events is None:
            return
        for result in report.results:
            self._events.emit(
                SyncEvent(
                    app=self._app,
                    cycle_id=report.cycle_id,
                    key=str(result.key),
                    delta_kind=result.delta_kind.value,
                    outcome=result.outcome.value,
                    health=report.resource_health.get(result.key, HealthStatus.UNKNOWN).value,
                    message=result.error or "",
                )
            )

    def _set_health(self, health: HealthStatus) -> None:
        self._health = health
        set_app_health(self._app, health.value)

    def _cycle_result(self, report: CycleReport) -> str:
        if report.error is not None:
            return "error"
        if report.idle:
            return "idle"
        if not report.results:
            return "paused" if self._paused else "idle"
        if report.partial:
            return "partial"
        if all(r.outcome == SyncOutcome.APPLIED for r in report.results):
            return "synced"
        return "failed"
