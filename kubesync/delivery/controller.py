"""Progressive delivery controller: blue/green and canary rollouts.

For each declared release the controller compares the declared version with
the version running on the active track (the one the TrafficSplit sends most
traffic to).  A new version starts a rollout task:

1. Create the inactive track at zero weight through the differ and executor.
2. Gate on its health, bounded by ``health_timeout_s``.  Timeout or DEGRADED
   deletes the new track and leaves routing untouched (``ROLLED_BACK``).
3. Optionally pause for a manual promote.
4. Shift traffic: one routing write swapping 100/0 for blue/green, or the
   declared canary weight steps, each followed by a health-watched bake.  A
   DEGRADED observation reverts routing to the pre-rollout split.
5. Keep the previous track for ``bake_period_s`` (rollback re-reverses the
   routing write), then delete it (``COMPLETED``).

Every live mutation is a Delta submitted to the shared sync executor.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from uuid import uuid4

from kubesync.delivery.tracks import parse_weights, routing_spec, track_resources, track_version
from kubesync.errors import HealthTimeout, KubeSyncError, NotFound, OperatorConflict, StoreUnavailable
from kubesync.health.assessor import aggregate_health
from kubesync.health.evaluators import evaluate
from kubesync.models.delivery import (
    ReleaseSpec,
    ReleaseTrack,
    RolloutPhase,
    RolloutStatus,
    TrackName,
)
from kubesync.models.events import Alert, Severity, SyncEvent
from kubesync.models.health import HealthStatus
from kubesync.models.resources import MANAGER_DELIVERY, DesiredState, LiveResource, ResourceKey
from kubesync.models.sync import Delta, DeltaKind, SyncOutcome, SyncResult
from kubesync.notifications.manager import NotificationDispatcher
from kubesync.observability.events import EventStream
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import rollout_traffic_weight, rollouts_total
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.executor import SyncExecutor
from kubesync.reconcile.mergers import merger_for
from kubesync.store.base import LiveStateStore

_log = get_logger("delivery")


class RolloutFailed(KubeSyncError):
    """A rollout step could not be applied."""

    error_class = "rollout_failed"


@dataclass
class _Rollout:
    rollout_id: str
    release: ReleaseSpec
    status: RolloutStatus
    new: TrackName
    previous: TrackName | None
    signal: asyncio.Event = field(default_factory=asyncio.Event)
    promote_requested: bool = False
    rollback_requested: bool = False
    task: asyncio.Task[None] | None = None


class ProgressiveDeliveryController:
    """Runs one rollout task per release whose declared version changed.

    Args:
        app_name:      Application instance (ownership label value).
        store:         Live cluster store, read-only here.
        differ:        Builds field-scoped deltas.
        executor:      The shared apply path.
        poll_interval: Seconds between health checks while gating or baking.
        call_timeout:  Timeout for every store read.
    """

    def __init__(
        self,
        app_name: str,
        store: LiveStateStore,
        differ: Differ,
        executor: SyncExecutor,
        *,
        poll_interval: float = 5.0,
        call_timeout: float = 10.0,
        notifier: NotificationDispatcher | None = None,
        events: EventStream | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._app = app_name
        self._store = store
        self._differ = differ
        self._executor = executor
        self._poll = poll_interval
        self._call_timeout = call_timeout
        self._notifier = notifier
        self._events = events
        self._clock = clock

        self._labels = differ.labels_for(MANAGER_DELIVERY)
        self._releases: dict[str, ReleaseSpec] = {}
        self._autoscaled: frozenset[ResourceKey] = frozenset()
        self._runs: dict[str, _Rollout] = {}
        self._failed_versions: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Drift loop hand-off
    # ------------------------------------------------------------------

    async def observe(self, desired: DesiredState) -> None:
        """Start rollouts for releases whose declared version is not active."""
        self._releases = dict(desired.releases)
        self._autoscaled = frozenset(desired.autoscale_policies)

        for name, release in sorted(self._releases.items()):
            run = self._runs.get(name)
            if run is not None and not run.status.phase.finished:
                if run.release.version != release.version:
                    _log.info(
                        "rollout_deferred",
                        release=name,
                        running_version=run.release.version,
                        declared_version=release.version,
                    )
                continue
            if self._failed_versions.get(name) == release.version:
                continue
            try:
                await self._reconcile_release(release)
            except (KubeSyncError, TimeoutError) as exc:
                _log.warning("release_inspect_failed", release=name, error=str(exc))

    async def _reconcile_release(self, release: ReleaseSpec) -> None:
        weights, active, active_version = await self._inspect(release)

        if active is not None and active_version == release.version:
            if weights is not None and weights[active] != 100:
                _log.info("routing_restored", release=release.name, track=active.value)
                await self._route(release, {active: 100, active.other: 0}, revision=f"{release.name}@{release.version}")
            return

        new = active.other if active is not None else TrackName.BLUE
        status = RolloutStatus(
            release=release.name,
            from_version=active_version,
            to_version=release.version,
            strategy=release.strategy,
            phase=RolloutPhase.PROGRESSING,
            message=f"deploying {release.version} to the {new.value} track",
            active_track=active,
        )
        if active is not None:
            status.tracks[active] = ReleaseTrack(
                name=active,
                version=active_version or "",
                resource_keys=release.track_keys(active),
                traffic_weight=weights[active] if weights is not None else 0,
                health=HealthStatus.UNKNOWN,
            )
        status.tracks[new] = ReleaseTrack(
            name=new, version=release.version, resource_keys=release.track_keys(new), traffic_weight=0
        )

        run = _Rollout(
            rollout_id=uuid4().hex[:12],
            release=release,
            status=status,
            new=new,
            previous=active,
        )
        self._runs[release.name] = run
        run.task = asyncio.create_task(self._execute(run), name=f"rollout:{release.name}")
        _log.info(
            "rollout_started",
            release=release.name,
            rollout_id=run.rollout_id,
            from_version=active_version,
            to_version=release.version,
            strategy=release.strategy.value,
            track=new.value,
        )
        self._emit(run, "rollout started")

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def status(self, name: str) -> RolloutStatus:
        run = self._runs.get(name)
        if run is None:
            if name in self._releases:
                raise NotFound(f"release {name!r} has no rollout yet")
            raise NotFound(f"unknown release {name!r}")
        return run.status

    def statuses(self) -> list[RolloutStatus]:
        return [run.status for _, run in sorted(self._runs.items())]

    def promote(self, name: str) -> RolloutStatus:
        """Skip any remaining pause, canary steps or bake and finish the rollout."""
        run = self._active_run(name)
        if run.promote_requested:
            raise OperatorConflict(f"rollout of {name!r} is already promoted")
        run.promote_requested = True
        run.signal.set()
        _log.info("rollout_promote_requested", release=name, rollout_id=run.rollout_id)
        return run.status

    def rollback(self, name: str) -> RolloutStatus:
        """Abort the rollout and restore the previous track."""
        run = self._active_run(name)
        run.rollback_requested = True
        run.signal.set()
        _log.info("rollout_rollback_requested", release=name, rollout_id=run.rollout_id)
        return run.status

    async def wait(self, name: str) -> RolloutStatus:
        """Wait for the current rollout of *name* to finish."""
        run = self._runs.get(name)
        if run is None:
            raise NotFound(f"no rollout for release {name!r}")
        if run.task is not None:
            await asyncio.shield(run.task)
        return run.status

    async def stop(self) -> None:
        tasks = [run.task for run in self._runs.values() if run.task is not None and not run.task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _active_run(self, name: str) -> _Rollout:
        run = self._runs.get(name)
        if run is None:
            if name in self._releases:
                raise OperatorConflict(f"release {name!r} has no rollout in progress")
            raise NotFound(f"unknown release {name!r}")
        if run.status.phase.finished:
            raise OperatorConflict(f"rollout of {name!r} already finished ({run.status.phase.value})")
        if run.rollback_requested:
            raise OperatorConflict(f"rollback of {name!r} is already in progress")
        return run

    # ------------------------------------------------------------------
    # Rollout task
    # ------------------------------------------------------------------

    async def _execute(self, run: _Rollout) -> None:
        try:
            await self._run_rollout(run)
        except (KubeSyncError, TimeoutError) as exc:
            _log.error("rollout_aborted", release=run.release.name, rollout_id=run.rollout_id, error=str(exc))
            await self._finish(run, RolloutPhase.ABORTED, f"aborted: {exc}", severity=Severity.CRITICAL)

    async def _run_rollout(self, run: _Rollout) -> None:
        release = run.release
        revision = f"{release.name}@{release.version}"

        # 1. Stand up the new track at zero weight
        await self._apply_track(release, run.new, revision)

        # 2. Health gate
        outcome = await self._gate(run)
        if outcome != "healthy":
            reason = {
                "timeout": str(HealthTimeout(f"{run.new.value} track not healthy within {release.health_timeout_s:.0f}s")),
                "degraded": f"{run.new.value} track degraded before cutover",
                "rollback": "rolled back by operator before cutover",
            }[outcome]
            await self._revert(run, revision, reason)
            return

        # 3. Manual promotion
        if not release.auto_promote and not run.promote_requested:
            run.status.touch(RolloutPhase.PAUSED, "healthy; waiting for promote")
            self._emit(run, run.status.message)
            while not (run.promote_requested or run.rollback_requested):
                await run.signal.wait()
                run.signal.clear()
            if run.rollback_requested:
                await self._revert(run, revision, "rolled back by operator before cutover")
                return
            run.status.touch(RolloutPhase.PROGRESSING, "promoted by operator")

        # 4. Traffic shift
        if run.previous is None:
            await self._route(release, {run.new: 100, run.new.other: 0}, revision, run)
            run.status.active_track = run.new
            await self._finish(run, RolloutPhase.COMPLETED, f"{release.version} serving all traffic")
            return

        steps = release.weight_steps
        for index, weight in enumerate(steps):
            if run.promote_requested:
                weight = 100
            run.status.step_index = index
            await self._route(release, {run.new: weight, run.previous: 100 - weight}, revision, run)
            run.status.touch(message=f"{weight}% of traffic on {release.version}")
            self._emit(run, run.status.message)
            if weight == 100:
                break
            outcome = await self._bake(run, release.step_bake_s)
            if outcome in ("degraded", "rollback"):
                reason = "canary degraded" if outcome == "degraded" else "rolled back by operator"
                await self._revert(run, revision, f"{reason} at {weight}%")
                return

        run.status.active_track = run.new
        run.status.touch(RolloutPhase.PROMOTED, f"{release.version} active; previous track baking")
        self._emit(run, run.status.message)

        # 5. Bake, then retire the previous track
        outcome = await self._bake(run, release.bake_period_s, stop_on_promote=True)
        if outcome in ("degraded", "rollback"):
            reason = "new track degraded during bake" if outcome == "degraded" else "rolled back by operator"
            await self._revert(run, revision, reason)
            return

        await self._delete_track(release, run.previous, revision)
        run.status.tracks.pop(run.previous, None)
        await self._finish(run, RolloutPhase.COMPLETED, f"{release.version} serving all traffic")

    async def _gate(self, run: _Rollout) -> str:
        """Wait for the new track to become healthy; returns the reason it stopped waiting."""
        deadline = self._clock() + run.release.health_timeout_s
        while True:
            if run.rollback_requested:
                return "rollback"
            health = await self._track_health(run, run.new)
            if health == HealthStatus.HEALTHY:
                return "healthy"
            if health == HealthStatus.DEGRADED:
                return "degraded"
            remaining = deadline - self._clock()
            if remaining <= 0:
                return "timeout"
            await self._sleep_or_signal(run, min(self._poll, remaining))

    async def _bake(self, run: _Rollout, seconds: float, stop_on_promote: bool = True) -> str:
        """Watch the new track for *seconds*; returns elapsed, promote, degraded or rollback."""
        deadline = self._clock() + seconds
        while True:
            if run.rollback_requested:
                return "rollback"
            if stop_on_promote and run.promote_requested:
                return "promote"
            if await self._track_health(run, run.new) == HealthStatus.DEGRADED:
                return "degraded"
            remaining = deadline - self._clock()
            if remaining <= 0:
                return "elapsed"
            await self._sleep_or_signal(run, min(self._poll, remaining))

    async def _sleep_or_signal(self, run: _Rollout, timeout: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(run.signal.wait(), timeout=timeout)
        run.signal.clear()

    async def _revert(self, run: _Rollout, revision: str, reason: str) -> None:
        """Send all traffic back to the previous track and delete the new one."""
        if run.previous is not None:
            await self._route(run.release, {run.previous: 100, run.new: 0}, revision, run)
            run.status.active_track = run.previous
        await self._delete_track(run.release, run.new, revision)
        run.status.tracks.pop(run.new, None)
        self._failed_versions[run.release.name] = run.release.version
        await self._finish(run, RolloutPhase.ROLLED_BACK, reason, severity=Severity.ERROR)

    async def _finish(
        self,
        run: _Rollout,
        phase: RolloutPhase,
        message: str,
        severity: Severity | None = None,
    ) -> None:
        run.status.touch(phase, message)
        rollouts_total.labels(release=run.release.name, strategy=run.release.strategy.value, phase=phase.value).inc()
        _log.info(
            "rollout_finished",
            release=run.release.name,
            rollout_id=run.rollout_id,
            phase=phase.value,
            message=message,
        )
        self._emit(run, message)
        if severity is not None and self._notifier is not None:
            await self._notifier.dispatch(
                Alert(
                    app=self._app,
                    severity=severity,
                    title=f"Rollout of {run.release.name} {phase.value.replace('_', ' ')}",
                    detail=f"{run.status.from_version or 'none'} -> {run.release.version}: {message}",
                    resources=tuple(str(k) for k in run.release.track_keys(run.new)),
                )
            )

    # ------------------------------------------------------------------
    # Live state helpers
    # ------------------------------------------------------------------

    async def _read(self, keys: list[ResourceKey]) -> dict[ResourceKey, LiveResource]:
        async with asyncio.timeout(self._call_timeout):
            fetch = await self._store.fetch_live(keys)
        if fetch.errors:
            key, exc = next(iter(sorted(fetch.errors.items())))
            raise StoreUnavailable(f"cannot read {key}: {exc}", key=key)
        return dict(fetch.resources)

    async def _inspect(self, release: ReleaseSpec) -> tuple[dict[TrackName, int] | None, TrackName | None, str | None]:
        """Current routing weights, active track and the version it runs."""
        blue_key = release.track_keys(TrackName.BLUE)[0]
        green_key = release.track_keys(TrackName.GREEN)[0]
        live = await self._read([release.routing_key, blue_key, green_key])
        routing = live.get(release.routing_key)
        weights = parse_weights(release, routing)
        if weights is None:
            return None, None, None
        active = TrackName.BLUE if weights[TrackName.BLUE] >= weights[TrackName.GREEN] else TrackName.GREEN
        deployment_key = blue_key if active == TrackName.BLUE else green_key
        return weights, active, track_version(live.get(deployment_key))

    async def _track_health(self, run: _Rollout, track: TrackName) -> HealthStatus:
        keys = list(run.release.track_keys(track))
        live = await self._read(keys)
        statuses = [
            evaluate(live[key]).status if key in live else HealthStatus.PROGRESSING
            for key in keys
        ]
        health = aggregate_health(statuses)
        entry = run.status.tracks.get(track)
        if entry is not None:
            entry.health = health
        return health

    async def _apply_track(self, release: ReleaseSpec, track: TrackName, revision: str) -> None:
        specs = track_resources(release, track, self._labels)
        live = await self._read(list(specs))
        deltas = [
            self._differ.diff_resource(
                key,
                spec,
                live.get(key),
                excluded=merger_for(key.kind).excluded_paths(autoscaled=key in self._autoscaled),
            )
            for key, spec in specs.items()
        ]
        self._check(await self._executor.apply(deltas, revision=revision), f"deploy {track.value} track")

    async def _route(
        self,
        release: ReleaseSpec,
        weights: Mapping[TrackName, int],
        revision: str,
        run: _Rollout | None = None,
    ) -> None:
        """Apply one routing Delta carrying both track weights."""
        spec = routing_spec(release, weights, self._labels)
        live = await self._read([release.routing_key])
        delta = self._differ.diff_resource(
            release.routing_key,
            spec,
            live.get(release.routing_key),
            excluded=frozenset(),
        )
        if delta.is_change:
            result = await self._executor.apply_one(delta, revision=revision)
            if result.outcome == SyncOutcome.FAILED:
                raise RolloutFailed(f"routing update failed: {result.error}", key=release.routing_key)
        for track, weight in weights.items():
            rollout_traffic_weight.labels(release=release.name, track=track.value).set(weight)
            if run is not None and track in run.status.tracks:
                run.status.tracks[track].traffic_weight = weight

    async def _delete_track(self, release: ReleaseSpec, track: TrackName, revision: str) -> None:
        keys = list(release.track_keys(track))
        live = await self._read(keys)
        deltas = []
        for key in keys:
            res = live.get(key)
            if res is None or not res.owned_by(self._differ.owner):
                continue
            deltas.append(
                Delta(
                    key=key,
                    kind=DeltaKind.DELETE,
                    from_spec=res.spec,
                    from_version=res.resource_version,
                )
            )
        self._check(await self._executor.apply(deltas, revision=revision), f"delete {track.value} track")

    @staticmethod
    def _check(results: list[SyncResult], what: str) -> None:
        failed = [r for r in results if r.outcome != SyncOutcome.APPLIED and r.error_class is not None]
        if failed:
            raise RolloutFailed(f"{what}: {failed[0].key}: {failed[0].error}", key=failed[0].key)

    def _emit(self, run: _Rollout, message: str) -> None:
        if self._events is None:
            return
        self._events.emit(
            SyncEvent(
                app=self._app,
                cycle_id=run.rollout_id,
                key=str(run.release.routing_key),
                delta_kind="rollout",
                outcome=run.status.phase.value,
                health=(run.status.tracks[run.new].health.value if run.new in run.status.tracks else None),
                message=message,
            )
        )


__all__ = ["ProgressiveDeliveryController", "RolloutFailed"]
