"""Autoscale decision engine.

On every tick, for each declared policy, the engine reads the target's
current replica count and utilization samples and computes::

    desired = max over metrics of ceil(current * observed / target)

clamped to ``[min_replicas, max_replicas]``.  Two damping rules keep noisy
samples from flapping the workload:

- no decision inside the cool-down window after the last applied action
  (either direction), so oscillating utilization yields at most one
  decision per window;
- no decision unless ``|desired - current| / current >= min_change``.

Decisions are submitted through the shared executor as UPDATE deltas that
declare only ``spec.replicas``.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import time
from collections.abc import Callable, Mapping

from kubesync.errors import KubeSyncError
from kubesync.models.autoscale import AutoscaleDecision, AutoscalePolicy
from kubesync.models.resources import LiveResource, ResourceKey
from kubesync.models.sync import SyncOutcome
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import autoscale_decisions_total, autoscale_suppressed_total
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.executor import SyncExecutor
from kubesync.store.base import LiveStateStore, MetricsSource

_log = get_logger("autoscaler")

_RATIO_PRECISION = 6


def current_replicas(live: LiveResource) -> int:
    """Replica count declared on a live workload; the platform default is 1."""
    body = live.spec.get("spec")
    replicas = body.get("replicas") if isinstance(body, dict) else None
    if isinstance(replicas, int) and not isinstance(replicas, bool):
        return replicas
    return 1


class AutoscaleEngine:
    """Periodic replica-count recommender for autoscaled workloads.

    Args:
        store:          Live cluster store.
        metrics:        Utilization source (percent of request).
        differ:         Builds the replica-only delta.
        executor:       The shared apply path.
        interval:       Seconds between evaluation ticks.
        cooldown:       Seconds after an applied action during which no new
                        decision is emitted for the same target.
        min_change:     Minimum relative replica change worth acting on.
        call_timeout:   Timeout for every store and metrics call.
    """

    def __init__(
        self,
        store: LiveStateStore,
        metrics: MetricsSource,
        differ: Differ,
        executor: SyncExecutor,
        *,
        interval: float = 15.0,
        cooldown: float = 300.0,
        min_change: float = 0.1,
        call_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._differ = differ
        self._executor = executor
        self._interval = interval
        self._cooldown = cooldown
        self._min_change = min_change
        self._call_timeout = call_timeout
        self._clock = clock

        self._policies: dict[ResourceKey, AutoscalePolicy] = {}
        self._last_action: dict[ResourceKey, float] = {}
        self._last_decision: dict[ResourceKey, AutoscaleDecision] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def policies(self) -> Mapping[ResourceKey, AutoscalePolicy]:
        return dict(self._policies)

    def set_policies(self, policies: Mapping[ResourceKey, AutoscalePolicy]) -> None:
        """Replace the policy set; state for dropped targets is forgotten."""
        self._policies = dict(policies)
        for key in set(self._last_action) - set(self._policies):
            self._last_action.pop(key, None)
            self._last_decision.pop(key, None)

    def last_decision(self, key: ResourceKey) -> AutoscaleDecision | None:
        return self._last_decision.get(key)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        policy: AutoscalePolicy,
        current: int,
        utilization: Mapping[str, float],
        now: float,
    ) -> AutoscaleDecision | None:
        """Compute the damped decision for one target, or None to hold."""
        key = policy.target
        observed = {
            m: utilization[m] for m in policy.metric_targets if m in utilization and math.isfinite(utilization[m])
        }
        if not observed:
            _log.debug("autoscale_no_samples", target=str(key))
            return None

        base = max(current, 0)
        proposals = {
            metric: math.ceil(round(base * value / policy.metric_targets[metric], _RATIO_PRECISION))
            for metric, value in observed.items()
        }
        driver = max(sorted(proposals), key=lambda m: proposals[m])
        desired = min(max(proposals[driver], policy.min_replicas), policy.max_replicas)

        if desired == current:
            return None

        last = self._last_action.get(key)
        if last is not None and now - last < self._cooldown:
            autoscale_suppressed_total.labels(target=str(key), reason="cooldown").inc()
            _log.debug(
                "autoscale_suppressed",
                target=str(key),
                reason="cooldown",
                current=current,
                desired=desired,
                remaining_s=round(self._cooldown - (now - last), 1),
            )
            return None

        change = math.inf if current <= 0 else abs(desired - current) / current
        if change < self._min_change:
            autoscale_suppressed_total.labels(target=str(key), reason="min_change").inc()
            _log.debug("autoscale_suppressed", target=str(key), reason="min_change", current=current, desired=desired)
            return None

        reason = (
            f"{driver} at {observed[driver]:.0f}% against a {policy.metric_targets[driver]:.0f}% target"
            if proposals[driver] == desired
            else f"{driver} wants {proposals[driver]} replicas, clamped to [{policy.min_replicas}, {policy.max_replicas}]"
        )
        return AutoscaleDecision(
            resource_key=key,
            current_replicas=current,
            desired_replicas=desired,
            reason=reason,
            decided_at=now,
        )

    def record(self, decision: AutoscaleDecision) -> None:
        """Mark *decision* as applied; starts the target's cool-down window."""
        self._last_action[decision.resource_key] = decision.decided_at
        self._last_decision[decision.resource_key] = decision
        autoscale_decisions_total.labels(
            target=str(decision.resource_key), direction=decision.direction.value
        ).inc()

    # ------------------------------------------------------------------
    # Evaluation tick
    # ------------------------------------------------------------------

    async def evaluate_once(self) -> list[AutoscaleDecision]:
        """Evaluate every policy once; returns the decisions that were applied."""
        applied: list[AutoscaleDecision] = []
        for key, policy in sorted(self._policies.items()):
            try:
                decision = await self._evaluate(policy)
            except (KubeSyncError, TimeoutError) as exc:
                _log.warning("autoscale_evaluate_failed", target=str(key), error=str(exc))
                continue
            if decision is not None:
                applied.append(decision)
        return applied

    async def _evaluate(self, policy: AutoscalePolicy) -> AutoscaleDecision | None:
        key = policy.target
        async with asyncio.timeout(self._call_timeout):
            live = await self._store.get(key)
        if live is None or not live.owned_by(self._differ.owner):
            _log.debug("autoscale_target_unavailable", target=str(key), exists=live is not None)
            return None

        async with asyncio.timeout(self._call_timeout):
            utilization = await self._metrics.utilization(key, list(policy.metric_targets))

        current = current_replicas(live)
        decision = self.decide(policy, current, utilization, self._clock())
        if decision is None:
            return None

        delta = self._differ.diff_resource(
            key,
            {"spec": {"replicas": decision.desired_replicas}},
            live,
            excluded=frozenset(),
        )
        result = await self._executor.apply_one(delta, revision=f"autoscale:{decision.desired_replicas}")
        if result.outcome != SyncOutcome.APPLIED:
            _log.warning(
                "autoscale_apply_failed",
                target=str(key),
                outcome=result.outcome.value,
                error=result.error,
            )
            return None

        self.record(decision)
        _log.info(
            "autoscale_decision_applied",
            target=str(key),
            current=decision.current_replicas,
            desired=decision.desired_replicas,
            reason=decision.reason,
        )
        return decision

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="autoscaler")
        _log.info("autoscaler_started", interval_s=self._interval, cooldown_s=self._cooldown)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.evaluate_once()
            except Exception as exc:
                _log.error("autoscale_tick_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.sleep(self._interval)
