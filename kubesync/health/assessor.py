"""Per-resource and aggregate health assessment.

The assessor remembers when each resource entered ``PROGRESSING``.  A
resource still progressing once its grace window has elapsed is reported
``DEGRADED`` (a health timeout); terminal signals such as crash loops are
``DEGRADED`` immediately.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping

from kubesync.errors import HealthTimeout
from kubesync.health.evaluators import evaluate
from kubesync.models.health import HealthStatus, HealthVerdict
from kubesync.models.resources import LiveResource, ResourceKey
from kubesync.observability.logging import get_logger

_log = get_logger("health_assessor")


def aggregate_health(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Conjunction of resource health.

    Any DEGRADED makes the aggregate DEGRADED; otherwise any PROGRESSING or
    UNKNOWN makes it PROGRESSING; otherwise (including no resources) HEALTHY.
    """
    seen = set(statuses)
    if HealthStatus.DEGRADED in seen:
        return HealthStatus.DEGRADED
    if HealthStatus.PROGRESSING in seen or HealthStatus.UNKNOWN in seen:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


class HealthAssessor:
    """Applies the grace window to evaluator verdicts.

    Args:
        grace_seconds: How long a resource may stay PROGRESSING.
        clock:         Monotonic clock, injected for tests.
    """

    def __init__(self, grace_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._grace = grace_seconds
        self._clock = clock
        self._progressing_since: dict[ResourceKey, float] = {}

    def restart(self, key: ResourceKey) -> None:
        """Start a fresh grace window for *key* (called after a write)."""
        self._progressing_since.pop(key, None)

    def assess(self, key: ResourceKey, live: LiveResource | None) -> HealthVerdict:
        if live is None:
            verdict = HealthVerdict(HealthStatus.PROGRESSING, "not yet observed in the live cluster")
        else:
            verdict = evaluate(live)

        if verdict.status != HealthStatus.PROGRESSING:
            self._progressing_since.pop(key, None)
            return verdict

        now = self._clock()
        since = self._progressing_since.setdefault(key, now)
        if now - since > self._grace:
            timeout = HealthTimeout(
                f"{key} did not become healthy within {self._grace:.0f}s: {verdict.message}",
                key=key,
            )
            _log.warning("health_timeout", resource=str(key), grace_s=self._grace, detail=verdict.message)
            return HealthVerdict(HealthStatus.DEGRADED, str(timeout))
        return verdict

    def assess_all(
        self,
        keys: Iterable[ResourceKey],
        live: Mapping[ResourceKey, LiveResource],
    ) -> dict[ResourceKey, HealthVerdict]:
        return {key: self.assess(key, live.get(key)) for key in sorted(keys)}

    def forget(self, keys: Iterable[ResourceKey]) -> None:
        for key in keys:
            self._progressing_since.pop(key, None)
