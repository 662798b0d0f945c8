"""Kind-specific health evaluators.

Each evaluator turns one live object into a :class:`HealthVerdict` from its
``spec`` and ``status`` alone; the assessor layers the grace window on top.
The registry is closed: kinds without an evaluator are healthy as soon as
they exist.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

from kubesync.models.health import HealthStatus, HealthVerdict
from kubesync.models.resources import LiveResource

_TERMINAL_WAIT_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)


def _healthy(message: str = "") -> HealthVerdict:
    return HealthVerdict(HealthStatus.HEALTHY, message)


def _progressing(message: str) -> HealthVerdict:
    return HealthVerdict(HealthStatus.PROGRESSING, message)


def _degraded(message: str, terminal: bool = True) -> HealthVerdict:
    return HealthVerdict(HealthStatus.DEGRADED, message, terminal=terminal)


def _int(value: object, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _body(live: LiveResource) -> Mapping[str, object]:
    body = live.spec.get("spec")
    return body if isinstance(body, dict) else {}


def _conditions(status: Mapping[str, object]) -> dict[str, Mapping[str, object]]:
    raw = status.get("conditions")
    if not isinstance(raw, list):
        return {}
    return {str(c.get("type")): c for c in raw if isinstance(c, dict)}


def _generation_pending(live: LiveResource) -> bool:
    observed = live.status.get("observedGeneration")
    return isinstance(observed, int) and observed < live.generation


class HealthEvaluator(ABC):
    """Capability interface: how healthy is one live object of this kind."""

    kind: str = ""

    @abstractmethod
    def evaluate(self, live: LiveResource) -> HealthVerdict: ...


class DefaultEvaluator(HealthEvaluator):
    def evaluate(self, live: LiveResource) -> HealthVerdict:
        return _healthy()


class DeploymentEvaluator(HealthEvaluator):
    """Healthy once every desired replica is updated and available."""

    kind = "Deployment"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        status = live.status
        conditions = _conditions(status)

        failure = conditions.get("ReplicaFailure")
        if failure is not None and failure.get("status") == "True":
            return _degraded(f"replica failure: {failure.get('message', '')}")
        progressing = conditions.get("Progressing")
        if progressing is not None and progressing.get("reason") == "ProgressDeadlineExceeded":
            return _degraded("progress deadline exceeded")

        if _generation_pending(live) or "observedGeneration" not in status:
            return _progressing("waiting for rollout to be observed")

        desired = _int(_body(live).get("replicas"), 1)
        updated = _int(status.get("updatedReplicas"))
        available = _int(status.get("availableReplicas"))
        total = _int(status.get("replicas"))
        if updated < desired:
            return _progressing(f"{updated} of {desired} replicas updated")
        if total > updated:
            return _progressing(f"{total - updated} old replicas pending termination")
        if available < desired:
            return _progressing(f"{available} of {desired} updated replicas available")
        return _healthy(f"{available} of {desired} replicas available")


class StatefulSetEvaluator(HealthEvaluator):
    kind = "StatefulSet"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        status = live.status
        if _generation_pending(live) or "observedGeneration" not in status:
            return _progressing("waiting for statefulset spec update to be observed")
        desired = _int(_body(live).get("replicas"), 1)
        ready = _int(status.get("readyReplicas"))
        if ready < desired:
            return _progressing(f"{ready} of {desired} pods ready")
        current, update = status.get("currentRevision"), status.get("updateRevision")
        if current and update and current != update:
            return _progressing(f"rolling update to revision {update} in progress")
        return _healthy(f"{ready} of {desired} pods ready")


class DaemonSetEvaluator(HealthEvaluator):
    kind = "DaemonSet"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        status = live.status
        if _generation_pending(live) or "observedGeneration" not in status:
            return _progressing("waiting for daemonset spec update to be observed")
        desired = _int(status.get("desiredNumberScheduled"))
        updated = _int(status.get("updatedNumberScheduled"))
        available = _int(status.get("numberAvailable"))
        if updated < desired:
            return _progressing(f"{updated} of {desired} pods updated")
        if available < desired:
            return _progressing(f"{available} of {desired} updated pods available")
        return _healthy()


class JobEvaluator(HealthEvaluator):
    kind = "Job"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        conditions = _conditions(live.status)
        failed = conditions.get("Failed")
        if failed is not None and failed.get("status") == "True":
            return _degraded(f"job failed: {failed.get('reason', '')}")
        complete = conditions.get("Complete")
        if complete is not None and complete.get("status") == "True":
            return _healthy("job completed")
        return _progressing("job running")


class PodEvaluator(HealthEvaluator):
    kind = "Pod"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        status = live.status
        statuses = status.get("containerStatuses")
        if isinstance(statuses, list):
            for cs in statuses:
                state = cs.get("state") if isinstance(cs, dict) else None
                waiting = state.get("waiting") if isinstance(state, dict) else None
                if isinstance(waiting, dict) and waiting.get("reason") in _TERMINAL_WAIT_REASONS:
                    return _degraded(f"container {cs.get('name')}: {waiting.get('reason')}")

        phase = status.get("phase")
        if phase == "Failed":
            return _degraded(str(status.get("reason") or "pod failed"))
        if phase == "Succeeded":
            return _healthy("pod completed")
        if phase == "Running":
            ready = _conditions(status).get("Ready")
            if ready is not None and ready.get("status") == "True":
                return _healthy()
            return _progressing("pod running but not ready")
        return _progressing(f"pod phase {phase or 'Pending'}")


class ServiceEvaluator(HealthEvaluator):
    kind = "Service"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        if _body(live).get("type") != "LoadBalancer":
            return _healthy()
        lb = live.status.get("loadBalancer")
        if isinstance(lb, dict) and lb.get("ingress"):
            return _healthy()
        return _progressing("waiting for load balancer address")


class IngressEvaluator(HealthEvaluator):
    kind = "Ingress"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        lb = live.status.get("loadBalancer")
        if isinstance(lb, dict) and lb.get("ingress"):
            return _healthy()
        return _progressing("waiting for ingress address")


class PersistentVolumeClaimEvaluator(HealthEvaluator):
    kind = "PersistentVolumeClaim"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        phase = live.status.get("phase")
        if phase == "Bound":
            return _healthy()
        if phase == "Lost":
            return _degraded("claim lost its volume")
        return _progressing(f"claim phase {phase or 'Pending'}")


class NamespaceEvaluator(HealthEvaluator):
    kind = "Namespace"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        if live.status.get("phase") == "Terminating":
            return _progressing("namespace terminating")
        return _healthy()


class TrafficSplitEvaluator(HealthEvaluator):
    """A routing resource is healthy when its backend weights cover all traffic."""

    kind = "TrafficSplit"

    def evaluate(self, live: LiveResource) -> HealthVerdict:
        backends = _body(live).get("backends")
        if not isinstance(backends, list) or not backends:
            return _degraded("no backends", terminal=False)
        weights = [_int(b.get("weight"), -1) if isinstance(b, dict) else -1 for b in backends]
        if any(w < 0 for w in weights):
            return _degraded("invalid backend weight", terminal=False)
        if sum(weights) != 100:
            return _degraded(f"backend weights sum to {sum(weights)}, not 100", terminal=False)
        return _healthy()


_DEFAULT = DefaultEvaluator()

_EVALUATORS: dict[str, HealthEvaluator] = {
    ev.kind: ev
    for ev in (
        DeploymentEvaluator(),
        StatefulSetEvaluator(),
        DaemonSetEvaluator(),
        JobEvaluator(),
        PodEvaluator(),
        ServiceEvaluator(),
        IngressEvaluator(),
        PersistentVolumeClaimEvaluator(),
        NamespaceEvaluator(),
        TrafficSplitEvaluator(),
    )
}


def evaluator_for(kind: str) -> HealthEvaluator:
    """Return the evaluator registered for *kind*, or the default one."""
    return _EVALUATORS.get(kind, _DEFAULT)


def evaluate(live: LiveResource) -> HealthVerdict:
    return evaluator_for(live.key.kind).evaluate(live)
