"""Kind-specific merge semantics for the differ.

Each :class:`SpecMerger` names the paths the drift loop must leave alone for
its kind (``excluded``) and the paths that are compared as a single value
(``atomic``).  The registry is a closed mapping keyed by kind; unknown kinds
get the default merger, which compares every declared field.
"""

from __future__ import annotations

from dataclasses import dataclass

_REPLICAS = "spec.replicas"


@dataclass(frozen=True)
class SpecMerger:
    """Merge semantics for one resource kind.

    Attributes:
        excluded:            Paths never compared (platform-assigned or immutable).
        atomic:              Paths compared wholesale.
        autoscaled_excluded: Extra paths excluded when an autoscale policy
                             targets the resource.
    """

    excluded: frozenset[str] = frozenset()
    atomic: frozenset[str] = frozenset()
    autoscaled_excluded: frozenset[str] = frozenset()

    def excluded_paths(self, autoscaled: bool = False) -> frozenset[str]:
        if autoscaled:
            return self.excluded | self.autoscaled_excluded
        return self.excluded


_DEFAULT = SpecMerger()

_SCALABLE = SpecMerger(autoscaled_excluded=frozenset({_REPLICAS}))

_CONFIG = SpecMerger(atomic=frozenset({"data", "binaryData", "stringData"}))

_MERGERS: dict[str, SpecMerger] = {
    "Deployment": _SCALABLE,
    "StatefulSet": _SCALABLE,
    "ReplicaSet": _SCALABLE,
    "ConfigMap": _CONFIG,
    "Secret": _CONFIG,
    "Service": SpecMerger(
        excluded=frozenset({"spec.clusterIP", "spec.clusterIPs", "spec.healthCheckNodePort"}),
    ),
    "PersistentVolumeClaim": SpecMerger(excluded=frozenset({"spec.volumeName"})),
    "TrafficSplit": SpecMerger(atomic=frozenset({"spec.backends"})),
}


def merger_for(kind: str) -> SpecMerger:
    """Return the merger registered for *kind*, or the default one."""
    return _MERGERS.get(kind, _DEFAULT)
