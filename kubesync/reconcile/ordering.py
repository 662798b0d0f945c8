"""Dependency-tier ordering of deltas.

Creates and updates ascend the tiers (cluster scope, config, workloads,
network); deletes run afterwards and descend them.  Within a tier the
differ's key order is kept, so apply order is reproducible.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import IntEnum

from kubesync.models.resources import ResourceKey
from kubesync.models.sync import Delta, DeltaKind


class Tier(IntEnum):
    CLUSTER = 0
    CONFIG = 1
    WORKLOAD = 2
    NETWORK = 3


_TIERS: dict[str, Tier] = {
    "Namespace": Tier.CLUSTER,
    "CustomResourceDefinition": Tier.CLUSTER,
    "ClusterRole": Tier.CLUSTER,
    "ClusterRoleBinding": Tier.CLUSTER,
    "PriorityClass": Tier.CLUSTER,
    "StorageClass": Tier.CLUSTER,
    "ConfigMap": Tier.CONFIG,
    "Secret": Tier.CONFIG,
    "ServiceAccount": Tier.CONFIG,
    "PersistentVolumeClaim": Tier.CONFIG,
    "Role": Tier.CONFIG,
    "RoleBinding": Tier.CONFIG,
    "Service": Tier.NETWORK,
    "Ingress": Tier.NETWORK,
    "NetworkPolicy": Tier.NETWORK,
    "TrafficSplit": Tier.NETWORK,
}


def tier_of(key: ResourceKey) -> Tier:
    """Return the dependency tier of *key*; unknown kinds are workloads."""
    return _TIERS.get(key.kind, Tier.WORKLOAD)


def order_deltas(deltas: Iterable[Delta]) -> list[Delta]:
    """Return the changing deltas in apply order; NOOPs are dropped."""
    applies: list[Delta] = []
    deletes: list[Delta] = []
    for delta in deltas:
        if delta.kind == DeltaKind.DELETE:
            deletes.append(delta)
        elif delta.is_change:
            applies.append(delta)
    applies.sort(key=lambda d: (tier_of(d.key), d.key))
    deletes.sort(key=lambda d: (-tier_of(d.key), d.key))
    return applies + deletes
