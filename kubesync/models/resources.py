"""Resource identity, desired-state snapshots and cached live views."""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kubesync.models.autoscale import AutoscalePolicy
    from kubesync.models.delivery import ReleaseSpec

# A kind-specific declarative payload: the object body without apiVersion,
# kind and status.  ``metadata`` is reduced to labels and annotations.
ResourceSpec = dict[str, object]

OWNER_LABEL = "app.kubesync.io/instance"
MANAGER_LABEL = "app.kubesync.io/managed-by"

MANAGER_DRIFT = "drift"
MANAGER_DELIVERY = "delivery"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Cluster-unique identity of a resource.

    Field order gives the lexicographic (kind, namespace, name) ordering the
    differ and executor rely on.  Cluster-scoped resources use ``""`` as
    namespace.
    """

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        """Parse ``Kind/namespace/name``; namespace may be empty."""
        parts = value.split("/")
        if len(parts) != 3 or not parts[0] or not parts[2]:
            raise ValueError(f"resource must be in Kind/namespace/name format, got: {value!r}")
        return cls(kind=parts[0], namespace=parts[1], name=parts[2])


def spec_labels(spec: Mapping[str, object]) -> dict[str, str]:
    """Return ``metadata.labels`` of a spec, or an empty dict."""
    metadata = spec.get("metadata")
    if not isinstance(metadata, dict):
        return {}
    labels = metadata.get("labels")
    if not isinstance(labels, dict):
        return {}
    return {str(k): str(v) for k, v in labels.items()}


def with_labels(spec: Mapping[str, object], labels: Mapping[str, str]) -> ResourceSpec:
    """Return a deep copy of *spec* with *labels* merged into ``metadata.labels``."""
    out = copy.deepcopy(dict(spec))
    metadata = out.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        out["metadata"] = metadata
    existing = metadata.get("labels")
    merged = dict(existing) if isinstance(existing, dict) else {}
    merged.update(labels)
    metadata["labels"] = merged
    return out


def spec_hash(spec: Mapping[str, object]) -> str:
    """Stable content hash of a spec, used to detect desired-state changes."""
    encoded = json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


@dataclass(frozen=True)
class FieldChange:
    """A single field change between a live and a desired spec.

    Uses JSONPath-style field paths (e.g., spec.template.spec.containers[0].image).
    Values are JSON-serialised; ``None`` means the field is absent.
    """

    path: str
    old_value: str | None
    new_value: str | None


@dataclass(frozen=True)
class LiveResource:
    """Cached, timestamped view of a platform-owned resource.

    The controller never holds this across cycles; ``resource_version`` is
    the optimistic-concurrency token every write is conditioned on.
    """

    key: ResourceKey
    spec: ResourceSpec
    resource_version: str
    status: dict[str, object] = field(default_factory=dict)
    generation: int = 0
    observed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def labels(self) -> dict[str, str]:
        return spec_labels(self.spec)

    def owned_by(self, owner: str) -> bool:
        """True if this resource carries the ownership marker for *owner*."""
        return self.labels.get(OWNER_LABEL) == owner

    @property
    def manager(self) -> str:
        return self.labels.get(MANAGER_LABEL, MANAGER_DRIFT)


class DesiredState:
    """Immutable, versioned snapshot of the declared configuration.

    Produced by a :class:`~kubesync.store.base.DesiredStateSource`; the core
    only reads it.  All mappings are read-only proxies over private deep
    copies so that one reconciliation cycle always compares against a single
    revision.
    """

    __slots__ = ("_autoscale", "_releases", "_resources", "_revision")

    def __init__(
        self,
        revision: str,
        resources: Mapping[ResourceKey, ResourceSpec],
        autoscale_policies: Iterable[AutoscalePolicy] = (),
        releases: Iterable[ReleaseSpec] = (),
    ) -> None:
        self._revision = revision
        self._resources = MappingProxyType({k: copy.deepcopy(dict(v)) for k, v in sorted(resources.items())})
        self._autoscale = MappingProxyType({p.target: p for p in autoscale_policies})
        self._releases = MappingProxyType({r.name: r for r in releases})

    @property
    def revision(self) -> str:
        return self._revision

    @property
    def resources(self) -> Mapping[ResourceKey, ResourceSpec]:
        return self._resources

    @property
    def autoscale_policies(self) -> Mapping[ResourceKey, AutoscalePolicy]:
        return self._autoscale

    @property
    def releases(self) -> Mapping[str, ReleaseSpec]:
        return self._releases

    def spec_for(self, key: ResourceKey) -> ResourceSpec | None:
        """Return a private copy of the declared spec for *key*."""
        spec = self._resources.get(key)
        return copy.deepcopy(spec) if spec is not None else None

    def __repr__(self) -> str:
        return f"DesiredState(revision={self._revision!r}, resources={len(self._resources)})"
