"""Structured delta computation between desired and live state.

The key universe of one diff is every desired key plus every observed live
key that carries this instance's ownership marker and is managed by the
drift loop.  Resources owned by the delivery controller are outside that
universe, and resources lacking the marker are never adopted or deleted.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field

from kubesync.models.resources import (
    MANAGER_DRIFT,
    MANAGER_LABEL,
    OWNER_LABEL,
    DesiredState,
    LiveResource,
    ResourceKey,
    ResourceSpec,
    with_labels,
)
from kubesync.models.sync import Delta, DeltaKind
from kubesync.observability.logging import get_logger
from kubesync.reconcile.diff import merge_declared, scoped_diff
from kubesync.reconcile.mergers import merger_for

_log = get_logger("differ")


@dataclass
class DiffResult:
    """Deltas for one cycle plus the keys the differ refused to touch."""

    deltas: list[Delta] = field(default_factory=list)
    ownership_violations: list[ResourceKey] = field(default_factory=list)
    unreadable: list[ResourceKey] = field(default_factory=list)

    @property
    def changes(self) -> list[Delta]:
        return [d for d in self.deltas if d.is_change]


class Differ:
    """Computes deterministic, field-scoped deltas for one application instance.

    Args:
        owner: Value of the ownership label identifying this instance.
    """

    def __init__(self, owner: str) -> None:
        self._owner = owner

    @property
    def owner(self) -> str:
        return self._owner

    def labels_for(self, manager: str = MANAGER_DRIFT) -> dict[str, str]:
        """Ownership labels stamped onto resources *manager* creates."""
        return {OWNER_LABEL: self._owner, MANAGER_LABEL: manager}

    def in_universe(self, live: LiveResource) -> bool:
        """True if *live* is owned by this instance and managed by the drift loop."""
        return live.owned_by(self._owner) and live.manager == MANAGER_DRIFT

    def diff(
        self,
        desired: DesiredState,
        live: Mapping[ResourceKey, LiveResource],
        unreadable: Collection[ResourceKey] = (),
    ) -> DiffResult:
        """Diff one desired snapshot against the cached live view.

        Returns deltas for every key in the universe, sorted by key, NOOPs
        included.  Identical inputs always yield an equal result.
        """
        result = DiffResult()
        unreadable_set = set(unreadable)
        autoscaled = set(desired.autoscale_policies)

        universe = set(desired.resources)
        universe.update(k for k, res in live.items() if self.in_universe(res))

        labels = self.labels_for(MANAGER_DRIFT)
        for key in sorted(universe):
            if key in unreadable_set:
                result.unreadable.append(key)
                continue

            declared = desired.resources.get(key)
            current = live.get(key)

            if declared is None:
                assert current is not None
                result.deltas.append(
                    Delta(
                        key=key,
                        kind=DeltaKind.DELETE,
                        from_spec=current.spec,
                        from_version=current.resource_version,
                    )
                )
                continue

            if current is not None and not self.in_universe(current):
                result.ownership_violations.append(key)
                _log.warning(
                    "ownership_violation",
                    resource=str(key),
                    owner=current.labels.get(OWNER_LABEL),
                    manager=current.labels.get(MANAGER_LABEL),
                )
                continue

            excluded = merger_for(key.kind).excluded_paths(autoscaled=key in autoscaled)
            result.deltas.append(
                self.diff_resource(key, with_labels(declared, labels), current, excluded=excluded)
            )

        for key in sorted(unreadable_set - universe):
            result.unreadable.append(key)
        result.unreadable.sort()
        return result

    def diff_resource(
        self,
        key: ResourceKey,
        declared: ResourceSpec,
        live: LiveResource | None,
        *,
        excluded: frozenset[str] | None = None,
    ) -> Delta:
        """Diff one resource's declared fields against its live object.

        *excluded* defaults to the kind's merger exclusions.  Callers that own
        a narrow field set (autoscaler, delivery routing) pass their own.
        """
        merger = merger_for(key.kind)
        scope = merger.excluded_paths() if excluded is None else excluded

        if live is None:
            return Delta(
                key=key,
                kind=DeltaKind.CREATE,
                to_spec=declared,
                declared=declared,
                excluded=scope,
            )

        changes = scoped_diff(live.spec, declared, excluded=scope, atomic=merger.atomic)
        if not changes:
            return Delta(
                key=key,
                kind=DeltaKind.NOOP,
                from_spec=live.spec,
                to_spec=live.spec,
                from_version=live.resource_version,
                declared=declared,
                excluded=scope,
            )

        return Delta(
            key=key,
            kind=DeltaKind.UPDATE,
            from_spec=live.spec,
            to_spec=merge_declared(live.spec, declared, excluded=scope, atomic=merger.atomic),
            changes=tuple(changes),
            from_version=live.resource_version,
            declared=declared,
            excluded=scope,
        )
