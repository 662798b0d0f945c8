"""In-process live store, static desired source and static metrics.

Used for local dry runs and by the test-suite.  The live store behaves like
the real API server where the controller can observe it: every successful
write bumps the resource version, writes with a stale version raise
``Conflict``, and failures can be injected per key.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime

from kubesync.errors import Conflict, KubeSyncError, NotFound
from kubesync.models.resources import DesiredState, LiveResource, ResourceKey, ResourceSpec
from kubesync.store.base import LiveFetch, OwnedListing

_SCALABLE_KINDS = frozenset({"Deployment", "StatefulSet", "ReplicaSet"})

WriteObserver = Callable[[str, ResourceKey, ResourceSpec | None], None]


def _body(spec: Mapping[str, object]) -> dict[str, object]:
    return {k: v for k, v in spec.items() if k != "metadata"}


class InMemoryLiveStore:
    """Dict-backed :class:`~kubesync.store.base.LiveStateStore`.

    Args:
        auto_ready: Report scalable workloads as fully rolled out as soon as
                    they are written, so local runs converge without a
                    scheduler.
    """

    def __init__(self, auto_ready: bool = True) -> None:
        self._objects: dict[ResourceKey, LiveResource] = {}
        self._version = 0
        self._auto_ready = auto_ready
        self._failures: dict[tuple[str, ResourceKey], list[KubeSyncError]] = {}
        self._kind_failures: dict[str, list[KubeSyncError]] = {}
        self._observers: list[WriteObserver] = []
        self.operations: list[tuple[str, ResourceKey]] = []

    # ------------------------------------------------------------------
    # LiveStateStore
    # ------------------------------------------------------------------

    async def fetch_live(self, keys: Iterable[ResourceKey]) -> LiveFetch:
        fetch = LiveFetch()
        for key in keys:
            try:
                resource = await self.get(key)
            except KubeSyncError as exc:
                fetch.errors[key] = exc
                continue
            if resource is not None:
                fetch.resources[key] = resource
        return fetch

    async def get(self, key: ResourceKey) -> LiveResource | None:
        await asyncio.sleep(0)
        self._maybe_fail("get", key)
        return self._objects.get(key)

    async def list_owned(self, selector: Mapping[str, str]) -> OwnedListing:
        await asyncio.sleep(0)
        self._maybe_fail("list", None)
        listing = OwnedListing()
        for kind, queue in self._kind_failures.items():
            if queue:
                listing.failed_kinds[kind] = queue.pop(0)
        listing.resources = [
            res
            for key, res in sorted(self._objects.items())
            if key.kind not in listing.failed_kinds
            and all(res.labels.get(k) == v for k, v in selector.items())
        ]
        return listing

    async def write(self, key: ResourceKey, spec: ResourceSpec, expected_version: str | None) -> LiveResource:
        await asyncio.sleep(0)
        self._maybe_fail("write", key)
        current = self._objects.get(key)
        current_version = current.resource_version if current is not None else None
        if current_version != expected_version:
            raise Conflict(
                f"{key}: expected version {expected_version!r}, live is {current_version!r}",
                key=key,
                current_version=current_version,
            )
        self.operations.append(("create" if current is None else "update", key))
        return self._store(key, spec, current)

    async def delete(self, key: ResourceKey, expected_version: str | None) -> None:
        await asyncio.sleep(0)
        self._maybe_fail("delete", key)
        current = self._objects.get(key)
        if current is None:
            raise NotFound(f"{key} does not exist", key=key)
        if expected_version is not None and current.resource_version != expected_version:
            raise Conflict(
                f"{key}: expected version {expected_version!r}, live is {current.resource_version!r}",
                key=key,
                current_version=current.resource_version,
            )
        self.operations.append(("delete", key))
        del self._objects[key]
        self._notify("delete", key, None)

    # ------------------------------------------------------------------
    # Test and local-run helpers (act as other actors on the cluster)
    # ------------------------------------------------------------------

    def put(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        status: Mapping[str, object] | None = None,
    ) -> LiveResource:
        """Create or replace an object out-of-band, bypassing version checks."""
        resource = self._store(key, spec, self._objects.get(key), status=status)
        return resource

    def mutate(self, key: ResourceKey, fn: Callable[[ResourceSpec], None]) -> LiveResource:
        """Apply *fn* to a copy of the live spec as an external actor would."""
        current = self._objects[key]
        spec = copy.deepcopy(current.spec)
        fn(spec)
        return self._store(key, spec, current, status=current.status)

    def set_status(self, key: ResourceKey, status: Mapping[str, object]) -> None:
        current = self._objects[key]
        self._objects[key] = LiveResource(
            key=key,
            spec=current.spec,
            resource_version=current.resource_version,
            status=dict(status),
            generation=current.generation,
            observed_at=datetime.now(tz=UTC),
        )

    def fail(self, op: str, key: ResourceKey | None, error: KubeSyncError, times: int = 1) -> None:
        """Make the next *times* calls of *op* (get/list/write/delete) on *key* raise *error*."""
        self._failures.setdefault((op, key), []).extend([error] * times)  # type: ignore[arg-type]

    def fail_listing(self, kind: str, error: KubeSyncError, times: int = 1) -> None:
        """Make the next *times* listings report *kind* as unlistable."""
        self._kind_failures.setdefault(kind, []).extend([error] * times)

    def observe(self, observer: WriteObserver) -> None:
        """Register a callback invoked after every write or delete."""
        self._observers.append(observer)

    def snapshot(self) -> dict[ResourceKey, LiveResource]:
        return dict(self._objects)

    def __contains__(self, key: object) -> bool:
        return key in self._objects

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _maybe_fail(self, op: str, key: ResourceKey | None) -> None:
        queue = self._failures.get((op, key))  # type: ignore[arg-type]
        if queue:
            raise queue.pop(0)

    def _store(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        current: LiveResource | None,
        status: Mapping[str, object] | None = None,
    ) -> LiveResource:
        self._version += 1
        spec = copy.deepcopy(spec)
        generation = 1
        if current is not None:
            generation = current.generation
            if _body(current.spec) != _body(spec):
                generation += 1
        if status is None:
            status = self._default_status(key, spec, generation, current)
        resource = LiveResource(
            key=key,
            spec=spec,
            resource_version=str(self._version),
            status=dict(status),
            generation=generation,
            observed_at=datetime.now(tz=UTC),
        )
        self._objects[key] = resource
        self._notify("write", key, spec)
        return resource

    def _default_status(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        generation: int,
        current: LiveResource | None,
    ) -> dict[str, object]:
        if not self._auto_ready or key.kind not in _SCALABLE_KINDS:
            return dict(current.status) if current is not None else {}
        body = spec.get("spec")
        replicas = body.get("replicas", 1) if isinstance(body, dict) else 1
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
        }

    def _notify(self, op: str, key: ResourceKey, spec: ResourceSpec | None) -> None:
        for observer in self._observers:
            observer(op, key, spec)


class StaticDesiredSource:
    """:class:`~kubesync.store.base.DesiredStateSource` over a fixed snapshot."""

    def __init__(self, desired: DesiredState) -> None:
        self._desired = desired

    def set(self, desired: DesiredState) -> None:
        self._desired = desired

    async def fetch_desired(self) -> DesiredState:
        return self._desired


class StaticMetricsSource:
    """:class:`~kubesync.store.base.MetricsSource` returning preset samples."""

    def __init__(self, samples: Mapping[ResourceKey, Mapping[str, float]] | None = None) -> None:
        self._samples: dict[ResourceKey, dict[str, float]] = {k: dict(v) for k, v in (samples or {}).items()}
        self.queries = 0

    def set(self, key: ResourceKey, samples: Mapping[str, float]) -> None:
        self._samples[key] = dict(samples)

    async def utilization(self, key: ResourceKey, metrics: Iterable[str]) -> dict[str, float]:
        self.queries += 1
        current = self._samples.get(key, {})
        return {m: current[m] for m in metrics if m in current}
