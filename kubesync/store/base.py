"""State store interfaces.

Live cluster state is only reached through :class:`LiveStateStore`; desired
state only through :class:`DesiredStateSource`.  Implementations translate
their transport errors onto :mod:`kubesync.errors`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from kubesync.errors import KubeSyncError
from kubesync.models.resources import DesiredState, LiveResource, ResourceKey, ResourceSpec


@dataclass
class LiveFetch:
    """Result of a partial live read.

    Keys that do not exist are simply absent from both mappings; keys that
    could not be read are in ``errors``.
    """

    resources: dict[ResourceKey, LiveResource] = field(default_factory=dict)
    errors: dict[ResourceKey, KubeSyncError] = field(default_factory=dict)


@dataclass
class OwnedListing:
    """Result of a label-selector listing across kinds.

    Kinds that could not be listed are in ``failed_kinds``; nothing is known
    about their live objects.
    """

    resources: list[LiveResource] = field(default_factory=list)
    failed_kinds: dict[str, KubeSyncError] = field(default_factory=dict)


@runtime_checkable
class DesiredStateSource(Protocol):
    """Pull interface to the versioned source of truth."""

    async def fetch_desired(self) -> DesiredState:
        """Return the current snapshot; raises ``SourceUnavailable``."""
        ...


@runtime_checkable
class LiveStateStore(Protocol):
    """CRUD and label-selector listing over the live cluster, with version tokens."""

    async def fetch_live(self, keys: Iterable[ResourceKey]) -> LiveFetch: ...

    async def get(self, key: ResourceKey) -> LiveResource | None:
        """Read one object; raises ``StoreUnavailable`` if it cannot be read."""
        ...

    async def list_owned(self, selector: Mapping[str, str]) -> OwnedListing:
        """List every object whose labels contain *selector*.

        A kind that cannot be listed is reported in ``failed_kinds``; the
        call only raises when the store as a whole is unreachable.
        """
        ...

    async def write(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        expected_version: str | None,
    ) -> LiveResource:
        """Create (``expected_version is None``) or replace an object.

        Raises ``Conflict`` when the live version does not match.
        """
        ...

    async def delete(self, key: ResourceKey, expected_version: str | None) -> None: ...


@runtime_checkable
class MetricsSource(Protocol):
    """Per-resource utilization query, percent of request."""

    async def utilization(self, key: ResourceKey, metrics: Iterable[str]) -> dict[str, float]: ...
