"""Desired-state source pulling a rendered document over HTTP.

The source of truth (a Git server's render endpoint, an artifact bucket, a
config service) serves one JSON document per revision::

    {
      "revision": "3f2c9e1",
      "resources": [{"kind": "ConfigMap", "namespace": "web", "name": "cfg", "spec": {...}}],
      "autoscale": [{"target": "Deployment/web/api", "min_replicas": 2, ...}],
      "releases": [{"name": "web", "namespace": "web", "version": "1.4.0", ...}]
    }

The document is validated with pydantic before it becomes a
:class:`~kubesync.models.resources.DesiredState`; any transport or decode
failure surfaces as ``SourceUnavailable``.
"""

from __future__ import annotations

from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from kubesync.errors import SourceUnavailable
from kubesync.models.autoscale import AutoscalePolicy
from kubesync.models.delivery import ReleaseSpec, Strategy
from kubesync.models.resources import DesiredState, ResourceKey
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import store_errors_total

_log = get_logger("store.http_source")


# ---------------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------------


class ResourceEntry(BaseModel):
    kind: str = Field(..., min_length=1)
    namespace: str = ""
    name: str = Field(..., min_length=1)
    spec: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)


class AutoscaleEntry(BaseModel):
    target: str = Field(..., description="Workload in ``Kind/namespace/name`` format.")
    min_replicas: int = Field(..., ge=1)
    max_replicas: int = Field(..., ge=1)
    metric_targets: dict[str, float]

    @field_validator("target")
    @classmethod
    def validate_target(cls, value: str) -> str:
        ResourceKey.parse(value)
        return value

    def to_policy(self) -> AutoscalePolicy:
        return AutoscalePolicy(
            target=ResourceKey.parse(self.target),
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
            metric_targets=dict(self.metric_targets),
        )


class ReleaseEntry(BaseModel):
    """One release; ``bake_period_s`` is required, ``canary_steps`` too for canary."""

    name: str = Field(..., min_length=1)
    namespace: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    template: dict[str, Any]
    bake_period_s: float = Field(..., ge=0)
    strategy: Literal["blue_green", "canary"] = "blue_green"
    replicas: int = Field(default=1, ge=0)
    port: int = 80
    target_port: int = 8080
    canary_steps: list[int] = Field(default_factory=list)
    step_bake_s: float = Field(default=0.0, ge=0)
    health_timeout_s: float = Field(default=300.0, gt=0)
    auto_promote: bool = True

    def to_release(self) -> ReleaseSpec:
        return ReleaseSpec(
            name=self.name,
            namespace=self.namespace,
            version=self.version,
            template=dict(self.template),
            bake_period_s=self.bake_period_s,
            strategy=Strategy(self.strategy),
            replicas=self.replicas,
            port=self.port,
            target_port=self.target_port,
            canary_steps=tuple(self.canary_steps),
            step_bake_s=self.step_bake_s,
            health_timeout_s=self.health_timeout_s,
            auto_promote=self.auto_promote,
        )


class DesiredDocument(BaseModel):
    revision: str = Field(..., min_length=1)
    resources: list[ResourceEntry] = Field(default_factory=list)
    autoscale: list[AutoscaleEntry] = Field(default_factory=list)
    releases: list[ReleaseEntry] = Field(default_factory=list)

    def to_desired_state(self) -> DesiredState:
        """Build the immutable snapshot; raises ValueError on duplicate keys."""
        resources: dict[ResourceKey, dict[str, Any]] = {}
        for entry in self.resources:
            if entry.key in resources:
                raise ValueError(f"duplicate resource {entry.key}")
            resources[entry.key] = entry.spec
        names = [r.name for r in self.releases]
        if len(names) != len(set(names)):
            raise ValueError("duplicate release names")
        return DesiredState(
            revision=self.revision,
            resources=resources,
            autoscale_policies=[a.to_policy() for a in self.autoscale],
            releases=[r.to_release() for r in self.releases],
        )


def parse_document(payload: Any) -> DesiredState:
    """Validate a decoded JSON document; raises ``SourceUnavailable`` when malformed."""
    try:
        return DesiredDocument.model_validate(payload).to_desired_state()
    except (ValidationError, ValueError) as exc:
        raise SourceUnavailable(f"invalid desired-state document: {exc}") from exc


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class HTTPDesiredSource:
    """:class:`~kubesync.store.base.DesiredStateSource` over an HTTP endpoint.

    Args:
        url:     Document URL.
        token:   Optional bearer token.
        timeout: Request timeout in seconds.
    """

    def __init__(self, url: str, token: str = "", timeout: float = 10.0) -> None:
        if not url:
            raise ValueError("desired-state source url must not be empty")
        self._url = url
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._last_revision: str | None = None

    async def fetch_desired(self) -> DesiredState:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._url, headers=self._headers)
        except httpx.TimeoutException as exc:
            store_errors_total.labels(store="source", error_class="timeout").inc()
            raise SourceUnavailable(f"desired-state source timed out: {self._url}") from exc
        except httpx.HTTPError as exc:
            store_errors_total.labels(store="source", error_class="source_unavailable").inc()
            raise SourceUnavailable(f"desired-state source unreachable: {exc}") from exc

        if response.status_code != 200:
            store_errors_total.labels(store="source", error_class="source_unavailable").inc()
            raise SourceUnavailable(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as exc:
            store_errors_total.labels(store="source", error_class="source_unavailable").inc()
            raise SourceUnavailable(f"desired-state source returned invalid JSON: {exc}") from exc

        desired = parse_document(payload)
        if desired.revision != self._last_revision:
            _log.info(
                "desired_revision_changed",
                previous=self._last_revision,
                revision=desired.revision,
                resources=len(desired.resources),
                releases=len(desired.releases),
            )
            self._last_revision = desired.revision
        return desired
