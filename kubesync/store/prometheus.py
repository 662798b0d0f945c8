"""Utilization samples from a Prometheus server.

Each metric name maps to a PromQL template that yields the average
utilization of the workload's pods as a percentage of their requests.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

import httpx

from kubesync.errors import StoreUnavailable
from kubesync.models.resources import ResourceKey
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import store_errors_total

_log = get_logger("store.prometheus")

_POD_MATCH = 'namespace="{namespace}",pod=~"{name}-.*"'

QUERIES: dict[str, str] = {
    "cpu": (
        "100 * sum(rate(container_cpu_usage_seconds_total{" + _POD_MATCH + ',container!=""}[2m]))'
        ' / sum(kube_pod_container_resource_requests{' + _POD_MATCH + ',resource="cpu"})'
    ),
    "memory": (
        "100 * sum(container_memory_working_set_bytes{" + _POD_MATCH + ',container!=""})'
        ' / sum(kube_pod_container_resource_requests{' + _POD_MATCH + ',resource="memory"})'
    ),
}


class PrometheusMetricsSource:
    """:class:`~kubesync.store.base.MetricsSource` backed by the Prometheus HTTP API."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        if not base_url:
            raise ValueError("prometheus base_url must not be empty")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def utilization(self, key: ResourceKey, metrics: Iterable[str]) -> dict[str, float]:
        """Return one sample per known metric; metrics without data are omitted."""
        samples: dict[str, float] = {}
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
            for metric in metrics:
                template = QUERIES.get(metric)
                if template is None:
                    _log.debug("unknown_metric", metric=metric, target=str(key))
                    continue
                query = template.format(namespace=key.namespace, name=key.name)
                value = await self._query(client, query)
                if value is not None:
                    samples[metric] = value
        return samples

    async def _query(self, client: httpx.AsyncClient, query: str) -> float | None:
        try:
            response = await client.get("/api/v1/query", params={"query": query})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            store_errors_total.labels(store="prometheus", error_class="store_unavailable").inc()
            raise StoreUnavailable(f"prometheus query failed: {exc}") from exc
        except ValueError as exc:
            raise StoreUnavailable(f"prometheus returned invalid JSON: {exc}") from exc

        if body.get("status") != "success":
            raise StoreUnavailable(f"prometheus query error: {body.get('error', 'unknown')}")
        result = body.get("data", {}).get("result", [])
        if not result:
            return None
        try:
            value = float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError):
            return None
        # NaN when the request sum is zero
        return value if math.isfinite(value) else None
