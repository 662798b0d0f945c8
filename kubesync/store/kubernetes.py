"""Live state store backed by the Kubernetes API (kubernetes-asyncio).

Objects are read with ``_preload_content=False`` so the controller works on
the API server's camelCase JSON directly rather than on the generated model
classes.  Each supported kind maps onto the typed API group and method
suffix that serves it; TrafficSplit goes through ``CustomObjectsApi``.

The ``spec`` of a :class:`LiveResource` is the object body without
``apiVersion``, ``kind`` and ``status``, with ``metadata`` reduced to labels
and annotations.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client.exceptions import ApiException

from kubesync.errors import (
    Conflict,
    KubeSyncError,
    NotFound,
    PermissionDenied,
    RateLimited,
    StoreUnavailable,
    ValidationRejected,
)
from kubesync.models.resources import LiveResource, ResourceKey, ResourceSpec
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import store_errors_total
from kubesync.store.base import LiveFetch, OwnedListing

_log = get_logger("store.kubernetes")

_T = TypeVar("_T")

_READ_CONCURRENCY = 8
_STRIPPED_TOP_LEVEL = ("apiVersion", "kind", "status")
_KEPT_METADATA = ("labels", "annotations")


@dataclass(frozen=True)
class _KindApi:
    """Where one kind lives in the API: typed group + method suffix, or a CRD."""

    api_version: str
    api: str = ""
    suffix: str = ""
    namespaced: bool = True
    group: str = ""
    plural: str = ""

    @property
    def custom(self) -> bool:
        return bool(self.plural)


_KINDS: dict[str, _KindApi] = {
    "Namespace": _KindApi("v1", "core", "namespace", namespaced=False),
    "ConfigMap": _KindApi("v1", "core", "config_map"),
    "Secret": _KindApi("v1", "core", "secret"),
    "ServiceAccount": _KindApi("v1", "core", "service_account"),
    "PersistentVolumeClaim": _KindApi("v1", "core", "persistent_volume_claim"),
    "Service": _KindApi("v1", "core", "service"),
    "Deployment": _KindApi("apps/v1", "apps", "deployment"),
    "StatefulSet": _KindApi("apps/v1", "apps", "stateful_set"),
    "DaemonSet": _KindApi("apps/v1", "apps", "daemon_set"),
    "Job": _KindApi("batch/v1", "batch", "job"),
    "CronJob": _KindApi("batch/v1", "batch", "cron_job"),
    "Ingress": _KindApi("networking.k8s.io/v1", "networking", "ingress"),
    "NetworkPolicy": _KindApi("networking.k8s.io/v1", "networking", "network_policy"),
    "HorizontalPodAutoscaler": _KindApi("autoscaling/v2", "autoscaling", "horizontal_pod_autoscaler"),
    "PodDisruptionBudget": _KindApi("policy/v1", "policy", "pod_disruption_budget"),
    "TrafficSplit": _KindApi(
        "split.smi-spec.io/v1alpha2",
        group="split.smi-spec.io",
        plural="trafficsplits",
    ),
}


def supported_kinds() -> list[str]:
    return sorted(_KINDS)


def to_live(key: ResourceKey, raw: Mapping[str, Any]) -> LiveResource:
    """Convert a raw API object into a :class:`LiveResource`."""
    metadata = raw.get("metadata") or {}
    spec: ResourceSpec = {k: v for k, v in raw.items() if k not in _STRIPPED_TOP_LEVEL and k != "metadata"}
    kept = {k: metadata[k] for k in _KEPT_METADATA if metadata.get(k)}
    if kept:
        spec["metadata"] = kept
    status = raw.get("status")
    return LiveResource(
        key=key,
        spec=spec,
        resource_version=str(metadata.get("resourceVersion", "")),
        status=status if isinstance(status, dict) else {},
        generation=int(metadata.get("generation") or 0),
    )


def to_body(key: ResourceKey, spec: Mapping[str, Any], expected_version: str | None) -> dict[str, Any]:
    """Build the full API object for a write from a declarative spec."""
    info = _kind_api(key)
    body: dict[str, Any] = {k: v for k, v in spec.items() if k not in _STRIPPED_TOP_LEVEL and k != "metadata"}
    declared_meta = spec.get("metadata")
    metadata: dict[str, Any] = {"name": key.name}
    if info.namespaced:
        metadata["namespace"] = key.namespace
    if isinstance(declared_meta, Mapping):
        metadata.update({k: declared_meta[k] for k in _KEPT_METADATA if k in declared_meta})
    if expected_version is not None:
        metadata["resourceVersion"] = expected_version
    return {"apiVersion": info.api_version, "kind": key.kind, "metadata": metadata, **body}


def _kind_api(key: ResourceKey) -> _KindApi:
    info = _KINDS.get(key.kind)
    if info is None:
        raise ValidationRejected(f"unsupported kind {key.kind!r}", key=key)
    return info


def translate_api_error(exc: ApiException, key: ResourceKey | None = None) -> KubeSyncError:
    """Map an API status code onto the controller's error taxonomy."""
    status = exc.status or 0
    reason = _reason(exc)
    if status == 404:
        return NotFound(reason, key=key)
    if status == 409:
        return Conflict(reason, key=key)
    if status in (400, 422):
        return ValidationRejected(reason, key=key)
    if status in (401, 403):
        return PermissionDenied(reason, key=key)
    if status == 429:
        return RateLimited(reason, key=key)
    return StoreUnavailable(reason, key=key)


def _reason(exc: ApiException) -> str:
    body = getattr(exc, "body", None)
    if body:
        try:
            message = json.loads(body).get("message")
        except (TypeError, ValueError, AttributeError):
            message = None
        if message:
            return f"HTTP {exc.status}: {message}"
    return f"HTTP {exc.status}: {exc.reason}"


class KubernetesLiveStore:
    """:class:`~kubesync.store.base.LiveStateStore` over the Kubernetes API.

    The kubernetes-asyncio configuration must already be loaded (in-cluster
    service account or kubeconfig) before :meth:`open` is called.
    """

    def __init__(self, api_client: Any | None = None) -> None:
        self._api_client = api_client
        self._owns_client = api_client is None
        self._apis: dict[str, Any] = {}

    async def open(self) -> None:
        if self._api_client is None:
            self._api_client = k8s_client.ApiClient()
        self._apis = {
            "core": k8s_client.CoreV1Api(self._api_client),
            "apps": k8s_client.AppsV1Api(self._api_client),
            "batch": k8s_client.BatchV1Api(self._api_client),
            "networking": k8s_client.NetworkingV1Api(self._api_client),
            "autoscaling": k8s_client.AutoscalingV2Api(self._api_client),
            "policy": k8s_client.PolicyV1Api(self._api_client),
            "custom": k8s_client.CustomObjectsApi(self._api_client),
        }
        _log.info("kubernetes_store_opened", kinds=len(_KINDS))

    async def close(self) -> None:
        if self._owns_client and self._api_client is not None:
            await self._api_client.close()
        self._api_client = None
        self._apis = {}

    # ------------------------------------------------------------------
    # LiveStateStore
    # ------------------------------------------------------------------

    async def get(self, key: ResourceKey) -> LiveResource | None:
        info = _kind_api(key)
        try:
            if info.custom:
                call = self._apis["custom"].get_namespaced_custom_object(
                    *self._custom_args(info, key), key.name, _preload_content=False
                )
            elif info.namespaced:
                call = getattr(self._apis[info.api], f"read_namespaced_{info.suffix}")(
                    key.name, key.namespace, _preload_content=False
                )
            else:
                call = getattr(self._apis[info.api], f"read_{info.suffix}")(key.name, _preload_content=False)
            raw = await self._json(call, key)
        except NotFound:
            return None
        return to_live(key, raw)

    async def fetch_live(self, keys: Iterable[ResourceKey]) -> LiveFetch:
        fetch = LiveFetch()
        semaphore = asyncio.Semaphore(_READ_CONCURRENCY)

        async def _one(key: ResourceKey) -> None:
            async with semaphore:
                try:
                    live = await self.get(key)
                except KubeSyncError as exc:
                    fetch.errors[key] = exc
                    return
            if live is not None:
                fetch.resources[key] = live

        await asyncio.gather(*(_one(k) for k in sorted(set(keys))))
        return fetch

    async def list_owned(self, selector: Mapping[str, str]) -> OwnedListing:
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        listing = OwnedListing()
        listed = 0
        for kind, info in sorted(_KINDS.items()):
            try:
                if info.custom:
                    group, version = info.api_version.split("/", 1)
                    call = self._apis["custom"].list_cluster_custom_object(
                        group, version, info.plural, label_selector=label_selector, _preload_content=False
                    )
                elif info.namespaced:
                    call = getattr(self._apis[info.api], f"list_{info.suffix}_for_all_namespaces")(
                        label_selector=label_selector, _preload_content=False
                    )
                else:
                    call = getattr(self._apis[info.api], f"list_{info.suffix}")(
                        label_selector=label_selector, _preload_content=False
                    )
                raw = await self._json(call)
            except NotFound:
                # CRD not installed
                _log.debug("kind_not_served", kind=kind)
                continue
            except KubeSyncError as exc:
                _log.warning("kind_list_failed", kind=kind, error=str(exc), error_class=exc.error_class)
                listing.failed_kinds[kind] = exc
                continue
            listed += 1
            for item in raw.get("items") or []:
                metadata = item.get("metadata") or {}
                key = ResourceKey(kind, metadata.get("namespace", "") or "", metadata.get("name", ""))
                listing.resources.append(to_live(key, item))
        if not listed and listing.failed_kinds:
            raise next(iter(listing.failed_kinds.values()))
        listing.resources.sort(key=lambda r: r.key)
        return listing

    async def write(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        expected_version: str | None,
    ) -> LiveResource:
        info = _kind_api(key)
        body = to_body(key, spec, expected_version)
        api = self._apis["custom"] if info.custom else self._apis[info.api]
        verb = "create" if expected_version is None else "replace"

        if info.custom:
            args = self._custom_args(info, key)
            call = (
                api.create_namespaced_custom_object(*args, body, _preload_content=False)
                if verb == "create"
                else api.replace_namespaced_custom_object(*args, key.name, body, _preload_content=False)
            )
        elif info.namespaced:
            method = getattr(api, f"{verb}_namespaced_{info.suffix}")
            call = (
                method(key.namespace, body, _preload_content=False)
                if verb == "create"
                else method(key.name, key.namespace, body, _preload_content=False)
            )
        else:
            method = getattr(api, f"{verb}_{info.suffix}")
            call = method(body, _preload_content=False) if verb == "create" else method(key.name, body, _preload_content=False)

        raw = await self._json(call, key)
        _log.debug("resource_written", resource=str(key), verb=verb)
        return to_live(key, raw)

    async def delete(self, key: ResourceKey, expected_version: str | None) -> None:
        info = _kind_api(key)
        body: dict[str, Any] = {"propagationPolicy": "Foreground"}
        if expected_version is not None:
            body["preconditions"] = {"resourceVersion": expected_version}

        if info.custom:
            call = self._apis["custom"].delete_namespaced_custom_object(
                *self._custom_args(info, key), key.name, body=body, _preload_content=False
            )
        elif info.namespaced:
            call = getattr(self._apis[info.api], f"delete_namespaced_{info.suffix}")(
                key.name, key.namespace, body=body, _preload_content=False
            )
        else:
            call = getattr(self._apis[info.api], f"delete_{info.suffix}")(key.name, body=body, _preload_content=False)
        await self._json(call, key)
        _log.debug("resource_deleted", resource=str(key))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _custom_args(info: _KindApi, key: ResourceKey) -> tuple[str, str, str, str]:
        group, version = info.api_version.split("/", 1)
        return group, version, key.namespace, info.plural

    async def _json(self, call: Awaitable[Any], key: ResourceKey | None = None) -> dict[str, Any]:
        """Await a raw API call and decode its JSON body, translating errors."""
        try:
            response = await call
            payload = await response.read()
        except ApiException as exc:
            error = translate_api_error(exc, key)
            if not isinstance(error, NotFound):
                store_errors_total.labels(store="kubernetes", error_class=error.error_class).inc()
            raise error from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            store_errors_total.labels(store="kubernetes", error_class="store_unavailable").inc()
            raise StoreUnavailable(f"kubernetes API unreachable: {exc}", key=key) from exc
        if not payload:
            return {}
        try:
            decoded = json.loads(payload)
        except ValueError as exc:
            raise StoreUnavailable(f"undecodable API response: {exc}", key=key) from exc
        return decoded if isinstance(decoded, dict) else {}
