"""In-memory dependency graph between the resources of one sync batch.

Built from declared configuration only.  An edge ``A -> B`` means A
depends on B: B must be applied first, and if B fails A is skipped.
Extracted relationships:

* namespaced resources -> their Namespace
* pod templates -> ConfigMaps, Secrets, PVCs and ServiceAccounts they reference
* Services and NetworkPolicies -> workloads whose pod labels they select
* Ingresses and TrafficSplits -> the Services they route to
* HorizontalPodAutoscalers -> their scale target
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator, Mapping

from kubesync.models.resources import ResourceKey, ResourceSpec
from kubesync.observability.logging import get_logger

_logger = get_logger("dependency_graph")

_POD_TEMPLATE_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job"})


class DependencyGraph:
    """Directed dependency graph keyed by :class:`ResourceKey`.

    Only edges between resources present in the graph are kept; references
    to resources outside the batch are already satisfied (or not ours).
    """

    def __init__(self) -> None:
        self._nodes: set[ResourceKey] = set()
        self._forward: dict[ResourceKey, set[ResourceKey]] = defaultdict(set)
        self._reverse: dict[ResourceKey, set[ResourceKey]] = defaultdict(set)

    @classmethod
    def build(cls, specs: Mapping[ResourceKey, ResourceSpec | None]) -> DependencyGraph:
        """Build a graph from every resource in *specs*."""
        graph = cls()
        graph._nodes.update(specs)
        pod_labels = {
            key: labels for key, spec in specs.items() if spec is not None and (labels := _pod_labels(key, spec))
        }
        for key, spec in specs.items():
            if spec is None:
                continue
            for target in graph._extract(key, spec, pod_labels):
                if target in graph._nodes and target != key:
                    graph._forward[key].add(target)
                    graph._reverse[target].add(key)
        _logger.debug("dependency_graph_built", nodes=len(graph._nodes), edges=graph.edge_count)
        return graph

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self._forward.values())

    def depends_on(self, key: ResourceKey) -> set[ResourceKey]:
        """Direct dependencies of *key*."""
        return set(self._forward.get(key, ()))

    def dependents(self, key: ResourceKey) -> set[ResourceKey]:
        """Every resource that transitively depends on *key*."""
        return self._traverse(key, self._reverse)

    def dependencies(self, key: ResourceKey) -> set[ResourceKey]:
        """Every resource *key* transitively depends on."""
        return self._traverse(key, self._forward)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _traverse(start: ResourceKey, adj: Mapping[ResourceKey, set[ResourceKey]]) -> set[ResourceKey]:
        visited: set[ResourceKey] = set()
        queue = [start]
        while queue:
            current = queue.pop(0)
            for neighbor in sorted(adj.get(current, ())):
                if neighbor not in visited and neighbor != start:
                    visited.add(neighbor)
                    queue.append(neighbor)
        return visited

    def _extract(
        self,
        key: ResourceKey,
        spec: ResourceSpec,
        pod_labels: Mapping[ResourceKey, dict[str, str]],
    ) -> Iterator[ResourceKey]:
        ns = key.namespace
        if ns:
            yield ResourceKey("Namespace", "", ns)

        pod_spec = _pod_spec(key, spec)
        if pod_spec is not None:
            yield from _pod_references(ns, pod_spec)

        body = spec.get("spec")
        if not isinstance(body, dict):
            return

        if key.kind == "Service":
            selector = body.get("selector")
            if isinstance(selector, dict) and selector:
                yield from _selected(ns, selector, pod_labels)

        elif key.kind == "NetworkPolicy":
            pod_selector = body.get("podSelector")
            if isinstance(pod_selector, dict):
                match = pod_selector.get("matchLabels")
                if isinstance(match, dict) and match:
                    yield from _selected(ns, match, pod_labels)

        elif key.kind == "Ingress":
            yield from (ResourceKey("Service", ns, name) for name in _ingress_services(body))

        elif key.kind == "TrafficSplit":
            root = body.get("service")
            if isinstance(root, str) and root:
                yield ResourceKey("Service", ns, root)
            backends = body.get("backends")
            if isinstance(backends, list):
                for backend in backends:
                    if isinstance(backend, dict) and backend.get("service"):
                        yield ResourceKey("Service", ns, str(backend["service"]))

        elif key.kind == "HorizontalPodAutoscaler":
            ref = body.get("scaleTargetRef")
            if isinstance(ref, dict) and ref.get("kind") and ref.get("name"):
                yield ResourceKey(str(ref["kind"]), ns, str(ref["name"]))


def _pod_spec(key: ResourceKey, spec: ResourceSpec) -> dict[str, object] | None:
    body = spec.get("spec")
    if not isinstance(body, dict):
        return None
    if key.kind == "Pod":
        return body
    if key.kind == "CronJob":
        job = body.get("jobTemplate")
        body = job.get("spec") if isinstance(job, dict) else None
        if not isinstance(body, dict):
            return None
    elif key.kind not in _POD_TEMPLATE_KINDS:
        return None
    template = body.get("template")
    if not isinstance(template, dict):
        return None
    pod_spec = template.get("spec")
    return pod_spec if isinstance(pod_spec, dict) else None


def _pod_labels(key: ResourceKey, spec: ResourceSpec) -> dict[str, str]:
    if key.kind not in _POD_TEMPLATE_KINDS:
        return {}
    body = spec.get("spec")
    template = body.get("template") if isinstance(body, dict) else None
    metadata = template.get("metadata") if isinstance(template, dict) else None
    labels = metadata.get("labels") if isinstance(metadata, dict) else None
    if not isinstance(labels, dict):
        return {}
    return {str(k): str(v) for k, v in labels.items()}


def _selected(
    ns: str,
    selector: Mapping[str, object],
    pod_labels: Mapping[ResourceKey, dict[str, str]],
) -> Iterator[ResourceKey]:
    wanted = {str(k): str(v) for k, v in selector.items()}
    for key, labels in pod_labels.items():
        if key.namespace == ns and all(labels.get(k) == v for k, v in wanted.items()):
            yield key


def _pod_references(ns: str, pod_spec: Mapping[str, object]) -> Iterator[ResourceKey]:
    account = pod_spec.get("serviceAccountName")
    if isinstance(account, str) and account:
        yield ResourceKey("ServiceAccount", ns, account)

    volumes = pod_spec.get("volumes")
    if isinstance(volumes, list):
        for vol in volumes:
            if not isinstance(vol, dict):
                continue
            pvc = vol.get("persistentVolumeClaim")
            if isinstance(pvc, dict) and pvc.get("claimName"):
                yield ResourceKey("PersistentVolumeClaim", ns, str(pvc["claimName"]))
            cm = vol.get("configMap")
            if isinstance(cm, dict) and cm.get("name"):
                yield ResourceKey("ConfigMap", ns, str(cm["name"]))
            secret = vol.get("secret")
            if isinstance(secret, dict) and secret.get("secretName"):
                yield ResourceKey("Secret", ns, str(secret["secretName"]))

    containers: list[object] = []
    for field_name in ("initContainers", "containers"):
        value = pod_spec.get(field_name)
        if isinstance(value, list):
            containers.extend(value)

    for container in containers:
        if not isinstance(container, dict):
            continue
        env_from = container.get("envFrom")
        if isinstance(env_from, list):
            for ef in env_from:
                if not isinstance(ef, dict):
                    continue
                cm_ref = ef.get("configMapRef")
                if isinstance(cm_ref, dict) and cm_ref.get("name"):
                    yield ResourceKey("ConfigMap", ns, str(cm_ref["name"]))
                secret_ref = ef.get("secretRef")
                if isinstance(secret_ref, dict) and secret_ref.get("name"):
                    yield ResourceKey("Secret", ns, str(secret_ref["name"]))
        env = container.get("env")
        if isinstance(env, list):
            for var in env:
                source = var.get("valueFrom") if isinstance(var, dict) else None
                if not isinstance(source, dict):
                    continue
                cm_key = source.get("configMapKeyRef")
                if isinstance(cm_key, dict) and cm_key.get("name"):
                    yield ResourceKey("ConfigMap", ns, str(cm_key["name"]))
                secret_key = source.get("secretKeyRef")
                if isinstance(secret_key, dict) and secret_key.get("name"):
                    yield ResourceKey("Secret", ns, str(secret_key["name"]))


def _ingress_services(body: Mapping[str, object]) -> Iterator[str]:
    default = body.get("defaultBackend")
    if isinstance(default, dict):
        service = default.get("service")
        if isinstance(service, dict) and service.get("name"):
            yield str(service["name"])
    rules = body.get("rules")
    if not isinstance(rules, list):
        return
    for rule in rules:
        http = rule.get("http") if isinstance(rule, dict) else None
        paths = http.get("paths") if isinstance(http, dict) else None
        if not isinstance(paths, list):
            continue
        for entry in paths:
            backend = entry.get("backend") if isinstance(entry, dict) else None
            service = backend.get("service") if isinstance(backend, dict) else None
            if isinstance(service, dict) and service.get("name"):
                yield str(service["name"])
