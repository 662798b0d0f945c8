"""Unit tests for kubesync.reconcile.dependencies.DependencyGraph."""

from __future__ import annotations

from kubesync.models.resources import ResourceKey
from kubesync.reconcile.dependencies import DependencyGraph

_NS = ResourceKey("Namespace", "", "prod")
_CM = ResourceKey("ConfigMap", "prod", "web-config")
_SECRET = ResourceKey("Secret", "prod", "web-creds")
_SA = ResourceKey("ServiceAccount", "prod", "web")
_PVC = ResourceKey("PersistentVolumeClaim", "prod", "data")
_DEPLOY = ResourceKey("Deployment", "prod", "web")
_SVC = ResourceKey("Service", "prod", "web")
_ING = ResourceKey("Ingress", "prod", "web")


def _deployment() -> dict[str, object]:
    return {
        "spec": {
            "template": {
                "metadata": {"labels": {"app": "web"}},
                "spec": {
                    "serviceAccountName": "web",
                    "containers": [
                        {
                            "name": "web",
                            "envFrom": [{"configMapRef": {"name": "web-config"}}],
                            "env": [{"name": "PW", "valueFrom": {"secretKeyRef": {"name": "web-creds", "key": "pw"}}}],
                        }
                    ],
                    "volumes": [{"name": "data", "persistentVolumeClaim": {"claimName": "data"}}],
                },
            }
        }
    }


def _full_graph() -> DependencyGraph:
    return DependencyGraph.build(
        {
            _NS: {},
            _CM: {"data": {}},
            _SECRET: {"data": {}},
            _SA: {},
            _PVC: {"spec": {}},
            _DEPLOY: _deployment(),
            _SVC: {"spec": {"selector": {"app": "web"}}},
            _ING: {
                "spec": {
                    "rules": [{"http": {"paths": [{"backend": {"service": {"name": "web", "port": {"number": 80}}}}]}}]
                }
            },
        }
    )


class TestDependencyGraph:
    def test_pod_template_references(self) -> None:
        graph = _full_graph()
        assert graph.depends_on(_DEPLOY) == {_NS, _CM, _SECRET, _SA, _PVC}

    def test_service_selects_workload(self) -> None:
        assert _DEPLOY in _full_graph().depends_on(_SVC)

    def test_ingress_routes_to_service(self) -> None:
        assert _full_graph().depends_on(_ING) == {_NS, _SVC}

    def test_transitive_dependents(self) -> None:
        assert _full_graph().dependents(_CM) == {_DEPLOY, _SVC, _ING}

    def test_transitive_dependencies(self) -> None:
        assert _full_graph().dependencies(_ING) == {_NS, _SVC, _DEPLOY, _CM, _SECRET, _SA, _PVC}

    def test_references_outside_batch_are_dropped(self) -> None:
        graph = DependencyGraph.build({_DEPLOY: _deployment()})
        assert graph.depends_on(_DEPLOY) == set()
        assert graph.edge_count == 0

    def test_selector_in_other_namespace_does_not_match(self) -> None:
        other_svc = ResourceKey("Service", "staging", "web")
        graph = DependencyGraph.build({_DEPLOY: _deployment(), other_svc: {"spec": {"selector": {"app": "web"}}}})
        assert graph.depends_on(other_svc) == set()

    def test_traffic_split_depends_on_backends(self) -> None:
        split = ResourceKey("TrafficSplit", "prod", "web")
        blue = ResourceKey("Service", "prod", "web-blue")
        green = ResourceKey("Service", "prod", "web-green")
        graph = DependencyGraph.build(
            {
                split: {
                    "spec": {
                        "service": "web",
                        "backends": [{"service": "web-blue", "weight": 100}, {"service": "web-green", "weight": 0}],
                    }
                },
                blue: {},
                green: {},
                _SVC: {},
            }
        )
        assert graph.depends_on(split) == {blue, green, _SVC}

    def test_deleted_resource_without_spec_is_a_node(self) -> None:
        graph = DependencyGraph.build({_CM: None, _DEPLOY: _deployment()})
        assert graph.dependents(_CM) == {_DEPLOY}
