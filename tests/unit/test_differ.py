"""Unit tests for kubesync.reconcile.differ and kubesync.reconcile.ordering."""

from __future__ import annotations

from kubesync.models.autoscale import AutoscalePolicy
from kubesync.models.resources import (
    MANAGER_DELIVERY,
    MANAGER_LABEL,
    OWNER_LABEL,
    DesiredState,
    LiveResource,
    ResourceKey,
    with_labels,
)
from kubesync.models.sync import Delta, DeltaKind
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.ordering import Tier, order_deltas, tier_of

_OWNER = "shop"
_DEPLOY = ResourceKey("Deployment", "prod", "web")
_CM = ResourceKey("ConfigMap", "prod", "web-config")
_SVC = ResourceKey("Service", "prod", "web")


def _deploy_spec(image: str = "web:1", replicas: int = 2) -> dict[str, object]:
    return {"spec": {"replicas": replicas, "template": {"spec": {"containers": [{"name": "web", "image": image}]}}}}


def _live(key: ResourceKey, spec: dict[str, object], version: str = "1", owner: str | None = _OWNER) -> LiveResource:
    if owner is not None:
        spec = with_labels(spec, {OWNER_LABEL: owner, MANAGER_LABEL: "drift"})
    return LiveResource(key=key, spec=spec, resource_version=version)


def _desired(resources: dict[ResourceKey, dict[str, object]], **kwargs: object) -> DesiredState:
    return DesiredState("rev-1", resources, **kwargs)  # type: ignore[arg-type]


class TestDiffer:
    def test_missing_live_yields_create_with_owner_labels(self) -> None:
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec()}), {})
        assert [d.kind for d in result.deltas] == [DeltaKind.CREATE]
        labels = result.deltas[0].to_spec["metadata"]["labels"]  # type: ignore[index]
        assert labels == {OWNER_LABEL: _OWNER, MANAGER_LABEL: "drift"}

    def test_converged_resource_is_noop(self) -> None:
        live = {_DEPLOY: _live(_DEPLOY, _deploy_spec())}
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec()}), live)
        assert [d.kind for d in result.deltas] == [DeltaKind.NOOP]
        assert result.changes == []

    def test_changed_field_yields_update(self) -> None:
        live = {_DEPLOY: _live(_DEPLOY, _deploy_spec("web:1"), version="42")}
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec("web:2")}), live)
        delta = result.deltas[0]
        assert delta.kind == DeltaKind.UPDATE
        assert delta.from_version == "42"
        assert [c.path for c in delta.changes] == ["spec.template.spec.containers[0].image"]

    def test_owned_live_resource_not_declared_is_deleted(self) -> None:
        live = {_CM: _live(_CM, {"data": {"a": "1"}}, version="7")}
        result = Differ(_OWNER).diff(_desired({}), live)
        assert [(d.kind, d.key, d.from_version) for d in result.deltas] == [(DeltaKind.DELETE, _CM, "7")]

    def test_unowned_live_resource_is_never_deleted(self) -> None:
        live = {_CM: _live(_CM, {"data": {"a": "1"}}, owner=None)}
        assert Differ(_OWNER).diff(_desired({}), live).deltas == []

    def test_other_owner_is_never_deleted(self) -> None:
        live = {_CM: _live(_CM, {"data": {"a": "1"}}, owner="someone-else")}
        assert Differ(_OWNER).diff(_desired({}), live).deltas == []

    def test_declared_key_with_unmarked_live_is_ownership_violation(self) -> None:
        live = {_CM: _live(_CM, {"data": {"a": "1"}}, owner=None)}
        result = Differ(_OWNER).diff(_desired({_CM: {"data": {"a": "2"}}}), live)
        assert result.deltas == []
        assert result.ownership_violations == [_CM]

    def test_delivery_managed_resource_is_outside_universe(self) -> None:
        spec = with_labels(_deploy_spec(), {OWNER_LABEL: _OWNER, MANAGER_LABEL: MANAGER_DELIVERY})
        live = {_DEPLOY: LiveResource(key=_DEPLOY, spec=spec, resource_version="1")}
        assert Differ(_OWNER).diff(_desired({}), live).deltas == []

    def test_unreadable_keys_produce_no_delta(self) -> None:
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec(), _CM: {"data": {}}}), {}, unreadable=[_DEPLOY])
        assert [d.key for d in result.deltas] == [_CM]
        assert result.unreadable == [_DEPLOY]

    def test_extra_live_fields_do_not_cause_drift(self) -> None:
        spec = _deploy_spec()
        spec["spec"]["strategy"] = {"type": "RollingUpdate"}  # type: ignore[index]
        live = {_DEPLOY: _live(_DEPLOY, spec)}
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec()}), live)
        assert result.changes == []

    def test_service_cluster_ip_is_excluded(self) -> None:
        declared = {"spec": {"ports": [{"port": 80}], "clusterIP": "None"}}
        live_spec = {"spec": {"ports": [{"port": 80}], "clusterIP": "10.0.0.12"}}
        live = {_SVC: _live(_SVC, live_spec)}
        assert Differ(_OWNER).diff(_desired({_SVC: declared}), live).changes == []

    def test_autoscaled_replicas_are_left_alone(self) -> None:
        policy = AutoscalePolicy(target=_DEPLOY, min_replicas=1, max_replicas=10, metric_targets={"cpu": 70})
        live = {_DEPLOY: _live(_DEPLOY, _deploy_spec(replicas=6))}
        desired = _desired({_DEPLOY: _deploy_spec(replicas=2)}, autoscale_policies=[policy])
        assert Differ(_OWNER).diff(desired, live).changes == []

    def test_replicas_drift_without_policy_is_corrected(self) -> None:
        live = {_DEPLOY: _live(_DEPLOY, _deploy_spec(replicas=6))}
        result = Differ(_OWNER).diff(_desired({_DEPLOY: _deploy_spec(replicas=2)}), live)
        assert [c.path for c in result.changes[0].changes] == ["spec.replicas"]

    def test_identical_inputs_give_equal_results(self) -> None:
        desired = _desired({_DEPLOY: _deploy_spec("web:2"), _CM: {"data": {"k": "v"}}, _SVC: {"spec": {}}})
        live = {_DEPLOY: _live(_DEPLOY, _deploy_spec("web:1"))}
        differ = Differ(_OWNER)
        assert differ.diff(desired, live) == differ.diff(desired, live)

    def test_deltas_sorted_by_key(self) -> None:
        desired = _desired({_SVC: {"spec": {}}, _DEPLOY: _deploy_spec(), _CM: {"data": {}}})
        keys = [d.key for d in Differ(_OWNER).diff(desired, {}).deltas]
        assert keys == sorted(keys)


class TestOrdering:
    def test_tiers(self) -> None:
        assert tier_of(ResourceKey("Namespace", "", "prod")) == Tier.CLUSTER
        assert tier_of(_CM) == Tier.CONFIG
        assert tier_of(_DEPLOY) == Tier.WORKLOAD
        assert tier_of(ResourceKey("Widget", "prod", "x")) == Tier.WORKLOAD
        assert tier_of(_SVC) == Tier.NETWORK

    def test_applies_ascend_deletes_descend(self) -> None:
        ns = ResourceKey("Namespace", "", "prod")
        old_cm = ResourceKey("ConfigMap", "prod", "old")
        old_svc = ResourceKey("Service", "prod", "old")
        deltas = [
            Delta(key=_SVC, kind=DeltaKind.CREATE),
            Delta(key=old_cm, kind=DeltaKind.DELETE),
            Delta(key=_DEPLOY, kind=DeltaKind.UPDATE),
            Delta(key=old_svc, kind=DeltaKind.DELETE),
            Delta(key=_CM, kind=DeltaKind.CREATE),
            Delta(key=ns, kind=DeltaKind.CREATE),
            Delta(key=ResourceKey("Secret", "prod", "s"), kind=DeltaKind.NOOP),
        ]
        ordered = [d.key for d in order_deltas(deltas)]
        assert ordered == [ns, _CM, _DEPLOY, _SVC, old_svc, old_cm]
