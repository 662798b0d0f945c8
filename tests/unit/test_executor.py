"""Unit tests for kubesync.reconcile.executor.SyncExecutor."""

from __future__ import annotations

from kubesync.errors import PermissionDenied, StoreUnavailable, ValidationRejected
from kubesync.history.sync_history import SyncHistory
from kubesync.models.resources import MANAGER_LABEL, OWNER_LABEL, DesiredState, ResourceKey, with_labels
from kubesync.models.sync import Delta, DeltaKind, SyncOutcome
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.executor import RetryPolicy, SyncExecutor
from kubesync.store.memory import InMemoryLiveStore

_OWNER = "shop"
_CM = ResourceKey("ConfigMap", "prod", "web-config")
_DEPLOY = ResourceKey("Deployment", "prod", "web")
_SVC = ResourceKey("Service", "prod", "web")
_OTHER = ResourceKey("ConfigMap", "prod", "unrelated")


def _deploy_spec(image: str = "web:1") -> dict[str, object]:
    return {
        "spec": {
            "replicas": 2,
            "template": {
                "metadata": {"labels": {"app": "web"}},
                "spec": {"containers": [{"name": "web", "image": image, "envFrom": [{"configMapRef": {"name": "web-config"}}]}]},
            },
        }
    }


def _resources() -> dict[ResourceKey, dict[str, object]]:
    return {
        _CM: {"data": {"LOG_LEVEL": "info"}},
        _DEPLOY: _deploy_spec(),
        _SVC: {"spec": {"selector": {"app": "web"}, "ports": [{"port": 80}]}},
        _OTHER: {"data": {"x": "1"}},
    }


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _make(store: InMemoryLiveStore | None = None) -> tuple[InMemoryLiveStore, Differ, SyncExecutor, SyncHistory, _Sleeps]:
    store = store or InMemoryLiveStore()
    differ = Differ(_OWNER)
    history = SyncHistory()
    sleeps = _Sleeps()
    executor = SyncExecutor(store, differ, history, retry=RetryPolicy(limit=3, base_seconds=1, factor=2, cap_seconds=10), sleep=sleeps)
    return store, differ, executor, history, sleeps


async def _plan(differ: Differ, store: InMemoryLiveStore, resources: dict[ResourceKey, dict[str, object]]) -> list[Delta]:
    desired = DesiredState("rev-1", resources)
    fetch = await store.fetch_live(desired.resources)
    return differ.diff(desired, fetch.resources).deltas


class TestRetryPolicy:
    def test_exponential_delay_is_capped(self) -> None:
        policy = RetryPolicy(limit=5, base_seconds=5, factor=2, cap_seconds=180)
        assert [policy.delay(n) for n in range(1, 8)] == [5, 10, 20, 40, 80, 160, 180]


class TestSyncExecutorApply:
    async def test_applies_in_tier_order(self) -> None:
        store, differ, executor, _, _ = _make()
        results = await executor.apply(await _plan(differ, store, _resources()), revision="rev-1")
        assert [r.outcome for r in results] == [SyncOutcome.APPLIED] * 4
        created = [key for op, key in store.operations if op == "create"]
        assert created == [_OTHER, _CM, _DEPLOY, _SVC]
        assert all(r.revision == "rev-1" for r in results)

    async def test_created_objects_carry_ownership_marker(self) -> None:
        store, differ, executor, _, _ = _make()
        await executor.apply(await _plan(differ, store, _resources()))
        labels = store.snapshot()[_DEPLOY].labels
        assert labels[OWNER_LABEL] == _OWNER
        assert labels[MANAGER_LABEL] == "drift"

    async def test_second_pass_is_idempotent(self) -> None:
        store, differ, executor, _, _ = _make()
        await executor.apply(await _plan(differ, store, _resources()))
        writes = len(store.operations)
        deltas = await _plan(differ, store, _resources())
        assert all(not d.is_change for d in deltas)
        assert await executor.apply(deltas) == []
        assert len(store.operations) == writes

    async def test_every_result_is_recorded(self) -> None:
        store, differ, executor, history, _ = _make()
        await executor.apply(await _plan(differ, store, _resources()))
        assert set(history.keys()) == {_CM, _DEPLOY, _SVC, _OTHER}

    async def test_failed_dependency_skips_dependents_only(self) -> None:
        store, differ, executor, _, _ = _make()
        store.fail("write", _CM, ValidationRejected("bad data"))
        results = {r.key: r for r in await executor.apply(await _plan(differ, store, _resources()))}
        assert results[_CM].outcome == SyncOutcome.FAILED
        assert results[_CM].error_class == "validation_rejected"
        assert results[_DEPLOY].outcome == SyncOutcome.SKIPPED
        assert results[_DEPLOY].error_class == "dependency_failed"
        assert results[_SVC].outcome == SyncOutcome.SKIPPED
        assert results[_OTHER].outcome == SyncOutcome.APPLIED

    async def test_skip_map_reports_and_blocks(self) -> None:
        store, differ, executor, _, _ = _make()
        deltas = await _plan(differ, store, _resources())
        results = {r.key: r for r in await executor.apply(deltas, skip={_DEPLOY: ("halted", "resource halted")})}
        assert results[_DEPLOY].outcome == SyncOutcome.SKIPPED
        assert results[_DEPLOY].error == "resource halted"
        assert results[_SVC].error_class == "dependency_failed"
        assert results[_CM].outcome == SyncOutcome.APPLIED
        assert _DEPLOY not in store

    async def test_deletes_follow_applies(self) -> None:
        store, differ, executor, _, _ = _make()
        await executor.apply(await _plan(differ, store, _resources()))
        remaining = {k: v for k, v in _resources().items() if k != _OTHER}
        results = await executor.apply(await _plan(differ, store, remaining))
        assert [(r.key, r.delta_kind) for r in results] == [(_OTHER, DeltaKind.DELETE)]
        assert _OTHER not in store


class TestSyncExecutorApplyOne:
    async def test_transient_failure_is_retried_with_backoff(self) -> None:
        store, differ, executor, _, sleeps = _make()
        store.fail("write", _CM, StoreUnavailable("apiserver down"), times=2)
        delta = differ.diff_resource(_CM, {"data": {"a": "1"}}, None)
        result = await executor.apply_one(delta)
        assert result.outcome == SyncOutcome.APPLIED
        assert result.attempts == 3
        assert sleeps.delays == [1, 2]

    async def test_retry_budget_exhausted_fails(self) -> None:
        store, differ, executor, history, sleeps = _make()
        store.fail("write", _CM, StoreUnavailable("apiserver down"), times=5)
        result = await executor.apply_one(differ.diff_resource(_CM, {"data": {}}, None))
        assert result.outcome == SyncOutcome.FAILED
        assert result.error_class == "store_unavailable"
        assert result.attempts == 3
        assert len(sleeps.delays) == 2
        assert history.consecutive_failures(_CM) == 1

    async def test_permanent_failure_is_not_retried(self) -> None:
        store, differ, executor, _, sleeps = _make()
        store.fail("write", _CM, PermissionDenied("forbidden"))
        result = await executor.apply_one(differ.diff_resource(_CM, {"data": {}}, None))
        assert result.outcome == SyncOutcome.FAILED
        assert result.error_class == "permission_denied"
        assert sleeps.delays == []

    async def test_stale_delta_is_rebuilt_not_overwritten(self) -> None:
        store, differ, executor, _, _ = _make()
        declared = with_labels(_deploy_spec("web:2"), differ.labels_for())
        store.put(_DEPLOY, with_labels(_deploy_spec("web:1"), differ.labels_for()))
        delta = differ.diff_resource(_DEPLOY, declared, store.snapshot()[_DEPLOY])

        # Another actor adds an annotation after the diff was computed
        def annotate(spec: dict[str, object]) -> None:
            spec["metadata"]["annotations"] = {"team": "payments"}  # type: ignore[index]

        store.mutate(_DEPLOY, annotate)

        result = await executor.apply_one(delta)
        assert result.outcome == SyncOutcome.APPLIED
        live = store.snapshot()[_DEPLOY]
        assert live.spec["metadata"]["annotations"] == {"team": "payments"}  # type: ignore[index]
        assert live.spec["spec"]["template"]["spec"]["containers"][0]["image"] == "web:2"  # type: ignore[index]

    async def test_stale_delta_already_converged_is_skipped(self) -> None:
        store, differ, executor, _, _ = _make()
        declared = with_labels({"data": {"a": "2"}}, differ.labels_for())
        store.put(_CM, with_labels({"data": {"a": "1"}}, differ.labels_for()))
        delta = differ.diff_resource(_CM, declared, store.snapshot()[_CM])

        def converge(spec: dict[str, object]) -> None:
            spec["data"] = {"a": "2"}

        store.mutate(_CM, converge)
        result = await executor.apply_one(delta)
        assert result.outcome == SyncOutcome.SKIPPED
        assert result.error == "already converged"
        assert result.error_class is None

    async def test_stale_rebuild_refuses_unowned_object(self) -> None:
        store, differ, executor, _, _ = _make()
        delta = differ.diff_resource(_CM, with_labels({"data": {"a": "1"}}, differ.labels_for()), None)
        store.put(_CM, {"data": {"a": "0"}})
        result = await executor.apply_one(delta)
        assert result.outcome == SyncOutcome.FAILED
        assert result.error_class == "ownership_violation"
        assert store.snapshot()[_CM].spec == {"data": {"a": "0"}}

    async def test_delete_of_missing_object_is_skipped(self) -> None:
        store, differ, executor, _, _ = _make()
        result = await executor.apply_one(Delta(key=_CM, kind=DeltaKind.DELETE, from_version="3"))
        assert result.outcome == SyncOutcome.SKIPPED

    async def test_replicas_only_delta_leaves_other_fields(self) -> None:
        store, differ, executor, _, _ = _make()
        store.put(_DEPLOY, with_labels(_deploy_spec("web:7"), differ.labels_for()))
        delta = differ.diff_resource(_DEPLOY, {"spec": {"replicas": 5}}, store.snapshot()[_DEPLOY], excluded=frozenset())
        result = await executor.apply_one(delta)
        assert result.outcome == SyncOutcome.APPLIED
        spec = store.snapshot()[_DEPLOY].spec
        assert spec["spec"]["replicas"] == 5  # type: ignore[index]
        assert spec["spec"]["template"]["spec"]["containers"][0]["image"] == "web:7"  # type: ignore[index]
