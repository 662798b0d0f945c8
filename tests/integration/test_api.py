"""Integration tests for the FastAPI REST API.

Uses TestClient to exercise the full HTTP request/response cycle including
validation, error handling, and response serialisation.  The last class
drives a real drift loop over the in-memory store.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from kubesync.api.app import create_app
from kubesync.errors import ComponentStopped, NotFound, OperatorConflict
from kubesync.health.assessor import HealthAssessor
from kubesync.history.sync_history import SyncHistory
from kubesync.models.delivery import ReleaseTrack, RolloutPhase, RolloutStatus, Strategy, TrackName
from kubesync.models.events import SyncEvent
from kubesync.models.health import HealthStatus
from kubesync.models.resources import DesiredState, ResourceKey
from kubesync.models.sync import LoopPhase, SyncStatus
from kubesync.observability.events import EventStream
from kubesync.reconcile.differ import Differ
from kubesync.reconcile.executor import SyncExecutor
from kubesync.reconcile.loop import DriftLoop
from kubesync.store.memory import InMemoryLiveStore, StaticDesiredSource

pytestmark = pytest.mark.integration

_CM = ResourceKey("ConfigMap", "prod", "web-config")
_DEPLOY = ResourceKey("Deployment", "prod", "web")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _rollout(phase: RolloutPhase = RolloutPhase.PROGRESSING) -> RolloutStatus:
    blue_keys = (ResourceKey("Deployment", "prod", "web-blue"), ResourceKey("Service", "prod", "web-blue"))
    green_keys = (ResourceKey("Deployment", "prod", "web-green"), ResourceKey("Service", "prod", "web-green"))
    return RolloutStatus(
        release="web",
        from_version="1.3.0",
        to_version="1.4.0",
        strategy=Strategy.CANARY,
        phase=phase,
        message="canary at 20%",
        active_track=TrackName.BLUE,
        tracks={
            TrackName.BLUE: ReleaseTrack(TrackName.BLUE, "1.3.0", blue_keys, 80, HealthStatus.HEALTHY),
            TrackName.GREEN: ReleaseTrack(TrackName.GREEN, "1.4.0", green_keys, 20, HealthStatus.PROGRESSING),
        },
    )


def _mock_loop() -> MagicMock:
    loop = MagicMock()
    loop.app_name = "shop"
    loop.sync_status = SyncStatus.SYNCED
    loop.health = HealthStatus.HEALTHY
    loop.phase = LoopPhase.IDLE
    loop.paused = False
    loop.running = True
    loop.last_report = None
    loop.halted = {}
    return loop


def _mock_delivery() -> MagicMock:
    delivery = MagicMock()
    delivery.statuses.return_value = [_rollout()]
    delivery.status.return_value = _rollout()
    delivery.promote.return_value = _rollout(RolloutPhase.PROMOTED)
    delivery.rollback.return_value = _rollout(RolloutPhase.ROLLED_BACK)
    return delivery


def _client(loop: MagicMock | None = None, delivery: MagicMock | None = None, events: EventStream | None = None) -> TestClient:
    return TestClient(create_app(loop=loop, delivery=delivery, events=events), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Health and status
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    def test_ok_with_loop(self) -> None:
        resp = _client(loop=_mock_loop()).get("/api/v1/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["app_health"] == "healthy"
        assert body["loop_running"] is True

    def test_ok_without_loop(self) -> None:
        body = _client().get("/api/v1/health").json()
        assert body["app_health"] == "unknown"
        assert body["loop_running"] is False


class TestStatusEndpoint:
    def test_unavailable_without_loop(self) -> None:
        resp = _client().get("/api/v1/status")
        assert resp.status_code == 503
        assert resp.json()["error"] == "UNAVAILABLE"

    def test_status_includes_rollouts(self) -> None:
        loop = _mock_loop()
        loop.halted = {_DEPLOY: "degraded after sync"}
        resp = _client(loop=loop, delivery=_mock_delivery()).get("/api/v1/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["app"] == "shop"
        assert body["sync_status"] == "synced"
        assert body["halted"] == {"Deployment/prod/web": "degraded after sync"}
        assert body["last_cycle"] is None
        assert body["rollouts"][0]["release"] == "web"

    def test_unexpected_error_returns_500_envelope(self) -> None:
        delivery = _mock_delivery()
        delivery.statuses.side_effect = RuntimeError("boom")
        resp = _client(loop=_mock_loop(), delivery=delivery).get("/api/v1/status")
        assert resp.status_code == 500
        assert resp.json()["error"] == "INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# Sync controls
# ---------------------------------------------------------------------------


class TestSyncEndpoints:
    def test_sync_is_accepted(self) -> None:
        loop = _mock_loop()
        resp = _client(loop=loop).post("/api/v1/sync")
        assert resp.status_code == 202
        assert resp.json()["action"] == "sync"
        loop.request_sync.assert_called_once_with()

    def test_sync_already_pending_is_conflict(self) -> None:
        loop = _mock_loop()
        loop.request_sync.side_effect = OperatorConflict("a manual sync is already pending")
        resp = _client(loop=loop).post("/api/v1/sync")
        assert resp.status_code == 409
        assert resp.json() == {"error": "CONFLICT", "detail": "a manual sync is already pending"}

    def test_sync_without_loop(self) -> None:
        assert _client().post("/api/v1/sync").status_code == 503

    def test_sync_on_stopped_loop_is_unavailable(self) -> None:
        loop = _mock_loop()
        loop.request_sync.side_effect = ComponentStopped("the drift loop is not running")
        resp = _client(loop=loop).post("/api/v1/sync")
        assert resp.status_code == 503
        assert resp.json() == {"error": "UNAVAILABLE", "detail": "the drift loop is not running"}

    def test_pause_and_resume(self) -> None:
        loop = _mock_loop()
        client = _client(loop=loop)
        assert client.post("/api/v1/sync/pause").json()["action"] == "pause"
        assert client.post("/api/v1/sync/resume").json()["action"] == "resume"
        loop.pause.assert_called_once_with()
        loop.resume.assert_called_once_with()

    def test_webhook_triggers_cycle(self) -> None:
        loop = _mock_loop()
        resp = _client(loop=loop).post("/api/v1/webhook")
        assert resp.status_code == 202
        loop.trigger.assert_called_once_with()


# ---------------------------------------------------------------------------
# Rollouts
# ---------------------------------------------------------------------------


class TestRolloutEndpoints:
    def test_list(self) -> None:
        resp = _client(delivery=_mock_delivery()).get("/api/v1/rollouts")
        assert resp.status_code == 200
        (rollout,) = resp.json()
        assert rollout["strategy"] == "canary"
        assert [t["name"] for t in rollout["tracks"]] == ["blue", "green"]
        assert rollout["tracks"][1]["traffic_weight"] == 20
        assert rollout["tracks"][0]["resources"] == ["Deployment/prod/web-blue", "Service/prod/web-blue"]

    def test_get(self) -> None:
        delivery = _mock_delivery()
        resp = _client(delivery=delivery).get("/api/v1/rollouts/web")
        assert resp.status_code == 200
        assert resp.json()["active_track"] == "blue"
        delivery.status.assert_called_once_with("web")

    def test_unknown_release_is_404(self) -> None:
        delivery = _mock_delivery()
        delivery.status.side_effect = NotFound("unknown release 'api'")
        resp = _client(delivery=delivery).get("/api/v1/rollouts/api")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    def test_promote(self) -> None:
        delivery = _mock_delivery()
        resp = _client(delivery=delivery).post("/api/v1/rollouts/web/promote")
        assert resp.status_code == 200
        assert resp.json()["phase"] == "promoted"
        delivery.promote.assert_called_once_with("web")

    def test_rollback_of_finished_rollout_is_conflict(self) -> None:
        delivery = _mock_delivery()
        delivery.rollback.side_effect = OperatorConflict("rollout of web already completed")
        resp = _client(delivery=delivery).post("/api/v1/rollouts/web/rollback")
        assert resp.status_code == 409

    def test_rollouts_without_delivery(self) -> None:
        client = _client()
        assert client.get("/api/v1/rollouts").status_code == 503
        assert client.post("/api/v1/rollouts/web/promote").status_code == 503


# ---------------------------------------------------------------------------
# Events and metrics
# ---------------------------------------------------------------------------


class TestEventsEndpoint:
    def _stream(self) -> EventStream:
        events = EventStream()
        events.emit(SyncEvent(app="shop", cycle_id="c1", key=str(_CM), delta_kind="create", outcome="applied"))
        events.emit(SyncEvent(app="shop", cycle_id="c1", key=str(_DEPLOY), delta_kind="update", outcome="failed"))
        return events

    def test_newest_first(self) -> None:
        body = _client(events=self._stream()).get("/api/v1/events").json()
        assert [e["key"] for e in body["events"]] == [str(_DEPLOY), str(_CM)]

    def test_filter_and_limit(self) -> None:
        client = _client(events=self._stream())
        assert [e["key"] for e in client.get("/api/v1/events", params={"resource": str(_CM)}).json()["events"]] == [str(_CM)]
        assert len(client.get("/api/v1/events", params={"limit": 1}).json()["events"]) == 1

    def test_no_stream_returns_empty(self) -> None:
        assert _client().get("/api/v1/events").json() == {"events": []}

    def test_invalid_limit_is_400(self) -> None:
        resp = _client(events=self._stream()).get("/api/v1/events", params={"limit": 0})
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_REQUEST"


class TestMetricsEndpoint:
    def test_exposes_prometheus_text(self) -> None:
        resp = _client().get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "kubesync_" in resp.text


# ---------------------------------------------------------------------------
# Real drift loop
# ---------------------------------------------------------------------------


async def _no_sleep(_: float) -> None:
    return None


class TestWithDriftLoop:
    def _loop(self) -> tuple[DriftLoop, EventStream]:
        store = InMemoryLiveStore()
        desired = DesiredState(
            "rev-7",
            {
                _CM: {"data": {"LOG_LEVEL": "info"}},
                _DEPLOY: {"spec": {"replicas": 2, "template": {"spec": {"containers": [{"name": "web", "image": "web:1"}]}}}},
            },
        )
        differ = Differ("shop")
        history = SyncHistory()
        events = EventStream()
        loop = DriftLoop(
            "shop",
            StaticDesiredSource(desired),
            store,
            differ,
            SyncExecutor(store, differ, history, sleep=_no_sleep),
            HealthAssessor(grace_seconds=300),
            history,
            events=events,
        )
        return loop, events

    async def test_status_reflects_last_cycle(self) -> None:
        loop, events = self._loop()
        await loop.reconcile_once()
        app = create_app(loop=loop, events=events)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            status = (await client.get("/api/v1/status")).json()
            recent = (await client.get("/api/v1/events", params={"resource": str(_DEPLOY)})).json()

        assert status["revision"] == "rev-7"
        assert status["sync_status"] == "synced"
        assert status["last_cycle"]["changes"] == 2
        assert {r["resource"] for r in status["last_cycle"]["results"]} == {str(_CM), str(_DEPLOY)}
        assert all(r["outcome"] == "applied" for r in status["last_cycle"]["results"])
        assert recent["events"]
        assert all(e["key"] == str(_DEPLOY) for e in recent["events"])

    async def test_second_manual_sync_is_conflict(self) -> None:
        loop, events = self._loop()
        app = create_app(loop=loop, events=events)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/api/v1/sync")
            second = await client.post("/api/v1/sync")

        assert first.status_code == 202
        assert second.status_code == 409
