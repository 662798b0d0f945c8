"""Unit tests for kubesync.app: KubeSyncApp lifecycle and _ComponentError."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kubesync.app import KubeSyncApp, _ComponentError
from kubesync.models.config import (
    AutoscaleConfig,
    KubeSyncConfig,
    MetricsSourceConfig,
    SourceConfig,
    StoreConfig,
    SyncConfig,
)
from kubesync.store.http_source import HTTPDesiredSource
from kubesync.store.memory import InMemoryLiveStore, StaticDesiredSource, StaticMetricsSource
from kubesync.store.prometheus import PrometheusMetricsSource


def _memory_config(**overrides: object) -> KubeSyncConfig:
    return KubeSyncConfig(app_name="shop", store=StoreConfig(backend="memory"), **overrides)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# TestComponentError
# ---------------------------------------------------------------------------


class TestComponentError:
    def test_stores_fields(self) -> None:
        cause = ValueError("something went wrong")
        err = _ComponentError("stores", cause)
        assert err.component == "stores"
        assert err.cause is cause

    def test_message_includes_component_and_cause(self) -> None:
        err = _ComponentError("drift_loop", RuntimeError("fail"))
        assert "drift_loop" in str(err)
        assert "fail" in str(err)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


class TestStartup:
    def test_init_defaults(self) -> None:
        app = KubeSyncApp()
        assert app.config is None
        assert app.running is False
        assert app.loop is None

    async def test_memory_backend_starts_everything(self) -> None:
        app = KubeSyncApp(_memory_config())
        await app.start(serve_api=False)
        try:
            assert app.running is True
            assert app.loop is not None and app.loop.running
            assert isinstance(app._store, InMemoryLiveStore)
            assert isinstance(app._source, StaticDesiredSource)
            assert isinstance(app._metrics_source, StaticMetricsSource)
            assert app._autoscaler is not None
            assert app._delivery is not None
            assert app._history_store is None
        finally:
            await app.stop()
        assert app.running is False
        assert app.loop is None

    async def test_source_and_prometheus_urls_select_http_adapters(self) -> None:
        config = _memory_config(
            source=SourceConfig(url="https://config.example.com/shop.json"),
            metrics=MetricsSourceConfig(prometheus_url="http://prometheus:9090"),
        )
        app = KubeSyncApp(config)
        with patch("kubesync.app.KubeSyncApp._start_drift_loop", new=AsyncMock()):
            await app.start(serve_api=False)
        try:
            assert isinstance(app._source, HTTPDesiredSource)
            assert isinstance(app._metrics_source, PrometheusMetricsSource)
        finally:
            await app.stop()

    async def test_autoscaler_disabled_by_config(self) -> None:
        app = KubeSyncApp(_memory_config(autoscale=AutoscaleConfig(enabled=False)))
        await app.start(serve_api=False)
        try:
            assert app._autoscaler is None
        finally:
            await app.stop()

    async def test_history_persistence(self, tmp_path: Path) -> None:
        config = _memory_config(sync=SyncConfig(history_persistence_enabled=True, history_db_path=str(tmp_path / "h.db")))
        app = KubeSyncApp(config)
        await app.start(serve_api=False)
        try:
            assert app._history_store is not None
        finally:
            await app.stop()
        assert app._history_store is None

    async def test_notifications_failure_is_non_fatal(self) -> None:
        app = KubeSyncApp(_memory_config())
        with patch("kubesync.notifications.build_notification_dispatcher", side_effect=RuntimeError("bad webhook")):
            await app.start(serve_api=False)
        try:
            assert app._notifications is None
            assert app.running is True
        finally:
            await app.stop()

    async def test_store_failure_raises_component_error(self) -> None:
        app = KubeSyncApp(_memory_config())
        with (
            patch("kubesync.store.memory.InMemoryLiveStore", side_effect=RuntimeError("boom")),
            pytest.raises(_ComponentError) as exc_info,
        ):
            await app.start(serve_api=False)
        assert exc_info.value.component == "stores"
        await app.stop()


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    async def test_stop_never_started_is_noop(self) -> None:
        app = KubeSyncApp()
        await app.stop()
        assert app.running is False

    async def test_stop_cancels_background_tasks(self) -> None:
        app = KubeSyncApp(_memory_config())
        app._log = MagicMock()
        app._running = True
        task = asyncio.create_task(asyncio.sleep(3600))
        app._background_tasks.append(task)

        await app.stop()

        assert task.cancelled()
        assert app._background_tasks == []

    async def test_stop_component_with_none_is_noop(self) -> None:
        app = KubeSyncApp()
        await app._stop_component("loop", None)

    async def test_stop_component_prefers_stop_then_close(self) -> None:
        app = KubeSyncApp()
        closable = MagicMock(spec=["close"])
        closable.close = AsyncMock()
        await app._stop_component("store", closable)
        closable.close.assert_awaited_once()

    async def test_stop_component_with_sync_stop(self) -> None:
        app = KubeSyncApp()
        component = MagicMock(spec=["stop"])
        await app._stop_component("rest", component)
        component.stop.assert_called_once()

    async def test_stop_component_handles_timeout(self) -> None:
        app = KubeSyncApp()
        app._log = MagicMock()
        component = MagicMock(spec=["stop"])
        component.stop = AsyncMock()
        with patch("kubesync.app.asyncio.wait_for", side_effect=TimeoutError):
            await app._stop_component("drift_loop", component)
        app._log.warning.assert_called_once()

    async def test_stop_component_handles_exception(self) -> None:
        app = KubeSyncApp()
        app._log = MagicMock()
        component = MagicMock(spec=["stop"])
        component.stop = AsyncMock(side_effect=RuntimeError("teardown failed"))
        await app._stop_component("delivery", component)
        app._log.error.assert_called_once()
