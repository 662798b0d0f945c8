"""Application bootstrap for kubesync.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → stores → history → executor
              → health → notifications → delivery → autoscaler → drift loop
              → REST

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that
a single component failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from kubesync.config import load_config
from kubesync.models.config import KubeSyncConfig
from kubesync.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from kubesync.autoscale.engine import AutoscaleEngine
    from kubesync.delivery.controller import ProgressiveDeliveryController
    from kubesync.health.assessor import HealthAssessor
    from kubesync.history.sqlite_store import SQLiteHistoryStore
    from kubesync.history.sync_history import SyncHistory
    from kubesync.notifications.manager import NotificationDispatcher
    from kubesync.observability.events import EventStream
    from kubesync.reconcile.differ import Differ
    from kubesync.reconcile.executor import SyncExecutor
    from kubesync.reconcile.loop import DriftLoop
    from kubesync.store.base import DesiredStateSource, LiveStateStore, MetricsSource

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubeSyncApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self, config: KubeSyncConfig | None = None) -> None:
        self.config: KubeSyncConfig | None = config

        self._source: DesiredStateSource | None = None
        self._store: LiveStateStore | None = None
        self._metrics_source: MetricsSource | None = None
        self._history_store: SQLiteHistoryStore | None = None
        self._history: SyncHistory | None = None
        self._differ: Differ | None = None
        self._executor: SyncExecutor | None = None
        self._assessor: HealthAssessor | None = None
        self._events: EventStream | None = None
        self._notifications: NotificationDispatcher | None = None
        self._delivery: ProgressiveDeliveryController | None = None
        self._autoscaler: AutoscaleEngine | None = None
        self._loop: DriftLoop | None = None
        self._rest_server: object | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def loop(self) -> DriftLoop | None:
        return self._loop

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self, serve_api: bool = True) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubesync_starting", version=_kubesync_version(), app=self.config.app_name)

        # --- 3. Stores (K8s client, desired source, metrics) -------------
        await self._start_stores()

        # --- 4. Sync history --------------------------------------------
        await self._start_history()

        # --- 5. Differ and executor --------------------------------------
        await self._start_executor()

        # --- 6. Health assessor and event stream -------------------------
        await self._start_health()

        # --- 7. Notification dispatcher ---------------------------------
        await self._start_notifications()

        # --- 8. Progressive delivery -------------------------------------
        await self._start_delivery()

        # --- 9. Autoscaler (optional) -------------------------------------
        await self._start_autoscaler()

        # --- 10. Drift loop ----------------------------------------------
        await self._start_drift_loop()

        # --- 11. REST API ------------------------------------------------
        if serve_api:
            await self._start_rest()

        self._running = True
        self._log.info("kubesync_started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_stores(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting stores", backend=self.config.store.backend)
        try:
            from kubesync.models.resources import DesiredState
            from kubesync.store.memory import InMemoryLiveStore, StaticDesiredSource, StaticMetricsSource

            if self.config.store.backend == "kubernetes":
                import kubernetes_asyncio.config as k8s_config

                from kubesync.store.kubernetes import KubernetesLiveStore

                try:
                    k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
                    self._log.info("k8s client configured from in-cluster service account")
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config()
                    self._log.info("k8s client configured from kubeconfig")

                store = KubernetesLiveStore()
                await store.open()
                self._store = store
            else:
                self._store = InMemoryLiveStore()

            if self.config.source.url:
                from kubesync.store.http_source import HTTPDesiredSource

                self._source = HTTPDesiredSource(
                    self.config.source.url,
                    token=self.config.source.token,
                    timeout=self.config.source.timeout_seconds,
                )
            else:
                self._log.warning("no desired-state source configured; desired state is empty")
                self._source = StaticDesiredSource(DesiredState(revision="empty", resources={}))

            if self.config.metrics.prometheus_url:
                from kubesync.store.prometheus import PrometheusMetricsSource

                self._metrics_source = PrometheusMetricsSource(
                    self.config.metrics.prometheus_url,
                    timeout=self.config.metrics.timeout_seconds,
                )
            else:
                self._metrics_source = StaticMetricsSource()
        except Exception as exc:
            raise _ComponentError("stores", exc) from exc

    async def _start_history(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting sync history")
        from kubesync.history.sqlite_store import SQLiteHistoryStore
        from kubesync.history.sync_history import SyncHistory

        persistence: SQLiteHistoryStore | None = None
        if self.config.sync.history_persistence_enabled:
            try:
                persistence = SQLiteHistoryStore(
                    self.config.sync.history_db_path,
                    max_results=self.config.sync.history_limit,
                )
                await persistence.open()
            except Exception as exc:
                # Persistence is non-fatal: history stays in memory only
                self._log.warning("sync history persistence unavailable", error=str(exc))
                persistence = None

        history = SyncHistory(max_results=self.config.sync.history_limit, persistence=persistence)
        if persistence is not None:
            history.restore(await persistence.load_recent())
        self._history_store = persistence
        self._history = history
        self._log.info("sync history started", persistence=persistence is not None)

    async def _start_executor(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        try:
            from kubesync.reconcile.differ import Differ
            from kubesync.reconcile.executor import RetryPolicy, SyncExecutor

            sync = self.config.sync
            self._differ = Differ(self.config.app_name)
            self._executor = SyncExecutor(
                self._store,
                self._differ,
                self._history,
                retry=RetryPolicy(
                    limit=sync.retry_limit,
                    base_seconds=sync.retry_backoff_seconds,
                    factor=sync.retry_factor,
                    cap_seconds=sync.retry_max_backoff_seconds,
                ),
                call_timeout=self.config.store.timeout_seconds,
            )
        except Exception as exc:
            raise _ComponentError("executor", exc) from exc

    async def _start_health(self) -> None:
        assert self.config is not None
        from kubesync.health.assessor import HealthAssessor
        from kubesync.observability.events import EventStream

        self._assessor = HealthAssessor(grace_seconds=self.config.health.grace_seconds)
        self._events = EventStream()

    async def _start_notifications(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from kubesync.notifications import build_notification_dispatcher

            self._notifications = build_notification_dispatcher(self.config.notifications)
            self._log.info("notifications started", channels=len(self._notifications.channels))
        except Exception as exc:
            # Notification failure is non-fatal: alerts won't fire but syncing works
            self._log.warning("notification dispatcher failed to start; alerts will be suppressed", error=str(exc))
            self._notifications = None

    async def _start_delivery(self) -> None:
        assert self.config is not None
        assert self._store is not None
        assert self._differ is not None
        assert self._executor is not None
        try:
            from kubesync.delivery.controller import ProgressiveDeliveryController

            self._delivery = ProgressiveDeliveryController(
                self.config.app_name,
                self._store,
                self._differ,
                self._executor,
                poll_interval=self.config.delivery.poll_interval_seconds,
                call_timeout=self.config.store.timeout_seconds,
                notifier=self._notifications,
                events=self._events,
            )
        except Exception as exc:
            raise _ComponentError("delivery", exc) from exc

    async def _start_autoscaler(self) -> None:
        assert self._log is not None
        assert self.config is not None
        if not self.config.autoscale.enabled:
            self._log.info("autoscaler disabled")
            return
        if not self.config.metrics.prometheus_url and self.config.store.backend == "kubernetes":
            self._log.warning("autoscaler disabled: no prometheus url configured")
            return
        assert self._store is not None
        assert self._metrics_source is not None
        assert self._differ is not None
        assert self._executor is not None
        try:
            from kubesync.autoscale.engine import AutoscaleEngine

            autoscale = self.config.autoscale
            engine = AutoscaleEngine(
                self._store,
                self._metrics_source,
                self._differ,
                self._executor,
                interval=autoscale.interval_seconds,
                cooldown=autoscale.cooldown_seconds,
                min_change=autoscale.min_change,
                call_timeout=self.config.store.timeout_seconds,
            )
            await engine.start()
            self._autoscaler = engine
        except Exception as exc:
            raise _ComponentError("autoscaler", exc) from exc

    async def _start_drift_loop(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._source is not None
        assert self._store is not None
        assert self._differ is not None
        assert self._executor is not None
        assert self._assessor is not None
        assert self._history is not None
        try:
            from kubesync.reconcile.loop import DriftLoop, LoopSettings

            sync = self.config.sync
            loop = DriftLoop(
                self.config.app_name,
                self._source,
                self._store,
                self._differ,
                self._executor,
                self._assessor,
                self._history,
                settings=LoopSettings(
                    interval_seconds=sync.interval_seconds,
                    auto_sync=sync.auto_sync,
                    self_heal=sync.self_heal,
                    prune=sync.prune,
                    backoff_base_seconds=sync.retry_backoff_seconds,
                    backoff_factor=sync.retry_factor,
                    backoff_cap_seconds=sync.retry_max_backoff_seconds,
                    call_timeout=self.config.store.timeout_seconds,
                ),
                events=self._events,
                notifier=self._notifications,
                delivery=self._delivery,
                autoscaler=self._autoscaler,
            )
            await loop.start()
            self._loop = loop
        except Exception as exc:
            raise _ComponentError("drift_loop", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from kubesync.api import build_app

            fastapi_app = build_app(
                loop=self._loop,
                delivery=self._delivery,
                events=self._events,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order.

        Each component's stop is wrapped independently; a failure in one
        component's teardown does not prevent the others from stopping.
        """
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubesync_shutting_down")

        self._running = False

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("rest", self._rest_server)
        await self._stop_component("drift_loop", self._loop)
        await self._stop_component("autoscaler", self._autoscaler)
        await self._stop_component("delivery", self._delivery)
        await self._stop_component("history", self._history_store)
        await self._stop_component("store", self._store)

        self._rest_server = None
        self._loop = None
        self._autoscaler = None
        self._delivery = None
        self._history_store = None
        self._store = None

        log.info("kubesync_stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() (or close()) on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None) or getattr(component, "close", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))


def _kubesync_version() -> str:
    from kubesync import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeSyncApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical("fatal startup error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()


def run() -> None:
    """Console entry point for ``kubesync-controller``."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
