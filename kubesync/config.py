"""Configuration loading from ``KUBESYNC_*`` environment variables.

Integers and floats are clamped to their documented bounds rather than
rejected; malformed durations, log levels and store backends raise
``ValueError`` so that a misconfigured controller fails at startup.
"""

from __future__ import annotations

import os
import re

from kubesync.models.config import (
    APIConfig,
    AutoscaleConfig,
    DeliveryConfig,
    HealthConfig,
    KubeSyncConfig,
    LogConfig,
    MetricsSourceConfig,
    NotificationsConfig,
    SourceConfig,
    StoreConfig,
    SyncConfig,
)

_PREFIX = "KUBESYNC_"
_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_DURATION_RE = re.compile(r"^([0-9]+)(s|m|h|d)$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_STORE_BACKENDS = ("kubernetes", "memory")


def parse_duration(value: str) -> float:
    """Parse ``30s``, ``5m``, ``2h`` or ``1d`` into seconds."""
    m = _DURATION_RE.match(value.strip())
    if not m:
        raise ValueError(f"Invalid duration format: {value!r}. Expected [0-9]+(s|m|h|d).")
    return float(int(m.group(1)) * _UNIT_SECONDS[m.group(2)])


def _env(name: str) -> str | None:
    return os.environ.get(_PREFIX + name)


def _str(name: str, default: str) -> str:
    raw = _env(name)
    return default if raw is None else raw.strip()


def _bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _int(name: str, default: int, lo: int, hi: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(lo, min(hi, value))


def _float(name: str, default: float, lo: float, hi: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(lo, min(hi, value))


def _duration(name: str, default: str, lo: float, hi: float) -> float:
    raw = _env(name)
    seconds = parse_duration(raw if raw is not None else default)
    return max(lo, min(hi, seconds))


def load_config() -> KubeSyncConfig:
    """Build a :class:`KubeSyncConfig` from the process environment."""
    backend = _str("STORE_BACKEND", "kubernetes").lower()
    if backend not in _STORE_BACKENDS:
        raise ValueError(f"Invalid store backend: {backend!r}. Expected one of {_STORE_BACKENDS}.")

    level = _str("LOG_LEVEL", "info").lower()

    return KubeSyncConfig(
        app_name=_str("APP_NAME", "default"),
        source=SourceConfig(
            url=_str("SOURCE_URL", ""),
            token=_str("SOURCE_TOKEN", ""),
            timeout_seconds=_duration("SOURCE_TIMEOUT", "10s", 1.0, 120.0),
        ),
        store=StoreConfig(
            backend=backend,  # type: ignore[arg-type]
            timeout_seconds=_duration("STORE_TIMEOUT", "10s", 1.0, 120.0),
        ),
        sync=SyncConfig(
            interval_seconds=_duration("SYNC_INTERVAL", "30s", 5.0, 3600.0),
            auto_sync=_bool("SYNC_AUTO", True),
            self_heal=_bool("SYNC_SELF_HEAL", True),
            prune=_bool("SYNC_PRUNE", True),
            retry_limit=_int("SYNC_RETRY_LIMIT", 5, 1, 10),
            retry_backoff_seconds=_duration("SYNC_RETRY_BACKOFF", "5s", 1.0, 60.0),
            retry_factor=_float("SYNC_RETRY_FACTOR", 2.0, 1.0, 10.0),
            retry_max_backoff_seconds=_duration("SYNC_RETRY_MAX_BACKOFF", "3m", 1.0, 3600.0),
            history_limit=_int("SYNC_HISTORY_LIMIT", 10, 1, 100),
            history_persistence_enabled=_bool("SYNC_HISTORY_PERSISTENCE_ENABLED", False),
            history_db_path=_str("SYNC_HISTORY_DB_PATH", "kubesync.db"),
        ),
        health=HealthConfig(
            grace_seconds=_duration("HEALTH_GRACE", "5m", 10.0, 3600.0),
        ),
        delivery=DeliveryConfig(
            poll_interval_seconds=_duration("DELIVERY_POLL_INTERVAL", "5s", 1.0, 300.0),
        ),
        autoscale=AutoscaleConfig(
            enabled=_bool("AUTOSCALE_ENABLED", True),
            interval_seconds=_duration("AUTOSCALE_INTERVAL", "15s", 5.0, 600.0),
            cooldown_seconds=_duration("AUTOSCALE_COOLDOWN", "5m", 0.0, 3600.0),
            min_change=_float("AUTOSCALE_MIN_CHANGE", 0.1, 0.0, 1.0),
        ),
        metrics=MetricsSourceConfig(
            prometheus_url=_str("PROMETHEUS_URL", ""),
            timeout_seconds=_duration("PROMETHEUS_TIMEOUT", "5s", 1.0, 60.0),
        ),
        notifications=NotificationsConfig(
            slack_webhook_url=_str("SLACK_WEBHOOK_URL", ""),
        ),
        api=APIConfig(port=_int("API_PORT", 8080, 1024, 65535)),
        log=LogConfig(level=level),
    )
