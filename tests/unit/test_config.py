"""Tests for kubesync.config: environment variable loading and validation.

Covers:
  - Default values when no KUBESYNC_* env vars are set
  - Fields read from their KUBESYNC_* env vars
  - Numeric and duration clamping
  - Invalid durations, log levels and backends raise ValueError
  - Boolean parsing for truthy/falsy strings
"""

from __future__ import annotations

import os

import pytest

from kubesync.config import load_config, parse_duration
from kubesync.models.config import KubeSyncConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("KUBESYNC_"):
            monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestConfigDefaults:
    def test_returns_kubesync_config_type(self) -> None:
        assert isinstance(load_config(), KubeSyncConfig)

    def test_sync_defaults(self) -> None:
        sync = load_config().sync
        assert sync.interval_seconds == 30.0
        assert (sync.auto_sync, sync.self_heal, sync.prune) == (True, True, True)
        assert sync.retry_limit == 5
        assert sync.retry_backoff_seconds == 5.0
        assert sync.retry_factor == 2.0
        assert sync.retry_max_backoff_seconds == 180.0
        assert sync.history_persistence_enabled is False

    def test_store_defaults_to_kubernetes(self) -> None:
        assert load_config().store.backend == "kubernetes"

    def test_health_grace_default(self) -> None:
        assert load_config().health.grace_seconds == 300.0

    def test_autoscale_defaults(self) -> None:
        autoscale = load_config().autoscale
        assert autoscale.enabled is True
        assert autoscale.cooldown_seconds == 300.0
        assert autoscale.min_change == 0.1

    def test_api_and_log_defaults(self) -> None:
        config = load_config()
        assert config.api.port == 8080
        assert config.log.level == "info"
        assert config.app_name == "default"
        assert config.source.url == ""


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


class TestConfigFromEnv:
    def test_reads_app_and_source(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_APP_NAME", "shop")
        monkeypatch.setenv("KUBESYNC_SOURCE_URL", "https://config.example.com/shop.json")
        monkeypatch.setenv("KUBESYNC_SOURCE_TOKEN", " secret ")
        config = load_config()
        assert config.app_name == "shop"
        assert config.source.url == "https://config.example.com/shop.json"
        assert config.source.token == "secret"

    def test_reads_durations(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_INTERVAL", "2m")
        monkeypatch.setenv("KUBESYNC_HEALTH_GRACE", "1h")
        monkeypatch.setenv("KUBESYNC_AUTOSCALE_COOLDOWN", "90s")
        config = load_config()
        assert config.sync.interval_seconds == 120.0
        assert config.health.grace_seconds == 3600.0
        assert config.autoscale.cooldown_seconds == 90.0

    def test_memory_backend(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_STORE_BACKEND", "Memory")
        assert load_config().store.backend == "memory"

    @pytest.mark.parametrize("raw", ["1", "true", "YES", "y", "on"])
    def test_truthy_values(self, monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_HISTORY_PERSISTENCE_ENABLED", raw)
        assert load_config().sync.history_persistence_enabled is True

    @pytest.mark.parametrize("raw", ["0", "false", "no", "off", "nope"])
    def test_falsy_values(self, monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_SELF_HEAL", raw)
        assert load_config().sync.self_heal is False

    def test_log_level_is_normalised(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_LOG_LEVEL", "DEBUG")
        assert load_config().log.level == "debug"


# ---------------------------------------------------------------------------
# Clamping and validation
# ---------------------------------------------------------------------------


class TestConfigClamping:
    def test_sync_interval_clamped_low(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_INTERVAL", "1s")
        assert load_config().sync.interval_seconds == 5.0

    def test_sync_interval_clamped_high(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_INTERVAL", "2d")
        assert load_config().sync.interval_seconds == 3600.0

    def test_port_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_API_PORT", "80")
        assert load_config().api.port == 1024
        monkeypatch.setenv("KUBESYNC_API_PORT", "99999")
        assert load_config().api.port == 65535

    def test_unparsable_int_falls_back_to_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_RETRY_LIMIT", "many")
        assert load_config().sync.retry_limit == 5

    def test_min_change_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_AUTOSCALE_MIN_CHANGE", "3")
        assert load_config().autoscale.min_change == 1.0

    def test_invalid_duration_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_SYNC_INTERVAL", "30 seconds")
        with pytest.raises(ValueError, match="Invalid duration"):
            load_config()

    def test_invalid_backend_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_STORE_BACKEND", "etcd")
        with pytest.raises(ValueError, match="Invalid store backend"):
            load_config()

    def test_invalid_log_level_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESYNC_LOG_LEVEL", "verbose")
        with pytest.raises(ValueError, match="Invalid log level"):
            load_config()


class TestParseDuration:
    @pytest.mark.parametrize(("raw", "seconds"), [("45s", 45.0), ("5m", 300.0), ("2h", 7200.0), ("1d", 86400.0)])
    def test_units(self, raw: str, seconds: float) -> None:
        assert parse_duration(raw) == seconds

    @pytest.mark.parametrize("raw", ["", "5", "m5", "1.5h", "-3s"])
    def test_rejects_malformed(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(raw)
