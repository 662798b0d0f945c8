"""Alert dispatch to pluggable notification channels.

Alerts are raised for resources halted pending manual intervention, for
rollouts that roll back or abort, and for ownership violations.  The
dispatcher fans each alert out to every channel concurrently; a failing
channel is logged and counted, never propagated into the control loop.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

from kubesync.models.events import Alert
from kubesync.observability.logging import get_logger
from kubesync.observability.metrics import notifications_total

_log = get_logger("notifications")

_DEFAULT_COOLDOWN = timedelta(minutes=15)


class NotificationChannel(ABC):
    """A destination for operator alerts."""

    @property
    @abstractmethod
    def channel_name(self) -> str: ...

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """Deliver *alert*; return True on success."""


class AlertDeduplicator:
    """Suppresses repeats of the same alert within a cool-down."""

    def __init__(self, cooldown: timedelta = _DEFAULT_COOLDOWN) -> None:
        self._cooldown = cooldown
        self._last_sent: dict[tuple[str, str, tuple[str, ...]], datetime] = {}

    @staticmethod
    def _key(alert: Alert) -> tuple[str, str, tuple[str, ...]]:
        return (alert.app, alert.title, tuple(sorted(alert.resources)))

    def should_send(self, alert: Alert) -> bool:
        key = self._key(alert)
        last = self._last_sent.get(key)
        now = datetime.now(tz=UTC)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_sent[key] = now
        return True


class NotificationDispatcher:
    """Fans alerts out to registered channels."""

    def __init__(self, deduplicator: AlertDeduplicator | None = None) -> None:
        self._channels: list[NotificationChannel] = []
        self._dedup = deduplicator or AlertDeduplicator()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def register(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)
        _log.info("notification_channel_registered", channel=channel.channel_name)

    async def dispatch(self, alert: Alert) -> dict[str, bool]:
        """Send *alert* to every channel; returns per-channel success."""
        _log.info(
            "alert_raised",
            app=alert.app,
            severity=alert.severity.value,
            title=alert.title,
            resources=list(alert.resources),
        )
        if not self._channels or not self._dedup.should_send(alert):
            return {}

        outcomes = await asyncio.gather(
            *(self._send_one(channel, alert) for channel in self._channels),
        )
        return {channel.channel_name: ok for channel, ok in zip(self._channels, outcomes, strict=True)}

    async def _send_one(self, channel: NotificationChannel, alert: Alert) -> bool:
        try:
            ok = await channel.send(alert)
        except Exception as exc:
            _log.error(
                "notification_channel_error",
                channel=channel.channel_name,
                error=str(exc),
                alert_id=alert.alert_id,
            )
            ok = False
        notifications_total.labels(channel=channel.channel_name, success=str(ok).lower()).inc()
        return ok
