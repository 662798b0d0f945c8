"""Operator alert channels."""

from __future__ import annotations

from kubesync.models.config import NotificationsConfig
from kubesync.notifications.manager import AlertDeduplicator, NotificationChannel, NotificationDispatcher
from kubesync.notifications.slack import SlackNotificationChannel


def build_notification_dispatcher(config: NotificationsConfig) -> NotificationDispatcher:
    """Create a dispatcher with every channel *config* enables."""
    dispatcher = NotificationDispatcher()
    if config.slack_webhook_url:
        dispatcher.register(SlackNotificationChannel(config.slack_webhook_url))
    return dispatcher


__all__ = [
    "AlertDeduplicator",
    "NotificationChannel",
    "NotificationDispatcher",
    "SlackNotificationChannel",
    "build_notification_dispatcher",
]
