"""Slack notification channel.

Sends :class:`~kubesync.models.events.Alert` instances to a Slack incoming
webhook using Block Kit with severity-coded colours.
"""

from __future__ import annotations

import httpx
import structlog

from kubesync.models.events import Alert, Severity
from kubesync.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.slack")

_SEVERITY_COLORS: dict[Severity, str] = {
    Severity.INFO: "#36a64f",
    Severity.WARNING: "#ffae42",
    Severity.ERROR: "#e01e5a",
    Severity.CRITICAL: "#800000",
}

_SEVERITY_EMOJI: dict[Severity, str] = {
    Severity.INFO: ":information_source:",
    Severity.WARNING: ":warning:",
    Severity.ERROR: ":x:",
    Severity.CRITICAL: ":rotating_light:",
}

_MAX_LISTED_RESOURCES = 10


class SlackNotificationChannel(NotificationChannel):
    """Delivers alerts through a Slack incoming webhook.

    Args:
        webhook_url: Slack incoming webhook URL.
        timeout:     HTTP request timeout in seconds.
    """

    def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
        if not webhook_url:
            raise ValueError("Slack webhook_url must not be empty")
        self._webhook_url = webhook_url
        self._timeout = timeout

    @property
    def channel_name(self) -> str:
        return "slack"

    async def send(self, alert: Alert) -> bool:
        """Post *alert*; True on HTTP 200."""
        payload = self.build_payload(alert)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._webhook_url, json=payload)
        except httpx.TimeoutException:
            _log.warning("slack_request_timeout", alert_id=alert.alert_id)
            return False
        except httpx.HTTPError as exc:
            _log.warning("slack_http_error", error=str(exc), alert_id=alert.alert_id)
            return False

        if response.status_code == 200:
            return True
        _log.warning(
            "slack_unexpected_status",
            status_code=response.status_code,
            body=response.text[:200],
            alert_id=alert.alert_id,
        )
        return False

    def build_payload(self, alert: Alert) -> dict[str, object]:
        """Construct the Block Kit message payload."""
        color = _SEVERITY_COLORS.get(alert.severity, "#cccccc")
        emoji = _SEVERITY_EMOJI.get(alert.severity, ":bell:")
        title = f"{emoji} kubesync [{alert.app}] {alert.title}"

        listed = list(alert.resources[:_MAX_LISTED_RESOURCES])
        resources = "\n".join(f"• `{r}`" for r in listed) or "_none_"
        if len(alert.resources) > _MAX_LISTED_RESOURCES:
            resources += f"\n… and {len(alert.resources) - _MAX_LISTED_RESOURCES} more"
        raised_at = alert.raised_at.strftime("%Y-%m-%d %H:%M:%S UTC")

        return {
            "attachments": [
                {
                    "color": color,
                    "blocks": [
                        {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
                        {"type": "section", "text": {"type": "mrkdwn", "text": alert.detail}},
                        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Resources:*\n{resources}"}},
                        {
                            "type": "context",
                            "elements": [
                                {
                                    "type": "mrkdwn",
                                    "text": f"Alert ID: `{alert.alert_id}` | Severity: {alert.severity.value.upper()} | Raised at: {raised_at}",
                                }
                            ],
                        },
                    ],
                }
            ]
        }
