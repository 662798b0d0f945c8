"""Unit tests for kubesync.notifications.slack."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from kubesync.models.events import Alert, Severity
from kubesync.notifications.slack import SlackNotificationChannel


def _make_alert(severity: Severity = Severity.ERROR, resources: tuple[str, ...] = ("Deployment/prod/web",)) -> Alert:
    return Alert(
        app="shop",
        severity=severity,
        title="Manual intervention required",
        detail="Resources are degraded after sync and self-heal is disabled.",
        resources=resources,
        raised_at=datetime(2026, 1, 15, 10, 30, 0, tzinfo=UTC),
    )


def _mock_client(response: MagicMock | None = None, side_effect: Exception | None = None) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    return mock_client


class TestSlackNotificationChannel:
    def test_raises_on_empty_webhook_url(self) -> None:
        with pytest.raises(ValueError, match="webhook_url"):
            SlackNotificationChannel(webhook_url="")

    def test_channel_name_is_slack(self) -> None:
        assert SlackNotificationChannel(webhook_url="https://hooks.slack.com/test").channel_name == "slack"

    def test_build_payload_structure(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        payload = ch.build_payload(_make_alert(Severity.CRITICAL))
        att = payload["attachments"][0]  # type: ignore[index]
        assert att["color"] == "#800000"
        header = att["blocks"][0]
        assert header["type"] == "header"
        assert "[shop] Manual intervention required" in header["text"]["text"]
        context = att["blocks"][-1]["elements"][0]["text"]
        assert "CRITICAL" in context
        assert "2026-01-15 10:30:00 UTC" in context

    def test_build_payload_lists_resources(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        payload = ch.build_payload(_make_alert())
        texts = [b["text"]["text"] for b in payload["attachments"][0]["blocks"] if b["type"] == "section"]  # type: ignore[index]
        combined = " ".join(texts)
        assert "`Deployment/prod/web`" in combined
        assert "self-heal is disabled" in combined

    def test_build_payload_truncates_long_resource_lists(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        resources = tuple(f"ConfigMap/prod/cm-{i}" for i in range(13))
        payload = ch.build_payload(_make_alert(resources=resources))
        text = payload["attachments"][0]["blocks"][2]["text"]["text"]  # type: ignore[index]
        assert "cm-9" in text
        assert "cm-10" not in text
        assert "and 3 more" in text

    async def test_send_returns_true_on_200(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        response = MagicMock()
        response.status_code = 200
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(response)
            mock_client_cls.return_value = mock_client
            assert await ch.send(_make_alert()) is True
        mock_client.post.assert_awaited_once()
        assert mock_client.post.await_args.args[0] == "https://hooks.slack.com/test"

    async def test_send_returns_false_on_non_200(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        response = MagicMock()
        response.status_code = 400
        response.text = "invalid_payload"
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client_cls.return_value = _mock_client(response)
            assert await ch.send(_make_alert()) is False

    async def test_send_returns_false_on_timeout(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client_cls.return_value = _mock_client(side_effect=httpx.TimeoutException("timed out"))
            assert await ch.send(_make_alert()) is False

    async def test_send_returns_false_on_connect_error(self) -> None:
        ch = SlackNotificationChannel(webhook_url="https://hooks.slack.com/test")
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client_cls.return_value = _mock_client(side_effect=httpx.ConnectError("refused"))
            assert await ch.send(_make_alert()) is False

    def test_severity_colors_all_defined(self) -> None:
        from kubesync.notifications.slack import _SEVERITY_COLORS

        for severity in Severity:
            assert severity in _SEVERITY_COLORS, f"Missing colour for {severity}"
