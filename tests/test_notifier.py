"""Tests for rent_tracker.notifier -- webhook and null notifiers."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from rent_tracker.models import AppConfig
from rent_tracker.notifier import (
    NotificationError,
    NullNotifier,
    WebhookNotifier,
    build_notifier,
    format_message,
)

WEBHOOK_URL = "https://hooks.example.com/abc"

EVENT = {
    "event_id": "m1",
    "request_id": 3,
    "recipient": "John Doe",
    "category": "electricity",
    "year": 2025,
    "month": 7,
    "amount": "96.36",
    "method": "tracking",
    "confidence": 1.0,
    "applied_at": "2025-07-25T12:00:00",
}


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, text="ok", request=httpx.Request("POST", WEBHOOK_URL))


class TestFormatMessage:
    def test_summary(self):
        text = format_message(EVENT)
        assert "$96.36 from John Doe" in text
        assert "electricity 2025-07" in text
        assert "request #3" in text


class TestWebhookNotifier:
    def test_posts_content(self):
        notifier = WebhookNotifier(url_env="TEST_WEBHOOK_URL")
        with (
            patch.dict("os.environ", {"TEST_WEBHOOK_URL": WEBHOOK_URL}),
            patch("rent_tracker.notifier.httpx.post", return_value=_response(200)) as mock_post,
        ):
            notifier.send(EVENT)

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == WEBHOOK_URL
        assert kwargs["json"]["content"] == format_message(EVENT)
        assert kwargs["timeout"] == 10.0

    def test_missing_url(self):
        notifier = WebhookNotifier(url_env="TEST_WEBHOOK_URL_MISSING")
        with (
            patch.dict("os.environ", {}, clear=True),
            patch("rent_tracker.notifier.httpx.post") as mock_post,
        ):
            with pytest.raises(NotificationError, match="TEST_WEBHOOK_URL_MISSING"):
                notifier.send(EVENT)
        mock_post.assert_not_called()

    def test_http_error_status(self):
        notifier = WebhookNotifier(url_env="TEST_WEBHOOK_URL")
        with (
            patch.dict("os.environ", {"TEST_WEBHOOK_URL": WEBHOOK_URL}),
            patch("rent_tracker.notifier.httpx.post", return_value=_response(500)),
        ):
            with pytest.raises(NotificationError, match="500"):
                notifier.send(EVENT)

    def test_connection_error(self):
        notifier = WebhookNotifier(url_env="TEST_WEBHOOK_URL")
        with (
            patch.dict("os.environ", {"TEST_WEBHOOK_URL": WEBHOOK_URL}),
            patch(
                "rent_tracker.notifier.httpx.post",
                side_effect=httpx.ConnectError("Connection refused"),
            ),
        ):
            with pytest.raises(NotificationError, match="Connection refused"):
                notifier.send(EVENT)


class TestNullNotifier:
    def test_does_nothing(self):
        with patch("rent_tracker.notifier.httpx.post") as mock_post:
            NullNotifier().send(EVENT)
        mock_post.assert_not_called()


class TestBuildNotifier:
    def test_none(self):
        assert isinstance(build_notifier(AppConfig()), NullNotifier)

    def test_webhook(self):
        notifier = build_notifier(AppConfig(notifier_provider="webhook", webhook_url_env="X_URL"))
        assert isinstance(notifier, WebhookNotifier)
        assert notifier.url_env == "X_URL"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_notifier(AppConfig(notifier_provider="pager"))
