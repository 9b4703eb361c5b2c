"""Outbound notifications for applied reconciliations.

Defines the Notifier protocol plus two implementations:
- WebhookNotifier: posts a short message to a chat webhook via httpx.
- NullNotifier: does nothing (the default, and for tests).

The applier calls ``send`` inside its ledger transaction, so a notifier
that raises rolls the whole apply back.  This module has no internal
imports beyond the config model -- the applier passes a plain dict.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

import httpx

from rent_tracker.models import AppConfig

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""


class Notifier(Protocol):
    """Protocol for reconciliation notifications."""

    def send(self, event: dict) -> None:
        """Deliver one notification.

        Args:
            event: Dict with keys event_id, request_id, recipient, category,
                year, month, amount, method, confidence, applied_at.

        Raises:
            NotificationError: If delivery failed.
        """
        ...


def format_message(event: dict) -> str:
    """Render a one-line human summary of an applied match."""
    return (
        f"Payment of ${event['amount']} from {event['recipient']} applied to "
        f"{event['category']} {event['year']}-{event['month']:02d} "
        f"(request #{event['request_id']}, {event['method']}, "
        f"confidence {event['confidence']:.2f})"
    )


class WebhookNotifier:
    """Notifier that posts ``{"content": ...}`` JSON to a webhook URL.

    The URL is read from the environment variable named by *url_env* at
    send time, so it never lives in config files.

    Args:
        url_env: Name of the environment variable containing the URL.
        timeout: HTTP request timeout in seconds. Default: 10.
    """

    def __init__(self, url_env: str, timeout: float = 10.0) -> None:
        self.url_env = url_env
        self.timeout = timeout

    def send(self, event: dict) -> None:
        url = os.environ.get(self.url_env, "")
        if not url:
            raise NotificationError(
                f"Webhook URL not found in environment variable '{self.url_env}'"
            )

        try:
            response = httpx.post(
                url,
                json={"content": format_message(event)},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NotificationError(
                f"Webhook returned HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationError(f"Webhook request failed: {exc}") from exc

        logger.debug("Sent notification for event %s", event.get("event_id"))


class NullNotifier:
    """No-op notifier. Used when ``provider = "none"``."""

    def send(self, event: dict) -> None:
        logger.debug("Notification suppressed for event %s", event.get("event_id"))


def build_notifier(config: AppConfig) -> Notifier:
    """Pick the notifier configured in ``[notifications]``.

    Raises:
        ValueError: If the provider is not ``"none"`` or ``"webhook"``.
    """
    provider = config.notifier_provider
    if provider == "webhook":
        return WebhookNotifier(url_env=config.webhook_url_env)
    if provider == "none":
        return NullNotifier()
    raise ValueError(f"Unknown notifications provider {provider!r}. Use 'none' or 'webhook'.")
