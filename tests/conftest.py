"""Shared pytest fixtures for Rent Tracker tests.

Provides reusable fixtures for:
- ledger: an initialized SQLite ledger in a temporary directory.
- tmp_project_dir: a temporary project created by ``config.initialize``.
- recording_notifier / failing_notifier: notifier doubles for the applier.
- make_request / make_event: factories for requests and payment events.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from rent_tracker.config import initialize
from rent_tracker.ledger import Ledger
from rent_tracker.models import DIRECTION_RECEIVED, OutstandingRequest, PaymentEvent
from rent_tracker.notifier import NotificationError


class RecordingNotifier:
    """Notifier double that keeps every event it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, event: dict) -> None:
        self.sent.append(event)


class FailingNotifier:
    """Notifier double that always fails."""

    def send(self, event: dict) -> None:
        raise NotificationError("webhook down")


@pytest.fixture
def ledger(tmp_path: Path) -> Ledger:
    """A fresh ledger with the schema created."""
    led = Ledger(tmp_path / "ledger.db")
    led.init_db()
    return led


@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """A temporary project directory with default config.toml and rules.toml."""
    project = tmp_path / "rent-project"
    initialize(project)
    return project


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def make_request(ledger: Ledger):
    """Factory that stores a request and returns it with its id."""

    def _make(
        recipient: str = "John Doe",
        category: str = "electricity",
        year: int = 2025,
        month: int = 7,
        amount: str = "96.36",
        tracking_code: str = "",
        created_at: datetime | None = None,
    ) -> OutstandingRequest:
        request = ledger.add_request(
            OutstandingRequest(
                recipient=recipient,
                category=category,
                year=year,
                month=month,
                amount=Decimal(amount),
                tracking_code=tracking_code,
                created_at=created_at or datetime(2025, 7, 20, 9, 0),
            )
        )
        assert request is not None
        return request

    return _make


@pytest.fixture
def make_event(ledger: Ledger):
    """Factory that records a received payment event and returns it."""
    counter = {"n": 0}

    def _make(
        actor: str = "John Doe",
        amount: str | None = "96.36",
        note: str = "",
        tracking_code: str = "",
        direction: str = DIRECTION_RECEIVED,
        received_at: datetime | None = None,
        record: bool = True,
    ) -> PaymentEvent:
        counter["n"] += 1
        event = PaymentEvent(
            event_id=f"msg-{counter['n']}",
            direction=direction,
            actor=actor,
            amount=Decimal(amount) if amount is not None else None,
            note=note,
            tracking_code=tracking_code,
            received_at=received_at or datetime(2025, 7, 25, 12, 0),
            subject=f"{actor} paid you ${amount}",
        )
        if record:
            assert ledger.record_event(event)
        return event

    return _make
