"""Tests for rent_tracker.notifications -- payment notification parsing."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from rent_tracker.models import (
    DIRECTION_CANCELLED,
    DIRECTION_RECEIVED,
    DIRECTION_REMINDER,
    DIRECTION_REQUESTED,
    DIRECTION_UNKNOWN,
    NotificationMessage,
)
from rent_tracker.notifications import (
    detect_direction,
    extract_note,
    parse_amount,
    parse_message,
    parse_notification,
    read_email,
)


class TestDetectDirection:
    @pytest.mark.parametrize(
        "subject, direction, in_reply",
        [
            ("John Doe paid your $96.36 request", DIRECTION_RECEIVED, True),
            ("John Doe paid you $96.36", DIRECTION_RECEIVED, False),
            ("You requested $96.36 from John Doe", DIRECTION_REQUESTED, False),
            ("Reminder: payment request to John Doe", DIRECTION_REMINDER, False),
            ("John Doe cancelled a $20.00 charge", DIRECTION_CANCELLED, False),
            ("Your weekly summary", DIRECTION_UNKNOWN, False),
        ],
    )
    def test_keywords(self, subject, direction, in_reply):
        _, got_direction, got_in_reply = detect_direction(subject)
        assert got_direction == direction
        assert got_in_reply is in_reply

    def test_precedence_requested_before_reminder(self):
        """A reminder that mentions 'requested' is classified as requested."""
        _, direction, _ = detect_direction("Reminder: You requested $96.36 from John Doe")
        assert direction == DIRECTION_REQUESTED


class TestParseAmount:
    def test_thousands_separator(self):
        assert parse_amount("1,685.00") == Decimal("1685.00")

    def test_garbage(self):
        assert parse_amount("abc") is None


class TestExtractNote:
    def test_bill_breakdown(self):
        body = "Jane Roe paid you\nPG&E $150.20 + Water $80.10\nSee transaction"
        assert "PG&E $150.20 + Water $80.10" in extract_note(body)

    def test_quoted_note(self):
        body = 'Payment received. note: "2025-July-Water thanks!" Details below.'
        assert extract_note(body) == "2025-July-Water thanks!"

    def test_decorated_note(self):
        body = "John Doe paid you $96.36\n\U0001F4A1 2025-July-Electricity\nSee transaction"
        assert extract_note(body) == "\U0001F4A1 2025-July-Electricity"

    def test_no_note(self):
        assert extract_note("Nothing here") == ""
        assert extract_note("") == ""


class TestParseNotification:
    def test_received_payment(self):
        event = parse_notification(
            "John Doe paid you $96.36",
            "\U0001F4A1 2025-July-Electricity\nSee transaction",
            message_id="<abc@venmo.com>",
            received_at=datetime(2025, 7, 25, 12, 0),
        )
        assert event.event_id == "<abc@venmo.com>"
        assert event.direction == DIRECTION_RECEIVED
        assert event.actor == "John Doe"
        assert event.amount == Decimal("96.36")
        assert event.tracking_code == "2025-July-Electricity"
        assert event.in_reply is False

    def test_reply_to_request(self):
        event = parse_notification("Jane Roe paid your $1,685.00 request", "")
        assert event.direction == DIRECTION_RECEIVED
        assert event.in_reply is True
        assert event.actor == "Jane Roe"
        assert event.amount == Decimal("1685.00")

    def test_requested(self):
        event = parse_notification(
            "You requested $96.36 from John Doe",
            "2025-July-Electricity - Electricity bill for 2025-07",
        )
        assert event.direction == DIRECTION_REQUESTED
        assert event.actor == "John Doe"
        assert event.amount == Decimal("96.36")
        assert event.tracking_code == "2025-July-Electricity"

    def test_reminder_amount_from_body(self):
        event = parse_notification(
            "Reminder: payment request to John Doe", "You requested $96.36 on July 20, 2025."
        )
        assert event.direction == DIRECTION_REMINDER
        assert event.actor == "John Doe"
        assert event.amount == Decimal("96.36")

    def test_cancelled(self):
        event = parse_notification("John Doe cancelled a $20.00 charge", "")
        assert event.direction == DIRECTION_CANCELLED
        assert event.actor == "John Doe"
        assert event.amount == Decimal("20.00")

    def test_unknown_has_no_actor_or_amount(self):
        event = parse_notification("Your weekly summary", "You received $40.00 this week")
        assert event.direction == DIRECTION_UNKNOWN
        assert event.actor == ""
        assert event.amount is None

    def test_event_id_digest_when_no_message_id(self):
        a = parse_notification("John Doe paid you $5.00", "body")
        b = parse_notification("John Doe paid you $5.00", "body")
        assert a.event_id == b.event_id
        assert len(a.event_id) == 16

    def test_received_at_falls_back_to_body_date(self):
        event = parse_notification("John Doe paid you $5.00", "Paid on July 25, 2025")
        assert event.received_at == datetime(2025, 7, 25)

    def test_tracking_code_from_subject(self):
        event = parse_notification("John Doe paid you $96.36 for 2025-July-Water", "")
        assert event.tracking_code == "2025-July-Water"

    def test_parse_message_wrapper(self):
        msg = NotificationMessage(subject="John Doe paid you $5.00", body="", message_id="m1")
        assert parse_message(msg).event_id == "m1"


class TestReadEmail:
    def test_plain_text_message(self, tmp_path: Path):
        path = tmp_path / "payment.eml"
        path.write_text(
            "From: Venmo <venmo@venmo.com>\n"
            "To: landlord@example.com\n"
            "Subject: John Doe paid you $96.36\n"
            "Message-ID: <m-123@venmo.com>\n"
            "Date: Fri, 25 Jul 2025 12:00:00 -0700\n"
            "Content-Type: text/plain; charset=utf-8\n"
            "\n"
            'John Doe paid you $96.36. note: "2025-July-Electricity"\n',
            encoding="utf-8",
        )
        msg = read_email(path)
        assert msg.subject == "John Doe paid you $96.36"
        assert msg.message_id == "<m-123@venmo.com>"
        assert msg.received_at is not None
        assert msg.received_at.year == 2025
        assert "2025-July-Electricity" in msg.body

        event = parse_message(msg)
        assert event.amount == Decimal("96.36")
        assert event.tracking_code == "2025-July-Electricity"

    def test_html_only_message(self, tmp_path: Path):
        path = tmp_path / "payment.eml"
        path.write_text(
            "Subject: Jane Roe paid you $50.00\n"
            "Content-Type: text/html; charset=utf-8\n"
            "\n"
            "<html><body><p>Jane Roe paid you <b>$50.00</b></p></body></html>\n",
            encoding="utf-8",
        )
        msg = read_email(path)
        assert "<b>" not in msg.body
        assert "$50.00" in msg.body

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            read_email(tmp_path / "nope.eml")
