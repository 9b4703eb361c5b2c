"""Tests for rent_tracker.ledger -- SQLite persistence and state guards."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from rent_tracker.ledger import (
    EventAlreadyConsumed,
    Ledger,
    RequestNotOpen,
    UnknownRecord,
)
from rent_tracker.models import (
    DIRECTION_RECEIVED,
    DIRECTION_REQUESTED,
    STATUS_FOREGONE,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_SENT,
    OutstandingRequest,
    Transaction,
)


def _txn(transaction_id: str = "abc123def456", **kwargs) -> Transaction:
    defaults = dict(
        transaction_id=transaction_id,
        posted_on=date(2025, 7, 3),
        description="PGANDE WEB ONLINE",
        amount=Decimal("-289.09"),
        category="electricity",
        auto_approve=True,
        confidence=0.9,
    )
    defaults.update(kwargs)
    return Transaction(**defaults)


class TestSchema:
    def test_init_db_idempotent(self, tmp_path):
        ledger = Ledger(tmp_path / "sub" / "ledger.db")
        ledger.init_db()
        ledger.init_db()
        assert (tmp_path / "sub" / "ledger.db").exists()


class TestTransactions:
    def test_round_trip(self, ledger):
        assert ledger.save_transaction(_txn()) is True
        stored = ledger.get_transaction("abc123def456")
        assert stored.amount == Decimal("-289.09")
        assert stored.category == "electricity"
        assert stored.auto_approve is True
        assert stored.posted_on == date(2025, 7, 3)

    def test_duplicate_ignored(self, ledger):
        assert ledger.save_transaction(_txn()) is True
        assert ledger.save_transaction(_txn(category="other")) is False
        assert ledger.get_transaction("abc123def456").category == "electricity"

    def test_missing(self, ledger):
        assert ledger.get_transaction("nope") is None

    def test_override_category(self, ledger):
        ledger.save_transaction(_txn())
        ledger.override_category("abc123def456", "maintenance")
        stored = ledger.get_transaction("abc123def456")
        assert stored.category == "electricity"
        assert stored.effective_category == "maintenance"

    def test_override_unknown(self, ledger):
        with pytest.raises(UnknownRecord):
            ledger.override_category("nope", "other")

    def test_list_by_month(self, ledger):
        ledger.save_transaction(_txn("a"))
        ledger.save_transaction(_txn("b", posted_on=date(2025, 8, 1)))
        assert [t.transaction_id for t in ledger.list_transactions("2025-07")] == ["a"]
        assert len(ledger.list_transactions()) == 2


class TestRequests:
    def test_add_assigns_id_and_created_at(self, make_request):
        request = make_request()
        assert request.request_id > 0
        assert request.status == STATUS_PENDING
        assert request.amount == Decimal("96.36")
        assert request.created_at == datetime(2025, 7, 20, 9, 0)

    def test_unique_per_recipient_category_period(self, ledger, make_request):
        make_request()
        duplicate = ledger.add_request(
            OutstandingRequest("John Doe", "electricity", 2025, 7, Decimal("1.00"))
        )
        assert duplicate is None
        assert len(ledger.list_requests()) == 1

    def test_list_filters(self, ledger, make_request):
        make_request(category="electricity")
        make_request(category="water")
        make_request(month=8)
        assert len(ledger.list_requests(year=2025, month=7)) == 2
        assert len(ledger.list_requests(status=STATUS_PENDING)) == 3

    def test_open_requests_by_code_case_insensitive(self, ledger, make_request):
        request = make_request(tracking_code="2025-July-Electricity")
        found = ledger.open_requests_by_code("2025-july-electricity")
        assert [r.request_id for r in found] == [request.request_id]

    def test_open_requests_in_window(self, ledger, make_request):
        make_request(recipient="A", amount="100.00")
        make_request(recipient="B", amount="101.00")
        make_request(recipient="C", amount="105.00")
        found = ledger.open_requests_in_window(Decimal("100.50"), Decimal("0.50"))
        assert sorted(r.recipient for r in found) == ["A", "B"]

    def test_open_requests_for_period(self, ledger, make_request):
        make_request(category="rent", recipient="Jane Roe", amount="1685.00")
        make_request(category="rent", recipient="Jane Roe", amount="1685.00", month=8)
        found = ledger.open_requests_for("rent", 2025, 7)
        assert len(found) == 1
        assert found[0].month == 7

    def test_mark_sent_only_from_pending(self, ledger, make_request):
        request = make_request()
        assert ledger.mark_sent(request.request_id, at=datetime(2025, 7, 21)) is True
        assert ledger.mark_sent(request.request_id) is False
        stored = ledger.get_request(request.request_id)
        assert stored.status == STATUS_SENT
        assert stored.sent_at == datetime(2025, 7, 21)

    def test_record_reminder(self, ledger, make_request):
        request = make_request()
        ledger.record_reminder(request.request_id)
        ledger.record_reminder(request.request_id)
        assert ledger.get_request(request.request_id).reminder_count == 2

    def test_forego(self, ledger, make_request):
        request = make_request()
        foregone = ledger.forego(request.request_id)
        assert foregone.status == STATUS_FOREGONE
        assert ledger.open_requests_for("electricity", 2025, 7) == []

    def test_forego_twice_rejected(self, ledger, make_request):
        request = make_request()
        ledger.forego(request.request_id)
        with pytest.raises(RequestNotOpen):
            ledger.forego(request.request_id)

    def test_forego_unknown(self, ledger):
        with pytest.raises(UnknownRecord):
            ledger.forego(999)


class TestEvents:
    def test_record_once(self, ledger, make_event):
        event = make_event()
        assert ledger.record_event(event) is False
        assert ledger.has_event(event.event_id)

    def test_round_trip(self, ledger, make_event):
        event = make_event(note="PG&E July", tracking_code="2025-July-Electricity")
        stored = ledger.get_event(event.event_id)
        assert stored == event

    def test_amountless_event(self, ledger, make_event):
        event = make_event(amount=None)
        assert ledger.get_event(event.event_id).amount is None

    def test_unconsumed_filtered_and_ordered(self, ledger, make_event):
        late = make_event(received_at=datetime(2025, 7, 26))
        early = make_event(received_at=datetime(2025, 7, 24))
        make_event(direction=DIRECTION_REQUESTED)
        events = ledger.unconsumed_events((DIRECTION_RECEIVED,))
        assert [e.event_id for e in events] == [early.event_id, late.event_id]


class TestReviews:
    def test_flag_and_list(self, ledger, make_event):
        event = make_event()
        ledger.flag_for_review(event.event_id, "low_confidence", [{"request_id": 1}])
        [item] = ledger.list_reviews()
        assert item.event_id == event.event_id
        assert item.reason == "low_confidence"
        assert item.candidates == [{"request_id": 1}]
        assert item.status == "pending"

    def test_reflag_refreshes_pending_item(self, ledger, make_event):
        event = make_event()
        ledger.flag_for_review(event.event_id, "no_candidates", [])
        ledger.flag_for_review(event.event_id, "low_confidence", [{"request_id": 2}])
        [item] = ledger.list_reviews()
        assert item.reason == "low_confidence"


class TestTransactionalHelpers:
    def test_consume_twice_rejected(self, ledger, make_request, make_event):
        request = make_request()
        event = make_event()
        now = datetime(2025, 7, 25)
        with ledger.transaction() as con:
            ledger.consume_event(con, event.event_id, request.request_id, "manual", 1.0, now)
        with pytest.raises(EventAlreadyConsumed):
            with ledger.transaction() as con:
                ledger.consume_event(con, event.event_id, request.request_id, "manual", 1.0, now)
        assert ledger.is_consumed(event.event_id)

    def test_consume_unknown_event(self, ledger, make_request):
        request = make_request()
        with pytest.raises(UnknownRecord):
            with ledger.transaction() as con:
                ledger.consume_event(con, "nope", request.request_id, "manual", 1.0, datetime.now())

    def test_mark_paid_twice_rejected(self, ledger, make_request):
        request = make_request()
        with ledger.transaction() as con:
            ledger.mark_paid(con, request.request_id, datetime(2025, 7, 25))
        assert ledger.get_request(request.request_id).status == STATUS_PAID
        with pytest.raises(RequestNotOpen):
            with ledger.transaction() as con:
                ledger.mark_paid(con, request.request_id, datetime(2025, 7, 26))

    def test_transaction_rolls_back_on_error(self, ledger, make_request):
        request = make_request()
        with pytest.raises(RuntimeError):
            with ledger.transaction() as con:
                ledger.mark_paid(con, request.request_id, datetime(2025, 7, 25))
                raise RuntimeError("boom")
        assert ledger.get_request(request.request_id).status == STATUS_PENDING
