"""Tests for rent_tracker.billing -- bill splitting and request creation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from rent_tracker.billing import (
    Bill,
    bills_from_transactions,
    create_rent_request,
    create_utility_requests,
    split_amount,
)
from rent_tracker.models import CREDIT, BillingConfig, Recipient, Transaction


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        split_categories=["electricity", "water"],
        split_ways=3,
        recipients=[Recipient("John Doe", "@John-Doe"), Recipient("Jane Roe", "@Jane-Roe")],
        rent_amount=Decimal("1685"),
        rent_recipient="Jane Roe",
    )


class TestSplitAmount:
    def test_even_split(self):
        assert split_amount(Decimal("300.00"), 3) == Decimal("100.00")

    def test_rounds_half_up_to_cents(self):
        assert split_amount(Decimal("289.09"), 3) == Decimal("96.36")
        assert split_amount(Decimal("0.05"), 2) == Decimal("0.03")

    def test_invalid_ways(self):
        with pytest.raises(ValueError):
            split_amount(Decimal("10"), 0)


class TestUtilityRequests:
    def test_one_request_per_recipient(self, ledger, billing_config):
        bill = Bill("electricity", 2025, 7, Decimal("289.09"), bill_id="t1")
        created = create_utility_requests(ledger, bill, billing_config)

        assert [r.recipient for r in created] == ["John Doe", "Jane Roe"]
        for request in created:
            assert request.amount == Decimal("96.36")
            assert request.total_amount == Decimal("289.09")
            assert request.tracking_code == "2025-July-Electricity"
            assert request.bill_id == "t1"
        assert created[0].note == (
            "2025-July-Electricity - Electricity bill for 2025-07: "
            "Total $289.09, your share is $96.36 (1/3)."
        )

    def test_duplicates_skipped(self, ledger, billing_config):
        bill = Bill("water", 2025, 7, Decimal("90.00"))
        create_utility_requests(ledger, bill, billing_config)
        assert create_utility_requests(ledger, bill, billing_config) == []
        assert len(ledger.list_requests()) == 2

    def test_non_split_category_ignored(self, ledger, billing_config):
        bill = Bill("internet", 2025, 7, Decimal("70.00"))
        assert create_utility_requests(ledger, bill, billing_config) == []

    def test_no_recipients(self, ledger):
        bill = Bill("water", 2025, 7, Decimal("90.00"))
        assert create_utility_requests(ledger, bill, BillingConfig()) == []


class TestRentRequest:
    def test_creates_monthly_rent(self, ledger, billing_config):
        request = create_rent_request(ledger, 2025, 8, billing_config)
        assert request.recipient == "Jane Roe"
        assert request.category == "rent"
        assert request.amount == Decimal("1685.00")
        assert request.tracking_code == "2025-August-Rent"

    def test_once_per_month(self, ledger, billing_config):
        create_rent_request(ledger, 2025, 8, billing_config)
        assert create_rent_request(ledger, 2025, 8, billing_config) is None

    def test_unconfigured(self, ledger):
        with pytest.raises(ValueError):
            create_rent_request(ledger, 2025, 8, BillingConfig())


class TestBillsFromTransactions:
    def _txn(self, transaction_id, category, amount="-289.09", **kwargs) -> Transaction:
        return Transaction(
            transaction_id=transaction_id,
            posted_on=date(2025, 7, 3),
            description="X",
            amount=Decimal(amount),
            category=category,
            auto_approve=kwargs.pop("auto_approve", True),
            **kwargs,
        )

    def test_only_approved_split_debits(self, billing_config):
        txns = [
            self._txn("a", "electricity"),
            self._txn("b", "internet"),
            self._txn("c", "water", auto_approve=False),
            self._txn("d", "water", excluded=True),
            self._txn("e", "water", amount="50.00", direction=CREDIT),
        ]
        [bill] = bills_from_transactions(txns, billing_config)
        assert bill == Bill("electricity", 2025, 7, Decimal("289.09"), bill_id="a")

    def test_override_category_counts(self, billing_config):
        txn = self._txn("a", "other", override_category="water")
        [bill] = bills_from_transactions([txn], billing_config)
        assert bill.category == "water"
