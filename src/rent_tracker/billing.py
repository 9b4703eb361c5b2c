"""Bill splitting and payment request creation.

Approved utility bills are split evenly between the configured recipients;
each share becomes an :class:`~rent_tracker.models.OutstandingRequest`
whose note starts with the bill's tracking code::

    2025-July-Electricity - Electricity bill for 2025-07: Total $289.09, your share is $96.36 (1/3).

Rent is a single monthly request for the configured rent recipient.
Request creation is idempotent: the ledger refuses a second request for
the same recipient, category, and period, and those are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from rent_tracker import tracking
from rent_tracker.ledger import Ledger
from rent_tracker.models import DEBIT, BillingConfig, OutstandingRequest, Transaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class Bill:
    """A utility bill to be split.

    Attributes:
        category: Bill category, e.g. "electricity".
        year: Billing year.
        month: Billing month (1-12).
        total: Full bill amount (positive).
        bill_id: Source transaction id, if any.
    """

    category: str
    year: int
    month: int
    total: Decimal
    bill_id: str = ""


def split_amount(total: Decimal, ways: int) -> Decimal:
    """Split *total* into *ways* equal shares, rounded half-up to cents.

    Raises:
        ValueError: If *ways* is less than 1.
    """
    if ways < 1:
        raise ValueError(f"Cannot split a bill {ways} ways")
    return (total / ways).quantize(CENT, rounding=ROUND_HALF_UP)


def _code_for(year: int, month: int, category: str) -> str:
    try:
        return tracking.generate(year, month, category)
    except tracking.InvalidTrackingCode:
        logger.warning("No tracking code for category %r; requests will match by amount", category)
        return ""


def request_note(bill: Bill, share: Decimal, ways: int, code: str) -> str:
    """The note sent with a utility payment request."""
    text = (
        f"{bill.category.capitalize()} bill for {bill.year}-{bill.month:02d}: "
        f"Total ${bill.total:.2f}, your share is ${share:.2f} (1/{ways})."
    )
    return f"{code} - {text}" if code else text


def bills_from_transactions(
    transactions: list[Transaction], config: BillingConfig
) -> list[Bill]:
    """Turn approved utility debits into bills.

    Only auto-approved, non-excluded debits whose effective category is one
    of ``config.split_categories`` count.
    """
    bills: list[Bill] = []
    for txn in transactions:
        if txn.excluded or not txn.auto_approve or txn.direction != DEBIT:
            continue
        category = txn.effective_category
        if category not in config.split_categories:
            continue
        bills.append(
            Bill(
                category=category,
                year=txn.posted_on.year,
                month=txn.posted_on.month,
                total=abs(txn.amount),
                bill_id=txn.transaction_id,
            )
        )
    return bills


def create_utility_requests(
    ledger: Ledger, bill: Bill, config: BillingConfig
) -> list[OutstandingRequest]:
    """Create one request per configured recipient for *bill*.

    Returns:
        The newly created requests.  Duplicates and non-split categories
        produce none.
    """
    if bill.category not in config.split_categories:
        logger.info(
            "Category %r is not split; no requests for bill %s", bill.category, bill.bill_id
        )
        return []
    if not config.recipients:
        logger.warning("No [[billing.recipients]] configured; cannot split bill %s", bill.bill_id)
        return []

    share = split_amount(bill.total, config.split_ways)
    code = _code_for(bill.year, bill.month, bill.category)
    note = request_note(bill, share, config.split_ways, code)

    created: list[OutstandingRequest] = []
    for recipient in config.recipients:
        request = ledger.add_request(
            OutstandingRequest(
                recipient=recipient.name,
                category=bill.category,
                year=bill.year,
                month=bill.month,
                amount=share,
                total_amount=bill.total,
                tracking_code=code,
                note=note,
                bill_id=bill.bill_id,
            )
        )
        if request is not None:
            created.append(request)
    logger.info(
        "Created %d %s request(s) for %d-%02d", len(created), bill.category, bill.year, bill.month
    )
    return created


def create_rent_request(
    ledger: Ledger, year: int, month: int, config: BillingConfig
) -> OutstandingRequest | None:
    """Create the monthly rent request.

    Returns:
        The new request, or None if one already exists for the month.

    Raises:
        ValueError: If rent_recipient or rent_amount is not configured.
    """
    if not config.rent_recipient or config.rent_amount <= 0:
        raise ValueError(
            "Rent is not configured: set billing.rent_recipient and billing.rent_amount"
        )

    code = _code_for(year, month, "rent")
    amount = config.rent_amount.quantize(CENT, rounding=ROUND_HALF_UP)
    return ledger.add_request(
        OutstandingRequest(
            recipient=config.rent_recipient,
            category="rent",
            year=year,
            month=month,
            amount=amount,
            total_amount=amount,
            tracking_code=code,
            note=f"{code} - Rent for {year}-{month:02d}: ${amount:.2f}",
        )
    )
