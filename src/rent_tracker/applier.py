"""Match applier: the single writer for reconciliation.

:func:`apply_match` turns a positive :class:`~rent_tracker.models.MatchResult`
into ledger state inside one ``BEGIN IMMEDIATE`` transaction:

1. mark the payment event consumed (with method and confidence);
2. move the request to ``paid`` with a paid timestamp;
3. insert exactly one reconciliation entry;
4. resolve any pending review item for the event;
5. send one notification.

Any exception, including one raised by the notifier, rolls all of it back
and leaves the event unconsumed, so the apply can be retried later.
"""

from __future__ import annotations

import logging
from datetime import datetime

from rent_tracker.ledger import Ledger
from rent_tracker.models import MatchResult, PaymentEvent, ReconciliationEntry
from rent_tracker.notifier import Notifier

logger = logging.getLogger(__name__)


def apply_match(
    ledger: Ledger,
    event: PaymentEvent,
    result: MatchResult,
    notifier: Notifier,
    applied_at: datetime | None = None,
) -> ReconciliationEntry:
    """Apply *result* for *event* atomically.

    Args:
        ledger: The ledger to write to.  *event* must already be recorded.
        event: The payment event being consumed.
        result: A matched result naming the request.
        notifier: Receives one notification before commit.
        applied_at: Timestamp for the entry. Default: now.

    Returns:
        The stored reconciliation entry.

    Raises:
        ValueError: If *result* is not a match.
        RequestNotOpen: If the request is already paid or foregone.
        EventAlreadyConsumed: If the event was applied before.
        DuplicateReconciliation: If an entry already exists.
        UnknownRecord: If the request or event does not exist.
        NotificationError: If the notifier failed.
    """
    if not result.matched or result.request_id is None:
        raise ValueError(f"Cannot apply an unmatched result for event {event.event_id}")

    applied_at = applied_at or datetime.now()
    request_id = result.request_id

    with ledger.transaction() as con:
        request = ledger.fetch_request(con, request_id)
        amount = event.amount if event.amount is not None else request.amount

        ledger.consume_event(
            con, event.event_id, request_id, result.method, result.confidence, applied_at
        )
        ledger.mark_paid(con, request_id, applied_at)
        entry = ledger.insert_reconciliation(
            con,
            ReconciliationEntry(
                event_id=event.event_id,
                request_id=request_id,
                amount=amount,
                method=result.method,
                confidence=result.confidence,
                applied_at=applied_at,
            ),
        )
        ledger.resolve_review(con, event.event_id, result.method, applied_at)

        notifier.send(
            {
                "event_id": event.event_id,
                "request_id": request_id,
                "recipient": request.recipient,
                "category": request.category,
                "year": request.year,
                "month": request.month,
                "amount": str(amount),
                "method": result.method,
                "confidence": result.confidence,
                "applied_at": applied_at.isoformat(),
            }
        )

    logger.info(
        "Applied event %s to request #%d (%s, %s %d-%02d, $%s)",
        event.event_id,
        request_id,
        result.method,
        request.category,
        request.year,
        request.month,
        amount,
    )
    return entry
