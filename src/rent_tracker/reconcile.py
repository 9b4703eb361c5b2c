"""Orchestration: ingest notifications, reconcile payments, store transactions.

Composes the pure stages (parser, matcher, classifier) with the ledger and
the applier.  Like the classification batch, each function processes what
it can and reports per-item problems as warning/error strings rather than
aborting the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from rent_tracker import tracking
from rent_tracker.applier import apply_match
from rent_tracker.classifier import RuleEngine, classify_transactions
from rent_tracker.ledger import Ledger, LedgerError, UnknownRecord
from rent_tracker.matcher import Matcher, name_score
from rent_tracker.models import (
    DIRECTION_CANCELLED,
    DIRECTION_RECEIVED,
    DIRECTION_REMINDER,
    DIRECTION_REQUESTED,
    DIRECTION_UNKNOWN,
    METHOD_MANUAL,
    REASON_UNPARSEABLE,
    MatchResult,
    NotificationMessage,
    OutstandingRequest,
    PaymentEvent,
    ReconciliationEntry,
    StageResult,
    Transaction,
)
from rent_tracker.notifications import parse_message
from rent_tracker.notifier import NotificationError, Notifier

logger = logging.getLogger(__name__)

# Minimum name similarity for linking a code-less reminder to a request.
REMINDER_NAME_THRESHOLD = 0.8


@dataclass
class IngestResult:
    """Outcome of :func:`ingest_notifications`."""

    events: list[PaymentEvent] = field(default_factory=list)
    duplicates: int = 0
    sent: int = 0
    reminders: int = 0
    cancelled: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Outcome of :func:`reconcile`."""

    matched: list[ReconciliationEntry] = field(default_factory=list)
    reviewed: int = 0
    failed: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def _pick_by_name(event: PaymentEvent, requests: list[OutstandingRequest]) -> OutstandingRequest:
    return max(requests, key=lambda r: (name_score(event.actor, r.recipient), r.request_id))


def _request_for(ledger: Ledger, event: PaymentEvent) -> OutstandingRequest | None:
    """Find the open request a requested/reminder notification refers to."""
    if event.tracking_code:
        try:
            code = tracking.normalize(event.tracking_code)
        except tracking.InvalidTrackingCode:
            code = ""
        if code:
            requests = ledger.open_requests_by_code(code)
            if requests:
                return _pick_by_name(event, requests)

    if event.amount is None or not event.actor:
        return None
    requests = [
        r
        for r in ledger.open_requests_in_window(event.amount, tolerance=0)
        if r.amount == event.amount
        and name_score(event.actor, r.recipient) >= REMINDER_NAME_THRESHOLD
    ]
    return _pick_by_name(event, requests) if requests else None


def ingest_notifications(ledger: Ledger, messages: list[NotificationMessage]) -> IngestResult:
    """Parse and record notifications, skipping ones seen before.

    Requested notifications mark the referenced pending request as sent;
    reminders increment its reminder count; cancellations are only logged.
    Received and unknown events are left for :func:`reconcile`.
    """
    result = IngestResult()

    for message in messages:
        event = parse_message(message)
        if not ledger.record_event(event):
            logger.info("Skipping duplicate notification %s", event.event_id)
            result.duplicates += 1
            continue
        result.events.append(event)
        logger.debug("Recorded %s event %s", event.direction, event.event_id)

        if event.direction == DIRECTION_REQUESTED:
            request = _request_for(ledger, event)
            if request is None:
                result.warnings.append(
                    f"{event.event_id}: request notification matches no open request"
                )
            elif ledger.mark_sent(request.request_id, at=event.received_at):
                result.sent += 1
                logger.info("Request #%d confirmed sent", request.request_id)
        elif event.direction == DIRECTION_REMINDER:
            request = _request_for(ledger, event)
            if request is None:
                result.warnings.append(f"{event.event_id}: reminder matches no open request")
            elif ledger.record_reminder(request.request_id):
                result.reminders += 1
        elif event.direction == DIRECTION_CANCELLED:
            result.cancelled += 1
            logger.info(
                "Payment %s cancelled by %s: %s", event.event_id, event.actor, event.subject
            )

    return result


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile(ledger: Ledger, matcher: Matcher, notifier: Notifier) -> ReconcileResult:
    """Match and apply every unconsumed received (or unparseable) event.

    Events are processed one at a time in received order.  Unmatched events
    go to the review queue with their reason and top candidates.  An apply
    failure is reported and leaves the event unconsumed for the next run.
    """
    result = ReconcileResult()

    for event in ledger.unconsumed_events((DIRECTION_RECEIVED, DIRECTION_UNKNOWN)):
        match = matcher.match(event, ledger)

        if not match.matched:
            ledger.flag_for_review(
                event.event_id, match.reason, [c.to_dict() for c in match.candidates]
            )
            result.reviewed += 1
            logger.info("Event %s routed to review (%s)", event.event_id, match.reason)
            if match.reason == REASON_UNPARSEABLE:
                result.warnings.append(
                    f"{event.event_id}: unparseable notification {event.subject!r}"
                )
            continue

        try:
            entry = apply_match(ledger, event, match, notifier)
        except (LedgerError, NotificationError) as exc:
            result.failed += 1
            result.errors.append(f"{event.event_id}: apply failed: {exc}")
            logger.error("Failed to apply event %s: %s", event.event_id, exc)
            continue
        result.matched.append(entry)

    return result


def manual_match(
    ledger: Ledger, event_id: str, request_id: int, notifier: Notifier
) -> ReconciliationEntry:
    """Apply an operator's decision that *event_id* pays *request_id*.

    Raises:
        UnknownRecord: If the event does not exist.
        LedgerError: If the apply is refused (see :func:`apply_match`).
        NotificationError: If the notifier failed.
    """
    event = ledger.get_event(event_id)
    if event is None:
        raise UnknownRecord(f"Unknown payment event {event_id!r}")
    result = MatchResult(
        matched=True, request_id=request_id, confidence=1.0, method=METHOD_MANUAL
    )
    return apply_match(ledger, event, result, notifier)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def classify_and_store(
    ledger: Ledger, transactions: list[Transaction], engine: RuleEngine
) -> StageResult:
    """Classify new transactions and store them in the ledger.

    Transactions already in the ledger are skipped before classification,
    so a re-imported export never re-classifies anything.
    """
    warnings: list[str] = []
    fresh: list[Transaction] = []
    for txn in transactions:
        if ledger.get_transaction(txn.transaction_id) is not None:
            warnings.append(f"{txn.transaction_id}: already imported, skipped")
            continue
        fresh.append(txn)

    stage = classify_transactions(fresh, engine)
    for txn in stage.transactions:
        ledger.save_transaction(txn)

    logger.info("Stored %d new transaction(s)", len(stage.transactions))
    return StageResult(
        transactions=stage.transactions,
        warnings=warnings + stage.warnings,
        errors=stage.errors,
    )
