"""Core data models for Rent Tracker.

This module defines the dataclasses, string constants, and small helpers
shared by the classifier, the notification parser, the matcher, and the
ledger.  It has zero internal imports -- everything depends on it, but it
depends on nothing within the package.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

DEBIT = "debit"
CREDIT = "credit"

ACTION_CATEGORIZE = "categorize"
ACTION_APPROVE = "approve"
ACTION_EXCLUDE = "exclude"
RULE_ACTIONS = (ACTION_CATEGORIZE, ACTION_APPROVE, ACTION_EXCLUDE)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_PAID = "paid"
STATUS_FOREGONE = "foregone"
OPEN_STATUSES = (STATUS_PENDING, STATUS_SENT)

DIRECTION_RECEIVED = "received"
DIRECTION_REQUESTED = "requested"
DIRECTION_REMINDER = "reminder"
DIRECTION_CANCELLED = "cancelled"
DIRECTION_UNKNOWN = "unknown"

METHOD_TRACKING = "tracking"
METHOD_FUZZY = "fuzzy"
METHOD_MANUAL = "manual"
METHOD_POLICY = "policy"

REASON_NO_CANDIDATES = "no_candidates"
REASON_LOW_CONFIDENCE = "low_confidence"
REASON_UNPARSEABLE = "unparseable"
REASON_NOT_A_PAYMENT = "not_a_payment"
REASON_UNKNOWN_TRACKING_CODE = "unknown_tracking_code"


def generate_transaction_id(
    account: str,
    posted_on: date,
    description: str,
    amount: Decimal,
    occurrence: int = 0,
) -> str:
    """Generate a deterministic transaction ID from the row's natural key.

    The ID is a 12-character hex string derived from a SHA-256 hash of the
    pipe-delimited concatenation of: account, ISO date, uppercased and
    stripped description, amount as string, and *occurrence*.  The row's
    position in the file is not part of the key, so the same bank row gets
    the same ID in every export whose date range covers it.

    Args:
        account: Account key, e.g. "bofa-checking".
        posted_on: Posting date.
        description: Bank description (stripped and uppercased).
        amount: Signed amount as Decimal.
        occurrence: How many identical rows (same date, description and
            amount) precede this one in the same file.  Tells genuine
            same-day duplicates apart.

    Returns:
        A 12-character lowercase hex string.
    """
    raw = f"{account}|{posted_on.isoformat()}|{description.strip().upper()}|{amount}|{occurrence}"
    return hashlib.sha256(raw.encode()).hexdigest()[:12]


def generate_event_id(subject: str, body: str, received_at: datetime | None) -> str:
    """Derive an idempotency key for a notification that has no message id.

    Returns:
        A 16-character lowercase hex string, stable for identical input.
    """
    stamp = received_at.isoformat() if received_at else ""
    raw = f"{subject.strip()}|{body.strip()}|{stamp}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass
class Transaction:
    """A raw bank transaction and, once classified, its classification.

    Parsers fill in the base fields.  The classifier writes the
    classification fields exactly once; afterwards only a manual override
    (``override_category``) may change the category.

    Attributes:
        transaction_id: Deterministic 12-char hex hash.
        posted_on: Posting date.
        description: Original bank description.
        amount: Signed decimal amount as exported by the bank.
        payee: Payee name, or empty string if the export has none.
        direction: ``"debit"`` (money out) or ``"credit"`` (money in).
        account: Account key from the import.
        category: Assigned category, empty until classified.
        merchant: Merchant hint from the matching rule or description.
        confidence: Classification confidence in [0, 1].
        auto_approve: True if the transaction may be posted without review.
        excluded: True if an exclude rule (or the deposit policy) matched.
        exclude_reason: Why the transaction was excluded.
        rule_name: Name of the rule that decided the category, if any.
        override_category: Manual override, empty if none.
        source_file: Path of the source export (for debugging).
    """

    transaction_id: str
    posted_on: date
    description: str
    amount: Decimal
    payee: str = ""
    direction: str = DEBIT
    account: str = ""
    category: str = ""
    merchant: str = ""
    confidence: float = 0.0
    auto_approve: bool = False
    excluded: bool = False
    exclude_reason: str = ""
    rule_name: str = ""
    override_category: str = ""
    source_file: str = ""

    @property
    def effective_category(self) -> str:
        return self.override_category or self.category


@dataclass
class ClassificationRule:
    """A prioritized pattern rule from ``rules.toml``.

    Rules are evaluated by ``priority`` descending, then ``rule_id``
    ascending (insertion order).

    Attributes:
        rule_id: 1-based insertion order within ``rules.toml``.
        name: Human-readable rule name.
        description_pattern: Case-insensitive regex matched against the
            transaction description.
        category: Category assigned by categorize/approve rules.
        action: One of ``"categorize"``, ``"approve"``, ``"exclude"``.
        priority: Higher runs first.
        payee_pattern: Optional regex that must also match the payee.
        amount_min: Optional inclusive lower bound on the absolute amount.
        amount_max: Optional inclusive upper bound on the absolute amount.
        merchant: Optional merchant hint.
        exclude_reason: Optional reason recorded by exclude rules.
        active: Inactive rules are ignored.
    """

    rule_id: int
    name: str
    description_pattern: str
    category: str = ""
    action: str = ACTION_CATEGORIZE
    priority: int = 0
    payee_pattern: str = ""
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    merchant: str = ""
    exclude_reason: str = ""
    active: bool = True


@dataclass
class ClassificationResult:
    """Outcome of classifying one transaction."""

    category: str = ""
    merchant: str = ""
    confidence: float = 0.0
    auto_approve: bool = False
    excluded: bool = False
    exclude_reason: str = ""
    rule_name: str = ""
    method: str = ""


@dataclass
class StageResult:
    """Return type for batch stage functions.

    Each stage processes what it can and reports what it could not.

    Attributes:
        transactions: Transactions after this stage's processing.
        warnings: Non-fatal issues, such as skipped rows.
        errors: Fatal issues for individual items or files.
    """

    transactions: list[Transaction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrackingCode:
    """Decoded form of a tracking code such as ``2025-July-Electricity``."""

    year: int
    month: int
    category: str


@dataclass
class OutstandingRequest:
    """Money owed by one recipient for one category and billing period.

    Status moves pending -> sent -> paid, or pending/sent -> foregone
    (manual only).  Requests are never deleted and never reverted.

    Attributes:
        request_id: Ledger primary key (0 until stored).
        recipient: Display name of the payer, e.g. "John Doe".
        category: Category the money is owed for, e.g. "electricity".
        year: Billing year.
        month: Billing month (1-12).
        amount: Amount owed.
        total_amount: Full bill amount this request is a share of.
        status: One of pending, sent, paid, foregone.
        tracking_code: Code embedded in the request note.
        note: Text sent with the payment request.
        bill_id: Source bill (transaction id) if any.
        created_at: When the request was created.
        sent_at: When a "requested" notification confirmed the request.
        paid_at: When the request was reconciled.
        reminder_count: Number of reminder notifications seen.
    """

    recipient: str
    category: str
    year: int
    month: int
    amount: Decimal
    tracking_code: str = ""
    total_amount: Decimal | None = None
    status: str = STATUS_PENDING
    note: str = ""
    bill_id: str = ""
    created_at: datetime | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    reminder_count: int = 0
    request_id: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass
class NotificationMessage:
    """A raw payment notification as delivered by the mail collaborator."""

    subject: str
    body: str
    message_id: str = ""
    received_at: datetime | None = None


@dataclass
class PaymentEvent:
    """A structured record parsed from one payment notification.

    Attributes:
        event_id: External idempotency key (message id or content digest).
        direction: received, requested, reminder, cancelled, or unknown.
        actor: Counterparty name from the subject line.
        amount: Amount, or None if no amount could be parsed.
        note: Payment note text, empty if none was found.
        tracking_code: Embedded tracking code, empty if none.
        received_at: When the notification was received.
        subject: Original subject line.
        in_reply: True when the payment answers an earlier request
            ("paid your $X request").
    """

    event_id: str
    direction: str
    actor: str = ""
    amount: Decimal | None = None
    note: str = ""
    tracking_code: str = ""
    received_at: datetime | None = None
    subject: str = ""
    in_reply: bool = False


@dataclass
class ScoredCandidate:
    """A fuzzy-match candidate with its component scores."""

    request_id: int
    amount_score: float
    name_score: float
    note_score: float
    confidence: float
    recipient: str = ""
    amount: Decimal | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "recipient": self.recipient,
            "amount": str(self.amount) if self.amount is not None else None,
            "amount_score": round(self.amount_score, 4),
            "name_score": round(self.name_score, 4),
            "note_score": round(self.note_score, 4),
            "confidence": round(self.confidence, 4),
        }


@dataclass
class MatchResult:
    """Outcome of matching one payment event.

    Attributes:
        matched: True if exactly one request was selected.
        request_id: Selected request, or None.
        confidence: Confidence in [0, 1].
        method: tracking, fuzzy, manual, or policy (empty when unmatched).
        reason: Failure reason when unmatched.
        candidates: Top scored candidates attached for manual review.
    """

    matched: bool
    request_id: int | None = None
    confidence: float = 0.0
    method: str = ""
    reason: str = ""
    candidates: list[ScoredCandidate] = field(default_factory=list)


@dataclass
class ReconciliationEntry:
    """One ledger entry linking a consumed event to a paid request."""

    event_id: str
    request_id: int
    amount: Decimal
    method: str
    confidence: float
    applied_at: datetime
    entry_id: int = 0


@dataclass
class ReviewItem:
    """A payment event waiting for manual resolution."""

    event_id: str
    reason: str
    candidates: list[dict] = field(default_factory=list)
    status: str = "pending"
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ClassificationConfig:
    """Rule engine settings.

    Attributes:
        auto_approve_priority: Categorize rules at or above this priority
            auto-approve. Default: 100.
        rule_strategy: Name of the final-category strategy,
            ``"last_match"`` or ``"first_match"``.
        exclude_credits: Exclude credits (deposits) before rule evaluation.
    """

    auto_approve_priority: int = 100
    rule_strategy: str = "last_match"
    exclude_credits: bool = True


@dataclass
class MatchingConfig:
    """Reconciliation matcher settings.

    Attributes:
        amount_tolerance: Maximum absolute amount difference for a fuzzy
            candidate.
        auto_match_threshold: Minimum confidence for an automatic fuzzy
            match. Default: 0.90.
        review_top_n: Number of candidates attached to a review item.
        unresolved_tracking_code: ``"fallback"`` to continue with fuzzy
            matching when a tracking code resolves to nothing, ``"fail"``
            to stop with ``unknown_tracking_code``.
        category_keywords: Note keywords per request category.
    """

    amount_tolerance: Decimal = Decimal("0.01")
    auto_match_threshold: float = 0.90
    review_top_n: int = 3
    unresolved_tracking_code: str = "fallback"
    category_keywords: dict[str, list[str]] = field(
        default_factory=lambda: {
            "electricity": ["pge", "pg&e", "electric", "power"],
            "water": ["water", "great oaks"],
            "rent": ["rent"],
        }
    )


@dataclass
class PolicyConfig:
    """Site-specific large-payment policy (disabled by default)."""

    enabled: bool = False
    payer_alias: str = ""
    min_amount: Decimal = Decimal("1600")
    cutover: date | None = None
    category: str = "rent"


@dataclass
class Recipient:
    """A person who owes a share of split bills."""

    name: str
    handle: str = ""


@dataclass
class BillingConfig:
    """Bill splitting settings."""

    split_categories: list[str] = field(default_factory=lambda: ["electricity", "water"])
    split_ways: int = 3
    recipients: list[Recipient] = field(default_factory=list)
    rent_amount: Decimal = Decimal("0")
    rent_recipient: str = ""


@dataclass
class AppConfig:
    """Top-level application configuration loaded from config.toml.

    Attributes:
        db_path: SQLite ledger path, relative to the project root.
        output_dir: Directory for exported CSV files.
        classification: Rule engine settings.
        matching: Matcher settings.
        policy: Large-payment policy settings.
        billing: Bill splitting settings.
        notifier_provider: ``"none"`` or ``"webhook"``.
        webhook_url_env: Name of the environment variable holding the
            webhook URL.
    """

    db_path: str = "rent-tracker.db"
    output_dir: str = "output"
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    notifier_provider: str = "none"
    webhook_url_env: str = "RENT_TRACKER_WEBHOOK_URL"
