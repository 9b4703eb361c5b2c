"""Reconciliation matcher: pair a payment event with an outstanding request.

Matching is a pure read: the matcher queries open requests through the
:class:`RequestSource` protocol and returns a
:class:`~rent_tracker.models.MatchResult`.  It never changes request or
event state -- :mod:`rent_tracker.applier` does that.

Steps, in order:

1. **Policy** -- site-specific :class:`PaymentPolicy` predicates may claim
   the event outright (confidence 1.0, method ``policy``).
2. **Tracking code** -- an embedded code that resolves to an open request
   matches exactly (confidence 1.0, method ``tracking``).
3. **Fuzzy** -- open requests within the amount tolerance are scored::

       confidence = 0.5 * amount_score + 0.35 * name_score + 0.15 * note_score

   and the best one is accepted when it reaches the auto-match threshold.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol

from rapidfuzz.distance import Levenshtein

from rent_tracker import tracking
from rent_tracker.models import (
    DIRECTION_RECEIVED,
    DIRECTION_UNKNOWN,
    METHOD_FUZZY,
    METHOD_POLICY,
    METHOD_TRACKING,
    REASON_LOW_CONFIDENCE,
    REASON_NO_CANDIDATES,
    REASON_NOT_A_PAYMENT,
    REASON_UNKNOWN_TRACKING_CODE,
    REASON_UNPARSEABLE,
    MatchingConfig,
    MatchResult,
    OutstandingRequest,
    PaymentEvent,
    PolicyConfig,
    ScoredCandidate,
)

logger = logging.getLogger(__name__)

AMOUNT_WEIGHT = 0.5
NAME_WEIGHT = 0.35
NOTE_WEIGHT = 0.15


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class RequestSource(Protocol):
    """Read-only queries over open (pending or sent) requests.

    :class:`~rent_tracker.ledger.Ledger` is the production implementation;
    :class:`ListRequestSource` serves in-memory callers and tests.
    """

    def open_requests_by_code(self, code: str) -> list[OutstandingRequest]:
        """Open requests carrying tracking code *code*."""
        ...

    def open_requests_in_window(
        self, amount: Decimal, tolerance: Decimal
    ) -> list[OutstandingRequest]:
        """Open requests whose amount is within *tolerance* of *amount*."""
        ...

    def open_requests_for(
        self, category: str, year: int, month: int
    ) -> list[OutstandingRequest]:
        """Open requests for one category and billing period."""
        ...


class PaymentPolicy(Protocol):
    """A site-specific rule evaluated before generic matching."""

    name: str

    def applies(self, event: PaymentEvent) -> bool:
        """Return True if this policy recognizes *event*."""
        ...

    def select(self, event: PaymentEvent, source: RequestSource) -> OutstandingRequest | None:
        """Pick the request *event* pays, or None to defer to generic matching."""
        ...


class ListRequestSource:
    """:class:`RequestSource` over a plain list of requests."""

    def __init__(self, requests: list[OutstandingRequest]) -> None:
        self.requests = requests

    def _open(self) -> list[OutstandingRequest]:
        return [r for r in self.requests if r.is_open]

    def open_requests_by_code(self, code: str) -> list[OutstandingRequest]:
        return [r for r in self._open() if r.tracking_code.lower() == code.lower()]

    def open_requests_in_window(
        self, amount: Decimal, tolerance: Decimal
    ) -> list[OutstandingRequest]:
        return [r for r in self._open() if abs(r.amount - amount) <= tolerance]

    def open_requests_for(
        self, category: str, year: int, month: int
    ) -> list[OutstandingRequest]:
        return [
            r
            for r in self._open()
            if r.category == category and r.year == year and r.month == month
        ]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def _event_day(event: PaymentEvent) -> date | None:
    if event.received_at is None:
        return None
    return event.received_at.date()


class LargePaymentPolicy:
    """Claim large payments from one payer for that payer's monthly request.

    Recognizes events whose actor contains *payer_alias* (case-insensitive),
    whose amount is at least *min_amount*, and that arrived on or after
    *cutover*.  The event is matched to the payer's most recent open
    *category* request for the month it arrived in.

    Args:
        payer_alias: Substring identifying the payer.
        min_amount: Smallest amount the policy claims.
        cutover: First day the policy applies, or None for always.
        category: Request category to claim, e.g. ``"rent"``.
    """

    name = "large_payment"

    def __init__(
        self,
        payer_alias: str,
        min_amount: Decimal,
        cutover: date | None = None,
        category: str = "rent",
    ) -> None:
        self.payer_alias = payer_alias.strip().lower()
        self.min_amount = min_amount
        self.cutover = cutover
        self.category = category

    def applies(self, event: PaymentEvent) -> bool:
        if not self.payer_alias or event.amount is None:
            return False
        if self.payer_alias not in event.actor.lower():
            return False
        if event.amount < self.min_amount:
            return False
        if self.cutover is not None:
            day = _event_day(event)
            if day is None or day < self.cutover:
                return False
        return True

    def select(self, event: PaymentEvent, source: RequestSource) -> OutstandingRequest | None:
        day = _event_day(event)
        if day is None:
            return None
        requests = source.open_requests_for(self.category, day.year, day.month)
        own = [r for r in requests if self.payer_alias in r.recipient.lower()]
        pool = own or requests
        if not pool:
            logger.warning(
                "Policy %s: no open %s request for %d-%02d",
                self.name,
                self.category,
                day.year,
                day.month,
            )
            return None
        return max(pool, key=_recency_key)


def policies_from_config(config: PolicyConfig) -> list[PaymentPolicy]:
    """Build the configured policies (an empty list when disabled)."""
    if not config.enabled or not config.payer_alias:
        return []
    return [
        LargePaymentPolicy(
            payer_alias=config.payer_alias,
            min_amount=config.min_amount,
            cutover=config.cutover,
            category=config.category,
        )
    ]


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


def amount_score(candidate_amount: Decimal, event_amount: Decimal) -> float:
    """``clamp(1 - |candidate - event| / candidate, 0, 1)``; 0 for a zero candidate."""
    if candidate_amount <= 0:
        return 0.0
    score = 1 - float(abs(candidate_amount - event_amount) / candidate_amount)
    return min(max(score, 0.0), 1.0)


def name_score(a: str, b: str) -> float:
    """Normalized Levenshtein similarity of two names.

    Case-insensitive and trimmed.  Identical names score 1, an empty name
    on either side scores 0.  Symmetric.
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1 - Levenshtein.distance(a, b) / max(len(a), len(b))


def note_score(note: str, category: str, keywords: dict[str, list[str]]) -> float:
    """1 if *note* mentions a keyword of *category*, else 0."""
    if not note:
        return 0.0
    lowered = note.lower()
    return 1.0 if any(k.lower() in lowered for k in keywords.get(category, [])) else 0.0


def combine(amount: float, name: float, note: float) -> float:
    """Weighted confidence from the three component scores."""
    return AMOUNT_WEIGHT * amount + NAME_WEIGHT * name + NOTE_WEIGHT * note


def _recency_key(request: OutstandingRequest) -> tuple[datetime, int]:
    return (request.created_at or datetime.min, request.request_id)


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class Matcher:
    """Matches payment events to open requests.

    Args:
        config: Thresholds and note keywords.  Defaults to
            :class:`MatchingConfig`.
        policies: Policies evaluated before generic matching.
    """

    def __init__(
        self,
        config: MatchingConfig | None = None,
        policies: list[PaymentPolicy] | None = None,
    ) -> None:
        self.config = config or MatchingConfig()
        self.policies = list(policies or [])

    def score(self, event: PaymentEvent, request: OutstandingRequest) -> ScoredCandidate:
        """Score one candidate request against *event*."""
        a = amount_score(request.amount, event.amount or Decimal("0"))
        n = name_score(event.actor, request.recipient)
        t = note_score(event.note, request.category, self.config.category_keywords)
        return ScoredCandidate(
            request_id=request.request_id,
            amount_score=a,
            name_score=n,
            note_score=t,
            confidence=combine(a, n, t),
            recipient=request.recipient,
            amount=request.amount,
            created_at=request.created_at,
        )

    def rank(
        self, event: PaymentEvent, requests: list[OutstandingRequest]
    ) -> list[ScoredCandidate]:
        """Score and sort *requests*, best first.

        Ties on confidence go to the most recently created request.
        """
        scored = [self.score(event, r) for r in requests]
        scored.sort(
            key=lambda c: (c.confidence, c.created_at or datetime.min, c.request_id),
            reverse=True,
        )
        return scored

    def match(self, event: PaymentEvent, source: RequestSource) -> MatchResult:
        """Match *event* against the open requests in *source*."""
        if event.direction == DIRECTION_UNKNOWN or event.amount is None:
            return MatchResult(matched=False, reason=REASON_UNPARSEABLE)
        if event.direction != DIRECTION_RECEIVED:
            return MatchResult(matched=False, reason=REASON_NOT_A_PAYMENT)

        for policy in self.policies:
            if not policy.applies(event):
                continue
            request = policy.select(event, source)
            if request is not None:
                logger.info(
                    "Event %s matched request #%d by policy %s",
                    event.event_id,
                    request.request_id,
                    policy.name,
                )
                return MatchResult(
                    matched=True,
                    request_id=request.request_id,
                    confidence=1.0,
                    method=METHOD_POLICY,
                )

        if event.tracking_code:
            result = self._match_tracking_code(event, source)
            if result is not None:
                return result

        candidates = source.open_requests_in_window(event.amount, self.config.amount_tolerance)
        # Sources may pre-filter loosely (floating point); enforce the window exactly.
        candidates = [
            r for r in candidates if abs(r.amount - event.amount) <= self.config.amount_tolerance
        ]
        if not candidates:
            logger.info(
                "Event %s: no candidates within %s", event.event_id, self.config.amount_tolerance
            )
            return MatchResult(matched=False, reason=REASON_NO_CANDIDATES)

        ranked = self.rank(event, candidates)
        best = ranked[0]
        if best.confidence >= self.config.auto_match_threshold:
            logger.info(
                "Event %s matched request #%d (confidence %.3f)",
                event.event_id,
                best.request_id,
                best.confidence,
            )
            return MatchResult(
                matched=True,
                request_id=best.request_id,
                confidence=best.confidence,
                method=METHOD_FUZZY,
            )

        logger.info(
            "Event %s: best confidence %.3f below %.2f, needs review",
            event.event_id,
            best.confidence,
            self.config.auto_match_threshold,
        )
        return MatchResult(
            matched=False,
            confidence=best.confidence,
            reason=REASON_LOW_CONFIDENCE,
            candidates=ranked[: self.config.review_top_n],
        )

    def _match_tracking_code(
        self, event: PaymentEvent, source: RequestSource
    ) -> MatchResult | None:
        try:
            code = tracking.normalize(event.tracking_code)
        except tracking.InvalidTrackingCode:
            logger.warning(
                "Event %s: ignoring malformed tracking code %r", event.event_id, event.tracking_code
            )
            return None

        requests = source.open_requests_by_code(code)
        if len(requests) > 1:
            # Split bills share one code across recipients; the payer picks the request.
            requests = [
                max(requests, key=lambda r: (name_score(event.actor, r.recipient), _recency_key(r)))
            ]

        if requests:
            request = requests[0]
            logger.info(
                "Event %s matched request #%d by tracking code %s",
                event.event_id,
                request.request_id,
                code,
            )
            return MatchResult(
                matched=True,
                request_id=request.request_id,
                confidence=1.0,
                method=METHOD_TRACKING,
            )

        if self.config.unresolved_tracking_code == "fail":
            logger.warning(
                "Event %s: tracking code %s matches no open request", event.event_id, code
            )
            return MatchResult(matched=False, reason=REASON_UNKNOWN_TRACKING_CODE)

        logger.warning(
            "Event %s: tracking code %s matches no open request, falling back to fuzzy matching",
            event.event_id,
            code,
        )
        return None
