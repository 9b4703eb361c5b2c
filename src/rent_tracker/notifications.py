"""Payment notification parser.

Turns the subject and body of a payment-app notification email into a
:class:`~rent_tracker.models.PaymentEvent`.  Parsing is pure and never
raises on odd input: a notification with no recognizable direction keyword
comes back with ``direction="unknown"`` and no amount, which the matcher
routes to manual review.

Direction is decided by subject keywords in a fixed precedence order:

====================  ===========
subject contains      direction
====================  ===========
``paid your``         received (reply to one of our requests)
``paid you``          received
``requested``         requested
``reminder``          reminder
``cancelled``         cancelled
====================  ===========
"""

from __future__ import annotations

import email
import email.policy
import email.utils
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from rent_tracker import tracking
from rent_tracker.models import (
    DIRECTION_CANCELLED,
    DIRECTION_RECEIVED,
    DIRECTION_REMINDER,
    DIRECTION_REQUESTED,
    DIRECTION_UNKNOWN,
    NotificationMessage,
    PaymentEvent,
    generate_event_id,
)

logger = logging.getLogger(__name__)

_AMOUNT = r"\$\s?([0-9][0-9,]*(?:\.\d{1,2})?)"

# (subject keyword, direction, in_reply) in precedence order.
DIRECTION_KEYWORDS: list[tuple[str, str, bool]] = [
    ("paid your", DIRECTION_RECEIVED, True),
    ("paid you", DIRECTION_RECEIVED, False),
    ("requested", DIRECTION_REQUESTED, False),
    ("reminder", DIRECTION_REMINDER, False),
    ("cancelled", DIRECTION_CANCELLED, False),
]

# Subject patterns keyed by the keyword that selected the direction.
_SUBJECT_ACTOR: dict[str, re.Pattern] = {
    "paid your": re.compile(r"^(.+?)\s+paid your\b", re.IGNORECASE),
    "paid you": re.compile(r"^(.+?)\s+paid you\b", re.IGNORECASE),
    "requested": re.compile(r"requested\s+\$\s?[0-9][0-9,.]*\s+from\s+(.+?)\s*$", re.IGNORECASE),
    "reminder": re.compile(r"reminder\b.*?\b(?:from|to)\s+(.+?)\s*$", re.IGNORECASE),
    "cancelled": re.compile(r"^(.+?)\s+cancelled\b", re.IGNORECASE),
}

_SUBJECT_AMOUNT: dict[str, re.Pattern] = {
    "paid your": re.compile(r"paid your\s+" + _AMOUNT, re.IGNORECASE),
    "paid you": re.compile(r"paid you\s+" + _AMOUNT, re.IGNORECASE),
    "requested": re.compile(r"requested\s+" + _AMOUNT, re.IGNORECASE),
    "reminder": re.compile(_AMOUNT),
    "cancelled": re.compile(_AMOUNT),
}

_BODY_AMOUNT_RECEIVED = re.compile(r"paid you\s+" + _AMOUNT, re.IGNORECASE)
_BODY_AMOUNT = re.compile(_AMOUNT)

# Note patterns, tried in order.
_ELECTRIC = r"(?:pg&e|pge|electric(?:ity)?)"
_WATER = r"water"
BILL_BREAKDOWN = re.compile(
    rf"(?:{_ELECTRIC}[^\n]*?{_WATER}|{_WATER}[^\n]*?{_ELECTRIC})[^\n]*?\d+\.\d+",
    re.IGNORECASE,
)
QUOTED_NOTE = re.compile(r"note:\s*[\"“](.+?)[\"”]", re.IGNORECASE | re.DOTALL)
DECORATED_NOTE = re.compile(
    r"([\U0001F3E0\U0001F4B8\U0001F4DD\U0001F4A1\U0001F4A7].+?)"
    r"\s*(?:See transaction|Money credited)",
    re.DOTALL,
)

_BODY_DATE = re.compile(r"\b([A-Z][a-z]+ \d{1,2}, \d{4})\b")


def detect_direction(subject: str) -> tuple[str, str, bool]:
    """Return ``(keyword, direction, in_reply)`` for *subject*.

    The keyword is empty when no direction keyword is present.
    """
    lowered = subject.lower()
    for keyword, direction, in_reply in DIRECTION_KEYWORDS:
        if keyword in lowered:
            return keyword, direction, in_reply
    return "", DIRECTION_UNKNOWN, False


def parse_amount(text: str) -> Decimal | None:
    """Parse ``"1,685.00"`` style amounts; ``None`` if unparseable."""
    try:
        return Decimal(text.replace(",", ""))
    except InvalidOperation:
        return None


def extract_note(body: str) -> str:
    """Extract the payment note from a notification body.

    Tries, in order: a bill breakdown spanning two utility categories, a
    quoted ``note: "..."``, and an emoji-decorated note that ends at the
    notification's footer.
    """
    if not body:
        return ""
    match = BILL_BREAKDOWN.search(body)
    if match:
        return match.group(0).strip()
    match = QUOTED_NOTE.search(body)
    if match:
        return match.group(1).strip()
    match = DECORATED_NOTE.search(body)
    if match:
        return match.group(1).strip()
    return ""


def _body_date(body: str) -> datetime | None:
    match = _BODY_DATE.search(body or "")
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%B %d, %Y")
    except ValueError:
        return None


def parse_notification(
    subject: str,
    body: str,
    message_id: str = "",
    received_at: datetime | None = None,
) -> PaymentEvent:
    """Parse one payment notification into a :class:`PaymentEvent`.

    Args:
        subject: The notification subject line.
        body: The plain-text body.
        message_id: Source message id, used as the idempotency key when
            present.
        received_at: When the notification arrived.  Falls back to a
            ``Month D, YYYY`` date in the body.

    Returns:
        The parsed event.  Unknown directions carry no actor or amount.
    """
    subject = subject or ""
    body = body or ""
    event_id = message_id.strip() or generate_event_id(subject, body, received_at)
    if received_at is None:
        received_at = _body_date(body)

    keyword, direction, in_reply = detect_direction(subject)
    if direction == DIRECTION_UNKNOWN:
        logger.info("No direction keyword in notification %s: %r", event_id, subject)
        return PaymentEvent(
            event_id=event_id,
            direction=DIRECTION_UNKNOWN,
            note=extract_note(body),
            tracking_code=tracking.extract(subject) or tracking.extract(body) or "",
            received_at=received_at,
            subject=subject,
        )

    actor = ""
    actor_match = _SUBJECT_ACTOR[keyword].search(subject)
    if actor_match:
        actor = actor_match.group(1).strip()

    amount = None
    amount_match = _SUBJECT_AMOUNT[keyword].search(subject)
    if amount_match:
        amount = parse_amount(amount_match.group(1))
    if amount is None:
        body_pattern = _BODY_AMOUNT_RECEIVED if direction == DIRECTION_RECEIVED else _BODY_AMOUNT
        body_match = body_pattern.search(body) or _BODY_AMOUNT.search(body)
        if body_match:
            amount = parse_amount(body_match.group(1))

    note = extract_note(body)
    code = tracking.extract(note) or tracking.extract(subject) or tracking.extract(body) or ""

    return PaymentEvent(
        event_id=event_id,
        direction=direction,
        actor=actor,
        amount=amount,
        note=note,
        tracking_code=code,
        received_at=received_at,
        subject=subject,
        in_reply=in_reply,
    )


def parse_message(message: NotificationMessage) -> PaymentEvent:
    """Parse a :class:`NotificationMessage`."""
    return parse_notification(
        subject=message.subject,
        body=message.body,
        message_id=message.message_id,
        received_at=message.received_at,
    )


# ---------------------------------------------------------------------------
# Email files
# ---------------------------------------------------------------------------


def read_email(path: Path) -> NotificationMessage:
    """Read an RFC 822 ``.eml`` file into a :class:`NotificationMessage`.

    Prefers the ``text/plain`` part; an HTML-only message has its tags
    stripped.

    Raises:
        FileNotFoundError: If *path* does not exist.
    """
    with open(path, "rb") as f:
        msg = email.message_from_binary_file(f, policy=email.policy.default)

    subject = str(msg.get("Subject", "") or "")
    message_id = str(msg.get("Message-ID", "") or "").strip()

    received_at = None
    date_header = msg.get("Date")
    if date_header:
        try:
            received_at = email.utils.parsedate_to_datetime(str(date_header))
        except (TypeError, ValueError):
            logger.warning("%s: unparseable Date header %r", path, date_header)

    body = ""
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is not None:
        body = part.get_content()
        if part.get_content_type() == "text/html":
            body = re.sub(r"<[^>]+>", " ", body)
            body = re.sub(r"[ \t]+", " ", body)

    return NotificationMessage(
        subject=subject,
        body=body,
        message_id=message_id,
        received_at=received_at,
    )
