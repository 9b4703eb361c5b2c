"""Tracking codes embedded in payment request notes.

A tracking code names the billing period and category of a request, e.g.
``2025-July-Electricity``.  The code travels through the payment app in the
request note and comes back in the payment notification, which lets the
matcher reconcile the payment exactly instead of by fuzzy scoring.

The grammar is ``<year>-<MonthName>-<Category>`` with English month names
and a fixed category set, so it cannot collide with ordinary prose.
"""

from __future__ import annotations

import calendar
import re

from rent_tracker.models import TrackingCode

MONTH_NAMES = tuple(calendar.month_name[1:])

# Categories that get payment requests (and therefore tracking codes).
TRACKING_CATEGORIES = ("electricity", "water", "rent")

_MONTH_ALT = "|".join(MONTH_NAMES)
_CATEGORY_ALT = "|".join(c.capitalize() for c in TRACKING_CATEGORIES)

CODE_PATTERN = re.compile(
    rf"(?<![\w-])([1-9]\d{{3}})-({_MONTH_ALT})-({_CATEGORY_ALT})(?![\w-])",
    re.IGNORECASE,
)


class InvalidTrackingCode(ValueError):
    """Raised when a string is not a well-formed tracking code."""


def generate(year: int, month: int, category: str) -> str:
    """Build the tracking code for a billing period and category.

    Args:
        year: Four-digit year.
        month: Month number, 1-12.
        category: One of :data:`TRACKING_CATEGORIES` (any case).

    Returns:
        The code, e.g. ``"2025-July-Electricity"``.

    Raises:
        InvalidTrackingCode: If the year, month, or category is outside the
            grammar.
    """
    if not 1000 <= year <= 9999:
        raise InvalidTrackingCode(f"Year out of range: {year!r}")
    if not 1 <= month <= 12:
        raise InvalidTrackingCode(f"Month out of range: {month!r}")
    key = category.strip().lower()
    if key not in TRACKING_CATEGORIES:
        raise InvalidTrackingCode(f"Category has no tracking code: {category!r}")
    return f"{year}-{MONTH_NAMES[month - 1]}-{key.capitalize()}"


def extract(text: str | None) -> str | None:
    """Return the first tracking code embedded in *text*, unchanged.

    Returns ``None`` for empty text or text without a code.
    """
    if not text:
        return None
    match = CODE_PATTERN.search(text)
    return match.group(0) if match else None


def parse(code: str) -> TrackingCode:
    """Decode a tracking code.

    Matching is case-insensitive but the whole string must be a code;
    surrounding text is rejected (use :func:`extract` first).

    Raises:
        InvalidTrackingCode: If *code* is not a tracking code.
    """
    match = CODE_PATTERN.fullmatch(code.strip()) if code else None
    if match is None:
        raise InvalidTrackingCode(f"Not a tracking code: {code!r}")

    year_str, month_name, category = match.groups()
    month = [m.lower() for m in MONTH_NAMES].index(month_name.lower()) + 1
    return TrackingCode(year=int(year_str), month=month, category=category.lower())


def normalize(code: str) -> str:
    """Return the canonical spelling of *code* (``2025-july-water`` -> ``2025-July-Water``)."""
    decoded = parse(code)
    return generate(decoded.year, decoded.month, decoded.category)
