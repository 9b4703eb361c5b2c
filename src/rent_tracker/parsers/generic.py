"""Generic CSV parser for simple bank or aggregator exports.

Expected columns:
    Date, Description, Amount, and optionally Payee

Dates may be ISO (``2025-07-03``) or US (``07/03/2025``).  Amounts are
signed: negative is a debit, positive a credit.  Thousands separators and
a leading ``$`` are tolerated.
"""

from __future__ import annotations

import csv
from collections import Counter
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from rent_tracker.models import CREDIT, DEBIT, StageResult, Transaction, generate_transaction_id

EXPECTED_COLUMNS = {"Date", "Description", "Amount"}

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")


def _parse_date(text: str) -> date | None:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse(file_path: Path, account: str) -> StageResult:
    """Parse a generic Date/Description/Amount CSV into Transactions."""
    transactions: list[Transaction] = []
    warnings: list[str] = []
    errors: list[str] = []
    source = str(file_path)

    try:
        with open(file_path, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            if reader.fieldnames is None:
                errors.append(f"{source}: empty file or no header row")
                return StageResult(errors=errors)

            missing = EXPECTED_COLUMNS - set(reader.fieldnames)
            if missing:
                errors.append(f"{source}: missing expected columns: {', '.join(sorted(missing))}")
                return StageResult(errors=errors)

            rows = list(reader)
    except FileNotFoundError:
        errors.append(f"{source}: file not found")
        return StageResult(errors=errors)
    except OSError as exc:
        errors.append(f"{source}: {exc}")
        return StageResult(errors=errors)

    malformed_count = 0
    seen: Counter[tuple] = Counter()
    for row_ordinal, row in enumerate(rows):
        date_str = (row.get("Date") or "").strip()
        posted_on = _parse_date(date_str)
        if posted_on is None:
            malformed_count += 1
            warnings.append(
                f"{source}: skipped malformed row {row_ordinal} (invalid date: {date_str!r})"
            )
            continue

        amount_str = (row.get("Amount") or "").replace(",", "").replace("$", "").strip()
        try:
            amount = Decimal(amount_str)
        except InvalidOperation:
            malformed_count += 1
            warnings.append(
                f"{source}: skipped malformed row {row_ordinal} (invalid amount: {amount_str!r})"
            )
            continue

        description = (row.get("Description") or "").strip()
        if not description:
            malformed_count += 1
            warnings.append(f"{source}: skipped malformed row {row_ordinal} (missing description)")
            continue

        key = (posted_on, description.upper(), amount)
        occurrence = seen[key]
        seen[key] += 1

        transactions.append(
            Transaction(
                transaction_id=generate_transaction_id(
                    account, posted_on, description, amount, occurrence
                ),
                posted_on=posted_on,
                description=description,
                amount=amount,
                payee=(row.get("Payee") or "").strip(),
                direction=DEBIT if amount < 0 else CREDIT,
                account=account,
                source_file=source,
            )
        )

    if rows and malformed_count / len(rows) > 0.10:
        errors.append(
            f"{source}: too many malformed rows ({malformed_count}/{len(rows)}), "
            f"skipping entire file"
        )
        return StageResult(warnings=warnings, errors=errors)

    return StageResult(transactions=transactions, warnings=warnings, errors=errors)
