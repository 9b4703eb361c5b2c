"""Bank of America checking CSV parser.

BofA exports start with a summary block, followed by the transaction
table::

    Description,,Summary Amt.
    Beginning balance as of 01/01/2025,,"4,210.55"
    ...

    Date,Description,Amount,Running Bal.
    01/01/2025,Beginning balance as of 01/01/2025,,"4,210.55"
    01/03/2025,"PGANDE DES:WEB ONLINE ID:XXXXX12345 INDN:DOE JANE","-289.09","3,921.46"

Sign convention:
    Negative amounts are debits (money out).
    Positive amounts are credits (deposits).

Beginning/ending balance rows are skipped silently.
"""

from __future__ import annotations

import csv
import io
import re
from collections import Counter
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from rent_tracker.models import CREDIT, DEBIT, StageResult, Transaction, generate_transaction_id

HEADER_PREFIX = "Date,Description,Amount"

_PURCHASE_PAYEE = re.compile(r"^([A-Z0-9\s&]+?)\s+\d{2}/\d{2}")


def extract_payee(description: str) -> str:
    """Best-effort payee from a BofA description.

    ACH entries carry the originator before ``DES:``; card purchases carry
    the merchant before the ``MM/DD`` purchase date.
    """
    if "DES:" in description:
        return description.split("DES:", 1)[0].strip()
    match = _PURCHASE_PAYEE.match(description)
    if match:
        return match.group(1).strip()
    return ""


def _transaction_lines(text: str) -> list[str] | None:
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if line.startswith(HEADER_PREFIX):
            return lines[index:]
    return None


def parse(file_path: Path, account: str) -> StageResult:
    """Parse a Bank of America CSV export into Transactions.

    Args:
        file_path: Path to the CSV file.
        account: Account key, e.g. "bofa-checking".

    Returns:
        A StageResult with parsed transactions, warnings for skipped rows,
        and errors if the file cannot be parsed at all.
    """
    transactions: list[Transaction] = []
    warnings: list[str] = []
    errors: list[str] = []
    source = str(file_path)

    try:
        with open(file_path, newline="", encoding="utf-8-sig") as f:
            text = f.read()
    except FileNotFoundError:
        errors.append(f"{source}: file not found")
        return StageResult(errors=errors)
    except OSError as exc:
        errors.append(f"{source}: {exc}")
        return StageResult(errors=errors)

    lines = _transaction_lines(text)
    if lines is None:
        errors.append(f"{source}: no transaction header ({HEADER_PREFIX}...) found")
        return StageResult(errors=errors)

    rows = list(csv.DictReader(io.StringIO("\n".join(lines))))
    data_rows = 0
    malformed_count = 0
    seen: Counter[tuple] = Counter()

    for row_ordinal, row in enumerate(rows):
        description = (row.get("Description") or "").strip()
        if "beginning balance" in description.lower() or "ending balance" in description.lower():
            continue
        data_rows += 1

        date_str = (row.get("Date") or "").strip()
        try:
            posted_on = datetime.strptime(date_str, "%m/%d/%Y").date()
        except ValueError:
            malformed_count += 1
            warnings.append(
                f"{source}: skipped malformed row {row_ordinal} (invalid date: {date_str!r})"
            )
            continue

        amount_str = (row.get("Amount") or "").replace(",", "").strip()
        try:
            amount = Decimal(amount_str)
        except InvalidOperation:
            malformed_count += 1
            warnings.append(
                f"{source}: skipped malformed row {row_ordinal} (invalid amount: {amount_str!r})"
            )
            continue

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
                payee=extract_payee(description),
                direction=DEBIT if amount < 0 else CREDIT,
                account=account,
                source_file=source,
            )
        )

    # Fail entire file if >10% malformed
    if data_rows > 0 and malformed_count / data_rows > 0.10:
        errors.append(
            f"{source}: too many malformed rows ({malformed_count}/{data_rows}), "
            f"skipping entire file"
        )
        return StageResult(warnings=warnings, errors=errors)

    return StageResult(transactions=transactions, warnings=warnings, errors=errors)
