"""CSV export writer and summary printers.

- :func:`export_reconciliations` writes a month of the reconciliation
  ledger, joined with the requests it paid, to a CSV file.
- :func:`print_classification_summary`, :func:`print_reconcile_summary`
  and :func:`print_month_summary` print human-readable summaries to stdout.
"""

from __future__ import annotations

import csv
from collections import Counter, defaultdict
from decimal import Decimal
from pathlib import Path

from rent_tracker.ledger import Ledger
from rent_tracker.models import OPEN_STATUSES, StageResult
from rent_tracker.reconcile import ReconcileResult

# Fixed output column order.
CSV_COLUMNS = [
    "entry_id",
    "applied_at",
    "event_id",
    "request_id",
    "recipient",
    "category",
    "period",
    "tracking_code",
    "requested_amount",
    "paid_amount",
    "method",
    "confidence",
]


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def export_reconciliations(ledger: Ledger, output_dir: str | Path, month: str) -> Path:
    """Write reconciliations applied in *month* to a CSV file.

    Writes ``output_dir/reconciliations-YYYY-MM.csv``, overwriting an
    existing file, with rows in application order.

    Args:
        ledger: Source ledger.
        output_dir: Directory to write the CSV file into.
        month: Target month as ``"YYYY-MM"``.

    Returns:
        The path of the written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"reconciliations-{month}.csv"

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for entry in ledger.reconciliations(month):
            request = ledger.get_request(entry.request_id)
            writer.writerow(
                {
                    "entry_id": entry.entry_id,
                    "applied_at": entry.applied_at.isoformat(timespec="seconds"),
                    "event_id": entry.event_id,
                    "request_id": entry.request_id,
                    "recipient": request.recipient if request else "",
                    "category": request.category if request else "",
                    "period": f"{request.year}-{request.month:02d}" if request else "",
                    "tracking_code": request.tracking_code if request else "",
                    "requested_amount": str(request.amount) if request else "",
                    "paid_amount": str(entry.amount),
                    "method": entry.method,
                    "confidence": f"{entry.confidence:.3f}",
                }
            )

    return output_path


# ---------------------------------------------------------------------------
# Summary printers
# ---------------------------------------------------------------------------


def _print_problems(warnings: list[str], errors: list[str]) -> None:
    if warnings:
        print()
        print(f"Warnings: {len(warnings)}")
        for w in warnings:
            print(f"  - {w}")
    if errors:
        print()
        print(f"Errors: {len(errors)}")
        for e in errors:
            print(f"  - {e}")


def print_classification_summary(result: StageResult, source: str) -> None:
    """Print counts of approved, excluded, and review-needed transactions."""
    txns = result.transactions
    excluded = [t for t in txns if t.excluded]
    approved = [t for t in txns if t.auto_approve and not t.excluded]
    review = [t for t in txns if not t.auto_approve and not t.excluded]

    by_category: Counter[str] = Counter(t.category for t in txns if not t.excluded)

    print()
    print(f"== Classification: {source} ==")
    print(f"Stored:        {len(txns)} new transactions")
    print(f"Auto-approved: {len(approved)}")
    print(f"Excluded:      {len(excluded)}")
    print(f"Needs review:  {len(review)}")

    if by_category:
        print()
        print("By category:")
        for category, count in by_category.most_common():
            print(f"  {category + ':':<20} {count}")

    _print_problems(result.warnings, result.errors)
    print()


def print_reconcile_summary(result: ReconcileResult) -> None:
    """Print what a reconcile run applied and what it sent to review."""
    by_method: Counter[str] = Counter(e.method for e in result.matched)

    print()
    print("== Reconciliation ==")
    print(f"Matched:   {len(result.matched)}")
    for method, count in sorted(by_method.items()):
        print(f"  - {method}: {count}")
    print(f"To review: {result.reviewed}")
    print(f"Failed:    {result.failed}")

    _print_problems(result.warnings, result.errors)
    print()


def print_month_summary(ledger: Ledger, month: str) -> None:
    """Print requested vs. collected totals per category for *month*."""
    year, mon = (int(part) for part in month.split("-"))
    requests = ledger.list_requests(year=year, month=mon)

    requested: defaultdict[str, Decimal] = defaultdict(Decimal)
    collected: defaultdict[str, Decimal] = defaultdict(Decimal)
    for r in requests:
        requested[r.category] += r.amount
    # Collected sums the paid amounts, which may differ from the requested ones.
    by_id = {r.request_id: r for r in requests}
    for entry in ledger.reconciliations():
        request = by_id.get(entry.request_id)
        if request is not None:
            collected[request.category] += entry.amount

    outstanding = [r for r in requests if r.status in OPEN_STATUSES]

    print()
    print(f"== Summary: {month} ==")
    if not requests:
        print("No requests for this month.")
        print()
        return

    for category in sorted(requested):
        print(
            f"  {category + ':':<14} requested ${requested[category]:,.2f}, "
            f"collected ${collected[category]:,.2f}"
        )

    if outstanding:
        print()
        print("Outstanding:")
        for r in outstanding:
            print(
                f"  #{r.request_id:<4} {r.recipient:<20} {r.category:<12} "
                f"${r.amount:,.2f} ({r.status})"
            )
    print()
