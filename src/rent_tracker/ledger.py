"""SQLite ledger for transactions, requests, payment events, and reconciliations.

The ledger is the persistence collaborator for the whole engine.  Its
schema carries the uniqueness guarantees reconciliation relies on:

- ``payment_events.event_id`` is the primary key, so a notification is
  recorded once no matter how often it is fetched;
- ``reconciliations`` has UNIQUE ``request_id`` and UNIQUE ``event_id``, so
  a request is reconciled at most once and an event is consumed at most
  once, even when automatic matching, manual matching, and backfills race;
- status changes are guarded ``UPDATE ... WHERE status IN (...)``
  statements, so a paid or foregone request can never move again.

Every public method opens its own connection.  Multi-step writes (see
:mod:`rent_tracker.applier`) use :meth:`Ledger.transaction`, which starts
``BEGIN IMMEDIATE`` and rolls back on any exception.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from rent_tracker.models import (
    OPEN_STATUSES,
    STATUS_FOREGONE,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_SENT,
    OutstandingRequest,
    PaymentEvent,
    ReconciliationEntry,
    ReviewItem,
    Transaction,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
  transaction_id TEXT PRIMARY KEY,
  posted_on TEXT NOT NULL,
  description TEXT NOT NULL,
  payee TEXT,
  amount TEXT NOT NULL,
  direction TEXT NOT NULL,
  account TEXT,
  category TEXT,
  merchant TEXT,
  confidence REAL,
  auto_approve INTEGER NOT NULL DEFAULT 0,
  excluded INTEGER NOT NULL DEFAULT 0,
  exclude_reason TEXT,
  rule_name TEXT,
  override_category TEXT,
  imported_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS requests (
  request_id INTEGER PRIMARY KEY AUTOINCREMENT,
  recipient TEXT NOT NULL,
  category TEXT NOT NULL,
  year INTEGER NOT NULL,
  month INTEGER NOT NULL,
  amount TEXT NOT NULL,
  total_amount TEXT,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'sent', 'paid', 'foregone')),
  tracking_code TEXT,
  note TEXT,
  bill_id TEXT,
  created_at TEXT NOT NULL,
  sent_at TEXT,
  paid_at TEXT,
  reminder_count INTEGER NOT NULL DEFAULT 0,
  UNIQUE (recipient, category, year, month)
);

CREATE INDEX IF NOT EXISTS idx_requests_tracking_code ON requests (tracking_code);

CREATE TABLE IF NOT EXISTS payment_events (
  event_id TEXT PRIMARY KEY,
  direction TEXT NOT NULL,
  actor TEXT,
  amount TEXT,
  note TEXT,
  tracking_code TEXT,
  received_at TEXT,
  subject TEXT,
  in_reply INTEGER NOT NULL DEFAULT 0,
  recorded_at TEXT NOT NULL,
  consumed_at TEXT,
  request_id INTEGER REFERENCES requests (request_id),
  match_method TEXT,
  match_confidence REAL
);

CREATE TABLE IF NOT EXISTS reconciliations (
  entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
  event_id TEXT NOT NULL UNIQUE REFERENCES payment_events (event_id),
  request_id INTEGER NOT NULL UNIQUE REFERENCES requests (request_id),
  amount TEXT NOT NULL,
  method TEXT NOT NULL,
  confidence REAL NOT NULL,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reviews (
  event_id TEXT PRIMARY KEY REFERENCES payment_events (event_id),
  reason TEXT NOT NULL,
  candidates_json TEXT,
  status TEXT NOT NULL DEFAULT 'pending',
  created_at TEXT NOT NULL,
  resolved_at TEXT,
  resolved_by TEXT
);
"""

# Float slack for the SQL amount window; callers re-check with Decimal.
_WINDOW_EPSILON = 1e-6


class LedgerError(Exception):
    """Base class for ledger state errors."""


class UnknownRecord(LedgerError):
    """The referenced request, event, or transaction does not exist."""


class RequestNotOpen(LedgerError):
    """The request is already paid or foregone."""


class EventAlreadyConsumed(LedgerError):
    """The payment event was already applied to a request."""


class DuplicateReconciliation(LedgerError):
    """A reconciliation entry already exists for the request or the event."""


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(text: str | None) -> datetime | None:
    return datetime.fromisoformat(text) if text else None


def _dec(text: str | None) -> Decimal | None:
    return Decimal(text) if text not in (None, "") else None


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["transaction_id"],
        posted_on=date.fromisoformat(row["posted_on"]),
        description=row["description"],
        amount=Decimal(row["amount"]),
        payee=row["payee"] or "",
        direction=row["direction"],
        account=row["account"] or "",
        category=row["category"] or "",
        merchant=row["merchant"] or "",
        confidence=row["confidence"] or 0.0,
        auto_approve=bool(row["auto_approve"]),
        excluded=bool(row["excluded"]),
        exclude_reason=row["exclude_reason"] or "",
        rule_name=row["rule_name"] or "",
        override_category=row["override_category"] or "",
    )


def _row_to_request(row: sqlite3.Row) -> OutstandingRequest:
    return OutstandingRequest(
        request_id=row["request_id"],
        recipient=row["recipient"],
        category=row["category"],
        year=row["year"],
        month=row["month"],
        amount=Decimal(row["amount"]),
        total_amount=_dec(row["total_amount"]),
        status=row["status"],
        tracking_code=row["tracking_code"] or "",
        note=row["note"] or "",
        bill_id=row["bill_id"] or "",
        created_at=_dt(row["created_at"]),
        sent_at=_dt(row["sent_at"]),
        paid_at=_dt(row["paid_at"]),
        reminder_count=row["reminder_count"],
    )


def _row_to_event(row: sqlite3.Row) -> PaymentEvent:
    return PaymentEvent(
        event_id=row["event_id"],
        direction=row["direction"],
        actor=row["actor"] or "",
        amount=_dec(row["amount"]),
        note=row["note"] or "",
        tracking_code=row["tracking_code"] or "",
        received_at=_dt(row["received_at"]),
        subject=row["subject"] or "",
        in_reply=bool(row["in_reply"]),
    )


def _row_to_entry(row: sqlite3.Row) -> ReconciliationEntry:
    return ReconciliationEntry(
        entry_id=row["entry_id"],
        event_id=row["event_id"],
        request_id=row["request_id"],
        amount=Decimal(row["amount"]),
        method=row["method"],
        confidence=row["confidence"],
        applied_at=datetime.fromisoformat(row["applied_at"]),
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Ledger:
    """SQLite-backed store.

    Args:
        path: Database file path.  Created on :meth:`init_db`.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self.path)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA foreign_keys=ON;")
        try:
            yield con
            con.commit()
        finally:
            con.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one write transaction.

        Commits when the block exits normally and rolls back on any
        exception, so no partial state is ever visible.
        """
        con = sqlite3.connect(self.path, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    def init_db(self) -> None:
        """Create the schema if it does not exist yet."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as con:
            con.executescript(SCHEMA)

    # -- Transactions ---------------------------------------------------------

    def save_transaction(self, txn: Transaction) -> bool:
        """Store a classified transaction.  Returns False if it already exists."""
        with self._conn() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO transactions (
                  transaction_id, posted_on, description, payee, amount, direction,
                  account, category, merchant, confidence, auto_approve, excluded,
                  exclude_reason, rule_name, override_category, imported_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    txn.transaction_id,
                    txn.posted_on.isoformat(),
                    txn.description,
                    txn.payee,
                    str(txn.amount),
                    txn.direction,
                    txn.account,
                    txn.category,
                    txn.merchant,
                    txn.confidence,
                    int(txn.auto_approve),
                    int(txn.excluded),
                    txn.exclude_reason,
                    txn.rule_name,
                    txn.override_category,
                    datetime.now().isoformat(timespec="seconds"),
                ),
            )
            return cur.rowcount == 1

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM transactions WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def list_transactions(self, month: str | None = None) -> list[Transaction]:
        """All stored transactions, optionally limited to one ``YYYY-MM`` month."""
        sql = "SELECT * FROM transactions"
        params: tuple = ()
        if month:
            sql += " WHERE posted_on LIKE ?"
            params = (f"{month}-%",)
        sql += " ORDER BY posted_on, transaction_id"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [_row_to_transaction(r) for r in rows]

    def override_category(self, transaction_id: str, category: str) -> None:
        """Record a manual category override.

        Raises:
            UnknownRecord: If the transaction does not exist.
        """
        with self._conn() as con:
            cur = con.execute(
                "UPDATE transactions SET override_category = ? WHERE transaction_id = ?",
                (category, transaction_id),
            )
            if cur.rowcount == 0:
                raise UnknownRecord(f"Unknown transaction {transaction_id!r}")

    # -- Requests -------------------------------------------------------------

    def add_request(self, request: OutstandingRequest) -> OutstandingRequest | None:
        """Insert a new request.

        Returns:
            The stored request with its id, or None if a request for the
            same recipient, category, and period already exists.
        """
        created_at = request.created_at or datetime.now()
        with self._conn() as con:
            try:
                cur = con.execute(
                    """
                    INSERT INTO requests (
                      recipient, category, year, month, amount, total_amount, status,
                      tracking_code, note, bill_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.recipient,
                        request.category,
                        request.year,
                        request.month,
                        str(request.amount),
                        str(request.total_amount) if request.total_amount is not None else None,
                        request.status,
                        request.tracking_code,
                        request.note,
                        request.bill_id,
                        created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                logger.info(
                    "Request for %s %s %d-%02d already exists",
                    request.recipient,
                    request.category,
                    request.year,
                    request.month,
                )
                return None
            row = con.execute(
                "SELECT * FROM requests WHERE request_id = ?", (cur.lastrowid,)
            ).fetchone()
        return _row_to_request(row)

    def get_request(self, request_id: int) -> OutstandingRequest | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _row_to_request(row) if row else None

    def list_requests(
        self,
        status: str | None = None,
        year: int | None = None,
        month: int | None = None,
    ) -> list[OutstandingRequest]:
        clauses: list[str] = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if year is not None:
            clauses.append("year = ?")
            params.append(year)
        if month is not None:
            clauses.append("month = ?")
            params.append(month)
        sql = "SELECT * FROM requests"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY year, month, category, recipient"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [_row_to_request(r) for r in rows]

    def open_requests_by_code(self, code: str) -> list[OutstandingRequest]:
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT * FROM requests
                WHERE tracking_code = ? COLLATE NOCASE AND status IN (?, ?)
                ORDER BY created_at DESC, request_id DESC
                """,
                (code, *OPEN_STATUSES),
            ).fetchall()
        return [_row_to_request(r) for r in rows]

    def open_requests_in_window(
        self, amount: Decimal, tolerance: Decimal
    ) -> list[OutstandingRequest]:
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT * FROM requests
                WHERE status IN (?, ?) AND ABS(CAST(amount AS REAL) - ?) <= ?
                ORDER BY ABS(CAST(amount AS REAL) - ?), created_at DESC
                """,
                (
                    *OPEN_STATUSES,
                    float(amount),
                    float(tolerance) + _WINDOW_EPSILON,
                    float(amount),
                ),
            ).fetchall()
        return [_row_to_request(r) for r in rows]

    def open_requests_for(self, category: str, year: int, month: int) -> list[OutstandingRequest]:
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT * FROM requests
                WHERE category = ? AND year = ? AND month = ? AND status IN (?, ?)
                ORDER BY created_at DESC, request_id DESC
                """,
                (category, year, month, *OPEN_STATUSES),
            ).fetchall()
        return [_row_to_request(r) for r in rows]

    def mark_sent(self, request_id: int, at: datetime | None = None) -> bool:
        """Move a pending request to sent.  Returns False if it was not pending."""
        with self._conn() as con:
            cur = con.execute(
                "UPDATE requests SET status = ?, sent_at = ? WHERE request_id = ? AND status = ?",
                (STATUS_SENT, _iso(at or datetime.now()), request_id, STATUS_PENDING),
            )
            return cur.rowcount == 1

    def record_reminder(self, request_id: int) -> bool:
        """Count a reminder against an open request."""
        with self._conn() as con:
            cur = con.execute(
                """
                UPDATE requests SET reminder_count = reminder_count + 1
                WHERE request_id = ? AND status IN (?, ?)
                """,
                (request_id, *OPEN_STATUSES),
            )
            return cur.rowcount == 1

    def forego(self, request_id: int) -> OutstandingRequest:
        """Mark an open request as foregone (manual write-off).

        Raises:
            UnknownRecord: If the request does not exist.
            RequestNotOpen: If the request is already paid or foregone.
        """
        with self._conn() as con:
            cur = con.execute(
                "UPDATE requests SET status = ? WHERE request_id = ? AND status IN (?, ?)",
                (STATUS_FOREGONE, request_id, *OPEN_STATUSES),
            )
            if cur.rowcount == 0:
                self._raise_not_open(con, request_id)
            row = con.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _row_to_request(row)

    # -- Payment events -------------------------------------------------------

    def record_event(self, event: PaymentEvent) -> bool:
        """Store a parsed event.  Returns False if its id was seen before."""
        with self._conn() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO payment_events (
                  event_id, direction, actor, amount, note, tracking_code,
                  received_at, subject, in_reply, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.direction,
                    event.actor,
                    str(event.amount) if event.amount is not None else None,
                    event.note,
                    event.tracking_code,
                    _iso(event.received_at),
                    event.subject,
                    int(event.in_reply),
                    datetime.now().isoformat(timespec="seconds"),
                ),
            )
            return cur.rowcount == 1

    def has_event(self, event_id: str) -> bool:
        with self._conn() as con:
            row = con.execute(
                "SELECT 1 FROM payment_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row is not None

    def get_event(self, event_id: str) -> PaymentEvent | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM payment_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def is_consumed(self, event_id: str) -> bool:
        with self._conn() as con:
            row = con.execute(
                "SELECT consumed_at FROM payment_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return bool(row and row["consumed_at"])

    def unconsumed_events(self, directions: tuple[str, ...] | None = None) -> list[PaymentEvent]:
        """Events not yet applied, oldest first."""
        sql = "SELECT * FROM payment_events WHERE consumed_at IS NULL"
        params: tuple = ()
        if directions:
            sql += f" AND direction IN ({', '.join('?' for _ in directions)})"
            params = tuple(directions)
        sql += " ORDER BY received_at, recorded_at, rowid"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [_row_to_event(r) for r in rows]

    # -- Review queue ---------------------------------------------------------

    def flag_for_review(self, event_id: str, reason: str, candidates: list[dict]) -> None:
        """Queue an event for manual review, refreshing a still-pending item."""
        with self._conn() as con:
            con.execute(
                """
                INSERT INTO reviews (event_id, reason, candidates_json, status, created_at)
                VALUES (?, ?, ?, 'pending', ?)
                ON CONFLICT (event_id) DO UPDATE SET
                  reason = excluded.reason,
                  candidates_json = excluded.candidates_json
                WHERE reviews.status = 'pending'
                """,
                (
                    event_id,
                    reason,
                    json.dumps(candidates, ensure_ascii=False),
                    datetime.now().isoformat(timespec="seconds"),
                ),
            )

    def list_reviews(self, status: str | None = "pending") -> list[ReviewItem]:
        sql = "SELECT * FROM reviews"
        params: tuple = ()
        if status:
            sql += " WHERE status = ?"
            params = (status,)
        sql += " ORDER BY created_at, event_id"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [
            ReviewItem(
                event_id=r["event_id"],
                reason=r["reason"],
                candidates=json.loads(r["candidates_json"] or "[]"),
                status=r["status"],
                created_at=_dt(r["created_at"]),
                resolved_at=_dt(r["resolved_at"]),
                resolved_by=r["resolved_by"] or "",
            )
            for r in rows
        ]

    # -- Reconciliations ------------------------------------------------------

    def reconciliations(self, month: str | None = None) -> list[ReconciliationEntry]:
        """Reconciliation entries, optionally those applied in one ``YYYY-MM`` month."""
        sql = "SELECT * FROM reconciliations"
        params: tuple = ()
        if month:
            sql += " WHERE applied_at LIKE ?"
            params = (f"{month}-%",)
        sql += " ORDER BY applied_at, entry_id"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [_row_to_entry(r) for r in rows]

    # -- Transactional helpers (used by the applier) --------------------------

    def fetch_request(self, con: sqlite3.Connection, request_id: int) -> OutstandingRequest:
        row = con.execute(
            "SELECT * FROM requests WHERE request_id = ?", (request_id,)
        ).fetchone()
        if row is None:
            raise UnknownRecord(f"Unknown request #{request_id}")
        return _row_to_request(row)

    def consume_event(
        self,
        con: sqlite3.Connection,
        event_id: str,
        request_id: int,
        method: str,
        confidence: float,
        at: datetime,
    ) -> None:
        """Mark an event consumed.

        Raises:
            UnknownRecord: If the event was never recorded.
            EventAlreadyConsumed: If the event was consumed before.
        """
        cur = con.execute(
            """
            UPDATE payment_events
            SET consumed_at = ?, request_id = ?, match_method = ?, match_confidence = ?
            WHERE event_id = ? AND consumed_at IS NULL
            """,
            (at.isoformat(), request_id, method, confidence, event_id),
        )
        if cur.rowcount == 1:
            return
        exists = con.execute(
            "SELECT 1 FROM payment_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        if exists is None:
            raise UnknownRecord(f"Unknown payment event {event_id!r}")
        raise EventAlreadyConsumed(f"Payment event {event_id!r} was already applied")

    def mark_paid(self, con: sqlite3.Connection, request_id: int, at: datetime) -> None:
        """Move an open request to paid.

        Raises:
            UnknownRecord: If the request does not exist.
            RequestNotOpen: If the request is already paid or foregone.
        """
        cur = con.execute(
            "UPDATE requests SET status = ?, paid_at = ? WHERE request_id = ? AND status IN (?, ?)",
            (STATUS_PAID, at.isoformat(), request_id, *OPEN_STATUSES),
        )
        if cur.rowcount == 0:
            self._raise_not_open(con, request_id)

    def insert_reconciliation(
        self, con: sqlite3.Connection, entry: ReconciliationEntry
    ) -> ReconciliationEntry:
        """Insert a reconciliation entry.

        Raises:
            DuplicateReconciliation: If the request or event already has one.
        """
        try:
            cur = con.execute(
                """
                INSERT INTO reconciliations
                    (event_id, request_id, amount, method, confidence, applied_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.event_id,
                    entry.request_id,
                    str(entry.amount),
                    entry.method,
                    entry.confidence,
                    entry.applied_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateReconciliation(
                f"Request #{entry.request_id} or event {entry.event_id!r} is already reconciled"
            ) from exc
        entry.entry_id = cur.lastrowid
        return entry

    def resolve_review(
        self, con: sqlite3.Connection, event_id: str, resolved_by: str, at: datetime
    ) -> None:
        con.execute(
            """
            UPDATE reviews SET status = 'resolved', resolved_at = ?, resolved_by = ?
            WHERE event_id = ? AND status = 'pending'
            """,
            (at.isoformat(), resolved_by, event_id),
        )

    def _raise_not_open(self, con: sqlite3.Connection, request_id: int) -> None:
        row = con.execute(
            "SELECT status FROM requests WHERE request_id = ?", (request_id,)
        ).fetchone()
        if row is None:
            raise UnknownRecord(f"Unknown request #{request_id}")
        raise RequestNotOpen(f"Request #{request_id} is already {row['status']}")
