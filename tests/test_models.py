"""Tests for rent_tracker.models -- dataclass construction and ID generation."""

from datetime import date, datetime
from decimal import Decimal

from rent_tracker.models import (
    STATUS_FOREGONE,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_SENT,
    AppConfig,
    OutstandingRequest,
    ScoredCandidate,
    StageResult,
    Transaction,
    generate_event_id,
    generate_transaction_id,
)

# ---------------------------------------------------------------------------
# generate_transaction_id
# ---------------------------------------------------------------------------


class TestGenerateTransactionId:
    """Tests for deterministic transaction ID generation."""

    def test_basic_determinism(self):
        """Same inputs always produce the same ID."""
        kwargs = dict(
            account="bofa-checking",
            posted_on=date(2025, 7, 3),
            description="PGANDE DES:WEB ONLINE",
            amount=Decimal("-289.09"),
            occurrence=0,
        )
        assert generate_transaction_id(**kwargs) == generate_transaction_id(**kwargs)

    def test_id_is_12_hex_chars(self):
        tid = generate_transaction_id("a", date(2025, 7, 3), "X", Decimal("1"), 0)
        assert len(tid) == 12
        assert all(c in "0123456789abcdef" for c in tid)

    def test_description_case_and_whitespace_ignored(self):
        a = generate_transaction_id("a", date(2025, 7, 3), "  pgande web ", Decimal("1"), 0)
        b = generate_transaction_id("a", date(2025, 7, 3), "PGANDE WEB", Decimal("1"), 0)
        assert a == b

    def test_occurrence_distinguishes_same_day_duplicates(self):
        a = generate_transaction_id("a", date(2025, 7, 3), "ATM", Decimal("-20"), 0)
        b = generate_transaction_id("a", date(2025, 7, 3), "ATM", Decimal("-20"), 1)
        assert a != b


class TestGenerateEventId:
    """Content digests used when a notification has no message id."""

    def test_stable(self):
        ts = datetime(2025, 7, 25, 12, 0)
        assert generate_event_id("s", "b", ts) == generate_event_id("s", "b", ts)

    def test_sixteen_hex_chars(self):
        eid = generate_event_id("subject", "body", None)
        assert len(eid) == 16
        assert all(c in "0123456789abcdef" for c in eid)

    def test_different_timestamps_differ(self):
        a = generate_event_id("s", "b", datetime(2025, 7, 25))
        b = generate_event_id("s", "b", datetime(2025, 7, 26))
        assert a != b


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


class TestTransaction:
    def test_effective_category_prefers_override(self):
        txn = Transaction(
            transaction_id="abc",
            posted_on=date(2025, 7, 3),
            description="X",
            amount=Decimal("-1"),
            category="other",
        )
        assert txn.effective_category == "other"
        txn.override_category = "maintenance"
        assert txn.effective_category == "maintenance"


class TestOutstandingRequest:
    def test_open_statuses(self):
        def req(status):
            return OutstandingRequest("A", "rent", 2025, 7, Decimal("1"), status=status)

        assert req(STATUS_PENDING).is_open
        assert req(STATUS_SENT).is_open
        assert not req(STATUS_PAID).is_open
        assert not req(STATUS_FOREGONE).is_open


class TestScoredCandidate:
    def test_to_dict_rounds_and_stringifies(self):
        c = ScoredCandidate(
            request_id=7,
            amount_score=0.99423,
            name_score=0.875,
            note_score=0.0,
            confidence=0.80336,
            recipient="John Doe",
            amount=Decimal("173.40"),
        )
        d = c.to_dict()
        assert d["request_id"] == 7
        assert d["amount"] == "173.40"
        assert d["confidence"] == 0.8034


class TestStageResult:
    def test_mutable_default_isolation(self):
        a = StageResult()
        b = StageResult()
        a.warnings.append("x")
        assert b.warnings == []


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig()
        assert config.db_path == "rent-tracker.db"
        assert config.classification.auto_approve_priority == 100
        assert config.matching.auto_match_threshold == 0.90
        assert config.matching.amount_tolerance == Decimal("0.01")
        assert config.policy.enabled is False
        assert config.notifier_provider == "none"
