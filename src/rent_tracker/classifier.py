"""Rule engine: prioritized pattern rules with a keyword fallback.

Classification runs in two tiers:

1. **Rules** -- active :class:`~rent_tracker.models.ClassificationRule`
   objects, evaluated by priority (descending) then insertion order.  A
   rule matches when its description regex matches, its payee regex (if
   any) matches, and the absolute amount falls within its range (if any).
   An ``exclude`` match is terminal.  ``categorize``/``approve`` matches
   are combined by a named strategy (see :data:`RULE_STRATEGIES`).

2. **Heuristic** -- when no rule matched, an ordered keyword table picks a
   category with confidence 0.5 and no auto-approval.

Rules are compiled once when the engine is built.  A rule whose pattern
does not compile is skipped and logged; it never aborts a batch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from rent_tracker.models import (
    ACTION_APPROVE,
    ACTION_EXCLUDE,
    CREDIT,
    ClassificationConfig,
    ClassificationResult,
    ClassificationRule,
    StageResult,
    Transaction,
)

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.9
HEURISTIC_CONFIDENCE = 0.5
EXCLUDE_CONFIDENCE = 1.0

DEPOSIT_EXCLUDE_REASON = "Bank deposit - income tracked via payment requests"

# Ordered (keywords, category) pairs for the fallback heuristic.  The first
# entry wins, so more specific keywords come first.
HEURISTIC_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("xfinity mobile",), "other"),
    (("comcast", "xfinity"), "internet"),
    (("pg&e", "pacific gas", "pge"), "electricity"),
    (("great oaks", "water"), "water"),
    (("gardener", "landscape", "lawn", "yard"), "landscape"),
    (("home depot", "lowes", "repair", "maintenance"), "maintenance"),
]

LARGE_CREDIT_RENT_THRESHOLD = Decimal("1500")


# ---------------------------------------------------------------------------
# Final-category strategies
# ---------------------------------------------------------------------------


def last_match_wins(
    current: ClassificationResult | None, candidate: ClassificationResult
) -> ClassificationResult:
    """Every later matching rule overwrites the category."""
    return candidate


def first_match_wins(
    current: ClassificationResult | None, candidate: ClassificationResult
) -> ClassificationResult:
    """The highest-priority matching rule keeps the category."""
    return current if current is not None else candidate


RULE_STRATEGIES: dict[str, Callable[..., ClassificationResult]] = {
    "last_match": last_match_wins,
    "first_match": first_match_wins,
}


def get_strategy(name: str) -> Callable[..., ClassificationResult]:
    """Look up a final-category strategy by name.

    Raises:
        KeyError: If no strategy is registered under *name*.
    """
    try:
        return RULE_STRATEGIES[name]
    except KeyError:
        raise KeyError(
            f"Unknown rule strategy {name!r}. Available: {', '.join(sorted(RULE_STRATEGIES))}"
        ) from None


# ---------------------------------------------------------------------------
# Rule engine
# ---------------------------------------------------------------------------


@dataclass
class _CompiledRule:
    rule: ClassificationRule
    description: re.Pattern
    payee: re.Pattern | None


# Whole-word bank spellings of names that contain an ampersand.
AMPERSAND_ALIASES = {
    "PGANDE": "PG&E",
    "ATANDT": "AT&T",
}

_AMPERSAND_ALIAS_RE = re.compile(
    r"\b(" + "|".join(AMPERSAND_ALIASES) + r")\b", re.IGNORECASE
)


def _text_variants(text: str) -> tuple[str, ...]:
    """Return *text* plus a spelling with known bank aliases expanded.

    Bank exports spell ``PG&E`` as ``PGANDE``; the variant lets a rule
    written as ``pg&e`` match either form.  Only whole words listed in
    :data:`AMPERSAND_ALIASES` are rewritten.
    """
    variant = _AMPERSAND_ALIAS_RE.sub(lambda m: AMPERSAND_ALIASES[m.group(1).upper()], text)
    if variant == text:
        return (text,)
    return (text, variant)


def _search(pattern: re.Pattern, text: str) -> bool:
    return any(pattern.search(t) for t in _text_variants(text))


class RuleEngine:
    """Classifies transactions against a fixed, pre-compiled rule set.

    Args:
        rules: Rules in any order; inactive rules are dropped and the rest
            sorted by priority descending, then ``rule_id`` ascending.
        config: Engine settings.  Defaults to :class:`ClassificationConfig`.
    """

    def __init__(
        self,
        rules: list[ClassificationRule],
        config: ClassificationConfig | None = None,
    ) -> None:
        self.config = config or ClassificationConfig()
        self.strategy = get_strategy(self.config.rule_strategy)
        self.skipped_rules: list[str] = []
        self._rules = self._compile(rules)

    def _compile(self, rules: list[ClassificationRule]) -> list[_CompiledRule]:
        ordered = sorted(
            (r for r in rules if r.active),
            key=lambda r: (-r.priority, r.rule_id),
        )
        compiled: list[_CompiledRule] = []
        for rule in ordered:
            try:
                description = re.compile(rule.description_pattern, re.IGNORECASE)
                payee = None
                if rule.payee_pattern:
                    payee = re.compile(rule.payee_pattern, re.IGNORECASE)
            except re.error as exc:
                logger.warning("Skipping rule %r: malformed pattern (%s)", rule.name, exc)
                self.skipped_rules.append(f"Rule {rule.name!r} skipped: malformed pattern ({exc})")
                continue
            compiled.append(_CompiledRule(rule=rule, description=description, payee=payee))
        return compiled

    @property
    def rules(self) -> list[ClassificationRule]:
        """Active, well-formed rules in evaluation order."""
        return [c.rule for c in self._rules]

    def _matches(self, compiled: _CompiledRule, txn: Transaction) -> bool:
        if not _search(compiled.description, txn.description or ""):
            return False
        if compiled.payee is not None and not _search(compiled.payee, txn.payee or ""):
            return False

        rule = compiled.rule
        amount = abs(txn.amount)
        if rule.amount_min is not None and amount < rule.amount_min:
            return False
        if rule.amount_max is not None and amount > rule.amount_max:
            return False
        return True

    def classify(self, txn: Transaction) -> ClassificationResult:
        """Classify one transaction.  Pure: *txn* is not modified."""
        if self.config.exclude_credits and txn.direction == CREDIT:
            return ClassificationResult(
                excluded=True,
                exclude_reason=DEPOSIT_EXCLUDE_REASON,
                confidence=EXCLUDE_CONFIDENCE,
                method="policy",
            )

        result: ClassificationResult | None = None
        for compiled in self._rules:
            if not self._matches(compiled, txn):
                continue
            rule = compiled.rule

            if rule.action == ACTION_EXCLUDE:
                return ClassificationResult(
                    excluded=True,
                    exclude_reason=rule.exclude_reason or rule.name,
                    confidence=EXCLUDE_CONFIDENCE,
                    rule_name=rule.name,
                    method="rule",
                )

            candidate = ClassificationResult(
                category=rule.category,
                merchant=rule.merchant,
                confidence=RULE_CONFIDENCE,
                auto_approve=(
                    rule.action == ACTION_APPROVE
                    or rule.priority >= self.config.auto_approve_priority
                ),
                rule_name=rule.name,
                method="rule",
            )
            result = self.strategy(result, candidate)

        if result is None:
            result = ClassificationResult(
                category=heuristic_category(txn),
                confidence=HEURISTIC_CONFIDENCE,
                method="heuristic",
            )
        if not result.merchant:
            result.merchant = txn.payee or extract_merchant(txn.description)
        return result


# ---------------------------------------------------------------------------
# Heuristic fallback
# ---------------------------------------------------------------------------


def heuristic_category(txn: Transaction) -> str:
    """Pick a category from keywords in the description and payee."""
    combined = f"{txn.description} {txn.payee}".lower()
    texts = [t.lower() for t in _text_variants(combined)]
    for keywords, category in HEURISTIC_KEYWORDS:
        if any(k in t for k in keywords for t in texts):
            return category
    if (
        txn.direction == CREDIT
        and abs(txn.amount) > LARGE_CREDIT_RENT_THRESHOLD
        and "venmo" not in combined
    ):
        return "rent"
    return "other"


def extract_merchant(description: str) -> str:
    """Take the first three words of *description* after removing digits."""
    words = re.sub(r"[0-9]", "", description or "").split()
    return " ".join(words[:3])


# ---------------------------------------------------------------------------
# Batch stage
# ---------------------------------------------------------------------------


def apply_result(txn: Transaction, result: ClassificationResult) -> Transaction:
    """Copy a classification result onto *txn* and return it."""
    txn.category = result.category
    txn.merchant = result.merchant
    txn.confidence = result.confidence
    txn.auto_approve = result.auto_approve
    txn.excluded = result.excluded
    txn.exclude_reason = result.exclude_reason
    txn.rule_name = result.rule_name
    return txn


def classify_transactions(transactions: list[Transaction], engine: RuleEngine) -> StageResult:
    """Classify every not-yet-classified transaction in *transactions*.

    Transactions that already carry a category (or an exclusion) are left
    untouched: classification happens once.

    Returns:
        A :class:`StageResult` with all transactions, plus a warning per
        skipped rule and per transaction that was already classified.
    """
    warnings: list[str] = list(engine.skipped_rules)
    errors: list[str] = []

    for txn in transactions:
        if txn.category or txn.excluded:
            warnings.append(f"{txn.transaction_id}: already classified, left unchanged")
            continue
        apply_result(txn, engine.classify(txn))
        logger.debug(
            "Classified %s as %s (confidence %.2f, auto_approve=%s, excluded=%s)",
            txn.transaction_id,
            txn.category or "-",
            txn.confidence,
            txn.auto_approve,
            txn.excluded,
        )

    return StageResult(transactions=transactions, warnings=warnings, errors=errors)
