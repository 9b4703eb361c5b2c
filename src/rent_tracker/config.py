"""Configuration loading, writing, and project initialization.

Reads TOML config files using stdlib ``tomllib`` and writes them using
``tomli_w``.  Depends only on ``models.py``.
"""

from __future__ import annotations

import tomllib
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

import tomli_w

from rent_tracker.models import (
    ACTION_CATEGORIZE,
    RULE_ACTIONS,
    AppConfig,
    BillingConfig,
    ClassificationConfig,
    ClassificationRule,
    MatchingConfig,
    PolicyConfig,
    Recipient,
)

# ---------------------------------------------------------------------------
# Default file content
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_TOML = """\
# Rent Tracker configuration

[general]
db_path = "rent-tracker.db"
output_dir = "output"

[classification]
auto_approve_priority = 100      # categorize rules at or above this auto-approve
rule_strategy = "last_match"     # "last_match" or "first_match"
exclude_credits = true           # deposits are income, tracked via requests

[matching]
amount_tolerance = "0.01"
auto_match_threshold = 0.90
review_top_n = 3
unresolved_tracking_code = "fallback"   # "fallback" or "fail"

[matching.category_keywords]
electricity = ["pge", "pg&e", "electric", "power"]
water = ["water", "great oaks"]
rent = ["rent"]

[policy]
# Claim large payments from one payer for their monthly rent request.
enabled = false
payer_alias = ""
min_amount = "1600"
# cutover = 2025-07-01
category = "rent"

[billing]
split_categories = ["electricity", "water"]
split_ways = 3
rent_amount = "0"
rent_recipient = ""

# [[billing.recipients]]
# name = "John Doe"
# handle = "@John-Doe"

[notifications]
provider = "none"                # "none" or "webhook"
webhook_url_env = "RENT_TRACKER_WEBHOOK_URL"
"""

_DEFAULT_RULES_TOML = """\
# Classification rules, evaluated by priority (highest first), then file order.
# action: "categorize", "approve" (auto-approve), or "exclude".

[[rules]]
name = "PG&E"
pattern = "pg&e|pacific gas"
category = "electricity"
action = "approve"
priority = 100

[[rules]]
name = "Great Oaks Water"
pattern = "great oaks"
category = "water"
action = "approve"
priority = 100

[[rules]]
name = "Credit card payment"
pattern = "credit card|crd pmt|cardmember"
action = "exclude"
priority = 200
exclude_reason = "Credit card payment"
"""

# Directories that ``initialize`` creates.
_INIT_DIRS = [
    "input",
    "notifications",
    "output",
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(root: Path) -> AppConfig:
    """Load ``config.toml`` from *root* and return an :class:`AppConfig`.

    Missing sections and keys fall back to the dataclass defaults.

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
        ValueError: If a value cannot be interpreted.
    """
    data = _read_toml(root / "config.toml")

    general = data.get("general", {})
    classification = data.get("classification", {})
    matching = data.get("matching", {})
    policy = data.get("policy", {})
    billing = data.get("billing", {})
    notifications = data.get("notifications", {})

    matching_defaults = MatchingConfig()
    billing_defaults = BillingConfig()

    return AppConfig(
        db_path=general.get("db_path", "rent-tracker.db"),
        output_dir=general.get("output_dir", "output"),
        classification=ClassificationConfig(
            auto_approve_priority=int(classification.get("auto_approve_priority", 100)),
            rule_strategy=classification.get("rule_strategy", "last_match"),
            exclude_credits=bool(classification.get("exclude_credits", True)),
        ),
        matching=MatchingConfig(
            amount_tolerance=_decimal(matching.get("amount_tolerance", "0.01"), "amount_tolerance"),
            auto_match_threshold=float(matching.get("auto_match_threshold", 0.90)),
            review_top_n=int(matching.get("review_top_n", 3)),
            unresolved_tracking_code=_choice(
                matching.get("unresolved_tracking_code", "fallback"),
                ("fallback", "fail"),
                "unresolved_tracking_code",
            ),
            category_keywords={
                k: list(v)
                for k, v in matching.get(
                    "category_keywords", matching_defaults.category_keywords
                ).items()
            },
        ),
        policy=PolicyConfig(
            enabled=bool(policy.get("enabled", False)),
            payer_alias=policy.get("payer_alias", ""),
            min_amount=_decimal(policy.get("min_amount", "1600"), "min_amount"),
            cutover=_date(policy.get("cutover")),
            category=policy.get("category", "rent"),
        ),
        billing=BillingConfig(
            split_categories=list(
                billing.get("split_categories", billing_defaults.split_categories)
            ),
            split_ways=int(billing.get("split_ways", 3)),
            recipients=[
                Recipient(name=r["name"], handle=r.get("handle", ""))
                for r in billing.get("recipients", [])
            ],
            rent_amount=_decimal(billing.get("rent_amount", "0"), "rent_amount"),
            rent_recipient=billing.get("rent_recipient", ""),
        ),
        notifier_provider=notifications.get("provider", "none"),
        webhook_url_env=notifications.get("webhook_url_env", "RENT_TRACKER_WEBHOOK_URL"),
    )


def load_rules(root: Path) -> list[ClassificationRule]:
    """Load ``rules.toml`` and return its rules in file order.

    Rule ids are assigned 1-based in file order.

    Raises:
        FileNotFoundError: If ``rules.toml`` does not exist.
        ValueError: If a rule is missing ``name``/``pattern`` or has an
            unknown action.
    """
    data = _read_toml(root / "rules.toml")
    rules: list[ClassificationRule] = []

    for rule_id, entry in enumerate(data.get("rules", []), start=1):
        if "name" not in entry or "pattern" not in entry:
            raise ValueError(f"Rule #{rule_id} in rules.toml needs 'name' and 'pattern'")
        action = _choice(entry.get("action", ACTION_CATEGORIZE), RULE_ACTIONS, "action")
        rules.append(
            ClassificationRule(
                rule_id=rule_id,
                name=entry["name"],
                description_pattern=entry["pattern"],
                category=entry.get("category", ""),
                action=action,
                priority=int(entry.get("priority", 0)),
                payee_pattern=entry.get("payee_pattern", ""),
                amount_min=_optional_decimal(entry.get("amount_min"), "amount_min"),
                amount_max=_optional_decimal(entry.get("amount_max"), "amount_max"),
                merchant=entry.get("merchant", ""),
                exclude_reason=entry.get("exclude_reason", ""),
                active=bool(entry.get("active", True)),
            )
        )

    return rules


def save_rules(root: Path, rules: list[ClassificationRule]) -> None:
    """Rewrite ``rules.toml`` with *rules* in the given order.

    Optional fields are written only when set, so the file stays readable.
    """
    tables: list[dict] = []
    for rule in rules:
        table: dict = {"name": rule.name, "pattern": rule.description_pattern}
        if rule.category:
            table["category"] = rule.category
        table["action"] = rule.action
        table["priority"] = rule.priority
        if rule.payee_pattern:
            table["payee_pattern"] = rule.payee_pattern
        if rule.amount_min is not None:
            table["amount_min"] = str(rule.amount_min)
        if rule.amount_max is not None:
            table["amount_max"] = str(rule.amount_max)
        if rule.merchant:
            table["merchant"] = rule.merchant
        if rule.exclude_reason:
            table["exclude_reason"] = rule.exclude_reason
        if not rule.active:
            table["active"] = False
        tables.append(table)

    (root / "rules.toml").write_text(tomli_w.dumps({"rules": tables}), encoding="utf-8")


def add_rule(root: Path, rule: ClassificationRule) -> ClassificationRule:
    """Append *rule* to ``rules.toml`` and return it with its assigned id."""
    rules = load_rules(root)
    rule.rule_id = len(rules) + 1
    rules.append(rule)
    save_rules(root, rules)
    return rule


def initialize(target_dir: Path) -> None:
    """Create the standard directory structure and default config files.

    Idempotent: existing directories are left alone and existing files
    are **not** overwritten.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    for d in _INIT_DIRS:
        (target_dir / d).mkdir(parents=True, exist_ok=True)

    _write_if_missing(target_dir / "config.toml", _DEFAULT_CONFIG_TOML)
    _write_if_missing(target_dir / "rules.toml", _DEFAULT_RULES_TOML)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    """Read and parse a TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _decimal(value, key: str) -> Decimal:
    """Decimal from a TOML string or number (floats go through ``str``)."""
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid decimal for {key!r}: {value!r}") from None


def _optional_decimal(value, key: str) -> Decimal | None:
    return None if value is None else _decimal(value, key)


def _date(value) -> date | None:
    """TOML local dates arrive as :class:`date`; ISO strings are accepted too."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _choice(value: str, allowed: tuple[str, ...], key: str) -> str:
    if value not in allowed:
        raise ValueError(f"Invalid {key} {value!r}. Use one of: {', '.join(allowed)}")
    return value


def _write_if_missing(path: Path, content: str) -> None:
    """Write *content* to *path* only if the file does not already exist."""
    if not path.exists():
        path.write_text(content, encoding="utf-8")
