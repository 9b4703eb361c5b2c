"""Click CLI entry point for the rent command.

Handles argument parsing, config loading, and error display. All business
logic is delegated to ``reconcile``, ``billing``, ``classifier``,
``config``, and ``export`` modules.
"""

from __future__ import annotations

import logging
import re
import sys
from pathlib import Path

import click

from rent_tracker import __version__


def _validate_month(month: str) -> str:
    """Validate that *month* matches ``YYYY-MM`` and represents a real month.

    Returns the validated month string, or raises ``click.BadParameter``.
    """
    if not re.fullmatch(r"\d{4}-\d{2}", month):
        raise click.BadParameter(
            f"Invalid month format: {month!r}. Expected YYYY-MM (e.g. 2025-07)."
        )
    _, mon = month.split("-")
    mon_int = int(mon)
    if mon_int < 1 or mon_int > 12:
        raise click.BadParameter(
            f"Invalid month: {month!r}. Month must be between 01 and 12."
        )
    return month


def _month_or_exit(month: str) -> str:
    try:
        return _validate_month(month)
    except click.BadParameter as exc:
        click.echo(f"Error: {exc.format_message()}", err=True)
        sys.exit(1)


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Set up logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        force=True,
    )


def _open_project(root: Path):
    """Load config and open the ledger, exiting with a message on failure."""
    from rent_tracker.config import load_config
    from rent_tracker.ledger import Ledger

    try:
        config = load_config(root)
    except FileNotFoundError as exc:
        click.echo(
            f"Error: {exc}. Run 'rent init' to create the project structure.",
            err=True,
        )
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error loading configuration: {exc}", err=True)
        sys.exit(1)

    ledger = Ledger(root / config.db_path)
    try:
        ledger.init_db()
    except Exception as exc:
        click.echo(f"Error opening ledger: {exc}", err=True)
        sys.exit(1)
    return config, ledger


def _build_notifier_or_exit(config):
    from rent_tracker.notifier import build_notifier

    try:
        return build_notifier(config)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


_verbose_option = click.option(
    "--verbose", is_flag=True, default=False, help="Detailed progress output."
)
_debug_option = click.option(
    "--debug", is_flag=True, default=False, help="Developer-level diagnostics."
)


@click.group()
@click.version_option(version=__version__, prog_name="rent-tracker")
def cli() -> None:
    """Rental ledger: classify bank transactions and reconcile rent and utility payments."""


@cli.command()
@click.option(
    "--dir", "target_dir", default=".", type=click.Path(), help="Directory to initialize."
)
def init(target_dir: str) -> None:
    """Initialize a new project directory with default config and rules."""
    from rent_tracker.config import initialize

    target = Path(target_dir).resolve()

    try:
        initialize(target)
    except Exception as exc:
        click.echo(f"Error initializing project: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Initialized rent tracker project in {target}")


@cli.command()
@click.option(
    "--file", "file_path", required=True, type=click.Path(exists=True), help="Bank CSV export."
)
@click.option("--parser", "parser_name", default="bofa", show_default=True, help="CSV parser name.")
@click.option("--account", default="checking", show_default=True, help="Account key.")
@_verbose_option
@_debug_option
def classify(file_path: str, parser_name: str, account: str, verbose: bool, debug: bool) -> None:
    """Import a bank CSV, classify new transactions, and store them."""
    _configure_logging(verbose, debug)
    root = Path.cwd()
    config, ledger = _open_project(root)

    from rent_tracker.classifier import RuleEngine
    from rent_tracker.config import load_rules
    from rent_tracker.export import print_classification_summary
    from rent_tracker.parsers import PARSERS, get_parser
    from rent_tracker.reconcile import classify_and_store

    try:
        parse = get_parser(parser_name)
    except KeyError:
        click.echo(
            f"Error: unknown parser {parser_name!r}. Available: {', '.join(sorted(PARSERS))}",
            err=True,
        )
        sys.exit(1)

    try:
        engine = RuleEngine(load_rules(root), config.classification)
    except FileNotFoundError as exc:
        click.echo(f"Error: {exc}. Run 'rent init' to create the project structure.", err=True)
        sys.exit(1)
    except (KeyError, ValueError) as exc:
        click.echo(f"Error loading rules: {exc}", err=True)
        sys.exit(1)

    parsed = parse(Path(file_path), account)
    if parsed.errors and not parsed.transactions:
        for error in parsed.errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)

    result = classify_and_store(ledger, parsed.transactions, engine)
    result.warnings = parsed.warnings + result.warnings
    result.errors = parsed.errors + result.errors
    print_classification_summary(result, file_path)


@cli.command()
@click.argument("transaction_id")
@click.argument("category")
def override(transaction_id: str, category: str) -> None:
    """Manually override the category of a stored transaction."""
    from rent_tracker.ledger import UnknownRecord

    _, ledger = _open_project(Path.cwd())
    try:
        ledger.override_category(transaction_id, category)
    except UnknownRecord as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Transaction {transaction_id} is now {category}")


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@_verbose_option
@_debug_option
def ingest(paths: tuple[str, ...], verbose: bool, debug: bool) -> None:
    """Record payment notifications from .eml files (or directories of them)."""
    _configure_logging(verbose, debug)
    _, ledger = _open_project(Path.cwd())

    from rent_tracker.notifications import read_email
    from rent_tracker.reconcile import ingest_notifications

    files: list[Path] = []
    for p in paths:
        path = Path(p)
        files.extend(sorted(path.glob("*.eml")) if path.is_dir() else [path])

    messages = []
    for path in files:
        try:
            messages.append(read_email(path))
        except Exception as exc:
            click.echo(f"Warning: could not read {path}: {exc}", err=True)

    result = ingest_notifications(ledger, messages)

    click.echo(
        f"Recorded {len(result.events)} new notification(s), "
        f"skipped {result.duplicates} duplicate(s)."
    )
    if result.sent or result.reminders or result.cancelled:
        click.echo(
            f"  Requests sent: {result.sent}, reminders: {result.reminders}, "
            f"cancelled: {result.cancelled}"
        )
    if verbose:
        for warning in result.warnings:
            click.echo(f"  - {warning}")


@cli.command()
@_verbose_option
@_debug_option
def reconcile(verbose: bool, debug: bool) -> None:
    """Match recorded payments to open requests and apply the matches."""
    _configure_logging(verbose, debug)
    config, ledger = _open_project(Path.cwd())
    notifier = _build_notifier_or_exit(config)

    from rent_tracker.export import print_reconcile_summary
    from rent_tracker.matcher import Matcher, policies_from_config
    from rent_tracker.reconcile import reconcile as run_reconcile

    matcher = Matcher(config.matching, policies_from_config(config.policy))
    result = run_reconcile(ledger, matcher, notifier)
    print_reconcile_summary(result)
    if result.failed:
        sys.exit(1)


@cli.command()
def review() -> None:
    """List payments waiting for manual review, with suggested requests."""
    _, ledger = _open_project(Path.cwd())

    items = ledger.list_reviews()
    if not items:
        click.echo("Nothing to review.")
        return

    for item in items:
        event = ledger.get_event(item.event_id)
        click.echo()
        click.echo(f"[{item.event_id}] {item.reason}")
        if event is not None:
            amount = f"${event.amount:,.2f}" if event.amount is not None else "?"
            click.echo(f"  {event.subject}")
            click.echo(f"  from {event.actor or '?'}, {amount}")
            if event.note:
                click.echo(f"  note: {event.note}")
        for c in item.candidates:
            click.echo(
                f"    -> request #{c['request_id']} {c['recipient']} ${c['amount']} "
                f"(confidence {c['confidence']:.3f})"
            )
    click.echo()
    click.echo("Resolve with: rent match EVENT_ID REQUEST_ID")


@cli.command()
@click.argument("event_id")
@click.argument("request_id", type=int)
def match(event_id: str, request_id: int) -> None:
    """Manually apply payment EVENT_ID to request REQUEST_ID."""
    config, ledger = _open_project(Path.cwd())
    notifier = _build_notifier_or_exit(config)

    from rent_tracker.ledger import LedgerError
    from rent_tracker.notifier import NotificationError
    from rent_tracker.reconcile import manual_match

    try:
        entry = manual_match(ledger, event_id, request_id, notifier)
    except (LedgerError, NotificationError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Applied {event_id} to request #{request_id} (${entry.amount}).")


@cli.command()
@click.argument("request_id", type=int)
def forego(request_id: int) -> None:
    """Write off request REQUEST_ID without payment."""
    from rent_tracker.ledger import LedgerError

    _, ledger = _open_project(Path.cwd())
    try:
        request = ledger.forego(request_id)
    except LedgerError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(
        f"Request #{request.request_id} ({request.recipient}, {request.category} "
        f"{request.year}-{request.month:02d}) foregone."
    )


@cli.command()
@click.option("--month", default=None, help="Limit to bills from YYYY-MM and create its rent request.")
@_verbose_option
@_debug_option
def bill(month: str | None, verbose: bool, debug: bool) -> None:
    """Create payment requests for approved utility bills (and rent)."""
    _configure_logging(verbose, debug)
    if month is not None:
        month = _month_or_exit(month)
    config, ledger = _open_project(Path.cwd())

    from rent_tracker.billing import (
        bills_from_transactions,
        create_rent_request,
        create_utility_requests,
    )

    created = []
    for b in bills_from_transactions(ledger.list_transactions(month), config.billing):
        created.extend(create_utility_requests(ledger, b, config.billing))

    if month is not None and config.billing.rent_recipient:
        year, mon = (int(part) for part in month.split("-"))
        try:
            rent = create_rent_request(ledger, year, mon, config.billing)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
        if rent is not None:
            created.append(rent)

    click.echo(f"Created {len(created)} request(s).")
    for r in created:
        click.echo(f"  #{r.request_id} {r.recipient}: ${r.amount} {r.note}")


@cli.command("requests")
@click.option("--status", default=None, help="Filter by status (pending, sent, paid, foregone).")
@click.option("--month", default=None, help="Filter by billing month YYYY-MM.")
def list_requests(status: str | None, month: str | None) -> None:
    """List payment requests."""
    year = mon = None
    if month is not None:
        month = _month_or_exit(month)
        year, mon = (int(part) for part in month.split("-"))
    _, ledger = _open_project(Path.cwd())

    rows = ledger.list_requests(status=status, year=year, month=mon)
    if not rows:
        click.echo("No requests.")
        return
    for r in rows:
        click.echo(
            f"#{r.request_id:<4} {r.year}-{r.month:02d} {r.category:<12} {r.recipient:<20} "
            f"${r.amount:>9,.2f}  {r.status:<8} {r.tracking_code}"
        )


@cli.command()
@click.option("--month", required=True, help="Target month in YYYY-MM format.")
@_verbose_option
def export(month: str, verbose: bool) -> None:
    """Export a month of reconciliations to CSV and print a summary."""
    _configure_logging(verbose, debug=False)
    month = _month_or_exit(month)
    root = Path.cwd()
    config, ledger = _open_project(root)

    from rent_tracker.export import export_reconciliations, print_month_summary

    try:
        output_path = export_reconciliations(ledger, root / config.output_dir, month)
    except Exception as exc:
        click.echo(f"Error writing output: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Wrote {output_path}")

    print_month_summary(ledger, month)


@cli.group()
def rules() -> None:
    """Manage classification rules."""


@rules.command("add")
@click.option("--name", required=True, help="Rule name.")
@click.option("--pattern", required=True, help="Case-insensitive description regex.")
@click.option("--category", default="", help="Category to assign.")
@click.option(
    "--action",
    type=click.Choice(["categorize", "approve", "exclude"]),
    default="categorize",
    show_default=True,
)
@click.option("--priority", type=int, default=0, show_default=True)
@click.option("--payee-pattern", default="", help="Optional payee regex.")
@click.option("--exclude-reason", default="", help="Reason recorded by exclude rules.")
def rules_add(
    name: str,
    pattern: str,
    category: str,
    action: str,
    priority: int,
    payee_pattern: str,
    exclude_reason: str,
) -> None:
    """Append a rule to rules.toml."""
    from rent_tracker.config import add_rule
    from rent_tracker.models import ClassificationRule

    if action != "exclude" and not category:
        click.echo("Error: --category is required unless --action is exclude.", err=True)
        sys.exit(1)
    try:
        re.compile(pattern)
        if payee_pattern:
            re.compile(payee_pattern)
    except re.error as exc:
        click.echo(f"Error: invalid pattern: {exc}", err=True)
        sys.exit(1)

    try:
        rule = add_rule(
            Path.cwd(),
            ClassificationRule(
                rule_id=0,
                name=name,
                description_pattern=pattern,
                category=category,
                action=action,
                priority=priority,
                payee_pattern=payee_pattern,
                exclude_reason=exclude_reason,
            ),
        )
    except FileNotFoundError as exc:
        click.echo(f"Error: {exc}. Run 'rent init' to create the project structure.", err=True)
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error saving rule: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Added rule #{rule.rule_id}: {rule.name}")
