"""Command‑line interface for the fiscal calculator.

This module uses the ``click`` library to implement a multi‑command
interface. Users can compute the fiscal breakdown of an amount, list the
known tax codes, and manage a ledger of invoices, credit notes and payments
stored in a database. Breakdowns can be printed to the terminal or exported
to JSON/CSV files.
"""

from __future__ import annotations

import csv
import json
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

import click

from .data_models import (
    DEFAULT_FISCAL_STAMP,
    AmountType,
    DocumentKind,
    FiscalBreakdown,
    FodecBase,
    FodecConfig,
    PaymentDraft,
    PaymentLine,
    TaxConfiguration,
    WithholdingConfig,
)
from .engine import DEFAULT_RATE_TABLE, WithholdingOverride, WithholdingPolicy, compute_breakdown
from .errors import FiscalError
from .formatter import print_breakdown, print_documents, print_payment
from .ledger_store import LedgerStore, create_store_from_env
from .logging_config import configure_logging
from .utils import decimal_from_str, format_amount, parse_percent


def parse_amount(value: str) -> Decimal:
    """Parse a money string such as ``"1 191,500"`` or ``"75.5"``."""
    try:
        return decimal_from_str(value)
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


def parse_rate(value: str) -> Decimal:
    """Parse a percentage on the 0-100 scale (``"19"`` or ``"19%"``)."""
    try:
        return parse_percent(value)
    except ValueError:
        raise click.BadParameter(f"Invalid percentage: {value}")


def parse_date(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter(f"Date must be in YYYY-MM-DD format; got {value}")


def parse_line_strings(values: Tuple[str, ...]) -> Tuple[PaymentLine, ...]:
    lines = []
    for item in values:
        parts = item.split(":")
        if len(parts) != 2:
            raise click.BadParameter(f"Line must be in DOCUMENT_ID:AMOUNT format; got {item}")
        doc_id, amount = parts
        lines.append(PaymentLine(target_document_id=doc_id, amount_applied=parse_amount(amount)))
    return tuple(lines)


def build_config_from_options(
    amount: str,
    amount_type: str = "HT",
    vat_rate: Optional[str] = None,
    tax_code: Optional[str] = None,
    deductible: str = "100",
    fodec_rate: Optional[str] = None,
    fodec_base: str = FodecBase.AFTER_DISCOUNT.value,
    withholding_rate: str = "0",
    stamp: Optional[str] = None,
    discount: str = "0",
    currency: str = "TND",
) -> TaxConfiguration:
    """Turn raw option values into a :class:`TaxConfiguration`.

    FODEC is enabled when a rate is given. Withholding starts disabled; the
    caller decides whether to switch it on (see :func:`apply_withholding`).
    """
    if vat_rate is None and tax_code is None:
        raise click.BadParameter("Either a VAT rate or a tax code is required")
    fodec = FodecConfig()
    if fodec_rate is not None:
        fodec = FodecConfig(enabled=True, rate_pct=parse_rate(fodec_rate), base=FodecBase(fodec_base))
    return TaxConfiguration(
        amount=parse_amount(amount),
        amount_type=AmountType(amount_type.upper()),
        vat_rate_pct=parse_rate(vat_rate) if vat_rate is not None else None,
        tax_code=tax_code,
        vat_deductible_pct=parse_rate(deductible),
        fodec=fodec,
        withholding=WithholdingConfig(enabled=False, rate_pct=parse_rate(withholding_rate)),
        fiscal_stamp=parse_amount(stamp) if stamp is not None else DEFAULT_FISCAL_STAMP,
        global_discount_pct=parse_rate(discount),
        currency=currency.upper(),
    )


def apply_withholding(config: TaxConfiguration, choice: Optional[bool]) -> TaxConfiguration:
    """Apply the user's withholding choice.

    ``None`` lets the threshold policy decide, ``False`` is a manual opt-out
    the policy respects, ``True`` forces withholding on.
    """
    if choice is True:
        return replace(config, withholding=replace(config.withholding, enabled=True))
    override = WithholdingOverride(manually_disabled=choice is False)
    return WithholdingPolicy().resolve(config, override).config


def export_to_json(path: Path, breakdown: FiscalBreakdown, currency: str) -> None:
    """Export a breakdown to a JSON file, amounts as exact strings."""
    data = {"currency": currency, "breakdown": breakdown.as_dict()}
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def export_to_csv(path: Path, breakdown: FiscalBreakdown) -> None:
    """Export a breakdown to a two-column CSV file."""
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["Field", "Amount"])
        for name, amount in breakdown.as_dict().items():
            writer.writerow([name, amount])


def tax_options(func):
    """Attach the tax configuration options shared by several commands."""
    options = [
        click.option("--amount", "-a", "amount", required=True, help="Amount entered on the document"),
        click.option("--type", "amount_type", type=click.Choice(["HT", "TTC"], case_sensitive=False), default="HT", help="Amount excludes (HT) or includes (TTC) taxes"),
        click.option("--vat-rate", "vat_rate", help="VAT percentage"),
        click.option("--tax-code", "tax_code", help="Tax code resolved to a VAT percentage (e.g. TN19)"),
        click.option("--deductible", "deductible", default="100", help="Deductible share of VAT (percent)"),
        click.option("--fodec-rate", "fodec_rate", help="Enable FODEC at this percentage"),
        click.option("--fodec-base", "fodec_base", type=click.Choice([b.value for b in FodecBase]), default=FodecBase.AFTER_DISCOUNT.value, help="Apply FODEC before or after the discount"),
        click.option("--withholding-rate", "withholding_rate", default="0", help="Withholding percentage"),
        click.option("--withholding/--no-withholding", "withholding", default=None, help="Force withholding on or off; automatic above the threshold when omitted"),
        click.option("--stamp", "stamp", help="Fiscal stamp amount"),
        click.option("--discount", "discount", default="0", help="Global discount (percent)"),
        click.option("--currency", "currency", default="TND", help="Currency code"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def config_from_tax_options(options: dict) -> TaxConfiguration:
    choice = options.pop("withholding")
    return apply_withholding(build_config_from_options(**options), choice)


@click.group()
@click.option("--log-level", "log_level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
def cli(log_level: Optional[str]) -> None:
    """A command‑line fiscal calculator and payment ledger."""
    configure_logging(log_level)


@cli.command()
@tax_options
@click.option("--output", "output", type=str, help="Output file path (.json or .csv)")
def breakdown(output: Optional[str], **options) -> None:
    """Compute and print the fiscal breakdown of an amount."""
    try:
        config = config_from_tax_options(options)
        result = compute_breakdown(config)
    except FiscalError as exc:
        raise click.ClickException(str(exc))
    if output:
        path = Path(output)
        if path.suffix.lower() == ".json":
            export_to_json(path, result, config.currency)
        elif path.suffix.lower() == ".csv":
            export_to_csv(path, result)
        else:
            raise click.BadParameter("Unsupported output format; use .json or .csv")
        click.echo(f"Breakdown exported to {path}")
    else:
        print_breakdown(result, config.currency)


@cli.command()
def rates() -> None:
    """List the known tax codes and their VAT percentages."""
    for code, pct in DEFAULT_RATE_TABLE.items():
        click.echo(f"{code:8s} {pct}%")


@cli.group()
@click.option("--database", "database", envvar="FISCAL_DATABASE_URL", help="SQLAlchemy database URL")
@click.pass_context
def ledger(ctx: click.Context, database: Optional[str]) -> None:
    """Invoices, credit notes and payments stored in a database."""
    ctx.obj = create_store_from_env(database)


@ledger.command("add-document")
@click.option("--kind", "kind", type=click.Choice([k.value for k in DocumentKind]), default=DocumentKind.INVOICE.value, help="Document kind")
@click.option("--counterparty", "counterparty", required=True, help="Customer or supplier id")
@click.option("--number", "number", help="Document number (generated when omitted)")
@click.option("--date", "doc_date", help="Document date (YYYY-MM-DD)")
@tax_options
@click.pass_obj
def add_document(
    store: LedgerStore,
    kind: str,
    counterparty: str,
    number: Optional[str],
    doc_date: Optional[str],
    **options,
) -> None:
    """Compute a document's breakdown and record it."""
    try:
        config = config_from_tax_options(options)
        document = store.create_document(
            DocumentKind(kind),
            counterparty,
            config,
            number=number,
            document_date=parse_date(doc_date),
        )
    except FiscalError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"{document.kind.value} {document.number} ({document.id}) total {format_amount(document.total_amount)}")


@ledger.command()
@click.option("--counterparty", "counterparty", required=True, help="Customer or supplier id")
@click.option("--date", "pay_date", required=True, help="Payment date (YYYY-MM-DD)")
@click.option("--method", "method", required=True, help="Payment method, e.g. Espèces")
@click.option("--reference", "reference", default="", help="Cheque number, transfer reference, ...")
@click.option("--line", "line", multiple=True, help="Allocation in DOCUMENT_ID:AMOUNT format")
@click.option("--on-account", "on_account", help="Record an on-account payment of this amount")
@click.option("--total", "total", help="Declared total, checked against the lines")
@click.option("--advance", "advance", default="0", help="Part of the payment funded from advance balance")
@click.pass_obj
def pay(
    store: LedgerStore,
    counterparty: str,
    pay_date: str,
    method: str,
    reference: str,
    line: Tuple[str, ...],
    on_account: Optional[str],
    total: Optional[str],
    advance: str,
) -> None:
    """Record a payment against documents or on account."""
    draft = PaymentDraft(
        counterparty_id=counterparty,
        payment_date=parse_date(pay_date),
        payment_method=method,
        reference=reference,
        is_on_account=on_account is not None,
        on_account_amount=parse_amount(on_account) if on_account is not None else None,
        lines=parse_line_strings(line),
        declared_total=parse_amount(total) if total is not None else None,
        advance_used=parse_amount(advance),
    )
    try:
        result = store.record_payment(draft)
    except FiscalError as exc:
        raise click.ClickException(str(exc))
    print_payment(result.payment)


@ledger.command("delete-payment")
@click.argument("payment_id")
@click.pass_obj
def delete_payment(store: LedgerStore, payment_id: str) -> None:
    """Delete a payment and restore the balances it settled."""
    try:
        documents = store.delete_payment(payment_id)
    except FiscalError as exc:
        raise click.ClickException(str(exc))
    print_documents(documents.values())


@ledger.command()
@click.argument("credit_note_id")
@click.option("--date", "pay_date", help="Conversion date (YYYY-MM-DD)")
@click.pass_obj
def convert(store: LedgerStore, credit_note_id: str, pay_date: Optional[str]) -> None:
    """Convert a credit note's remaining balance into account credit."""
    try:
        result = store.convert_credit_note(credit_note_id, parse_date(pay_date))
    except FiscalError as exc:
        raise click.ClickException(str(exc))
    print_payment(result.payment)


@ledger.command("open")
@click.argument("counterparty")
@click.pass_obj
def open_documents(store: LedgerStore, counterparty: str) -> None:
    """List a counterparty's documents that still carry a balance."""
    print_documents(store.open_documents(counterparty))


@ledger.command()
@click.argument("counterparty")
@click.pass_obj
def advance(store: LedgerStore, counterparty: str) -> None:
    """Show the advance balance a counterparty holds."""
    click.echo(format_amount(store.advance_balance(counterparty)))


if __name__ == "__main__":
    cli()
