"""Output helpers for the fiscal calculator.

This module provides simple functions to render fiscal breakdowns, open
documents and payments in a tabular text format for the command line.
"""

from __future__ import annotations

from typing import Iterable

from .balances import derive_status
from .data_models import FiscalBreakdown, PayableDocument, Payment
from .utils import format_amount

_BREAKDOWN_LABELS = (
    ("base_excl_tax", "Base HT"),
    ("discount_amount", "Remise"),
    ("base_after_discount", "Base HT après remise"),
    ("fodec_amount", "FODEC"),
    ("vat_base", "Base TVA"),
    ("vat_total", "TVA totale"),
    ("vat_deductible", "TVA déductible"),
    ("vat_non_deductible", "TVA non déductible"),
    ("total_excl_tax", "Total HT"),
    ("fiscal_stamp", "Timbre fiscal"),
    ("total_taxes", "Total taxes"),
    ("total_incl_tax", "Total TTC"),
    ("withholding_amount", "Retenue à la source"),
    ("net_payable", "Net à payer"),
)


def print_breakdown(breakdown: FiscalBreakdown, currency: str = "TND") -> None:
    """Print a fiscal breakdown, one labelled amount per line."""
    print("Breakdown")
    print("-" * 48)
    for name, label in _BREAKDOWN_LABELS:
        print(f"{label:24s} {format_amount(getattr(breakdown, name)):>16s} {currency}")
    print("-" * 48)


def print_documents(documents: Iterable[PayableDocument]) -> None:
    """Print documents with their balances as a simple table."""
    headers = ["Number", "Kind", "Date", "Total", "Paid", "Remaining", "Status"]
    print("\t".join(headers))
    for doc in documents:
        row = [
            doc.number,
            doc.kind.value,
            doc.document_date.isoformat() if doc.document_date else "",
            format_amount(doc.total_amount),
            format_amount(doc.amount_paid),
            format_amount(doc.remaining_balance),
            derive_status(doc).value,
        ]
        print("\t".join(row))


def print_payment(payment: Payment) -> None:
    """Print a payment header followed by its allocation lines."""
    print(f"Payment {payment.number or payment.id} ({payment.payment_date.isoformat()})")
    print(f"Method             : {payment.payment_method}")
    print(f"Total              : {format_amount(payment.declared_total)}")
    if payment.is_on_account:
        print(f"On account         : {format_amount(payment.on_account_amount)}")
    if payment.advance_used:
        print(f"Advance used       : {format_amount(payment.advance_used)}")
    if payment.lines:
        print("\t".join(["Document", "Before", "Applied", "After"]))
        for line in payment.lines:
            print(
                "\t".join(
                    [
                        line.target_number or line.target_document_id,
                        format_amount(line.amount_before),
                        format_amount(line.amount_applied),
                        format_amount(line.balance_after),
                    ]
                )
            )
