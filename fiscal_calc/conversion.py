"""Conversion of a credit note into account credit."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional
from uuid import uuid4

from . import balances
from .data_models import AllocationResult, CreditNote, Payment
from .errors import CreditNoteAlreadySettled, MissingCounterparty
from .utils import ZERO

logger = logging.getLogger(__name__)

CONVERSION_METHOD = "Avoir"


def convert_to_account_credit(
    credit_note: CreditNote,
    *,
    payment_date: Optional[date] = None,
    payment_id: Optional[str] = None,
    number: str = "",
) -> AllocationResult:
    """Turn the remaining balance of ``credit_note`` into an on-account payment.

    The payment amount is always the magnitude of the credit note's remaining
    balance; callers cannot choose it. The credit note comes back settled.
    """
    remaining = credit_note.remaining_balance
    if remaining == ZERO:
        raise CreditNoteAlreadySettled(f"Credit note {credit_note.number} has no remaining balance")
    if not credit_note.counterparty_id:
        raise MissingCounterparty(f"Credit note {credit_note.number} has no counterparty")

    settled = balances.apply_payment(credit_note, remaining)
    payment = Payment(
        id=payment_id or uuid4().hex,
        number=number,
        payment_date=payment_date or date.today(),
        counterparty_id=credit_note.counterparty_id,
        payment_method=CONVERSION_METHOD,
        reference=credit_note.number,
        is_on_account=True,
        declared_total=-remaining,
        on_account_amount=-remaining,
        source_credit_note_id=credit_note.id,
        notes=f"Conversion de l'avoir {credit_note.number}",
    )
    logger.info(
        "Converted credit note %s into account credit %s for %s",
        credit_note.number,
        payment.number or payment.id,
        payment.on_account_amount,
    )
    return AllocationResult(payment=payment, documents={credit_note.id: settled})
