"""Payment allocation engine.

A payment is either *on account* (a balance not tied to any document) or
split into lines against open invoices and credit notes. Lines against an
invoice are positive and at most its remaining balance; lines against a
credit note are negative and at most its remaining balance in magnitude.
A payment total of zero (pure offset of a credit note against an invoice)
or below zero (net refund) is valid, as long as it equals the signed sum of
the lines.

The functions here are pure: they take the current documents and return
the updated ones, computing every update before returning so a rejected
payment leaves nothing half-applied. Persisting the result atomically is the
job of the ledger store.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from . import balances
from .data_models import AllocationResult, PayableDocument, Payment, PaymentDraft, PaymentLine
from .errors import (
    DocumentNotFound,
    InsufficientAdvanceBalance,
    InvalidAllocationAmount,
    MissingCounterparty,
    NoTargetsSelected,
    PaymentTotalMismatch,
)
from .utils import ZERO, round3

logger = logging.getLogger(__name__)


def _index(targets: Iterable[PayableDocument]) -> Dict[str, PayableDocument]:
    if isinstance(targets, Mapping):
        return dict(targets)
    return {doc.id: doc for doc in targets}


def suggest_amount(target: PayableDocument, requested: Optional[Decimal] = None) -> Decimal:
    """Clamp a requested amount into the range allowed for ``target``.

    Payment forms use this to pre-fill a line (``requested=None`` settles the
    whole remaining balance). :func:`allocate` never clamps; it rejects.
    """
    low, high = target.allowed_range()
    if requested is None:
        return target.remaining_balance
    return max(low, min(high, round3(requested)))


def validate_line(target: PayableDocument, amount: Decimal) -> None:
    """Reject an amount whose sign or magnitude does not fit ``target``."""
    low, high = target.allowed_range()
    if amount < low or amount > high:
        raise InvalidAllocationAmount(
            f"Amount {amount} not allowed on {target.kind.value} {target.number}: "
            f"remaining balance is {target.remaining_balance} (allowed [{low}, {high}])"
        )


def advance_balance(payments: Iterable[Payment]) -> Decimal:
    """Advance a counterparty holds: on-account payments minus advance used."""
    received = ZERO
    used = ZERO
    for payment in payments:
        if payment.is_on_account and payment.on_account_amount:
            received += payment.on_account_amount
        used += payment.advance_used or ZERO
    return round3(received - used)


def _check_total(draft: PaymentDraft, total: Decimal) -> Decimal:
    if draft.declared_total is None:
        return total
    declared = round3(draft.declared_total)
    if declared != total:
        raise PaymentTotalMismatch(
            f"Declared total {declared} does not match the sum of the payment lines {total}"
        )
    return declared


def _check_advance(draft: PaymentDraft, lines_total: Decimal, available: Optional[Decimal]) -> Decimal:
    used = round3(draft.advance_used or ZERO)
    if used == ZERO:
        return used
    if used < ZERO:
        raise InvalidAllocationAmount(f"Advance used must not be negative; got {used}")
    if draft.is_on_account:
        raise InvalidAllocationAmount("An on-account payment cannot consume advance balance")
    if used > lines_total:
        raise InvalidAllocationAmount(
            f"Advance used {used} exceeds the amount settled by the payment {lines_total}"
        )
    if available is not None and used > available:
        raise InsufficientAdvanceBalance(
            f"Advance used {used} exceeds the available advance balance {available}"
        )
    return used


def allocate(
    draft: PaymentDraft,
    targets: Iterable[PayableDocument] = (),
    *,
    payment_id: Optional[str] = None,
    number: str = "",
    available_advance: Optional[Decimal] = None,
) -> AllocationResult:
    """Validate a payment draft and distribute it over its target documents.

    Parameters
    ----------
    draft: PaymentDraft
        The submitted payment.
    targets: iterable of PayableDocument
        Current state of every document the draft's lines reference.
    payment_id, number: str
        Identity of the resulting payment; a fresh id is generated when
        omitted.
    available_advance: Decimal, optional
        Counterparty advance balance, checked when the draft uses advance.

    Returns
    -------
    AllocationResult
        The payment with its audited lines and the updated documents.
    """
    if not draft.counterparty_id:
        raise MissingCounterparty("A customer or supplier is required")
    if draft.source_credit_note_id:
        raise InvalidAllocationAmount(
            "Payments from a credit note are derived by the conversion and cannot be entered"
        )
    documents = _index(targets)
    updated: Dict[str, PayableDocument] = {}
    lines: List[PaymentLine] = []
    on_account_amount: Optional[Decimal] = None

    if draft.is_on_account:
        if draft.lines:
            raise InvalidAllocationAmount("An on-account payment cannot carry invoice lines")
        on_account_amount = round3(draft.on_account_amount or ZERO)
        if on_account_amount <= ZERO:
            raise InvalidAllocationAmount("The on-account amount must be greater than zero")
        total = on_account_amount
    else:
        requested = [line for line in draft.lines if round3(line.amount_applied) != ZERO]
        if not requested:
            raise NoTargetsSelected("Select at least one invoice or credit note to settle")
        for line in requested:
            doc_id = line.target_document_id
            current = updated.get(doc_id) or documents.get(doc_id)
            if current is None:
                raise DocumentNotFound(f"Document {doc_id} not found")
            amount = round3(line.amount_applied)
            validate_line(current, amount)
            after = balances.apply_payment(current, amount)
            updated[doc_id] = after
            lines.append(
                PaymentLine(
                    target_document_id=doc_id,
                    amount_applied=amount,
                    amount_before=current.remaining_balance,
                    balance_after=after.remaining_balance,
                    target_number=current.number,
                )
            )
        total = round3(sum((line.amount_applied for line in lines), ZERO))

    declared = _check_total(draft, total)
    advance_used = _check_advance(draft, total, available_advance)

    payment = Payment(
        id=payment_id or uuid4().hex,
        number=number,
        payment_date=draft.payment_date,
        counterparty_id=draft.counterparty_id,
        payment_method=draft.payment_method,
        reference=draft.reference,
        is_on_account=draft.is_on_account,
        declared_total=declared,
        on_account_amount=on_account_amount,
        lines=tuple(lines),
        advance_used=advance_used,
        notes=draft.notes,
    )
    logger.info(
        "Allocated payment %s counterparty=%s total=%s lines=%d on_account=%s",
        payment.number or payment.id,
        payment.counterparty_id,
        declared,
        len(lines),
        on_account_amount,
    )
    return AllocationResult(payment=payment, documents=updated)


def reverse_payment(
    payment: Payment, targets: Iterable[PayableDocument]
) -> Dict[str, PayableDocument]:
    """Undo every balance effect of ``payment``.

    Lines are reversed in the opposite order they were applied. A payment
    converted from a credit note gives its balance back to the credit note.
    """
    documents = _index(targets)
    updated: Dict[str, PayableDocument] = {}
    for line in reversed(payment.lines):
        doc_id = line.target_document_id
        current = updated.get(doc_id) or documents.get(doc_id)
        if current is None:
            raise DocumentNotFound(f"Document {doc_id} not found")
        updated[doc_id] = balances.reverse(current, line.amount_applied)
    if payment.source_credit_note_id:
        doc_id = payment.source_credit_note_id
        current = updated.get(doc_id) or documents.get(doc_id)
        if current is None:
            raise DocumentNotFound(f"Credit note {doc_id} not found")
        updated[doc_id] = balances.reverse(current, -(payment.on_account_amount or ZERO))
    logger.info("Reversed payment %s on %d document(s)", payment.number or payment.id, len(updated))
    return updated


def reallocate(
    previous: Payment,
    draft: PaymentDraft,
    targets: Iterable[PayableDocument],
    *,
    available_advance: Optional[Decimal] = None,
) -> AllocationResult:
    """Replace ``previous`` by ``draft``.

    The previous lines are fully reversed before the new ones are applied,
    so amounts are never counted twice. The payment keeps its id and number.
    """
    if previous.source_credit_note_id:
        raise InvalidAllocationAmount(
            f"Payment {previous.number or previous.id} comes from a credit note and cannot be edited"
        )
    documents = _index(targets)
    reversed_docs = reverse_payment(previous, documents.values())
    documents.update(reversed_docs)
    result = allocate(
        draft,
        documents.values(),
        payment_id=previous.id,
        number=previous.number,
        available_advance=available_advance,
    )
    merged = dict(reversed_docs)
    merged.update(result.documents)
    return AllocationResult(payment=result.payment, documents=merged)
