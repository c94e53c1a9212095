"""Balance tracking for invoices and credit notes.

``apply_payment`` and ``reverse`` are the only ways a document's
``amount_paid`` changes. Both return a new document; ``remaining_balance``
and ``status`` follow from the updated ``amount_paid``.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import TypeVar

from .data_models import PayableDocument, PaymentStatus
from .errors import OverpaymentError
from .utils import round3

DocumentT = TypeVar("DocumentT", bound=PayableDocument)


def _move(document: DocumentT, signed_amount: Decimal, verb: str) -> DocumentT:
    new_paid = round3(document.amount_paid + signed_amount)
    low, high = document.paid_bounds()
    if new_paid < low or new_paid > high:
        raise OverpaymentError(
            f"Cannot {verb} {round3(signed_amount)} on {document.kind.value} {document.number}: "
            f"amount paid would become {new_paid}, outside [{low}, {high}]"
        )
    return replace(document, amount_paid=new_paid)


def apply_payment(document: DocumentT, signed_amount: Decimal) -> DocumentT:
    """Add ``signed_amount`` to the document's paid amount."""
    return _move(document, Decimal(str(signed_amount)), "apply")


def reverse(document: DocumentT, signed_amount: Decimal) -> DocumentT:
    """Undo a previous :func:`apply_payment` of ``signed_amount``."""
    return _move(document, -Decimal(str(signed_amount)), "reverse")


def derive_status(document: PayableDocument) -> PaymentStatus:
    return document.status
