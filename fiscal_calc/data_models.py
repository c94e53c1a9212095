"""Data models for the fiscal calculator.

This module defines dataclasses representing the different entities used by
the calculator and the payment engine: the tax configuration of a document,
the fiscal breakdown computed from it, payable documents (invoices and
credit notes), payments and their lines. All monetary values are ``Decimal``
instances rounded to three fractional digits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple

from .utils import ZERO, format_amount, round3

DEFAULT_FISCAL_STAMP = Decimal("1.000")
DEFAULT_CURRENCY = "TND"


class AmountType(str, Enum):
    """Whether the entered amount excludes (HT) or includes (TTC) taxes."""

    EXCLUSIVE = "HT"
    INCLUSIVE = "TTC"


class FodecBase(str, Enum):
    BEFORE_DISCOUNT = "avant_remise"
    AFTER_DISCOUNT = "apres_remise"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class DocumentKind(str, Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


@dataclass(frozen=True)
class FodecConfig:
    """FODEC levy settings.

    Attributes
    ----------
    enabled: bool
        Whether the levy applies to the document.
    rate_pct: Decimal
        Levy rate on the 0-100 scale (1 % by default).
    base: FodecBase
        Apply the levy on the amount before or after the global discount.
    """

    enabled: bool = False
    rate_pct: Decimal = Decimal("1")
    base: FodecBase = FodecBase.AFTER_DISCOUNT


@dataclass(frozen=True)
class WithholdingConfig:
    """Withholding tax (retenue à la source) settings."""

    enabled: bool = False
    rate_pct: Decimal = Decimal("0")


@dataclass(frozen=True)
class TaxConfiguration:
    """All inputs of one fiscal cascade computation.

    The VAT rate is either given directly through ``vat_rate_pct`` or resolved
    from ``tax_code`` with a :class:`~fiscal_calc.engine.TaxRateTable`. A
    configuration is immutable; toggles such as automatic withholding produce
    a new configuration.
    """

    amount: Decimal
    amount_type: AmountType = AmountType.EXCLUSIVE
    vat_rate_pct: Optional[Decimal] = None
    tax_code: Optional[str] = None
    vat_deductible_pct: Decimal = Decimal("100")
    fodec: FodecConfig = field(default_factory=FodecConfig)
    withholding: WithholdingConfig = field(default_factory=WithholdingConfig)
    fiscal_stamp: Decimal = DEFAULT_FISCAL_STAMP
    global_discount_pct: Decimal = Decimal("0")
    currency: str = DEFAULT_CURRENCY


@dataclass(frozen=True)
class FiscalBreakdown:
    """Fully decomposed amounts of one document line or document total.

    A breakdown is computed once and stored as a snapshot next to the
    document; it is never recomputed when tax settings change later.
    """

    base_excl_tax: Decimal
    discount_amount: Decimal
    base_after_discount: Decimal
    fodec_amount: Decimal
    vat_base: Decimal
    vat_total: Decimal
    vat_deductible: Decimal
    vat_non_deductible: Decimal
    total_excl_tax: Decimal
    total_taxes: Decimal
    total_incl_tax: Decimal
    withholding_amount: Decimal
    net_payable: Decimal
    fiscal_stamp: Decimal

    FIELDS: ClassVar[Tuple[str, ...]] = (
        "base_excl_tax",
        "discount_amount",
        "base_after_discount",
        "fodec_amount",
        "vat_base",
        "vat_total",
        "vat_deductible",
        "vat_non_deductible",
        "total_excl_tax",
        "total_taxes",
        "total_incl_tax",
        "withholding_amount",
        "net_payable",
        "fiscal_stamp",
    )

    def as_dict(self) -> Dict[str, str]:
        """Serialize every amount as an exact three-decimal string."""
        return {name: format_amount(getattr(self, name)) for name in self.FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "FiscalBreakdown":
        return cls(**{name: Decimal(str(data[name])) for name in cls.FIELDS})


@dataclass(frozen=True)
class PayableDocument:
    """A document carrying a balance that payments settle.

    ``remaining_balance`` and ``status`` are always derived from
    ``total_amount`` and ``amount_paid``; nothing stores them separately.
    Use the :class:`Invoice` and :class:`CreditNote` variants, which define
    the sign convention and the direction of allowed allocations.
    """

    id: str
    number: str
    total_amount: Decimal
    amount_paid: Decimal = ZERO
    counterparty_id: Optional[str] = None
    document_date: Optional[date] = None
    currency: str = DEFAULT_CURRENCY
    breakdown: Optional[FiscalBreakdown] = None

    kind: ClassVar[DocumentKind]

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_amount", round3(self.total_amount))
        object.__setattr__(self, "amount_paid", round3(self.amount_paid))

    @property
    def remaining_balance(self) -> Decimal:
        return round3(self.total_amount - self.amount_paid)

    @property
    def status(self) -> PaymentStatus:
        paid = round3(self.amount_paid)
        if paid == ZERO:
            return PaymentStatus.UNPAID
        if paid == round3(self.total_amount):
            return PaymentStatus.PAID
        return PaymentStatus.PARTIALLY_PAID

    def paid_bounds(self) -> Tuple[Decimal, Decimal]:
        """Lowest and highest values ``amount_paid`` may take."""
        raise NotImplementedError

    def allowed_range(self) -> Tuple[Decimal, Decimal]:
        """Range a new payment line against this document must fall in."""
        raise NotImplementedError


@dataclass(frozen=True)
class Invoice(PayableDocument):
    kind: ClassVar[DocumentKind] = DocumentKind.INVOICE

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.total_amount < 0:
            raise ValueError(f"Invoice {self.number} total must not be negative")

    def paid_bounds(self) -> Tuple[Decimal, Decimal]:
        return ZERO, round3(self.total_amount)

    def allowed_range(self) -> Tuple[Decimal, Decimal]:
        return ZERO, max(self.remaining_balance, ZERO)


@dataclass(frozen=True)
class CreditNote(PayableDocument):
    """A credit note (avoir): an amount owed to the counterparty.

    Its total and remaining balance are zero or negative. Allocations against
    it are negative and consume the balance towards zero.
    """

    kind: ClassVar[DocumentKind] = DocumentKind.CREDIT_NOTE

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.total_amount > 0:
            raise ValueError(f"Credit note {self.number} total must not be positive")

    def paid_bounds(self) -> Tuple[Decimal, Decimal]:
        return round3(self.total_amount), ZERO

    def allowed_range(self) -> Tuple[Decimal, Decimal]:
        return min(self.remaining_balance, ZERO), ZERO


DOCUMENT_TYPES: Dict[DocumentKind, type] = {
    DocumentKind.INVOICE: Invoice,
    DocumentKind.CREDIT_NOTE: CreditNote,
}


@dataclass(frozen=True)
class PaymentLine:
    """One allocation of a payment to a target document.

    In a draft only ``target_document_id`` and ``amount_applied`` are set;
    the engine fills ``amount_before`` (balance snapshot for audit) and
    ``balance_after``.
    """

    target_document_id: str
    amount_applied: Decimal
    amount_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    target_number: str = ""


@dataclass(frozen=True)
class PaymentDraft:
    """A payment as submitted by a payment form, before allocation."""

    counterparty_id: Optional[str]
    payment_date: date
    payment_method: str = "Espèces"
    reference: str = ""
    is_on_account: bool = False
    on_account_amount: Optional[Decimal] = None
    lines: Tuple[PaymentLine, ...] = ()
    declared_total: Optional[Decimal] = None
    source_credit_note_id: Optional[str] = None
    advance_used: Decimal = ZERO
    notes: str = ""


@dataclass(frozen=True)
class Payment:
    """A recorded payment with its audit trail of lines."""

    id: str
    number: str
    payment_date: date
    counterparty_id: str
    payment_method: str
    reference: str
    is_on_account: bool
    declared_total: Decimal
    on_account_amount: Optional[Decimal] = None
    lines: Tuple[PaymentLine, ...] = ()
    source_credit_note_id: Optional[str] = None
    advance_used: Decimal = ZERO
    notes: str = ""


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of an allocation: the payment and every updated document."""

    payment: Payment
    documents: Dict[str, PayableDocument]
