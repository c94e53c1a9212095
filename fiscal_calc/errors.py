"""Exceptions raised by the fiscal calculator and payment engine.

All business errors derive from ``FiscalError`` and are recoverable by the
caller: the user corrects the input and resubmits. Only
``ConcurrencyConflict`` is retried automatically, by the ledger store.
"""

from __future__ import annotations


class FiscalError(Exception):
    """Base class for every error raised by ``fiscal_calc``."""


class InvalidConfiguration(FiscalError):
    """Tax configuration rejected before any computation runs."""


class OverpaymentError(FiscalError):
    """A balance update would push a document past its allowed range."""


class InvalidAllocationAmount(FiscalError):
    """A payment line is outside its target's allowed range."""


class PaymentTotalMismatch(InvalidAllocationAmount):
    """The declared payment total differs from the signed sum of its lines."""


class NoTargetsSelected(FiscalError):
    """An invoice-mode payment was submitted without any line."""


class MissingCounterparty(FiscalError):
    """A payment has no customer or supplier attached."""


class CreditNoteAlreadySettled(FiscalError):
    """The credit note has no remaining balance left to convert."""


class InsufficientAdvanceBalance(FiscalError):
    """The payment consumes more advance than the counterparty holds."""


class DocumentNotFound(FiscalError):
    """A referenced document or payment does not exist."""


class ConcurrencyConflict(FiscalError):
    """Concurrent writers kept invalidating the balances being updated."""


class DuplicateDocumentNumber(FiscalError):
    """Another document already carries the requested number."""
