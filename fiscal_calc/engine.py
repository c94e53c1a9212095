"""Core calculation engine for the fiscal calculator.

This module implements the fiscal cascade used by expenses, invoices and
credit notes: it converts a raw amount and its tax configuration into a full
breakdown (discount, FODEC, VAT with partial deductibility, withholding tax
and fiscal stamp). The cascade rounds to three decimals after *every* step;
stored documents were computed that way and must be reproducible, so the
rounding is never deferred to the end.

It also holds the tax-rate lookup table and the withholding auto-activation
policy applied by document forms before calling the calculator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .data_models import (
    AmountType,
    FiscalBreakdown,
    FodecBase,
    TaxConfiguration,
)
from .errors import InvalidConfiguration
from .utils import ZERO, round3

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
MIN_AMOUNT = Decimal("0.01")
WITHHOLDING_THRESHOLD = Decimal("1000")

# Default Tunisian VAT codes seeded for every new company.
DEFAULT_TAX_RATES: Dict[str, Decimal] = {
    "TN19": Decimal("19"),
    "TN13": Decimal("13"),
    "TN7": Decimal("7"),
    "TN0": Decimal("0"),
    "EXON": Decimal("0"),
}


def _check_percent(label: str, value: Decimal) -> None:
    if value < 0 or value > HUNDRED:
        raise InvalidConfiguration(f"{label} must be between 0 and 100; got {value}")


class TaxRateTable:
    """Lookup of VAT percentages keyed by tax code."""

    def __init__(self, rates: Optional[Mapping[str, Decimal]] = None) -> None:
        self._rates: Dict[str, Decimal] = {}
        for code, pct in (rates if rates is not None else DEFAULT_TAX_RATES).items():
            self.register(code, pct)

    def register(self, code: str, rate_pct: Decimal) -> None:
        rate_pct = Decimal(str(rate_pct))
        _check_percent(f"VAT rate for {code}", rate_pct)
        self._rates[code.strip().upper()] = rate_pct

    def resolve(self, code: str) -> Decimal:
        try:
            return self._rates[code.strip().upper()]
        except KeyError:
            raise InvalidConfiguration(f"Unknown tax code: {code}") from None

    def items(self) -> Iterable[Tuple[str, Decimal]]:
        return sorted(self._rates.items())

    def __contains__(self, code: str) -> bool:
        return code.strip().upper() in self._rates


DEFAULT_RATE_TABLE = TaxRateTable()


def resolve_vat_rate(config: TaxConfiguration, rates: Optional[TaxRateTable] = None) -> Decimal:
    """Return the VAT percentage of a configuration.

    An explicit ``vat_rate_pct`` wins over ``tax_code``. A configuration with
    neither cannot be computed.
    """
    if config.vat_rate_pct is not None:
        return Decimal(str(config.vat_rate_pct))
    if config.tax_code:
        return (rates or DEFAULT_RATE_TABLE).resolve(config.tax_code)
    raise InvalidConfiguration("A VAT rate or a tax code is required")


def validate_configuration(config: TaxConfiguration, vat_rate_pct: Decimal) -> None:
    """Reject amounts and percentages the cascade cannot work with."""
    if config.amount is None or config.amount < MIN_AMOUNT:
        raise InvalidConfiguration(f"Amount must be at least {MIN_AMOUNT}; got {config.amount}")
    _check_percent("VAT rate", vat_rate_pct)
    _check_percent("Deductible VAT", config.vat_deductible_pct)
    _check_percent("FODEC rate", config.fodec.rate_pct)
    _check_percent("Withholding rate", config.withholding.rate_pct)
    _check_percent("Global discount", config.global_discount_pct)
    if config.fiscal_stamp < 0:
        raise InvalidConfiguration(f"Fiscal stamp must not be negative; got {config.fiscal_stamp}")


def _base_excl_tax(config: TaxConfiguration, vat_rate_pct: Decimal) -> Decimal:
    """Step 1: the amount before taxes.

    Inclusive amounts are inverted with ``amount / (1 + VAT% + FODEC%)``,
    counting FODEC only when it applies before the discount. The fiscal stamp
    and the withholding are ignored by the inversion.
    """
    amount = Decimal(str(config.amount))
    if config.amount_type == AmountType.EXCLUSIVE:
        return amount
    fodec_factor = ZERO
    if config.fodec.enabled and config.fodec.base == FodecBase.BEFORE_DISCOUNT:
        fodec_factor = config.fodec.rate_pct / HUNDRED
    return round3(amount / (1 + vat_rate_pct / HUNDRED + fodec_factor))


def compute_breakdown(
    config: TaxConfiguration, rates: Optional[TaxRateTable] = None
) -> FiscalBreakdown:
    """Compute the fiscal breakdown of a tax configuration.

    Parameters
    ----------
    config: TaxConfiguration
        Amount and tax settings of one document line or document total.
    rates: TaxRateTable, optional
        Table used to resolve ``config.tax_code``; the Tunisian defaults
        are used when omitted.

    Returns
    -------
    FiscalBreakdown
        Every intermediate and final amount, each rounded to 3 decimals.

    Raises
    ------
    InvalidConfiguration
        If the amount is below 0.01, a percentage is outside 0-100 or the
        VAT rate cannot be resolved.
    """
    vat_rate_pct = resolve_vat_rate(config, rates)
    validate_configuration(config, vat_rate_pct)

    base_excl_tax = _base_excl_tax(config, vat_rate_pct)

    discount_amount = round3(base_excl_tax * (config.global_discount_pct / HUNDRED))
    base_after_discount = round3(base_excl_tax - discount_amount)

    fodec_amount = ZERO
    if config.fodec.enabled:
        if config.fodec.base == FodecBase.BEFORE_DISCOUNT:
            fodec_base = base_excl_tax
        else:
            fodec_base = base_after_discount
        fodec_amount = round3(fodec_base * (config.fodec.rate_pct / HUNDRED))

    vat_base = round3(base_after_discount + fodec_amount)
    vat_total = round3(vat_base * (vat_rate_pct / HUNDRED))
    vat_deductible = round3(vat_total * (config.vat_deductible_pct / HUNDRED))
    vat_non_deductible = round3(vat_total - vat_deductible)

    fiscal_stamp = round3(config.fiscal_stamp)
    total_excl_tax = round3(base_after_discount + fodec_amount)
    # Non-deductible VAT is absorbed into cost and stays out of the totals.
    total_taxes = round3(vat_deductible + fiscal_stamp)
    total_incl_tax = round3(total_excl_tax + total_taxes)

    withholding_amount = ZERO
    if config.withholding.enabled:
        withholding_base = round3(total_incl_tax - fiscal_stamp)
        withholding_amount = round3(withholding_base * (config.withholding.rate_pct / HUNDRED))

    net_payable = round3(total_incl_tax - withholding_amount)

    logger.debug(
        "Computed breakdown amount=%s type=%s vat=%s%% total_ttc=%s net=%s",
        config.amount,
        config.amount_type.value,
        vat_rate_pct,
        total_incl_tax,
        net_payable,
    )
    return FiscalBreakdown(
        base_excl_tax=round3(base_excl_tax),
        discount_amount=discount_amount,
        base_after_discount=base_after_discount,
        fodec_amount=fodec_amount,
        vat_base=vat_base,
        vat_total=vat_total,
        vat_deductible=vat_deductible,
        vat_non_deductible=vat_non_deductible,
        total_excl_tax=total_excl_tax,
        total_taxes=total_taxes,
        total_incl_tax=total_incl_tax,
        withholding_amount=withholding_amount,
        net_payable=net_payable,
        fiscal_stamp=fiscal_stamp,
    )


@dataclass(frozen=True)
class WithholdingOverride:
    """The user's explicit choice about withholding on the current document.

    ``manually_disabled`` is set when the user unchecks withholding while the
    document is above the threshold. It survives recomputations until the
    total drops below the threshold again.
    """

    manually_disabled: bool = False

    def after_user_toggle(self, enabled: bool) -> "WithholdingOverride":
        return WithholdingOverride(manually_disabled=not enabled)


@dataclass(frozen=True)
class WithholdingDecision:
    config: TaxConfiguration
    breakdown: FiscalBreakdown
    override: WithholdingOverride


class WithholdingPolicy:
    """Automatic activation of the withholding tax above a legal threshold.

    Document forms call :meth:`resolve` on every change. The policy changes
    calculator *inputs* (``withholding.enabled``), never its outputs.
    """

    def __init__(
        self,
        threshold: Decimal = WITHHOLDING_THRESHOLD,
        rates: Optional[TaxRateTable] = None,
    ) -> None:
        self.threshold = threshold
        self.rates = rates

    def resolve(
        self, config: TaxConfiguration, override: Optional[WithholdingOverride] = None
    ) -> WithholdingDecision:
        override = override or WithholdingOverride()
        # The TTC total does not depend on the withholding toggle.
        total_incl_tax = compute_breakdown(config, self.rates).total_incl_tax
        if total_incl_tax >= self.threshold:
            enabled = not override.manually_disabled
        else:
            if override.manually_disabled:
                logger.debug("Total %s below threshold; clearing withholding override", total_incl_tax)
            override = WithholdingOverride()
            enabled = False
        if enabled != config.withholding.enabled:
            config = replace(config, withholding=replace(config.withholding, enabled=enabled))
        return WithholdingDecision(
            config=config,
            breakdown=compute_breakdown(config, self.rates),
            override=override,
        )
