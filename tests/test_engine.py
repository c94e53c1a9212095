from decimal import Decimal

import pytest

from fiscal_calc.data_models import (
    AmountType,
    FiscalBreakdown,
    FodecBase,
    FodecConfig,
    WithholdingConfig,
)
from fiscal_calc.engine import DEFAULT_RATE_TABLE, TaxRateTable, compute_breakdown, resolve_vat_rate
from fiscal_calc.errors import InvalidConfiguration


def D(value):
    return Decimal(value)


def test_exclusive_amount_with_vat_and_stamp(make_config):
    result = compute_breakdown(make_config("1000"))

    assert result.base_excl_tax == D("1000.000")
    assert result.discount_amount == D("0.000")
    assert result.base_after_discount == D("1000.000")
    assert result.fodec_amount == D("0.000")
    assert result.vat_base == D("1000.000")
    assert result.vat_total == D("190.000")
    assert result.vat_deductible == D("190.000")
    assert result.vat_non_deductible == D("0.000")
    assert result.total_excl_tax == D("1000.000")
    assert result.total_taxes == D("191.000")
    assert result.total_incl_tax == D("1191.000")
    assert result.withholding_amount == D("0.000")
    assert result.net_payable == D("1191.000")
    assert result.fiscal_stamp == D("1.000")


@pytest.mark.parametrize("amount", ["0.01", "123.457", "1000", "99999.999"])
@pytest.mark.parametrize("vat", ["0", "7", "13", "19"])
def test_plain_total_is_base_plus_vat(make_config, amount, vat):
    result = compute_breakdown(make_config(amount, vat_rate_pct=D(vat), fiscal_stamp=D("0")))

    expected = D(amount) * (1 + D(vat) / 100)
    assert abs(result.total_incl_tax - expected) <= D("0.001")


@pytest.mark.parametrize(
    "rate, withholding, net",
    [
        ("1", "11.900", "1179.100"),
        ("1.5", "17.850", "1173.150"),
    ],
)
def test_withholding_excludes_fiscal_stamp_from_its_base(make_config, rate, withholding, net):
    config = make_config("1000", withholding=WithholdingConfig(enabled=True, rate_pct=D(rate)))

    result = compute_breakdown(config)

    assert result.total_incl_tax == D("1191.000")
    assert result.withholding_amount == D(withholding)
    assert result.net_payable == D(net)


def test_fodec_after_discount(make_config):
    config = make_config(
        "1000",
        global_discount_pct=D("10"),
        fodec=FodecConfig(enabled=True, rate_pct=D("1"), base=FodecBase.AFTER_DISCOUNT),
    )

    result = compute_breakdown(config)

    assert result.discount_amount == D("100.000")
    assert result.base_after_discount == D("900.000")
    assert result.fodec_amount == D("9.000")
    assert result.vat_base == D("909.000")
    assert result.vat_total == D("172.710")
    assert result.total_excl_tax == D("909.000")
    assert result.total_incl_tax == D("1082.710")


def test_fodec_before_discount_uses_undiscounted_base(make_config):
    config = make_config(
        "1000",
        global_discount_pct=D("10"),
        fodec=FodecConfig(enabled=True, rate_pct=D("1"), base=FodecBase.BEFORE_DISCOUNT),
    )

    result = compute_breakdown(config)

    assert result.fodec_amount == D("10.000")
    assert result.vat_base == D("910.000")
    assert result.vat_total == D("172.900")
    assert result.total_taxes == D("173.900")
    assert result.total_incl_tax == D("1083.900")


def test_disabled_fodec_contributes_nothing(make_config):
    config = make_config("1000", fodec=FodecConfig(enabled=False, rate_pct=D("1")))

    assert compute_breakdown(config).fodec_amount == D("0.000")


def test_non_deductible_vat_stays_out_of_the_totals(make_config):
    result = compute_breakdown(make_config("1000", vat_deductible_pct=D("50")))

    assert result.vat_total == D("190.000")
    assert result.vat_deductible == D("95.000")
    assert result.vat_non_deductible == D("95.000")
    assert result.total_taxes == D("96.000")
    assert result.total_incl_tax == D("1096.000")


def test_fully_non_deductible_vat(make_config):
    result = compute_breakdown(make_config("1000", vat_deductible_pct=D("0")))

    assert result.vat_deductible == D("0.000")
    assert result.vat_non_deductible == D("190.000")
    assert result.total_incl_tax == D("1001.000")


def test_each_step_is_rounded_before_the_next(make_config):
    # 100.005 * 50 % = 50.0025, rounded half-up to 50.003 before subtracting.
    config = make_config("100.005", global_discount_pct=D("50"), vat_rate_pct=D("0"))

    result = compute_breakdown(config)

    assert result.discount_amount == D("50.003")
    assert result.base_after_discount == D("50.002")


def test_every_amount_has_three_decimals(make_config):
    config = make_config(
        "1234.5678",
        amount_type=AmountType.INCLUSIVE,
        vat_rate_pct=D("13"),
        vat_deductible_pct=D("33"),
        global_discount_pct=D("7.5"),
        fodec=FodecConfig(enabled=True, rate_pct=D("1"), base=FodecBase.BEFORE_DISCOUNT),
        withholding=WithholdingConfig(enabled=True, rate_pct=D("1.5")),
    )

    result = compute_breakdown(config)

    for name in FiscalBreakdown.FIELDS:
        assert getattr(result, name).as_tuple().exponent == -3, name


def test_breakdown_identities(make_config):
    config = make_config(
        "2500",
        vat_rate_pct=D("7"),
        vat_deductible_pct=D("40"),
        global_discount_pct=D("5"),
        fodec=FodecConfig(enabled=True, rate_pct=D("1")),
        withholding=WithholdingConfig(enabled=True, rate_pct=D("1.5")),
    )

    r = compute_breakdown(config)

    assert r.vat_deductible + r.vat_non_deductible == r.vat_total
    assert r.base_after_discount + r.discount_amount == r.base_excl_tax
    assert r.total_incl_tax - r.withholding_amount == r.net_payable
    assert r.total_excl_tax + r.total_taxes == r.total_incl_tax


@pytest.mark.parametrize(
    "amount, fodec",
    [
        ("1191", FodecConfig()),
        ("1202", FodecConfig(enabled=True, rate_pct=D("1"), base=FodecBase.BEFORE_DISCOUNT)),
        ("87.65", FodecConfig(enabled=True, rate_pct=D("1"), base=FodecBase.AFTER_DISCOUNT)),
    ],
)
def test_inclusive_amount_round_trips_through_its_base(make_config, amount, fodec):
    inclusive = compute_breakdown(
        make_config(amount, amount_type=AmountType.INCLUSIVE, fodec=fodec)
    )
    exclusive = compute_breakdown(
        make_config(str(inclusive.base_excl_tax), amount_type=AmountType.EXCLUSIVE, fodec=fodec)
    )

    assert abs(exclusive.total_incl_tax - inclusive.total_incl_tax) <= D("0.001")


def test_inclusive_inversion_ignores_the_stamp(make_config):
    result = compute_breakdown(make_config("1191", amount_type=AmountType.INCLUSIVE))

    assert result.base_excl_tax == D("1000.840")
    assert result.vat_total == D("190.160")
    assert result.total_incl_tax == D("1192.000")


def test_zero_vat_rate(make_config):
    result = compute_breakdown(make_config("250", vat_rate_pct=D("0"), fiscal_stamp=D("0")))

    assert result.vat_total == D("0.000")
    assert result.total_incl_tax == D("250.000")


@pytest.mark.parametrize(
    "code, expected_vat",
    [("TN19", "19.000"), ("TN13", "13.000"), ("TN7", "7.000"), ("TN0", "0.000"), ("exon", "0.000")],
)
def test_tax_code_resolves_vat_rate(make_config, code, expected_vat):
    config = make_config("100", vat_rate_pct=None, tax_code=code)

    assert compute_breakdown(config).vat_total == D(expected_vat)


def test_explicit_rate_wins_over_tax_code(make_config):
    config = make_config("100", vat_rate_pct=D("7"), tax_code="TN19")

    assert resolve_vat_rate(config) == D("7")


def test_default_rate_table_is_seeded():
    rates = dict(DEFAULT_RATE_TABLE.items())

    assert rates["TN19"] == D("19")
    assert rates["TN13"] == D("13")
    assert rates["EXON"] == D("0")


def test_custom_rate_table(make_config):
    table = TaxRateTable({"REDUCED": D("9")})
    config = make_config("100", vat_rate_pct=None, tax_code="reduced")

    assert compute_breakdown(config, table).vat_total == D("9.000")
    assert "REDUCED" in table
    assert "TN19" not in table


def test_rate_table_rejects_out_of_range_rates():
    with pytest.raises(InvalidConfiguration):
        TaxRateTable({"BAD": D("120")})


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": D("0")},
        {"amount": D("0.009")},
        {"amount": D("-5")},
        {"vat_rate_pct": D("101")},
        {"vat_rate_pct": D("-1")},
        {"vat_deductible_pct": D("150")},
        {"global_discount_pct": D("-10")},
        {"fiscal_stamp": D("-1")},
        {"fodec": FodecConfig(enabled=True, rate_pct=D("200"))},
        {"withholding": WithholdingConfig(enabled=True, rate_pct=D("101"))},
        {"vat_rate_pct": None, "tax_code": "TN99"},
        {"vat_rate_pct": None, "tax_code": None},
    ],
)
def test_invalid_configuration_is_rejected(make_config, overrides):
    with pytest.raises(InvalidConfiguration):
        compute_breakdown(make_config(**overrides))


def test_minimum_amount_is_accepted(make_config):
    result = compute_breakdown(make_config("0.01", fiscal_stamp=D("0")))

    assert result.base_excl_tax == D("0.010")
    assert result.vat_total == D("0.002")


def test_breakdown_serializes_to_exact_strings(make_config):
    result = compute_breakdown(make_config("1000"))

    data = result.as_dict()

    assert data["total_incl_tax"] == "1191.000"
    assert data["vat_non_deductible"] == "0.000"
    assert FiscalBreakdown.from_dict(data) == result
