from datetime import date
from decimal import Decimal

import pytest

from fiscal_calc import allocation
from fiscal_calc.data_models import Invoice, Payment, PaymentDraft, PaymentLine, PaymentStatus
from fiscal_calc.errors import (
    DocumentNotFound,
    InsufficientAdvanceBalance,
    InvalidAllocationAmount,
    MissingCounterparty,
    NoTargetsSelected,
    PaymentTotalMismatch,
)

PAY_DATE = date(2024, 2, 1)


def D(value):
    return Decimal(value)


def _draft(*lines, total=None, counterparty="C1", **kwargs):
    return PaymentDraft(
        counterparty_id=counterparty,
        payment_date=PAY_DATE,
        lines=tuple(PaymentLine(target_document_id=doc_id, amount_applied=D(amount)) for doc_id, amount in lines),
        declared_total=D(total) if total is not None else None,
        **kwargs,
    )


def test_credit_note_offsets_an_invoice(invoice, credit_note):
    draft = _draft(("inv-1", "1000"), ("av-1", "-150"), total="850")

    result = allocation.allocate(draft, [invoice, credit_note], number="PAC-2024-00001")

    assert result.payment.declared_total == D("850.000")
    assert result.documents["inv-1"].remaining_balance == D("0.000")
    assert result.documents["inv-1"].status == PaymentStatus.PAID
    assert result.documents["av-1"].remaining_balance == D("0.000")
    assert result.documents["av-1"].status == PaymentStatus.PAID
    assert sum(line.amount_applied for line in result.payment.lines) == D("850.000")


def test_partial_cash_plus_credit_note(invoice, credit_note):
    draft = _draft(("inv-1", "850"), ("av-1", "-150"), total="700")

    result = allocation.allocate(draft, [invoice, credit_note])

    assert result.payment.declared_total == D("700.000")
    assert result.documents["inv-1"].remaining_balance == D("150.000")
    assert result.documents["inv-1"].status == PaymentStatus.PARTIALLY_PAID
    assert result.documents["av-1"].status == PaymentStatus.PAID


def test_zero_total_pure_offset_is_valid(credit_note):
    invoice = Invoice(id="inv-2", number="FAC-2", total_amount=D("150"), counterparty_id="C1")

    result = allocation.allocate(_draft(("inv-2", "150"), ("av-1", "-150"), total="0"), [invoice, credit_note])

    assert result.payment.declared_total == D("0.000")
    assert result.documents["inv-2"].status == PaymentStatus.PAID


def test_negative_total_refund_is_valid(credit_note):
    invoice = Invoice(id="inv-2", number="FAC-2", total_amount=D("100"), counterparty_id="C1")

    result = allocation.allocate(_draft(("inv-2", "100"), ("av-1", "-150")), [invoice, credit_note])

    assert result.payment.declared_total == D("-50.000")


def test_lines_record_balance_snapshots(invoice):
    result = allocation.allocate(_draft(("inv-1", "400")), [invoice], number="PAC-2024-00007")

    (line,) = result.payment.lines
    assert line.amount_before == D("1000.000")
    assert line.amount_applied == D("400.000")
    assert line.balance_after == D("600.000")
    assert line.target_number == "FAC-2024-00001"
    assert result.payment.number == "PAC-2024-00007"


def test_declared_total_must_match_lines(invoice, credit_note):
    draft = _draft(("inv-1", "1000"), ("av-1", "-150"), total="1000")

    with pytest.raises(PaymentTotalMismatch):
        allocation.allocate(draft, [invoice, credit_note])


@pytest.mark.parametrize(
    "doc_id, amount",
    [
        ("inv-1", "-10"),
        ("inv-1", "1000.001"),
        ("av-1", "25"),
        ("av-1", "-150.001"),
    ],
)
def test_out_of_range_lines_are_rejected(invoice, credit_note, doc_id, amount):
    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(_draft((doc_id, amount)), [invoice, credit_note])


def test_repeated_lines_share_one_remaining_balance():
    invoice = Invoice(id="inv-2", number="FAC-2", total_amount=D("500"), counterparty_id="C1")

    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(_draft(("inv-2", "300"), ("inv-2", "300")), [invoice])


def test_rejected_payment_leaves_documents_untouched(invoice, credit_note):
    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(_draft(("inv-1", "500"), ("av-1", "50")), [invoice, credit_note])

    assert invoice.amount_paid == D("0.000")
    assert credit_note.amount_paid == D("0.000")


def test_missing_counterparty(invoice):
    with pytest.raises(MissingCounterparty):
        allocation.allocate(_draft(("inv-1", "100"), counterparty=None), [invoice])


@pytest.mark.parametrize("lines", [(), (("inv-1", "0"),)])
def test_no_targets_selected(invoice, lines):
    with pytest.raises(NoTargetsSelected):
        allocation.allocate(_draft(*lines), [invoice])


def test_zero_lines_are_dropped(invoice, credit_note):
    result = allocation.allocate(_draft(("inv-1", "100"), ("av-1", "0")), [invoice, credit_note])

    assert [line.target_document_id for line in result.payment.lines] == ["inv-1"]
    assert "av-1" not in result.documents


def test_unknown_target(invoice):
    with pytest.raises(DocumentNotFound):
        allocation.allocate(_draft(("nope", "100")), [invoice])


def test_on_account_payment_touches_no_document():
    draft = _draft(is_on_account=True, on_account_amount=D("200"))

    result = allocation.allocate(draft)

    assert result.documents == {}
    assert result.payment.is_on_account is True
    assert result.payment.on_account_amount == D("200.000")
    assert result.payment.declared_total == D("200.000")


@pytest.mark.parametrize("amount", [None, "0", "-5"])
def test_on_account_amount_must_be_positive(amount):
    draft = _draft(is_on_account=True, on_account_amount=D(amount) if amount else None)

    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(draft)


def test_on_account_payment_cannot_carry_lines(invoice):
    draft = _draft(("inv-1", "100"), is_on_account=True, on_account_amount=D("100"))

    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(draft, [invoice])


def test_credit_note_payments_cannot_be_entered(invoice):
    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(_draft(("inv-1", "100"), source_credit_note_id="av-1"), [invoice])


def test_suggest_amount_clamps_toward_the_allowed_range(credit_note):
    invoice = Invoice(
        id="inv-2", number="FAC-2", total_amount=D("500"), amount_paid=D("300"), counterparty_id="C1"
    )

    assert allocation.suggest_amount(invoice) == D("200.000")
    assert allocation.suggest_amount(invoice, D("500")) == D("200.000")
    assert allocation.suggest_amount(invoice, D("-5")) == D("0.000")
    assert allocation.suggest_amount(invoice, D("120.5")) == D("120.500")
    assert allocation.suggest_amount(credit_note) == D("-150.000")
    assert allocation.suggest_amount(credit_note, D("-500")) == D("-150.000")
    assert allocation.suggest_amount(credit_note, D("20")) == D("0.000")


def test_reverse_payment_restores_documents(invoice, credit_note):
    result = allocation.allocate(_draft(("inv-1", "1000"), ("av-1", "-150")), [invoice, credit_note])

    restored = allocation.reverse_payment(result.payment, result.documents.values())

    assert restored["inv-1"] == invoice
    assert restored["av-1"] == credit_note


def test_reallocate_reverses_previous_lines_first():
    invoice = Invoice(id="inv-2", number="FAC-2", total_amount=D("500"), counterparty_id="C1")
    first = allocation.allocate(_draft(("inv-2", "300")), [invoice], number="PAC-2024-00001")

    edited = allocation.reallocate(first.payment, _draft(("inv-2", "500")), first.documents.values())

    assert edited.documents["inv-2"].amount_paid == D("500.000")
    assert edited.payment.id == first.payment.id
    assert edited.payment.number == "PAC-2024-00001"


def test_reallocate_can_move_a_payment_to_another_document(invoice):
    other = Invoice(id="inv-2", number="FAC-2", total_amount=D("500"), counterparty_id="C1")
    first = allocation.allocate(_draft(("inv-1", "300")), [invoice, other])

    edited = allocation.reallocate(
        first.payment, _draft(("inv-2", "300")), [first.documents["inv-1"], other]
    )

    assert edited.documents["inv-1"].amount_paid == D("0.000")
    assert edited.documents["inv-2"].amount_paid == D("300.000")


def test_reallocate_rejects_credit_note_conversions(invoice):
    converted = Payment(
        id="p1",
        number="PAC-1",
        payment_date=PAY_DATE,
        counterparty_id="C1",
        payment_method="Avoir",
        reference="AV-1",
        is_on_account=True,
        declared_total=D("75.5"),
        on_account_amount=D("75.5"),
        source_credit_note_id="av-1",
    )

    with pytest.raises(InvalidAllocationAmount):
        allocation.reallocate(converted, _draft(("inv-1", "10")), [invoice])


def _on_account(amount, used="0"):
    return Payment(
        id=f"p-{amount}-{used}",
        number="",
        payment_date=PAY_DATE,
        counterparty_id="C1",
        payment_method="Espèces",
        reference="",
        is_on_account=D(amount) > 0,
        declared_total=D(amount),
        on_account_amount=D(amount) if D(amount) > 0 else None,
        advance_used=D(used),
    )


def test_advance_balance_sums_on_account_minus_used():
    payments = [_on_account("200"), _on_account("0", used="50"), _on_account("75.5")]

    assert allocation.advance_balance(payments) == D("225.500")


def test_advance_cannot_exceed_available_balance(invoice):
    draft = _draft(("inv-1", "300"), advance_used=D("100"))

    with pytest.raises(InsufficientAdvanceBalance):
        allocation.allocate(draft, [invoice], available_advance=D("50"))


def test_advance_cannot_exceed_the_payment(invoice):
    draft = _draft(("inv-1", "30"), advance_used=D("50"))

    with pytest.raises(InvalidAllocationAmount):
        allocation.allocate(draft, [invoice], available_advance=D("100"))


def test_advance_used_is_recorded(invoice):
    draft = _draft(("inv-1", "300"), advance_used=D("100"))

    result = allocation.allocate(draft, [invoice], available_advance=D("100"))

    assert result.payment.advance_used == D("100.000")
