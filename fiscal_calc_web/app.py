import logging
import os
from datetime import date, datetime
from typing import Optional

from flask import Flask, jsonify, request

from fiscal_calc.balances import derive_status
from fiscal_calc.data_models import (
    DEFAULT_FISCAL_STAMP,
    AmountType,
    DocumentKind,
    FodecBase,
    FodecConfig,
    PayableDocument,
    Payment,
    PaymentDraft,
    PaymentLine,
    TaxConfiguration,
    WithholdingConfig,
)
from fiscal_calc.engine import WithholdingOverride, WithholdingPolicy
from fiscal_calc.errors import ConcurrencyConflict, DocumentNotFound, FiscalError
from fiscal_calc.ledger_store import LedgerStore, create_store_from_env
from fiscal_calc.logging_config import configure_logging
from fiscal_calc.utils import decimal_from_str, format_amount

logger = logging.getLogger(__name__)


def _decimal(value, default: Optional[str] = None):
    if value is None or value == "":
        if default is None:
            return None
        value = default
    return decimal_from_str(str(value))


def _date(value) -> date:
    if not value:
        return date.today()
    return datetime.strptime(value, "%Y-%m-%d").date()


def _required(payload: dict, key: str):
    value = payload.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} is required")
    return value


def _default_stamp():
    return _decimal(os.environ.get("FISCAL_STAMP_AMOUNT"), str(DEFAULT_FISCAL_STAMP))


def _payload_to_config(payload: dict) -> TaxConfiguration:
    fodec = payload.get("fodec") or {}
    withholding = payload.get("withholding") or {}
    return TaxConfiguration(
        amount=_decimal(payload.get("amount"), "0"),
        amount_type=AmountType(payload.get("amount_type", "HT").upper()),
        vat_rate_pct=_decimal(payload.get("vat_rate_pct")),
        tax_code=payload.get("tax_code") or None,
        vat_deductible_pct=_decimal(payload.get("vat_deductible_pct"), "100"),
        fodec=FodecConfig(
            enabled=bool(fodec.get("enabled", False)),
            rate_pct=_decimal(fodec.get("rate_pct"), "1"),
            base=FodecBase(fodec.get("base", FodecBase.AFTER_DISCOUNT.value)),
        ),
        withholding=WithholdingConfig(
            enabled=bool(withholding.get("enabled", False)),
            rate_pct=_decimal(withholding.get("rate_pct"), "0"),
        ),
        fiscal_stamp=_decimal(payload.get("fiscal_stamp")) if payload.get("fiscal_stamp") is not None else _default_stamp(),
        global_discount_pct=_decimal(payload.get("global_discount_pct"), "0"),
        currency=(payload.get("currency") or "TND").upper(),
    )


def _resolve_withholding(payload: dict):
    """Run the threshold policy with the override the form sent back."""
    override = WithholdingOverride(
        manually_disabled=bool(payload.get("withholding_manually_disabled", False))
    )
    return WithholdingPolicy().resolve(_payload_to_config(payload), override)


def _payload_to_draft(payload: dict) -> PaymentDraft:
    lines = tuple(
        PaymentLine(
            target_document_id=str(line["document_id"]),
            amount_applied=_decimal(line.get("amount"), "0"),
        )
        for line in payload.get("lines") or []
    )
    return PaymentDraft(
        counterparty_id=payload.get("counterparty_id") or None,
        payment_date=_date(_required(payload, "payment_date")),
        payment_method=_required(payload, "payment_method"),
        reference=payload.get("reference") or "",
        is_on_account=bool(payload.get("is_on_account", False)),
        on_account_amount=_decimal(payload.get("on_account_amount")),
        lines=lines,
        declared_total=_decimal(payload.get("declared_total")),
        advance_used=_decimal(payload.get("advance_used"), "0"),
        notes=payload.get("notes") or "",
    )


def _serialize_document(doc: PayableDocument) -> dict:
    return {
        "id": doc.id,
        "number": doc.number,
        "kind": doc.kind.value,
        "counterparty_id": doc.counterparty_id,
        "document_date": doc.document_date.isoformat() if doc.document_date else None,
        "currency": doc.currency,
        "total_amount": format_amount(doc.total_amount),
        "amount_paid": format_amount(doc.amount_paid),
        "remaining_balance": format_amount(doc.remaining_balance),
        "status": derive_status(doc).value,
        "breakdown": doc.breakdown.as_dict() if doc.breakdown else None,
    }


def _serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "number": payment.number,
        "payment_date": payment.payment_date.isoformat(),
        "counterparty_id": payment.counterparty_id,
        "payment_method": payment.payment_method,
        "reference": payment.reference,
        "is_on_account": payment.is_on_account,
        "declared_total": format_amount(payment.declared_total),
        "on_account_amount": format_amount(payment.on_account_amount) or None,
        "advance_used": format_amount(payment.advance_used),
        "source_credit_note_id": payment.source_credit_note_id,
        "lines": [
            {
                "document_id": line.target_document_id,
                "document_number": line.target_number,
                "amount_before": format_amount(line.amount_before),
                "amount_applied": format_amount(line.amount_applied),
                "balance_after": format_amount(line.balance_after),
            }
            for line in payment.lines
        ],
    }


def _allocation_response(result, status: int = 200):
    return (
        jsonify(
            {
                "payment": _serialize_payment(result.payment),
                "documents": [_serialize_document(doc) for doc in result.documents.values()],
            }
        ),
        status,
    )


def create_app(store: Optional[LedgerStore] = None) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    ledger = store or create_store_from_env(os.environ.get("FISCAL_DATABASE_URL"))
    app.extensions["ledger_store"] = ledger

    @app.errorhandler(FiscalError)
    def handle_fiscal_error(exc: FiscalError):
        status = 400
        if isinstance(exc, DocumentNotFound):
            status = 404
        elif isinstance(exc, ConcurrencyConflict):
            status = 409
        logger.info("Rejected %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": str(exc), "type": type(exc).__name__}), status

    @app.errorhandler(ValueError)
    @app.errorhandler(KeyError)
    def handle_bad_payload(exc: Exception):
        return jsonify({"error": f"Invalid payload: {exc}", "type": "InvalidPayload"}), 400

    @app.post("/breakdown")
    def breakdown():
        decision = _resolve_withholding(request.get_json(force=True) or {})
        return jsonify(
            {
                "breakdown": decision.breakdown.as_dict(),
                "withholding_enabled": decision.config.withholding.enabled,
                "withholding_manually_disabled": decision.override.manually_disabled,
            }
        )

    @app.post("/documents")
    def create_document():
        payload = request.get_json(force=True) or {}
        decision = _resolve_withholding(payload)
        document = ledger.create_document(
            DocumentKind(payload.get("kind", DocumentKind.INVOICE.value)),
            payload["counterparty_id"],
            decision.config,
            number=payload.get("number") or None,
            document_date=_date(payload.get("document_date")),
        )
        return jsonify(_serialize_document(document)), 201

    @app.get("/documents/open")
    def open_documents():
        counterparty_id = request.args.get("counterparty_id", "")
        if not counterparty_id:
            return jsonify({"error": "counterparty_id is required", "type": "InvalidPayload"}), 400
        return jsonify([_serialize_document(doc) for doc in ledger.open_documents(counterparty_id)])

    @app.post("/payments")
    def record_payment():
        result = ledger.record_payment(_payload_to_draft(request.get_json(force=True) or {}))
        return _allocation_response(result, 201)

    @app.put("/payments/<payment_id>")
    def update_payment(payment_id: str):
        result = ledger.update_payment(payment_id, _payload_to_draft(request.get_json(force=True) or {}))
        return _allocation_response(result)

    @app.delete("/payments/<payment_id>")
    def delete_payment(payment_id: str):
        documents = ledger.delete_payment(payment_id)
        return jsonify({"documents": [_serialize_document(doc) for doc in documents.values()]})

    @app.post("/credit-notes/<credit_note_id>/convert")
    def convert_credit_note(credit_note_id: str):
        payload = request.get_json(silent=True) or {}
        result = ledger.convert_credit_note(credit_note_id, _date(payload.get("payment_date")))
        return _allocation_response(result, 201)

    @app.get("/counterparties/<counterparty_id>/advance")
    def advance_balance(counterparty_id: str):
        return jsonify(
            {
                "counterparty_id": counterparty_id,
                "advance_balance": format_amount(ledger.advance_balance(counterparty_id)),
            }
        )

    return app


if __name__ == "__main__":
    configure_logging()
    print("Starting fiscal calculator web app...")
    create_app().run(host="0.0.0.0", port=8710, debug=True)
