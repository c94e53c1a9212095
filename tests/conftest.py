# tests/conftest.py
"""
Pytest fixtures for the fiscal calculator tests.

- make_config: TaxConfiguration factory with sensible defaults
- invoice / credit_note: documents of counterparty "C1"
- store: LedgerStore backed by a temporary SQLite file
- client: Flask test client bound to that store
"""

from datetime import date
from decimal import Decimal

import pytest

from fiscal_calc.data_models import (
    AmountType,
    CreditNote,
    FodecConfig,
    Invoice,
    TaxConfiguration,
    WithholdingConfig,
)
from fiscal_calc.ledger_store import LedgerStore
from fiscal_calc_web.app import create_app


@pytest.fixture
def make_config():
    """Build a TaxConfiguration: 19 % VAT, 1.000 stamp, everything else off."""

    def _make(amount="1000", **overrides):
        values = {
            "amount": Decimal(str(amount)),
            "amount_type": AmountType.EXCLUSIVE,
            "vat_rate_pct": Decimal("19"),
            "fodec": FodecConfig(),
            "withholding": WithholdingConfig(),
            "fiscal_stamp": Decimal("1.000"),
        }
        values.update(overrides)
        return TaxConfiguration(**values)

    return _make


@pytest.fixture
def invoice():
    return Invoice(
        id="inv-1",
        number="FAC-2024-00001",
        total_amount=Decimal("1000.000"),
        counterparty_id="C1",
        document_date=date(2024, 1, 10),
    )


@pytest.fixture
def credit_note():
    return CreditNote(
        id="av-1",
        number="AV-2024-00001",
        total_amount=Decimal("-150.000"),
        counterparty_id="C1",
        document_date=date(2024, 1, 12),
    )


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.sqlite3'}"


@pytest.fixture
def store(database_url):
    return LedgerStore(database_url)


@pytest.fixture
def client(store):
    app = create_app(store)
    app.config["TESTING"] = True
    return app.test_client()
