"""Persistence layer for documents and payments.

This module keeps invoices, credit notes and payments in a relational
database through SQLAlchemy. It defaults to SQLite for local development but
accepts any SQLAlchemy-compatible URL (e.g. PostgreSQL/MySQL).

Each payment operation is one transaction: load the target documents,
validate and allocate with :mod:`fiscal_calc.allocation`, write the new
balances. Document rows, numbering counters and the per-counterparty
advance row carry a version counter used as a compare-and-swap on every
write; when a concurrent writer got there first the whole transaction rolls
back and is retried a bounded number of times.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, TypeVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.types import TypeDecorator

from . import allocation, conversion
from .data_models import (
    DOCUMENT_TYPES,
    AllocationResult,
    DocumentKind,
    FiscalBreakdown,
    PayableDocument,
    Payment,
    PaymentDraft,
    PaymentLine,
    TaxConfiguration,
)
from .engine import TaxRateTable, compute_breakdown
from .errors import (
    ConcurrencyConflict,
    DocumentNotFound,
    DuplicateDocumentNumber,
    InsufficientAdvanceBalance,
)
from .utils import ZERO, round3, render_number

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")

DEFAULT_TEMPLATES: Dict[str, str] = {
    "payment": "PAC-{YYYY}-{SEQ:5}",
    DocumentKind.INVOICE.value: "FAC-{YYYY}-{SEQ:5}",
    DocumentKind.CREDIT_NOTE.value: "AV-{YYYY}-{SEQ:5}",
}


class Money(TypeDecorator):
    """Exact decimal stored as text with three fractional digits."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return f"{round3(Decimal(str(value))):.3f}"

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class DocumentModel(Base):
    __tablename__ = "documents"

    id = Column(String(64), primary_key=True)
    kind = Column(String(16), nullable=False)
    number = Column(String(64), unique=True, nullable=False)
    counterparty_id = Column(String(64), index=True, nullable=False)
    document_date = Column(Date, nullable=True)
    currency = Column(String(8), nullable=False, default="TND")
    total_amount = Column(Money, nullable=False)
    amount_paid = Column(Money, nullable=False)
    breakdown_json = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)
    number = Column(String(64), unique=True, nullable=False)
    payment_date = Column(Date, nullable=False)
    counterparty_id = Column(String(64), index=True, nullable=False)
    payment_method = Column(String(64), nullable=False)
    reference = Column(String(255), nullable=False, default="")
    is_on_account = Column(Boolean, nullable=False, default=False)
    declared_total = Column(Money, nullable=False)
    on_account_amount = Column(Money, nullable=True)
    advance_used = Column(Money, nullable=False)
    source_credit_note_id = Column(String(64), ForeignKey("documents.id"), nullable=True)
    notes = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lines = relationship(
        "PaymentLineModel",
        cascade="all, delete-orphan",
        order_by="PaymentLineModel.position",
    )


class PaymentLineModel(Base):
    __tablename__ = "payment_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(64), ForeignKey("payments.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    target_document_id = Column(String(64), ForeignKey("documents.id"), index=True, nullable=False)
    target_number = Column(String(64), nullable=False, default="")
    amount_before = Column(Money, nullable=False)
    amount_applied = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)


class SequenceModel(Base):
    __tablename__ = "sequences"

    name = Column(String(32), primary_key=True)
    year = Column(Integer, primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AdvanceModel(Base):
    """Advance balance of a counterparty, guarded by its version."""

    __tablename__ = "advances"

    counterparty_id = Column(String(64), primary_key=True)
    balance = Column(Money, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


def _touches_advance(payment) -> bool:
    return bool(payment.is_on_account or payment.advance_used)


class LedgerStore:
    """Database-backed ledger of payable documents and payments."""

    def __init__(
        self,
        url: str,
        *,
        max_retries: int = 3,
        rates: Optional[TaxRateTable] = None,
        templates: Optional[Dict[str, str]] = None,
    ) -> None:
        self._engine = create_engine(url, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._max_retries = max(1, max_retries)
        self._rates = rates
        self._templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self._templates.update(templates)

    # ------------------------------------------------------------------
    # Transactions

    def _atomic(self, operation: str, work: Callable[[Session], T]) -> T:
        """Run ``work`` in one transaction, retrying on version conflicts."""
        for attempt in range(1, self._max_retries + 1):
            with self._session_factory() as session:
                try:
                    with session.begin():
                        return work(session)
                except (StaleDataError, IntegrityError) as exc:
                    logger.warning(
                        "%s hit a concurrent update (attempt %d/%d): %s",
                        operation,
                        attempt,
                        self._max_retries,
                        type(exc).__name__,
                    )
        raise ConcurrencyConflict(
            f"{operation} failed after {self._max_retries} attempts because of concurrent updates"
        )

    def _next_number(self, session: Session, name: str, on: date) -> str:
        row = session.get(SequenceModel, (name, on.year))
        if row is None:
            row = SequenceModel(name=name, year=on.year, value=0)
            session.add(row)
        row.value += 1
        return render_number(self._templates[name], row.value, on)

    @staticmethod
    def _check_number_free(session: Session, number: str) -> None:
        taken = session.execute(
            select(DocumentModel.id).where(DocumentModel.number == number)
        ).first()
        if taken is not None:
            raise DuplicateDocumentNumber(f"Document number {number} is already used")

    @staticmethod
    def _lock_advance(session: Session, counterparty_id: str) -> AdvanceModel:
        """Load the advance row of a counterparty; its write is version checked."""
        row = session.get(AdvanceModel, counterparty_id)
        if row is None:
            row = AdvanceModel(counterparty_id=counterparty_id, balance=ZERO)
            session.add(row)
        return row

    @staticmethod
    def _write_advance(row: AdvanceModel, balance: Decimal) -> None:
        if balance < ZERO:
            raise InsufficientAdvanceBalance(
                f"Advance balance of {row.counterparty_id} would become {balance}"
            )
        row.balance = balance
        # Bump the version even when the amount is unchanged.
        flag_modified(row, "balance")

    # ------------------------------------------------------------------
    # Documents

    def add_document(self, document: PayableDocument) -> PayableDocument:
        """Persist an already built invoice or credit note."""
        if not document.counterparty_id:
            raise ValueError(f"Document {document.number} has no counterparty")

        def work(session: Session) -> PayableDocument:
            self._check_number_free(session, document.number)
            session.add(
                DocumentModel(
                    id=document.id,
                    kind=document.kind.value,
                    number=document.number,
                    counterparty_id=document.counterparty_id,
                    document_date=document.document_date,
                    currency=document.currency,
                    total_amount=document.total_amount,
                    amount_paid=document.amount_paid,
                    breakdown_json=(
                        json.dumps(document.breakdown.as_dict()) if document.breakdown else None
                    ),
                )
            )
            return document

        return self._atomic("add_document", work)

    def create_document(
        self,
        kind: DocumentKind,
        counterparty_id: str,
        config: TaxConfiguration,
        *,
        document_id: Optional[str] = None,
        number: Optional[str] = None,
        document_date: Optional[date] = None,
    ) -> PayableDocument:
        """Compute the breakdown of ``config`` and store it as a new document.

        The document total is the TTC total of the breakdown, negated for a
        credit note. The breakdown is kept as a snapshot and never recomputed.
        """
        breakdown = compute_breakdown(config, self._rates)
        total = breakdown.total_incl_tax
        if kind == DocumentKind.CREDIT_NOTE:
            total = -total
        on = document_date or date.today()

        def work(session: Session) -> PayableDocument:
            if number:
                self._check_number_free(session, number)
            doc = DOCUMENT_TYPES[kind](
                id=document_id or uuid4().hex,
                number=number or self._next_number(session, kind.value, on),
                total_amount=total,
                counterparty_id=counterparty_id,
                document_date=on,
                currency=config.currency,
                breakdown=breakdown,
            )
            session.add(
                DocumentModel(
                    id=doc.id,
                    kind=kind.value,
                    number=doc.number,
                    counterparty_id=counterparty_id,
                    document_date=on,
                    currency=doc.currency,
                    total_amount=doc.total_amount,
                    amount_paid=doc.amount_paid,
                    breakdown_json=json.dumps(breakdown.as_dict()),
                )
            )
            return doc

        document = self._atomic("create_document", work)
        logger.info("Created %s %s total=%s", kind.value, document.number, document.total_amount)
        return document

    def get_document(self, document_id: str) -> PayableDocument:
        with self._session_factory() as session:
            row = session.get(DocumentModel, document_id)
            if row is None:
                raise DocumentNotFound(f"Document {document_id} not found")
            return self._to_document(row)

    def open_documents(self, counterparty_id: str) -> List[PayableDocument]:
        """Invoices and credit notes of a counterparty with a non-zero balance."""
        with self._session_factory() as session:
            rows = session.execute(
                select(DocumentModel)
                .where(DocumentModel.counterparty_id == counterparty_id)
                .order_by(DocumentModel.document_date.asc(), DocumentModel.number.asc())
            ).scalars()
            documents = [self._to_document(row) for row in rows]
        return [doc for doc in documents if doc.remaining_balance != ZERO]

    def _load_documents(self, session: Session, ids: Iterable[str]) -> Dict[str, DocumentModel]:
        ids = set(ids)
        if not ids:
            return {}
        rows = session.execute(select(DocumentModel).where(DocumentModel.id.in_(ids))).scalars()
        return {row.id: row for row in rows}

    @staticmethod
    def _check_counterparty(
        rows: Dict[str, DocumentModel], draft: PaymentDraft
    ) -> None:
        for line in draft.lines:
            row = rows.get(line.target_document_id)
            if row is not None and draft.counterparty_id and row.counterparty_id != draft.counterparty_id:
                raise DocumentNotFound(
                    f"Document {row.number} does not belong to counterparty {draft.counterparty_id}"
                )

    @staticmethod
    def _write_documents(rows: Dict[str, DocumentModel], documents: Dict[str, PayableDocument]) -> None:
        for doc_id, doc in documents.items():
            rows[doc_id].amount_paid = doc.amount_paid

    # ------------------------------------------------------------------
    # Payments

    def get_payment(self, payment_id: str) -> Payment:
        with self._session_factory() as session:
            row = session.get(PaymentModel, payment_id)
            if row is None:
                raise DocumentNotFound(f"Payment {payment_id} not found")
            return self._to_payment(row)

    def list_payments(self, counterparty_id: Optional[str] = None) -> List[Payment]:
        with self._session_factory() as session:
            query = select(PaymentModel).order_by(
                PaymentModel.payment_date.desc(), PaymentModel.number.desc()
            )
            if counterparty_id:
                query = query.where(PaymentModel.counterparty_id == counterparty_id)
            return [self._to_payment(row) for row in session.execute(query).scalars()]

    def _advance_balance(
        self, session: Session, counterparty_id: str, exclude_payment_id: Optional[str] = None
    ) -> Decimal:
        query = select(PaymentModel).where(PaymentModel.counterparty_id == counterparty_id)
        if exclude_payment_id:
            query = query.where(PaymentModel.id != exclude_payment_id)
        payments = [self._to_payment(row) for row in session.execute(query).scalars()]
        return allocation.advance_balance(payments)

    def advance_balance(self, counterparty_id: str) -> Decimal:
        with self._session_factory() as session:
            return self._advance_balance(session, counterparty_id)

    def record_payment(self, draft: PaymentDraft) -> AllocationResult:
        """Allocate and store a new payment."""

        def work(session: Session) -> AllocationResult:
            rows = self._load_documents(session, (line.target_document_id for line in draft.lines))
            self._check_counterparty(rows, draft)
            advance = None
            available = None
            if draft.counterparty_id and _touches_advance(draft):
                advance = self._lock_advance(session, draft.counterparty_id)
                available = self._advance_balance(session, draft.counterparty_id)
            result = allocation.allocate(
                draft,
                [self._to_document(row) for row in rows.values()],
                number=self._next_number(session, "payment", draft.payment_date),
                available_advance=available,
            )
            self._write_documents(rows, result.documents)
            if advance is not None:
                self._write_advance(advance, available + allocation.advance_balance([result.payment]))
            session.add(self._payment_row(result.payment))
            return result

        return self._atomic("record_payment", work)

    def update_payment(self, payment_id: str, draft: PaymentDraft) -> AllocationResult:
        """Replace a payment, reversing its previous lines first."""

        def work(session: Session) -> AllocationResult:
            row = session.get(PaymentModel, payment_id)
            if row is None:
                raise DocumentNotFound(f"Payment {payment_id} not found")
            previous = self._to_payment(row)
            ids = {line.target_document_id for line in previous.lines}
            ids.update(line.target_document_id for line in draft.lines)
            rows = self._load_documents(session, ids)
            self._check_counterparty(rows, draft)
            advances: Dict[str, AdvanceModel] = {}
            if _touches_advance(previous):
                advances[previous.counterparty_id] = self._lock_advance(session, previous.counterparty_id)
            if draft.counterparty_id and _touches_advance(draft):
                advances[draft.counterparty_id] = self._lock_advance(session, draft.counterparty_id)
            available = None
            if draft.counterparty_id in advances:
                available = self._advance_balance(session, draft.counterparty_id, payment_id)
            result = allocation.reallocate(
                previous,
                draft,
                [self._to_document(r) for r in rows.values()],
                available_advance=available,
            )
            for counterparty_id, advance in advances.items():
                balance = self._advance_balance(session, counterparty_id, payment_id)
                if counterparty_id == result.payment.counterparty_id:
                    balance += allocation.advance_balance([result.payment])
                self._write_advance(advance, balance)
            self._write_documents(rows, result.documents)
            session.delete(row)
            session.flush()
            session.add(self._payment_row(result.payment))
            return result

        return self._atomic("update_payment", work)

    def delete_payment(self, payment_id: str) -> Dict[str, PayableDocument]:
        """Delete a payment and give its amounts back to the documents."""

        def work(session: Session) -> Dict[str, PayableDocument]:
            row = session.get(PaymentModel, payment_id)
            if row is None:
                raise DocumentNotFound(f"Payment {payment_id} not found")
            payment = self._to_payment(row)
            if _touches_advance(payment):
                advance = self._lock_advance(session, payment.counterparty_id)
                self._write_advance(
                    advance, self._advance_balance(session, payment.counterparty_id, payment_id)
                )
            ids = {line.target_document_id for line in payment.lines}
            if payment.source_credit_note_id:
                ids.add(payment.source_credit_note_id)
            rows = self._load_documents(session, ids)
            documents = allocation.reverse_payment(
                payment, [self._to_document(r) for r in rows.values()]
            )
            self._write_documents(rows, documents)
            session.delete(row)
            return documents

        return self._atomic("delete_payment", work)

    def convert_credit_note(
        self, credit_note_id: str, payment_date: Optional[date] = None
    ) -> AllocationResult:
        """Turn a credit note's remaining balance into account credit."""
        on = payment_date or date.today()

        def work(session: Session) -> AllocationResult:
            rows = self._load_documents(session, [credit_note_id])
            row = rows.get(credit_note_id)
            if row is None or row.kind != DocumentKind.CREDIT_NOTE.value:
                raise DocumentNotFound(f"Credit note {credit_note_id} not found")
            credit_note = self._to_document(row)
            advance = self._lock_advance(session, row.counterparty_id)
            available = self._advance_balance(session, row.counterparty_id)
            result = conversion.convert_to_account_credit(
                credit_note,
                payment_date=on,
                number=self._next_number(session, "payment", on),
            )
            self._write_documents(rows, result.documents)
            self._write_advance(advance, available + allocation.advance_balance([result.payment]))
            session.add(self._payment_row(result.payment))
            return result

        return self._atomic("convert_credit_note", work)

    # ------------------------------------------------------------------
    # Row mapping

    @staticmethod
    def _to_document(row: DocumentModel) -> PayableDocument:
        breakdown = None
        if row.breakdown_json:
            breakdown = FiscalBreakdown.from_dict(json.loads(row.breakdown_json))
        return DOCUMENT_TYPES[DocumentKind(row.kind)](
            id=row.id,
            number=row.number,
            total_amount=row.total_amount,
            amount_paid=row.amount_paid,
            counterparty_id=row.counterparty_id,
            document_date=row.document_date,
            currency=row.currency,
            breakdown=breakdown,
        )

    @staticmethod
    def _to_payment(row: PaymentModel) -> Payment:
        return Payment(
            id=row.id,
            number=row.number,
            payment_date=row.payment_date,
            counterparty_id=row.counterparty_id,
            payment_method=row.payment_method,
            reference=row.reference,
            is_on_account=row.is_on_account,
            declared_total=row.declared_total,
            on_account_amount=row.on_account_amount,
            lines=tuple(
                PaymentLine(
                    target_document_id=line.target_document_id,
                    amount_applied=line.amount_applied,
                    amount_before=line.amount_before,
                    balance_after=line.balance_after,
                    target_number=line.target_number,
                )
                for line in row.lines
            ),
            source_credit_note_id=row.source_credit_note_id,
            advance_used=row.advance_used,
            notes=row.notes,
        )

    @staticmethod
    def _payment_row(payment: Payment) -> PaymentModel:
        return PaymentModel(
            id=payment.id,
            number=payment.number,
            payment_date=payment.payment_date,
            counterparty_id=payment.counterparty_id,
            payment_method=payment.payment_method,
            reference=payment.reference or "",
            is_on_account=payment.is_on_account,
            declared_total=payment.declared_total,
            on_account_amount=payment.on_account_amount,
            advance_used=payment.advance_used,
            source_credit_note_id=payment.source_credit_note_id,
            notes=payment.notes or "",
            lines=[
                PaymentLineModel(
                    position=index,
                    target_document_id=line.target_document_id,
                    target_number=line.target_number,
                    amount_before=line.amount_before,
                    amount_applied=line.amount_applied,
                    balance_after=line.balance_after,
                )
                for index, line in enumerate(payment.lines)
            ],
        )


def create_store_from_env(url: Optional[str] = None) -> LedgerStore:
    return LedgerStore(
        url or os.environ.get("FISCAL_DATABASE_URL") or "sqlite:///fiscal_ledger.sqlite3",
        max_retries=int(os.environ.get("FISCAL_MAX_RETRIES", "3")),
    )
