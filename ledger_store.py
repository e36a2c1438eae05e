"""
Storage for the invoice ledger.

The ledger never touches ``db.session`` directly; it is handed a store with
the methods of :class:`LedgerStore`. ``SQLAlchemyLedgerStore`` is what the web
app uses, ``MemoryLedgerStore`` keeps everything in dicts and is what most
tests run against.

An ``atomic()`` block is one unit of work: everything inside it is written
together or not at all. Blocks nest; only the outermost one commits.
"""
import itertools
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal

from sqlalchemy import func, inspect, select
from sqlalchemy.exc import IntegrityError

from app_models import (
    AcademicYear,
    FeeInvoice,
    FeePayment,
    InstallmentAllocation,
    InstallmentStatus,
    InvoiceStatus,
    PaymentInstallment,
    Student,
)
from errors import ConflictError

logger = logging.getLogger(__name__)

OPEN_INVOICE_STATUSES = (InvoiceStatus.PENDING.value, InvoiceStatus.PARTIAL.value)


class LedgerStore:
    """Interface shared by the ledger stores."""

    def atomic(self):
        raise NotImplementedError

    def add(self, obj):
        raise NotImplementedError

    def save(self, obj):
        raise NotImplementedError

    def delete(self, obj):
        raise NotImplementedError

    def student_exists(self, student_id):
        raise NotImplementedError

    def academic_year_exists(self, academic_year_id):
        raise NotImplementedError

    def get_invoice(self, invoice_id, lock=False):
        raise NotImplementedError

    def find_invoice_by_number(self, invoice_number):
        raise NotImplementedError

    def list_invoices(self, student_id=None, status=None, academic_year_id=None, limit=10, offset=0):
        raise NotImplementedError

    def open_invoices_past_due(self, today):
        raise NotImplementedError

    def get_payment(self, payment_id, lock=False):
        raise NotImplementedError

    def find_payment_by_transaction(self, transaction_id):
        raise NotImplementedError

    def payments_for_invoice(self, invoice_id):
        raise NotImplementedError

    def list_payments(self, invoice_id=None, payment_method=None, payment_status=None, limit=10, offset=0):
        raise NotImplementedError

    def get_installment(self, installment_id, lock=False):
        raise NotImplementedError

    def installments_for_invoice(self, invoice_id):
        raise NotImplementedError

    def unpaid_installments_past_due(self, today):
        raise NotImplementedError

    def allocated_from_payment(self, payment_id):
        """Total already credited from the payment, as a Decimal."""
        raise NotImplementedError

    def allocations_for_installments(self, installment_ids):
        raise NotImplementedError


class SQLAlchemyLedgerStore(LedgerStore):
    """Store backed by a SQLAlchemy session.

    ``lock=True`` reads issue ``SELECT ... FOR UPDATE`` so two requests paying
    the same invoice queue on its row instead of overwriting each other.
    """

    def __init__(self, session):
        self.session = session
        self._depth = 0

    @contextmanager
    def atomic(self):
        self._depth += 1
        try:
            yield self
            if self._depth == 1:
                self.session.commit()
        except Exception:
            if self._depth == 1:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1

    def _flush(self):
        try:
            self.session.flush()
        except IntegrityError as e:
            logger.warning("Integrity error while writing ledger records: %s", e.orig)
            raise ConflictError('Record conflicts with an existing record', code='INTEGRITY_ERROR') from e

    def add(self, obj):
        self.session.add(obj)
        self._flush()
        return obj

    def save(self, obj):
        self._flush()
        return obj

    def delete(self, obj):
        self.session.delete(obj)
        self._flush()

    def _one(self, stmt, lock=False):
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalars().first()

    def student_exists(self, student_id):
        return self.session.get(Student, student_id) is not None

    def academic_year_exists(self, academic_year_id):
        return self.session.get(AcademicYear, academic_year_id) is not None

    def get_invoice(self, invoice_id, lock=False):
        return self._one(select(FeeInvoice).where(FeeInvoice.id == invoice_id), lock)

    def find_invoice_by_number(self, invoice_number):
        return self._one(select(FeeInvoice).where(FeeInvoice.invoice_number == invoice_number))

    def list_invoices(self, student_id=None, status=None, academic_year_id=None, limit=10, offset=0):
        stmt = select(FeeInvoice)
        if student_id is not None:
            stmt = stmt.where(FeeInvoice.student_id == student_id)
        if status is not None:
            stmt = stmt.where(FeeInvoice.status == status)
        if academic_year_id is not None:
            stmt = stmt.where(FeeInvoice.academic_year_id == academic_year_id)
        stmt = stmt.order_by(FeeInvoice.created_at.desc(), FeeInvoice.id.desc()).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars())

    def open_invoices_past_due(self, today):
        stmt = (
            select(FeeInvoice)
            .where(FeeInvoice.status.in_(OPEN_INVOICE_STATUSES))
            .where(FeeInvoice.due_date < today)
            .where(FeeInvoice.due_amount > 0)
            .order_by(FeeInvoice.id)
            .with_for_update()
        )
        return list(self.session.execute(stmt).scalars())

    def get_payment(self, payment_id, lock=False):
        return self._one(select(FeePayment).where(FeePayment.id == payment_id), lock)

    def find_payment_by_transaction(self, transaction_id):
        return self._one(select(FeePayment).where(FeePayment.transaction_id == transaction_id))

    def payments_for_invoice(self, invoice_id):
        stmt = select(FeePayment).where(FeePayment.invoice_id == invoice_id).order_by(FeePayment.id)
        return list(self.session.execute(stmt).scalars())

    def list_payments(self, invoice_id=None, payment_method=None, payment_status=None, limit=10, offset=0):
        stmt = select(FeePayment)
        if invoice_id is not None:
            stmt = stmt.where(FeePayment.invoice_id == invoice_id)
        if payment_method is not None:
            stmt = stmt.where(FeePayment.payment_method == payment_method)
        if payment_status is not None:
            stmt = stmt.where(FeePayment.payment_status == payment_status)
        stmt = stmt.order_by(FeePayment.created_at.desc(), FeePayment.id.desc()).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars())

    def get_installment(self, installment_id, lock=False):
        return self._one(select(PaymentInstallment).where(PaymentInstallment.id == installment_id), lock)

    def installments_for_invoice(self, invoice_id):
        stmt = (
            select(PaymentInstallment)
            .where(PaymentInstallment.invoice_id == invoice_id)
            .order_by(PaymentInstallment.installment_number)
        )
        return list(self.session.execute(stmt).scalars())

    def unpaid_installments_past_due(self, today):
        stmt = (
            select(PaymentInstallment)
            .where(PaymentInstallment.status == InstallmentStatus.PENDING.value)
            .where(PaymentInstallment.due_date < today)
            .order_by(PaymentInstallment.id)
        )
        return list(self.session.execute(stmt).scalars())

    def allocated_from_payment(self, payment_id):
        stmt = select(func.coalesce(func.sum(InstallmentAllocation.amount), 0)).where(
            InstallmentAllocation.payment_id == payment_id)
        return Decimal(self.session.execute(stmt).scalar_one())

    def allocations_for_installments(self, installment_ids):
        if not installment_ids:
            return []
        stmt = (
            select(InstallmentAllocation)
            .where(InstallmentAllocation.installment_id.in_(installment_ids))
            .order_by(InstallmentAllocation.id)
        )
        return list(self.session.execute(stmt).scalars())


class MemoryLedgerStore(LedgerStore):
    """Dict-backed store.

    A re-entrant lock is held for the whole of an atomic block, which makes
    concurrent ledger calls serializable. A failed block restores every
    record to the column values it had when the block started.
    """

    MODELS = (AcademicYear, Student, FeeInvoice, FeePayment, PaymentInstallment, InstallmentAllocation)
    UNIQUE = {
        Student: ('admission_number',),
        FeeInvoice: ('invoice_number',),
        FeePayment: ('transaction_id',),
    }

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._rows = {model: {} for model in self.MODELS}
        self._ids = {model: itertools.count(1) for model in self.MODELS}
        self._columns = {model: [attr.key for attr in inspect(model).column_attrs] for model in self.MODELS}

    def _snapshot(self):
        return {
            model: {
                pk: (obj, {key: getattr(obj, key) for key in self._columns[model]})
                for pk, obj in rows.items()
            }
            for model, rows in self._rows.items()
        }

    def _restore(self, snapshot):
        for model, rows in snapshot.items():
            self._rows[model] = {}
            for pk, (obj, values) in rows.items():
                for key, value in values.items():
                    setattr(obj, key, value)
                self._rows[model][pk] = obj

    @contextmanager
    def atomic(self):
        with self._lock:
            self._depth += 1
            snapshot = self._snapshot() if self._depth == 1 else None
            try:
                yield self
            except Exception:
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def add(self, obj):
        model = type(obj)
        with self._lock:
            for column in self.UNIQUE.get(model, ()):
                value = getattr(obj, column)
                if value is None:
                    continue
                if any(getattr(row, column) == value for row in self._rows[model].values() if row is not obj):
                    raise ConflictError('Record conflicts with an existing record', code='INTEGRITY_ERROR')
            if obj.id is None:
                obj.id = next(self._ids[model])
            self._rows[model][obj.id] = obj
        return obj

    def save(self, obj):
        return obj

    def delete(self, obj):
        with self._lock:
            self._rows[type(obj)].pop(obj.id, None)

    def _all(self, model):
        return list(self._rows[model].values())

    @staticmethod
    def _newest_first(rows):
        return sorted(rows, key=lambda row: (row.created_at, row.id), reverse=True)

    def student_exists(self, student_id):
        return student_id in self._rows[Student]

    def academic_year_exists(self, academic_year_id):
        return academic_year_id in self._rows[AcademicYear]

    def get_invoice(self, invoice_id, lock=False):
        return self._rows[FeeInvoice].get(invoice_id)

    def find_invoice_by_number(self, invoice_number):
        for invoice in self._all(FeeInvoice):
            if invoice.invoice_number == invoice_number:
                return invoice
        return None

    def list_invoices(self, student_id=None, status=None, academic_year_id=None, limit=10, offset=0):
        rows = [
            invoice for invoice in self._all(FeeInvoice)
            if (student_id is None or invoice.student_id == student_id)
            and (status is None or invoice.status == status)
            and (academic_year_id is None or invoice.academic_year_id == academic_year_id)
        ]
        return self._newest_first(rows)[offset:offset + limit]

    def open_invoices_past_due(self, today):
        return sorted(
            (
                invoice for invoice in self._all(FeeInvoice)
                if invoice.status in OPEN_INVOICE_STATUSES
                and invoice.due_date < today
                and invoice.due_amount > 0
            ),
            key=lambda invoice: invoice.id,
        )

    def get_payment(self, payment_id, lock=False):
        return self._rows[FeePayment].get(payment_id)

    def find_payment_by_transaction(self, transaction_id):
        for payment in self._all(FeePayment):
            if payment.transaction_id == transaction_id:
                return payment
        return None

    def payments_for_invoice(self, invoice_id):
        return sorted(
            (payment for payment in self._all(FeePayment) if payment.invoice_id == invoice_id),
            key=lambda payment: payment.id,
        )

    def list_payments(self, invoice_id=None, payment_method=None, payment_status=None, limit=10, offset=0):
        rows = [
            payment for payment in self._all(FeePayment)
            if (invoice_id is None or payment.invoice_id == invoice_id)
            and (payment_method is None or payment.payment_method == payment_method)
            and (payment_status is None or payment.payment_status == payment_status)
        ]
        return self._newest_first(rows)[offset:offset + limit]

    def get_installment(self, installment_id, lock=False):
        return self._rows[PaymentInstallment].get(installment_id)

    def installments_for_invoice(self, invoice_id):
        return sorted(
            (inst for inst in self._all(PaymentInstallment) if inst.invoice_id == invoice_id),
            key=lambda inst: inst.installment_number,
        )

    def unpaid_installments_past_due(self, today):
        return sorted(
            (
                inst for inst in self._all(PaymentInstallment)
                if inst.status == InstallmentStatus.PENDING.value and inst.due_date < today
            ),
            key=lambda inst: inst.id,
        )

    def allocated_from_payment(self, payment_id):
        return sum(
            (Decimal(a.amount) for a in self._all(InstallmentAllocation) if a.payment_id == payment_id),
            Decimal('0'),
        )

    def allocations_for_installments(self, installment_ids):
        installment_ids = set(installment_ids)
        return [a for a in self._all(InstallmentAllocation) if a.installment_id in installment_ids]
