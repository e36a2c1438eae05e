from datetime import date, datetime
from decimal import Decimal

import pytest

from app import create_app
from app_models import AcademicYear, Student, db
from ledger import InvoiceLedger
from ledger_store import MemoryLedgerStore

NOW = datetime(2025, 3, 1, 9, 0, 0)


def _academic_year():
    return AcademicYear(year_name='2025', start_date=date(2025, 1, 1), end_date=date(2025, 12, 31), is_current=True)


def _student():
    return Student(admission_number='ADM001', name='Jane Wanjiru', form_class='Form 2', parent_phone='0712345678')


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        db.session.add_all([_student(), _academic_year()])
        db.session.commit()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store():
    store = MemoryLedgerStore()
    store.add(_student())
    store.add(_academic_year())
    return store


@pytest.fixture
def ledger(store):
    return InvoiceLedger(store, now=lambda: NOW, installment_unit=Decimal('1'))


@pytest.fixture
def make_invoice(ledger):
    counter = iter(range(1, 1000))

    def make(total='1000', paid='0', status='pending', due_date=date(2025, 4, 30), **kwargs):
        return ledger.create_invoice(
            student_id=kwargs.pop('student_id', 1),
            invoice_number=kwargs.pop('invoice_number', f'INV-2025-{next(counter):03d}'),
            total_amount=Decimal(total),
            paid_amount=Decimal(paid),
            due_date=due_date,
            status=status,
            academic_year_id=kwargs.pop('academic_year_id', 1),
        )

    return make


@pytest.fixture
def pay(ledger):
    def pay(invoice, amount, status='completed', method='cash', **kwargs):
        return ledger.apply_payment(
            invoice_id=invoice.id,
            amount=Decimal(amount),
            payment_method=method,
            payment_date=kwargs.pop('payment_date', date(2025, 3, 1)),
            payment_status=status,
            **kwargs,
        )

    return pay
