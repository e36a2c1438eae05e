import enum
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value is not None else None


class InvoiceStatus(str, enum.Enum):
    PENDING = 'pending'
    PARTIAL = 'partial'
    PAID = 'paid'
    OVERDUE = 'overdue'


class PaymentMethod(str, enum.Enum):
    CASH = 'cash'
    CARD = 'card'
    ONLINE = 'online'
    CHEQUE = 'cheque'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class InstallmentStatus(str, enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    OVERDUE = 'overdue'


class IntervalPolicy(str, enum.Enum):
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'
    FIXED_DAYS = 'fixed_days'


def enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Database Models
class AcademicYear(db.Model):
    __tablename__ = 'academic_years'

    id = db.Column(db.Integer, primary_key=True)
    year_name = db.Column(db.String(50), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_current = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    admission_number = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    form_class = db.Column(db.String(50))
    parent_phone = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class FeeInvoice(db.Model):
    __tablename__ = 'fee_invoices'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    invoice_number = db.Column(db.String(100), nullable=False, unique=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    due_amount = db.Column(db.Numeric(12, 2), nullable=False)  # Always total_amount - paid_amount
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=InvoiceStatus.PENDING.value)
    academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'studentId': self.student_id,
            'invoiceNumber': self.invoice_number,
            'totalAmount': _money(self.total_amount),
            'paidAmount': _money(self.paid_amount),
            'dueAmount': _money(self.due_amount),
            'dueDate': _iso(self.due_date),
            'status': self.status,
            'academicYearId': self.academic_year_id,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


class FeePayment(db.Model):
    __tablename__ = 'fee_payments'

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('fee_invoices.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)  # cash, card, online, cheque
    payment_date = db.Column(db.Date, nullable=False)
    payment_status = db.Column(db.String(20), nullable=False)  # pending, completed, failed, refunded
    transaction_id = db.Column(db.String(100), unique=True)  # Gateway or bank reference
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'invoiceId': self.invoice_id,
            'amount': _money(self.amount),
            'paymentMethod': self.payment_method,
            'paymentDate': _iso(self.payment_date),
            'paymentStatus': self.payment_status,
            'transactionId': self.transaction_id,
            'createdAt': _iso(self.created_at),
        }


class PaymentInstallment(db.Model):
    __tablename__ = 'payment_installments'

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('fee_invoices.id'), nullable=False, index=True)
    installment_number = db.Column(db.Integer, nullable=False)  # 1-based
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=InstallmentStatus.PENDING.value)
    payment_id = db.Column(db.Integer, db.ForeignKey('fee_payments.id'))  # Payment that settled it last
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('invoice_id', 'installment_number', name='unique_invoice_installment_number'),
    )

    def remaining(self):
        return self.amount - self.paid_amount

    def to_dict(self, payment=None):
        data = {
            'id': self.id,
            'invoiceId': self.invoice_id,
            'installmentNumber': self.installment_number,
            'amount': _money(self.amount),
            'dueDate': _iso(self.due_date),
            'paidAmount': _money(self.paid_amount),
            'status': self.status,
            'paymentId': self.payment_id,
        }
        if payment is not None:
            data['payment'] = {
                'id': payment.id,
                'paymentDate': _iso(payment.payment_date),
                'transactionId': payment.transaction_id,
            }
        return data


class InstallmentAllocation(db.Model):
    """Share of a completed payment credited to one installment.

    Rows without an installment mark money the payment had already put on
    the invoice before its installment plan was generated.
    """
    __tablename__ = 'installment_allocations'

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('fee_payments.id'), nullable=False, index=True)
    installment_id = db.Column(db.Integer, db.ForeignKey('payment_installments.id'), index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
