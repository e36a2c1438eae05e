"""
Invoice ledger: fee invoices, the payments made against them and the
installment (EMI) plans they can be split into.

Money is handled as ``Decimal`` quantized to cents. ``due_amount`` and
``status`` of an invoice are never set directly; every path that changes
``total_amount`` or ``paid_amount`` goes through :func:`recompute_balances`.

Every mutating method runs inside one ``store.atomic()`` block and reads the
parent invoice with ``lock=True`` before touching its balances.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

from dateutil.relativedelta import relativedelta

from app_models import (
    FeeInvoice,
    FeePayment,
    InstallmentAllocation,
    InstallmentStatus,
    IntervalPolicy,
    InvoiceStatus,
    PaymentInstallment,
    PaymentMethod,
    PaymentStatus,
    enum_values,
)
from errors import ConflictError, NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

INVOICE_FIELDS = (
    'student_id', 'invoice_number', 'total_amount', 'paid_amount',
    'due_date', 'status', 'academic_year_id',
)
PAYMENT_FIELDS = ('amount', 'payment_method', 'payment_date', 'payment_status', 'transaction_id')


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value, code='INVALID_AMOUNT', label='amount'):
    """Coerce ``value`` to a cent-quantized Decimal or raise ValidationError."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f'{label} must be a valid number', code=code)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation(value)
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f'{label} must be a valid number', code=code) from e


def recompute_balances(total_amount, paid_amount, status=None):
    """Return ``(due_amount, status)`` for an invoice.

    ``status`` is the requested or current status; only ``overdue`` survives
    recomputation, and only while something is still due.
    """
    total = to_money(total_amount, label='totalAmount')
    paid = to_money(paid_amount, label='paidAmount')
    due = total - paid
    if due <= 0:
        return due, InvoiceStatus.PAID
    if status is not None and InvoiceStatus(status) is InvoiceStatus.OVERDUE:
        return due, InvoiceStatus.OVERDUE
    if paid > 0:
        return due, InvoiceStatus.PARTIAL
    return due, InvoiceStatus.PENDING


def split_amount(amount, count, unit=Decimal('1')):
    """Split ``amount`` into ``count`` parts that add up to it exactly.

    Every part but the last is ``amount / count`` rounded down to ``unit``;
    the last part carries the remainder. Falls back to cents when ``unit``
    is too coarse for the amount.
    """
    amount = to_money(amount)
    if count < 1:
        raise ValidationError('count must be at least 1', code='INVALID_COUNT')
    for step in (Decimal(unit), CENT):
        base = ((amount / count) / step).to_integral_value(rounding=ROUND_DOWN) * step
        base = base.quantize(CENT, rounding=ROUND_DOWN)
        if base > 0 or count == 1:
            break
    else:
        raise ValidationError(
            f'Cannot split {amount} into {count} installments', code='COUNT_EXCEEDS_AMOUNT')
    return [base] * (count - 1) + [amount - base * (count - 1)]


def installment_due_dates(first_due_date, count, policy=IntervalPolicy.MONTHLY, interval_days=None):
    policy = IntervalPolicy(policy)
    if policy is IntervalPolicy.FIXED_DAYS and (interval_days is None or interval_days < 1):
        raise ValidationError('intervalDays must be at least 1 for fixed_days', code='INVALID_INTERVAL_DAYS')

    def offset(n):
        if policy is IntervalPolicy.WEEKLY:
            return timedelta(weeks=n)
        if policy is IntervalPolicy.MONTHLY:
            return relativedelta(months=n)
        if policy is IntervalPolicy.QUARTERLY:
            return relativedelta(months=3 * n)
        return timedelta(days=interval_days * n)

    return [first_due_date + offset(n) for n in range(count)]


def _coerce(value, enum_cls, code, label):
    if value is None:
        raise ValidationError(f'{label} is required', code=code.replace('INVALID_', 'MISSING_', 1))
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid {label}. Must be one of: {', '.join(enum_values(enum_cls))}", code=code) from e


def _positive(value, code='INVALID_AMOUNT', label='amount'):
    amount = to_money(value, code=code, label=label)
    if amount <= 0:
        raise ValidationError(f'{label} must be greater than zero', code=code)
    return amount


def _non_negative(value, code, label):
    amount = to_money(value, code=code, label=label)
    if amount < 0:
        raise ValidationError(f'{label} must be a valid positive number', code=code)
    return amount


def _required_date(value, code, label):
    if value is None:
        raise ValidationError(f'{label} is required', code=code)
    if not isinstance(value, date):
        raise ValidationError(f'{label} must be a date', code=code.replace('MISSING_', 'INVALID_', 1))
    return value


def _clean_reference(value):
    value = (value or '').strip()
    return value or None


class InvoiceLedger:
    """Creates invoices and applies payments and installment settlements to them.

    :param store: a :class:`ledger_store.LedgerStore`
    :param now: callable returning the current (naive UTC) datetime
    :param installment_unit: rounding unit used when splitting a balance into installments
    :param page_size: listing ``limit`` when none is given
    :param max_page_size: upper bound for listing ``limit``
    """

    def __init__(self, store, now=None, installment_unit=Decimal('1'), page_size=10, max_page_size=100):
        self.store = store
        self.now = now or utcnow
        self.installment_unit = Decimal(installment_unit)
        self.page_size = page_size
        self.max_page_size = max_page_size

    # --- lookups ---

    def _invoice_or_404(self, invoice_id, lock=False, status_code=None):
        invoice = self.store.get_invoice(invoice_id, lock=lock)
        if invoice is None:
            raise NotFoundError('Fee invoice not found', code='INVOICE_NOT_FOUND', status_code=status_code)
        return invoice

    def _check_references(self, student_id, academic_year_id):
        if student_id is not None and not self.store.student_exists(student_id):
            raise NotFoundError('Student not found', code='STUDENT_NOT_FOUND', status_code=400)
        if academic_year_id is not None and not self.store.academic_year_exists(academic_year_id):
            raise NotFoundError('Academic year not found', code='ACADEMIC_YEAR_NOT_FOUND', status_code=400)

    def _check_invoice_number(self, invoice_number, exclude_id=None):
        existing = self.store.find_invoice_by_number(invoice_number)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError('Invoice number already exists', code='DUPLICATE_INVOICE_NUMBER')

    def _check_transaction_id(self, transaction_id, exclude_id=None):
        if transaction_id is None:
            return
        existing = self.store.find_payment_by_transaction(transaction_id)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError('Transaction id already recorded', code='DUPLICATE_TRANSACTION_ID')

    def _page(self, limit, offset):
        limit = self.page_size if limit is None else limit
        offset = 0 if offset is None else offset
        if limit < 1:
            raise ValidationError('limit must be at least 1', code='INVALID_LIMIT')
        if offset < 0:
            raise ValidationError('offset must not be negative', code='INVALID_OFFSET')
        return min(limit, self.max_page_size), offset

    # --- invoices ---

    def create_invoice(self, student_id, invoice_number, total_amount, due_date, status,
                       academic_year_id, paid_amount=0):
        if student_id is None:
            raise ValidationError('studentId is required', code='MISSING_STUDENT_ID')
        if academic_year_id is None:
            raise ValidationError('academicYearId is required', code='MISSING_ACADEMIC_YEAR_ID')
        invoice_number = _clean_reference(invoice_number)
        if invoice_number is None:
            raise ValidationError('invoiceNumber is required', code='MISSING_INVOICE_NUMBER')
        if total_amount is None:
            raise ValidationError('totalAmount is required', code='MISSING_TOTAL_AMOUNT')
        total = _non_negative(total_amount, 'INVALID_TOTAL_AMOUNT', 'totalAmount')
        paid = _non_negative(paid_amount or 0, 'INVALID_PAID_AMOUNT', 'paidAmount')
        if paid > total:
            raise ValidationError('paidAmount cannot exceed totalAmount', code='PAID_EXCEEDS_TOTAL')
        due_date = _required_date(due_date, 'MISSING_DUE_DATE', 'dueDate')
        status = _coerce(status, InvoiceStatus, 'INVALID_STATUS', 'status')

        with self.store.atomic():
            self._check_references(student_id, academic_year_id)
            self._check_invoice_number(invoice_number)
            due, status = recompute_balances(total, paid, status)
            now = self.now()
            invoice = FeeInvoice(
                student_id=student_id,
                invoice_number=invoice_number,
                total_amount=total,
                paid_amount=paid,
                due_amount=due,
                due_date=due_date,
                status=status.value,
                academic_year_id=academic_year_id,
                created_at=now,
                updated_at=now,
            )
            self.store.add(invoice)

        logger.info("Invoice %s created for student %s: total=%s due=%s status=%s",
                    invoice.invoice_number, student_id, total, due, status.value)
        return invoice

    def get_invoice(self, invoice_id):
        return self._invoice_or_404(invoice_id)

    def list_invoices(self, student_id=None, status=None, academic_year_id=None, limit=None, offset=None):
        if status is not None:
            status = _coerce(status, InvoiceStatus, 'INVALID_STATUS', 'status').value
        limit, offset = self._page(limit, offset)
        return self.store.list_invoices(student_id=student_id, status=status,
                                        academic_year_id=academic_year_id, limit=limit, offset=offset)

    def update_invoice(self, invoice_id, **changes):
        """Apply an administrative edit.

        ``due_amount`` may be passed but is ignored: it is recomputed from the
        resulting total and paid amounts whatever else changed.
        """
        changes.pop('due_amount', None)
        unknown = set(changes) - set(INVOICE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown invoice fields: {', '.join(sorted(unknown))}", code='UNKNOWN_FIELD')

        with self.store.atomic():
            invoice = self._invoice_or_404(invoice_id, lock=True)

            student_id = changes.get('student_id', invoice.student_id)
            academic_year_id = changes.get('academic_year_id', invoice.academic_year_id)
            if student_id is None:
                raise ValidationError('studentId cannot be empty', code='INVALID_STUDENT_ID')
            if academic_year_id is None:
                raise ValidationError('academicYearId cannot be empty', code='INVALID_ACADEMIC_YEAR_ID')
            self._check_references(
                changes.get('student_id'), changes.get('academic_year_id'))

            invoice_number = invoice.invoice_number
            if 'invoice_number' in changes:
                invoice_number = _clean_reference(changes['invoice_number'])
                if invoice_number is None:
                    raise ValidationError('invoiceNumber cannot be empty', code='INVALID_INVOICE_NUMBER')
                self._check_invoice_number(invoice_number, exclude_id=invoice.id)

            total = to_money(invoice.total_amount)
            if 'total_amount' in changes:
                total = _non_negative(changes['total_amount'], 'INVALID_TOTAL_AMOUNT', 'totalAmount')
                if total != to_money(invoice.total_amount) and self.store.installments_for_invoice(invoice.id):
                    raise StateError('totalAmount cannot change while an installment plan exists',
                                     code='INSTALLMENT_PLAN_EXISTS')
            paid = to_money(invoice.paid_amount)
            if 'paid_amount' in changes:
                paid = _non_negative(changes['paid_amount'], 'INVALID_PAID_AMOUNT', 'paidAmount')
            if paid > total:
                raise ValidationError('paidAmount cannot exceed totalAmount', code='PAID_EXCEEDS_TOTAL')

            due_date = invoice.due_date
            if 'due_date' in changes:
                due_date = _required_date(changes['due_date'], 'INVALID_DUE_DATE', 'dueDate')

            status = invoice.status
            if 'status' in changes:
                status = _coerce(changes['status'], InvoiceStatus, 'INVALID_STATUS', 'status')
            due, status = recompute_balances(total, paid, status)

            new_values = {
                'student_id': student_id,
                'academic_year_id': academic_year_id,
                'invoice_number': invoice_number,
                'total_amount': total,
                'paid_amount': paid,
                'due_amount': due,
                'due_date': due_date,
                'status': status.value,
            }
            changed = sorted(key for key, value in new_values.items() if getattr(invoice, key) != value)
            for key in changed:
                setattr(invoice, key, new_values[key])
            if changed:
                invoice.updated_at = self.now()
                self.store.save(invoice)

        if changed:
            logger.info("Invoice %s updated (%s): paid=%s due=%s status=%s",
                        invoice_id, ', '.join(changed), paid, due, status.value)
        return invoice

    def delete_invoice(self, invoice_id):
        """Delete an invoice with its installments and non-completed payments.

        Returns the deleted invoice as a dict.
        """
        with self.store.atomic():
            invoice = self._invoice_or_404(invoice_id, lock=True)
            payments = self.store.payments_for_invoice(invoice.id)
            if any(p.payment_status == PaymentStatus.COMPLETED.value for p in payments):
                raise StateError('Invoice has completed payments and cannot be deleted',
                                 code='INVOICE_HAS_COMPLETED_PAYMENTS')
            deleted = invoice.to_dict()
            installments = self.store.installments_for_invoice(invoice.id)
            for allocation in self.store.allocations_for_installments([i.id for i in installments]):
                self.store.delete(allocation)
            for installment in installments:
                self.store.delete(installment)
            for payment in payments:
                self.store.delete(payment)
            self.store.delete(invoice)

        logger.info("Invoice %s deleted with %d uncompleted payment(s)", deleted['invoiceNumber'], len(payments))
        return deleted

    # --- payments ---

    def apply_payment(self, invoice_id, amount, payment_method, payment_date, payment_status,
                      transaction_id=None, installment_id=None, allocate=True):
        """Record a payment; a completed one also moves the invoice balances.

        The payment row and the invoice update are written in the same atomic
        unit. ``installment_id`` names the installment a completed payment
        settles; without it, unpaid installments are settled in order. With
        ``allocate=False`` the payment is left for :meth:`settle_installment`.
        """
        if invoice_id is None:
            raise ValidationError('Invoice ID is required', code='MISSING_INVOICE_ID')
        amount = _positive(amount)
        method = _coerce(payment_method, PaymentMethod, 'INVALID_PAYMENT_METHOD', 'payment method')
        status = _coerce(payment_status, PaymentStatus, 'INVALID_PAYMENT_STATUS', 'payment status')
        payment_date = _required_date(payment_date, 'MISSING_PAYMENT_DATE', 'paymentDate')
        transaction_id = _clean_reference(transaction_id)
        if installment_id is not None and status is not PaymentStatus.COMPLETED:
            raise ValidationError('Only completed payments can settle an installment',
                                  code='INSTALLMENT_REQUIRES_COMPLETED_PAYMENT')
        if installment_id is not None and not allocate:
            raise ValidationError('installmentId cannot be combined with allocate=false',
                                  code='INVALID_ALLOCATE')

        with self.store.atomic():
            invoice = self._invoice_or_404(invoice_id, lock=True)
            self._check_transaction_id(transaction_id)
            payment = FeePayment(
                invoice_id=invoice.id,
                amount=amount,
                payment_method=method.value,
                payment_date=payment_date,
                payment_status=status.value,
                transaction_id=transaction_id,
                created_at=self.now(),
            )
            self.store.add(payment)
            if status is PaymentStatus.COMPLETED:
                self._apply_to_invoice(invoice, payment, installment_id, allocate)

        if status is PaymentStatus.COMPLETED:
            logger.info("Payment %s of %s applied to invoice %s: paid=%s due=%s status=%s",
                        payment.id, amount, invoice.invoice_number,
                        invoice.paid_amount, invoice.due_amount, invoice.status)
        else:
            logger.info("Payment %s of %s recorded as %s for invoice %s; balances unchanged",
                        payment.id, amount, status.value, invoice.invoice_number)
        return payment

    def _apply_to_invoice(self, invoice, payment, installment_id=None, allocate=True):
        amount = to_money(payment.amount)
        due = to_money(invoice.due_amount)
        if amount > due:
            logger.warning("Rejected payment of %s on invoice %s with %s due", amount, invoice.invoice_number, due)
            raise ValidationError(
                f'Amount paid ({amount:,.2f}) cannot exceed the remaining balance ({due:,.2f})',
                code='AMOUNT_EXCEEDS_DUE')
        paid = to_money(invoice.paid_amount) + amount
        due, status = recompute_balances(invoice.total_amount, paid)
        invoice.paid_amount = paid
        invoice.due_amount = due
        invoice.status = status.value
        invoice.updated_at = self.now()
        self.store.save(invoice)
        if allocate:
            self._allocate_to_installments(invoice, payment, installment_id)

    def _allocate_to_installments(self, invoice, payment, installment_id=None):
        installments = self.store.installments_for_invoice(invoice.id)
        if installment_id is not None:
            target = next((inst for inst in installments if inst.id == installment_id), None)
            if target is None:
                raise ValidationError('Installment does not belong to this invoice',
                                      code='INSTALLMENT_NOT_ON_INVOICE')
            self._settle(target, payment, to_money(payment.amount), invoice, installments)
            return

        remaining = to_money(payment.amount)
        for installment in installments:
            if remaining <= 0:
                break
            if installment.status == InstallmentStatus.PAID.value:
                continue
            share = min(remaining, to_money(installment.remaining()))
            if share <= 0:
                continue
            self._settle(installment, payment, share, invoice, installments)
            remaining -= share
        if installments and remaining > 0:
            logger.debug("Payment %s left %s unallocated to installments", payment.id, remaining)

    def get_payment(self, payment_id):
        payment = self.store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError('Fee payment not found', code='PAYMENT_NOT_FOUND')
        return payment

    def _payment_locked(self, payment_id):
        """Lock the payment's invoice, then the payment, and return the re-read payment."""
        payment = self.get_payment(payment_id)
        self._invoice_or_404(payment.invoice_id, lock=True)
        payment = self.store.get_payment(payment_id, lock=True)
        if payment is None:
            raise NotFoundError('Fee payment not found', code='PAYMENT_NOT_FOUND')
        return payment

    def list_payments(self, invoice_id=None, payment_method=None, payment_status=None, limit=None, offset=None):
        if payment_method is not None:
            payment_method = _coerce(payment_method, PaymentMethod, 'INVALID_PAYMENT_METHOD', 'payment method').value
        if payment_status is not None:
            payment_status = _coerce(payment_status, PaymentStatus, 'INVALID_PAYMENT_STATUS', 'payment status').value
        limit, offset = self._page(limit, offset)
        return self.store.list_payments(invoice_id=invoice_id, payment_method=payment_method,
                                        payment_status=payment_status, limit=limit, offset=offset)

    def update_payment(self, payment_id, **changes):
        """Edit a payment.

        Moving a pending payment to ``completed`` applies it to the invoice.
        A completed payment keeps its amount and status for good.
        """
        unknown = set(changes) - set(PAYMENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown payment fields: {', '.join(sorted(unknown))}", code='UNKNOWN_FIELD')

        with self.store.atomic():
            payment = self._payment_locked(payment_id)
            invoice = self.store.get_invoice(payment.invoice_id)
            was_completed = payment.payment_status == PaymentStatus.COMPLETED.value

            if 'amount' in changes:
                amount = _positive(changes['amount'])
                if was_completed and amount != to_money(payment.amount):
                    raise StateError('A completed payment cannot change its amount',
                                     code='PAYMENT_ALREADY_APPLIED')
                payment.amount = amount
            if 'payment_method' in changes:
                payment.payment_method = _coerce(changes['payment_method'], PaymentMethod,
                                                 'INVALID_PAYMENT_METHOD', 'payment method').value
            if 'payment_date' in changes:
                payment.payment_date = _required_date(changes['payment_date'], 'INVALID_PAYMENT_DATE', 'paymentDate')
            if 'transaction_id' in changes:
                transaction_id = _clean_reference(changes['transaction_id'])
                self._check_transaction_id(transaction_id, exclude_id=payment.id)
                payment.transaction_id = transaction_id

            applied = False
            if 'payment_status' in changes:
                status = _coerce(changes['payment_status'], PaymentStatus, 'INVALID_PAYMENT_STATUS', 'payment status')
                if status.value != payment.payment_status:
                    if was_completed:
                        raise StateError('A completed payment cannot change status',
                                         code='PAYMENT_ALREADY_APPLIED')
                    if payment.payment_status != PaymentStatus.PENDING.value:
                        raise StateError(f'A {payment.payment_status} payment cannot change status',
                                         code='PAYMENT_NOT_PENDING')
                    payment.payment_status = status.value
                    if status is PaymentStatus.COMPLETED:
                        self._apply_to_invoice(invoice, payment)
                        applied = True
            self.store.save(payment)

        if applied:
            logger.info("Payment %s completed and applied to invoice %s: paid=%s due=%s status=%s",
                        payment.id, invoice.invoice_number, invoice.paid_amount, invoice.due_amount, invoice.status)
        else:
            logger.info("Payment %s updated", payment_id)
        return payment

    def delete_payment(self, payment_id):
        with self.store.atomic():
            payment = self._payment_locked(payment_id)
            if payment.payment_status == PaymentStatus.COMPLETED.value:
                raise StateError('A completed payment cannot be deleted', code='PAYMENT_ALREADY_APPLIED')
            deleted = payment.to_dict()
            self.store.delete(payment)
        logger.info("Payment %s deleted", payment_id)
        return deleted

    # --- installments ---

    def generate_installments(self, invoice_id, count, first_due_date, interval_policy=IntervalPolicy.MONTHLY,
                              interval_days=None):
        """Split the invoice's current due amount into ``count`` installments."""
        if count is None or count < 1:
            raise ValidationError('count must be at least 1', code='INVALID_COUNT')
        policy = _coerce(interval_policy, IntervalPolicy, 'INVALID_INTERVAL_POLICY', 'interval policy')
        first_due_date = _required_date(first_due_date, 'MISSING_FIRST_DUE_DATE', 'firstDueDate')

        with self.store.atomic():
            invoice = self._invoice_or_404(invoice_id, lock=True)
            if self.store.installments_for_invoice(invoice.id):
                raise StateError('Installment plan already exists for this invoice', code='INSTALLMENT_PLAN_EXISTS')
            due = to_money(invoice.due_amount)
            if due <= 0:
                raise StateError('Invoice has nothing left to pay', code='INVOICE_ALREADY_PAID')

            amounts = split_amount(due, count, self.installment_unit)
            due_dates = installment_due_dates(first_due_date, count, policy, interval_days)
            now = self.now()
            installments = []
            for number, (amount, due_date) in enumerate(zip(amounts, due_dates), start=1):
                installment = PaymentInstallment(
                    invoice_id=invoice.id,
                    installment_number=number,
                    amount=amount,
                    due_date=due_date,
                    paid_amount=ZERO,
                    status=InstallmentStatus.PENDING.value,
                    payment_id=None,
                    created_at=now,
                )
                installments.append(self.store.add(installment))

            # Money already received is outside the plan
            for payment in self.store.payments_for_invoice(invoice.id):
                if payment.payment_status != PaymentStatus.COMPLETED.value:
                    continue
                outside = to_money(payment.amount) - self.store.allocated_from_payment(payment.id)
                if outside > 0:
                    self.store.add(InstallmentAllocation(
                        payment_id=payment.id, installment_id=None, amount=outside, created_at=now))

        logger.info("Invoice %s split into %d %s installment(s) of %s",
                    invoice.invoice_number, count, policy.value, ', '.join(str(a) for a in amounts))
        return installments

    def settle_installment(self, installment_id, payment_id, amount):
        """Credit ``amount`` of a completed payment to one installment."""
        amount = _positive(amount)
        with self.store.atomic():
            installment = self.store.get_installment(installment_id)
            if installment is None:
                raise NotFoundError('Installment not found', code='INSTALLMENT_NOT_FOUND')
            invoice = self._invoice_or_404(installment.invoice_id, lock=True)
            installment = self.store.get_installment(installment_id, lock=True)
            payment = self.store.get_payment(payment_id)
            if payment is None:
                raise NotFoundError('Fee payment not found', code='PAYMENT_NOT_FOUND', status_code=400)
            if payment.invoice_id != installment.invoice_id:
                raise ValidationError('Payment belongs to a different invoice', code='PAYMENT_INVOICE_MISMATCH')
            if payment.payment_status != PaymentStatus.COMPLETED.value:
                raise StateError('Only completed payments can settle an installment', code='PAYMENT_NOT_COMPLETED')
            siblings = self.store.installments_for_invoice(invoice.id)
            self._settle(installment, payment, amount, invoice, siblings)
        return installment

    def _settle(self, installment, payment, amount, invoice, siblings):
        if installment.status == InstallmentStatus.PAID.value:
            raise StateError('Installment is already paid', code='INSTALLMENT_ALREADY_PAID')
        remaining = to_money(installment.remaining())
        if amount <= 0:
            raise ValidationError('amount must be greater than zero', code='INVALID_AMOUNT')
        if amount > remaining:
            raise ValidationError(
                f'Amount ({amount:,.2f}) exceeds what is left on installment '
                f'{installment.installment_number} ({remaining:,.2f})',
                code='AMOUNT_EXCEEDS_INSTALLMENT')
        unallocated = to_money(payment.amount) - to_money(self.store.allocated_from_payment(payment.id))
        if amount > unallocated:
            logger.warning("Rejected crediting %s from payment %s with %s unallocated",
                           amount, payment.id, unallocated)
            raise ValidationError(
                f'Amount ({amount:,.2f}) exceeds what is left of payment {payment.id} ({unallocated:,.2f})',
                code='AMOUNT_EXCEEDS_PAYMENT')

        installment.paid_amount = to_money(installment.paid_amount) + amount
        installment.payment_id = payment.id
        if installment.paid_amount >= to_money(installment.amount):
            installment.status = InstallmentStatus.PAID.value
        self.store.save(installment)
        self.store.add(InstallmentAllocation(
            payment_id=payment.id, installment_id=installment.id, amount=amount, created_at=self.now()))
        logger.info("Installment %s of invoice %s credited %s from payment %s (%s)",
                    installment.installment_number, invoice.invoice_number, amount, payment.id, installment.status)
        self._refresh_invoice_status(invoice, siblings)

    def _refresh_invoice_status(self, invoice, installments):
        if not installments or any(i.status != InstallmentStatus.PAID.value for i in installments):
            return
        if to_money(invoice.due_amount) > 0:
            logger.warning("All installments of invoice %s are settled but %s is still due",
                           invoice.invoice_number, invoice.due_amount)
            return
        if invoice.status != InvoiceStatus.PAID.value:
            invoice.status = InvoiceStatus.PAID.value
            invoice.updated_at = self.now()
            self.store.save(invoice)

    def installment_summary(self, invoice_id):
        invoice = self._invoice_or_404(invoice_id)
        installments = self.store.installments_for_invoice(invoice.id)
        credits = {}
        for allocation in self.store.allocations_for_installments([i.id for i in installments]):
            credits.setdefault(allocation.installment_id, []).append(
                {'paymentId': allocation.payment_id, 'amount': float(allocation.amount)})
        rows = []
        for installment in installments:
            payment = self.store.get_payment(installment.payment_id) if installment.payment_id else None
            row = installment.to_dict(payment=payment)
            row['allocations'] = credits.get(installment.id, [])
            rows.append(row)

        open_statuses = (InstallmentStatus.PENDING.value, InstallmentStatus.OVERDUE.value)
        total_paid = sum((to_money(i.paid_amount) for i in installments), ZERO)
        total_pending = sum((to_money(i.remaining()) for i in installments), ZERO)
        return {
            'invoice': {
                'id': invoice.id,
                'invoiceNumber': invoice.invoice_number,
                'totalAmount': float(invoice.total_amount),
                'status': invoice.status,
            },
            'installments': rows,
            'summary': {
                'totalInstallments': len(installments),
                'paidInstallments': sum(1 for i in installments if i.status == InstallmentStatus.PAID.value),
                'pendingInstallments': sum(1 for i in installments if i.status in open_statuses),
                'totalPaid': float(total_paid),
                'totalPending': float(total_pending),
            },
        }

    # --- receipts ---

    def receipt_blockers(self, invoice_id):
        """Return ``(code, message)`` pairs for everything keeping the invoice from a receipt."""
        invoice = self._invoice_or_404(invoice_id)
        blockers = []
        if invoice.status != InvoiceStatus.PAID.value:
            blockers.append(('INVOICE_NOT_PAID', 'Invoice must be fully paid to generate a receipt'))
        incomplete = [p for p in self.store.payments_for_invoice(invoice.id)
                      if p.payment_status != PaymentStatus.COMPLETED.value]
        if incomplete:
            blockers.append(('INCOMPLETE_PAYMENTS',
                             f'All payments must be completed to generate a receipt ({len(incomplete)} are not)'))
        unpaid = [i for i in self.store.installments_for_invoice(invoice.id)
                  if i.status != InstallmentStatus.PAID.value]
        if unpaid:
            blockers.append(('UNPAID_INSTALLMENTS',
                             f'All installments must be paid to generate a receipt ({len(unpaid)} are not)'))
        return blockers

    def is_receipt_eligible(self, invoice_id):
        return not self.receipt_blockers(invoice_id)

    def build_receipt(self, invoice_id):
        """Collect what a receipt document is rendered from; the invoice must be eligible."""
        blockers = self.receipt_blockers(invoice_id)
        if blockers:
            code, message = blockers[0]
            raise StateError(message, code=code)
        invoice = self._invoice_or_404(invoice_id)
        return {
            'receiptNumber': f'RCPT-{invoice.invoice_number}',
            'invoice': invoice.to_dict(),
            'payments': [p.to_dict() for p in self.store.payments_for_invoice(invoice.id)],
            'installments': [i.to_dict() for i in self.store.installments_for_invoice(invoice.id)],
            'generatedAt': self.now().isoformat(),
        }

    # --- overdue sweep ---

    def mark_overdue(self, today=None):
        """Flag open invoices and unpaid installments whose due date has passed.

        Each row is re-read under its invoice's lock before it is flagged, so
        a payment committed since the candidates were listed is not overwritten.
        Returns ``(invoices_flagged, installments_flagged)``.
        """
        today = today or self.now().date()
        open_statuses = (InvoiceStatus.PENDING.value, InvoiceStatus.PARTIAL.value)
        flagged_invoices = flagged_installments = 0
        with self.store.atomic():
            now = self.now()
            for candidate in self.store.open_invoices_past_due(today):
                invoice = self.store.get_invoice(candidate.id, lock=True)
                if (invoice is None or invoice.status not in open_statuses
                        or invoice.due_date >= today or to_money(invoice.due_amount) <= 0):
                    continue
                invoice.status = InvoiceStatus.OVERDUE.value
                invoice.updated_at = now
                self.store.save(invoice)
                flagged_invoices += 1

            for candidate in self.store.unpaid_installments_past_due(today):
                if self.store.get_invoice(candidate.invoice_id, lock=True) is None:
                    continue
                installment = self.store.get_installment(candidate.id, lock=True)
                if (installment is None or installment.status != InstallmentStatus.PENDING.value
                        or installment.due_date >= today):
                    continue
                installment.status = InstallmentStatus.OVERDUE.value
                self.store.save(installment)
                flagged_installments += 1

        logger.info("Overdue sweep for %s: %d invoice(s), %d installment(s) flagged",
                    today.isoformat(), flagged_invoices, flagged_installments)
        return flagged_invoices, flagged_installments
