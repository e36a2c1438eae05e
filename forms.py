"""
Input forms for the JSON API.

Each operation validates its request body (or query string) with one form
before anything reaches the ledger. JSON bodies are turned into form data so
the usual WTForms coercion and validators apply; keys keep their camelCase
API names through ``name=``.
"""
import re
from decimal import Decimal

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DateField, DecimalField, IntegerField, SelectField, StringField
from wtforms.validators import InputRequired, Length, NumberRange, Optional

from app_models import IntervalPolicy, InvoiceStatus, PaymentMethod, PaymentStatus, enum_values
from errors import ValidationError

FALSE_VALUES = (False, 'false', 'False', '0', '')
DATE_FORMATS = ['%Y-%m-%d', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M:%SZ', '%Y-%m-%dT%H:%M:%S.%fZ']


def error_code_for(name):
    """``studentId`` -> ``STUDENT_ID``"""
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).upper()


class ApiForm(FlaskForm):
    class Meta:
        csrf = False

    supplied = frozenset()

    @classmethod
    def from_json(cls, payload):
        if not isinstance(payload, dict):
            raise ValidationError('Request body must be a JSON object', code='INVALID_BODY')
        formdata = MultiDict()
        for key, value in payload.items():
            if isinstance(value, (dict, list)):
                raise ValidationError(f'{key} must be a single value', code=f'INVALID_{error_code_for(key)}')
            formdata.add(key, '' if value is None else str(value))

        form = cls(formdata=formdata)
        unknown = sorted(set(payload) - {field.name for field in form})
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", code='UNKNOWN_FIELD')
        form.supplied = frozenset(payload)
        form.check()
        return form

    @classmethod
    def from_args(cls, args):
        form = cls(formdata=args)
        form.supplied = frozenset(key for key in args if args.get(key, '').strip())
        form.check()
        return form

    def check(self):
        if self.validate():
            return
        for field in self:
            if not field.errors:
                continue
            blank = not field.raw_data or not str(field.raw_data[0]).strip()
            if field.name in self.supplied and not blank:
                raise ValidationError(f'{field.name}: {field.errors[0]}', code=f'INVALID_{error_code_for(field.name)}')
            raise ValidationError(f'{field.name} is required', code=f'MISSING_{error_code_for(field.name)}')

    def cleaned(self):
        """Data of the supplied fields, keyed by attribute name."""
        return {attr: field.data for attr, field in self._fields.items() if field.name in self.supplied}


class InvoiceCreateForm(ApiForm):
    student_id = IntegerField('Student', [InputRequired()], name='studentId')
    invoice_number = StringField('Invoice number', [InputRequired(), Length(max=100)], name='invoiceNumber')
    total_amount = DecimalField('Total amount', [InputRequired(), NumberRange(min=0)], name='totalAmount')
    due_amount = DecimalField('Due amount', [Optional()], name='dueAmount')  # Recomputed server-side
    paid_amount = DecimalField('Paid amount', [Optional(), NumberRange(min=0)], name='paidAmount')
    due_date = DateField('Due date', [InputRequired()], format=DATE_FORMATS, name='dueDate')
    status = SelectField('Status', [InputRequired()], choices=enum_values(InvoiceStatus), name='status')
    academic_year_id = IntegerField('Academic year', [InputRequired()], name='academicYearId')


class InvoiceUpdateForm(ApiForm):
    student_id = IntegerField('Student', [Optional()], name='studentId')
    invoice_number = StringField('Invoice number', [Optional(), Length(max=100)], name='invoiceNumber')
    total_amount = DecimalField('Total amount', [Optional(), NumberRange(min=0)], name='totalAmount')
    due_amount = DecimalField('Due amount', [Optional()], name='dueAmount')  # Recomputed server-side
    paid_amount = DecimalField('Paid amount', [Optional(), NumberRange(min=0)], name='paidAmount')
    due_date = DateField('Due date', [Optional()], format=DATE_FORMATS, name='dueDate')
    status = SelectField('Status', [Optional()], choices=enum_values(InvoiceStatus), name='status')
    academic_year_id = IntegerField('Academic year', [Optional()], name='academicYearId')


class PaymentCreateForm(ApiForm):
    invoice_id = IntegerField('Invoice', [InputRequired()], name='invoiceId')
    amount = DecimalField('Amount', [InputRequired(), NumberRange(min=Decimal('0.01'))], name='amount')
    payment_method = SelectField('Payment method', [InputRequired()],
                                 choices=enum_values(PaymentMethod), name='paymentMethod')
    payment_date = DateField('Payment date', [InputRequired()], format=DATE_FORMATS, name='paymentDate')
    payment_status = SelectField('Payment status', [InputRequired()],
                                 choices=enum_values(PaymentStatus), name='paymentStatus')
    transaction_id = StringField('Transaction id', [Optional(), Length(max=100)], name='transactionId')
    installment_id = IntegerField('Installment', [Optional()], name='installmentId')
    allocate = BooleanField('Settle installments', [Optional()], false_values=FALSE_VALUES, name='allocate')


class PaymentUpdateForm(ApiForm):
    amount = DecimalField('Amount', [Optional(), NumberRange(min=Decimal('0.01'))], name='amount')
    payment_method = SelectField('Payment method', [Optional()],
                                 choices=enum_values(PaymentMethod), name='paymentMethod')
    payment_date = DateField('Payment date', [Optional()], format=DATE_FORMATS, name='paymentDate')
    payment_status = SelectField('Payment status', [Optional()],
                                 choices=enum_values(PaymentStatus), name='paymentStatus')
    transaction_id = StringField('Transaction id', [Optional(), Length(max=100)], name='transactionId')


class InstallmentPlanForm(ApiForm):
    count = IntegerField('Installments', [InputRequired(), NumberRange(min=1, max=120)], name='count')
    first_due_date = DateField('First due date', [InputRequired()], format=DATE_FORMATS, name='firstDueDate')
    interval_policy = SelectField('Interval', [Optional()], choices=enum_values(IntervalPolicy),
                                  default=IntervalPolicy.MONTHLY.value, name='intervalPolicy')
    interval_days = IntegerField('Interval days', [Optional(), NumberRange(min=1)], name='intervalDays')


class InstallmentSettleForm(ApiForm):
    payment_id = IntegerField('Payment', [InputRequired()], name='paymentId')
    amount = DecimalField('Amount', [InputRequired(), NumberRange(min=Decimal('0.01'))], name='amount')


class InvoiceFilterForm(ApiForm):
    student_id = IntegerField('Student', [Optional()], name='studentId')
    status = SelectField('Status', [Optional()], choices=enum_values(InvoiceStatus), name='status')
    academic_year_id = IntegerField('Academic year', [Optional()], name='academicYearId')
    limit = IntegerField('Limit', [Optional(), NumberRange(min=1)], name='limit')
    offset = IntegerField('Offset', [Optional(), NumberRange(min=0)], name='offset')


class PaymentFilterForm(ApiForm):
    invoice_id = IntegerField('Invoice', [Optional()], name='invoiceId')
    payment_method = SelectField('Payment method', [Optional()],
                                 choices=enum_values(PaymentMethod), name='paymentMethod')
    payment_status = SelectField('Payment status', [Optional()],
                                 choices=enum_values(PaymentStatus), name='paymentStatus')
    limit = IntegerField('Limit', [Optional(), NumberRange(min=1)], name='limit')
    offset = IntegerField('Offset', [Optional(), NumberRange(min=0)], name='offset')
