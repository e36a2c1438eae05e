from flask import Blueprint, current_app, g, jsonify, request

from app_models import db
from forms import (
    InstallmentPlanForm,
    InstallmentSettleForm,
    InvoiceCreateForm,
    InvoiceFilterForm,
    InvoiceUpdateForm,
    PaymentCreateForm,
    PaymentFilterForm,
    PaymentUpdateForm,
)
from ledger import InvoiceLedger
from ledger_store import SQLAlchemyLedgerStore

fee_api = Blueprint('fee_api', __name__, url_prefix='/api')


def get_ledger():
    """Ledger bound to the current request's database session."""
    if 'ledger' not in g:
        g.ledger = InvoiceLedger(
            SQLAlchemyLedgerStore(db.session),
            installment_unit=current_app.config['LEDGER_INSTALLMENT_UNIT'],
            page_size=current_app.config['LEDGER_PAGE_SIZE'],
            max_page_size=current_app.config['LEDGER_MAX_PAGE_SIZE'],
        )
    return g.ledger


def _json_body():
    return request.get_json(silent=True)


# Invoices
@fee_api.route('/invoices', methods=['GET'])
def list_invoices():
    filters = InvoiceFilterForm.from_args(request.args).cleaned()
    invoices = get_ledger().list_invoices(**filters)
    return jsonify([invoice.to_dict() for invoice in invoices])


@fee_api.route('/invoices', methods=['POST'])
def create_invoice():
    data = InvoiceCreateForm.from_json(_json_body()).cleaned()
    data.pop('due_amount', None)
    invoice = get_ledger().create_invoice(**data)
    return jsonify(invoice.to_dict()), 201


@fee_api.route('/invoices/<int:invoice_id>', methods=['GET'])
def get_invoice(invoice_id):
    return jsonify(get_ledger().get_invoice(invoice_id).to_dict())


@fee_api.route('/invoices/<int:invoice_id>', methods=['PUT'])
def update_invoice(invoice_id):
    changes = InvoiceUpdateForm.from_json(_json_body()).cleaned()
    invoice = get_ledger().update_invoice(invoice_id, **changes)
    return jsonify(invoice.to_dict())


@fee_api.route('/invoices/<int:invoice_id>', methods=['DELETE'])
def delete_invoice(invoice_id):
    return jsonify(get_ledger().delete_invoice(invoice_id))


@fee_api.route('/invoices/<int:invoice_id>/installments', methods=['GET'])
def list_installments(invoice_id):
    return jsonify(get_ledger().installment_summary(invoice_id))


@fee_api.route('/invoices/<int:invoice_id>/installments', methods=['POST'])
def generate_installments(invoice_id):
    plan = InstallmentPlanForm.from_json(_json_body()).cleaned()
    installments = get_ledger().generate_installments(invoice_id, **plan)
    return jsonify([installment.to_dict() for installment in installments]), 201


@fee_api.route('/invoices/<int:invoice_id>/receipt-eligibility', methods=['GET'])
def receipt_eligibility(invoice_id):
    blockers = get_ledger().receipt_blockers(invoice_id)
    return jsonify({
        'invoiceId': invoice_id,
        'eligible': not blockers,
        'reasons': [{'code': code, 'message': message} for code, message in blockers],
    })


@fee_api.route('/invoices/<int:invoice_id>/receipt', methods=['POST'])
def generate_receipt(invoice_id):
    return jsonify(get_ledger().build_receipt(invoice_id))


# Payments
@fee_api.route('/payments', methods=['GET'])
def list_payments():
    filters = PaymentFilterForm.from_args(request.args).cleaned()
    payments = get_ledger().list_payments(**filters)
    return jsonify([payment.to_dict() for payment in payments])


@fee_api.route('/payments', methods=['POST'])
def create_payment():
    data = PaymentCreateForm.from_json(_json_body()).cleaned()
    payment = get_ledger().apply_payment(**data)
    return jsonify(payment.to_dict()), 201


@fee_api.route('/payments/<int:payment_id>', methods=['GET'])
def get_payment(payment_id):
    return jsonify(get_ledger().get_payment(payment_id).to_dict())


@fee_api.route('/payments/<int:payment_id>', methods=['PUT'])
def update_payment(payment_id):
    changes = PaymentUpdateForm.from_json(_json_body()).cleaned()
    payment = get_ledger().update_payment(payment_id, **changes)
    return jsonify(payment.to_dict())


@fee_api.route('/payments/<int:payment_id>', methods=['DELETE'])
def delete_payment(payment_id):
    return jsonify(get_ledger().delete_payment(payment_id))


# Installments
@fee_api.route('/installments/<int:installment_id>/settle', methods=['POST'])
def settle_installment(installment_id):
    data = InstallmentSettleForm.from_json(_json_body()).cleaned()
    installment = get_ledger().settle_installment(installment_id, **data)
    return jsonify(installment.to_dict())
