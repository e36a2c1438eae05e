import pytest

from app_models import FeeInvoice, db

INVOICE = {
    'studentId': 1,
    'invoiceNumber': 'INV-2025-001',
    'totalAmount': 1000,
    'dueAmount': 1000,
    'dueDate': '2025-04-30',
    'status': 'pending',
    'academicYearId': 1,
}


def create_invoice(client, **overrides):
    response = client.post('/api/invoices', json={**INVOICE, **overrides})
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def create_payment(client, invoice_id, amount, status='completed', **extra):
    body = {
        'invoiceId': invoice_id,
        'amount': amount,
        'paymentMethod': 'online',
        'paymentDate': '2025-03-01',
        'paymentStatus': status,
        **extra,
    }
    return client.post('/api/payments', json=body)


class TestInvoiceEndpoints:

    def test_create_invoice(self, client):
        invoice = create_invoice(client)
        assert invoice['id'] == 1
        assert invoice['status'] == 'pending'
        assert invoice['totalAmount'] == 1000.0
        assert invoice['dueAmount'] == 1000.0
        assert invoice['paidAmount'] == 0.0
        assert invoice['dueDate'] == '2025-04-30'

    def test_supplied_due_amount_is_ignored(self, client):
        invoice = create_invoice(client, totalAmount=800, paidAmount=300, dueAmount=1)
        assert invoice['dueAmount'] == 500.0
        assert invoice['status'] == 'partial'

    @pytest.mark.parametrize('body, code', [
        ({k: v for k, v in INVOICE.items() if k != 'studentId'}, 'MISSING_STUDENT_ID'),
        ({k: v for k, v in INVOICE.items() if k != 'dueDate'}, 'MISSING_DUE_DATE'),
        ({**INVOICE, 'totalAmount': -5}, 'INVALID_TOTAL_AMOUNT'),
        ({**INVOICE, 'totalAmount': 'lots'}, 'INVALID_TOTAL_AMOUNT'),
        ({**INVOICE, 'status': 'cancelled'}, 'INVALID_STATUS'),
        ({**INVOICE, 'dueDate': '30/04/2025'}, 'INVALID_DUE_DATE'),
        ({**INVOICE, 'studentId': 'one'}, 'INVALID_STUDENT_ID'),
        ({**INVOICE, 'discount': 10}, 'UNKNOWN_FIELD'),
        ({**INVOICE, 'totalAmount': [1000]}, 'INVALID_TOTAL_AMOUNT'),
    ])
    def test_create_validation(self, client, body, code):
        response = client.post('/api/invoices', json=body)
        assert response.status_code == 400
        assert response.get_json()['code'] == code

    def test_body_must_be_an_object(self, client):
        response = client.post('/api/invoices', json=[INVOICE])
        assert response.status_code == 400
        assert response.get_json()['code'] == 'INVALID_BODY'

    def test_references_must_exist(self, client):
        response = client.post('/api/invoices', json={**INVOICE, 'studentId': 42})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'STUDENT_NOT_FOUND'

        response = client.post('/api/invoices', json={**INVOICE, 'academicYearId': 42})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'ACADEMIC_YEAR_NOT_FOUND'

    def test_duplicate_invoice_number(self, client):
        create_invoice(client)
        response = client.post('/api/invoices', json=INVOICE)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'DUPLICATE_INVOICE_NUMBER'

    def test_get_update_delete(self, client):
        invoice = create_invoice(client)
        url = f"/api/invoices/{invoice['id']}"

        assert client.get(url).get_json()['invoiceNumber'] == 'INV-2025-001'

        response = client.put(url, json={'totalAmount': 1200, 'dueAmount': 3})
        assert response.status_code == 200
        assert response.get_json()['dueAmount'] == 1200.0

        response = client.delete(url)
        assert response.status_code == 200
        assert response.get_json()['invoiceNumber'] == 'INV-2025-001'
        assert client.get(url).status_code == 404

    def test_missing_invoice(self, client):
        for method in (client.get, client.put, client.delete):
            response = method('/api/invoices/999', json={})
            assert response.status_code == 404
            assert response.get_json()['code'] == 'INVOICE_NOT_FOUND'

    def test_list_filters_and_paging(self, client):
        first = create_invoice(client, invoiceNumber='INV-A')
        second = create_invoice(client, invoiceNumber='INV-B')
        create_payment(client, second['id'], 100)

        ids = [i['id'] for i in client.get('/api/invoices').get_json()]
        assert sorted(ids) == [first['id'], second['id']]
        partial = client.get('/api/invoices?status=partial').get_json()
        assert [i['invoiceNumber'] for i in partial] == ['INV-B']
        assert len(client.get('/api/invoices?limit=1').get_json()) == 1
        assert client.get('/api/invoices?studentId=2').get_json() == []
        assert len(client.get('/api/invoices?limit=500').get_json()) == 2

    @pytest.mark.parametrize('query, code', [
        ('limit=0', 'INVALID_LIMIT'),
        ('offset=-1', 'INVALID_OFFSET'),
        ('status=closed', 'INVALID_STATUS'),
        ('studentId=abc', 'INVALID_STUDENT_ID'),
    ])
    def test_list_validation(self, client, query, code):
        response = client.get(f'/api/invoices?{query}')
        assert response.status_code == 400
        assert response.get_json()['code'] == code


class TestPaymentEndpoints:

    def test_partial_then_full_payment(self, client):
        invoice = create_invoice(client)

        response = create_payment(client, invoice['id'], 400, transactionId='TXN-1')
        assert response.status_code == 201
        payment = response.get_json()
        assert payment['paymentStatus'] == 'completed'
        assert payment['transactionId'] == 'TXN-1'

        current = client.get(f"/api/invoices/{invoice['id']}").get_json()
        assert (current['paidAmount'], current['dueAmount'], current['status']) == (400.0, 600.0, 'partial')

        create_payment(client, invoice['id'], 600)
        current = client.get(f"/api/invoices/{invoice['id']}").get_json()
        assert (current['paidAmount'], current['dueAmount'], current['status']) == (1000.0, 0.0, 'paid')

    def test_pending_payment_is_recorded_only(self, client):
        invoice = create_invoice(client)
        response = create_payment(client, invoice['id'], 500, status='pending')
        assert response.status_code == 201
        current = client.get(f"/api/invoices/{invoice['id']}").get_json()
        assert current['paidAmount'] == 0.0
        assert current['status'] == 'pending'

    def test_overpayment_is_rejected_atomically(self, client, app):
        invoice = create_invoice(client)
        response = create_payment(client, invoice['id'], 1500)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'AMOUNT_EXCEEDS_DUE'
        assert client.get(f"/api/payments?invoiceId={invoice['id']}").get_json() == []
        assert db.session.get(FeeInvoice, invoice['id']).paid_amount == 0

    @pytest.mark.parametrize('overrides, code', [
        ({'amount': 0}, 'INVALID_AMOUNT'),
        ({'paymentMethod': 'barter'}, 'INVALID_PAYMENT_METHOD'),
        ({'paymentStatus': 'done'}, 'INVALID_PAYMENT_STATUS'),
        ({'paymentDate': None}, 'MISSING_PAYMENT_DATE'),
    ])
    def test_payment_validation(self, client, overrides, code):
        invoice = create_invoice(client)
        response = create_payment(client, invoice['id'], **{'amount': 100, **overrides})
        assert response.status_code == 400
        assert response.get_json()['code'] == code

    def test_payment_for_missing_invoice(self, client):
        response = create_payment(client, 999, 100)
        assert response.status_code == 404
        assert response.get_json()['code'] == 'INVOICE_NOT_FOUND'

    def test_duplicate_transaction_id(self, client):
        invoice = create_invoice(client)
        create_payment(client, invoice['id'], 100, transactionId='TXN-9')
        response = create_payment(client, invoice['id'], 100, transactionId='TXN-9')
        assert response.status_code == 400
        assert response.get_json()['code'] == 'DUPLICATE_TRANSACTION_ID'

    def test_confirm_pending_payment(self, client):
        invoice = create_invoice(client)
        payment = create_payment(client, invoice['id'], 250, status='pending').get_json()

        response = client.put(f"/api/payments/{payment['id']}", json={'paymentStatus': 'completed'})
        assert response.status_code == 200
        assert client.get(f"/api/invoices/{invoice['id']}").get_json()['paidAmount'] == 250.0

        response = client.put(f"/api/payments/{payment['id']}", json={'paymentStatus': 'refunded'})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'PAYMENT_ALREADY_APPLIED'

        response = client.delete(f"/api/payments/{payment['id']}")
        assert response.status_code == 400

    def test_failed_payment_cannot_be_revived(self, client):
        invoice = create_invoice(client)
        payment = create_payment(client, invoice['id'], 250, status='failed').get_json()

        response = client.put(f"/api/payments/{payment['id']}", json={'paymentStatus': 'completed'})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'PAYMENT_NOT_PENDING'
        assert client.get(f"/api/invoices/{invoice['id']}").get_json()['paidAmount'] == 0.0

    def test_get_list_and_delete_payment(self, client):
        invoice = create_invoice(client)
        payment = create_payment(client, invoice['id'], 100, status='pending').get_json()
        create_payment(client, invoice['id'], 100, status='completed')

        assert client.get(f"/api/payments/{payment['id']}").get_json()['amount'] == 100.0
        pending = client.get('/api/payments?paymentStatus=pending').get_json()
        assert [p['id'] for p in pending] == [payment['id']]

        assert client.delete(f"/api/payments/{payment['id']}").status_code == 200
        response = client.get(f"/api/payments/{payment['id']}")
        assert response.status_code == 404
        assert response.get_json()['code'] == 'PAYMENT_NOT_FOUND'


class TestInstallmentEndpoints:

    def test_generate_and_settle_in_order(self, client):
        invoice = create_invoice(client, totalAmount=999)
        url = f"/api/invoices/{invoice['id']}/installments"

        response = client.post(url, json={'count': 2, 'firstDueDate': '2025-04-01'})
        assert response.status_code == 201
        plan = response.get_json()
        assert [i['amount'] for i in plan] == [499.0, 500.0]
        assert [i['dueDate'] for i in plan] == ['2025-04-01', '2025-05-01']

        payment = create_payment(client, invoice['id'], 499, transactionId='TXN-EMI-1').get_json()

        summary = client.get(url).get_json()
        assert summary['invoice']['status'] == 'partial'
        first = summary['installments'][0]
        assert first['status'] == 'paid'
        assert first['payment'] == {'id': payment['id'], 'paymentDate': '2025-03-01', 'transactionId': 'TXN-EMI-1'}
        assert summary['summary']['pendingInstallments'] == 1
        assert summary['summary']['totalPending'] == 500.0

    def test_plan_twice_is_rejected(self, client):
        invoice = create_invoice(client)
        url = f"/api/invoices/{invoice['id']}/installments"
        client.post(url, json={'count': 2, 'firstDueDate': '2025-04-01', 'intervalPolicy': 'weekly'})
        response = client.post(url, json={'count': 3, 'firstDueDate': '2025-04-01'})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'INSTALLMENT_PLAN_EXISTS'

    @pytest.mark.parametrize('body, code', [
        ({'count': 0, 'firstDueDate': '2025-04-01'}, 'INVALID_COUNT'),
        ({'firstDueDate': '2025-04-01'}, 'MISSING_COUNT'),
        ({'count': 2, 'firstDueDate': '2025-04-01', 'intervalPolicy': 'yearly'}, 'INVALID_INTERVAL_POLICY'),
        ({'count': 2, 'firstDueDate': '2025-04-01', 'intervalPolicy': 'fixed_days'}, 'INVALID_INTERVAL_DAYS'),
    ])
    def test_plan_validation(self, client, body, code):
        invoice = create_invoice(client)
        response = client.post(f"/api/invoices/{invoice['id']}/installments", json=body)
        assert response.status_code == 400
        assert response.get_json()['code'] == code

    def test_settle_endpoint(self, client):
        invoice = create_invoice(client)
        plan = client.post(f"/api/invoices/{invoice['id']}/installments",
                           json={'count': 2, 'firstDueDate': '2025-04-01'}).get_json()
        payment = create_payment(client, invoice['id'], 600, allocate=False).get_json()
        summary = client.get(f"/api/invoices/{invoice['id']}/installments").get_json()
        assert summary['summary']['paidInstallments'] == 0

        url = f"/api/installments/{plan[0]['id']}/settle"
        response = client.post(url, json={'paymentId': payment['id'], 'amount': 200})
        assert response.status_code == 200
        assert response.get_json()['paidAmount'] == 200.0
        assert response.get_json()['paymentId'] == payment['id']

        response = client.post(url, json={'paymentId': payment['id'], 'amount': 500})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'AMOUNT_EXCEEDS_INSTALLMENT'

        url = f"/api/installments/{plan[1]['id']}/settle"
        response = client.post(url, json={'paymentId': payment['id'], 'amount': 450})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'AMOUNT_EXCEEDS_PAYMENT'

        response = client.post('/api/installments/999/settle', json={'paymentId': payment['id'], 'amount': 1})
        assert response.status_code == 404

    def test_payment_made_before_the_plan_cannot_settle_it(self, client):
        invoice = create_invoice(client)
        payment = create_payment(client, invoice['id'], 200).get_json()
        plan = client.post(f"/api/invoices/{invoice['id']}/installments",
                           json={'count': 2, 'firstDueDate': '2025-04-01'}).get_json()

        response = client.post(f"/api/installments/{plan[0]['id']}/settle",
                               json={'paymentId': payment['id'], 'amount': 200})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'AMOUNT_EXCEEDS_PAYMENT'


class TestReceiptEndpoints:

    def test_receipt_requires_full_payment(self, client):
        invoice = create_invoice(client)
        create_payment(client, invoice['id'], 400)

        eligibility = client.get(f"/api/invoices/{invoice['id']}/receipt-eligibility").get_json()
        assert eligibility['eligible'] is False
        assert [r['code'] for r in eligibility['reasons']] == ['INVOICE_NOT_PAID']

        response = client.post(f"/api/invoices/{invoice['id']}/receipt")
        assert response.status_code == 400
        assert response.get_json()['code'] == 'INVOICE_NOT_PAID'

        create_payment(client, invoice['id'], 600)
        eligibility = client.get(f"/api/invoices/{invoice['id']}/receipt-eligibility").get_json()
        assert eligibility == {'invoiceId': invoice['id'], 'eligible': True, 'reasons': []}

        receipt = client.post(f"/api/invoices/{invoice['id']}/receipt").get_json()
        assert receipt['receiptNumber'] == 'RCPT-INV-2025-001'
        assert len(receipt['payments']) == 2


class TestApplication:

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'
        assert response.get_json()['database'] == 'ok'

    def test_unknown_route_renders_json(self, client):
        response = client.get('/api/nowhere')
        assert response.status_code == 404
        assert response.get_json()['code'] == 'NOT_FOUND'

    def test_wrong_method_renders_json(self, client):
        response = client.patch('/api/invoices')
        assert response.status_code == 405
        assert response.get_json()['code'] == 'METHOD_NOT_ALLOWED'

    def test_security_headers(self, client):
        response = client.get('/health')
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'
        assert 'no-store' in response.headers['Cache-Control']

    def test_mark_overdue_command(self, app):
        client = app.test_client()
        create_invoice(client, dueDate='2025-01-31')
        create_invoice(client, invoiceNumber='INV-2025-002', dueDate='2025-06-30')

        result = app.test_cli_runner().invoke(args=['mark-overdue', '--today', '2025-03-01'])

        assert result.exit_code == 0, result.output
        assert 'Marked 1 invoice(s)' in result.output
        statuses = {i['invoiceNumber']: i['status'] for i in client.get('/api/invoices').get_json()}
        assert statuses == {'INV-2025-001': 'overdue', 'INV-2025-002': 'pending'}
