import pytest
from sqlalchemy import update

import billing
from conftest import principal_for
from errors import ValidationError, ConflictError, NotFoundError
from models import db, Invoice, Payment, Receipt, BankAccount, utcnow

SCALING = {'name': 'Scaling', 'cost': 1000.0, 'quantity': 1, 'hsn_sac': '999312', 'gst_rate': 18.0}


@pytest.fixture
def invoice(admin_principal, patient, doctor):
    return billing.create_invoice(admin_principal, {
        'patient_id': patient.id,
        'doctor_id': doctor.id,
        'services': [SCALING],
    })


def pay(principal, invoice, amount, method='UPI'):
    return billing.process_payment(principal, invoice.id, {'amount': amount, 'payment_method': method})


def test_intra_state_pricing_splits_gst():
    lines, totals = billing.price_services([SCALING, {'name': 'X-Ray', 'cost': 250.0, 'quantity': 2, 'gst_rate': 5}])

    assert [line.taxable_value for line in lines] == [1000.0, 500.0]
    assert lines[0].cgst == lines[0].sgst == 90.0
    assert lines[1].cgst == lines[1].sgst == 12.5
    assert totals == {'subtotal': 1500.0, 'taxable': 1500.0, 'cgst': 102.5, 'sgst': 102.5, 'igst': 0.0}


def test_inter_state_pricing_books_igst():
    lines, totals = billing.price_services([SCALING], is_intra_state=False)
    assert lines[0].igst == 180.0
    assert lines[0].cgst == lines[0].sgst == 0.0
    assert totals['igst'] == 180.0


def test_pricing_requires_services():
    with pytest.raises(ValidationError):
        billing.price_services([])


def test_discount_is_a_percentage(admin_principal, patient):
    invoice = billing.create_invoice(admin_principal, {
        'patient_id': patient.id, 'services': [SCALING], 'discount': 10,
    })
    assert invoice.subtotal == 1000.0
    assert invoice.total_taxable_value == 900.0
    assert invoice.total_gst == 162.0
    assert invoice.total == 1062.0


def test_invoice_numbers_are_per_clinic(admin_principal, make_clinic, make_user, make_patient, invoice):
    month = utcnow().strftime('%y%m')
    assert invoice.invoice_number == f"INV-{month}-0001"
    assert invoice.gst_number is not None

    other_clinic = make_clinic()
    other = principal_for(make_user('Admin', other_clinic))
    foreign = billing.create_invoice(other, {
        'patient_id': make_patient(other_clinic, email='x@example.com').id, 'services': [SCALING],
    })
    assert foreign.invoice_number == f"INV-{month}-0001"


def test_partial_then_full_payment(admin_principal, invoice):
    assert invoice.payment_status == 'Unpaid'
    assert invoice.total == 1180.0

    payment, updated, receipt = pay(admin_principal, invoice, 500)

    assert updated.payment_status == 'Partial'
    assert updated.paid_amount == 500.0
    assert updated.balance == 680.0
    assert payment.taxable_amount == pytest.approx(423.73)
    assert payment.total_gst == pytest.approx(76.27)
    assert receipt.payment_id == payment.id
    assert receipt.amount == 500.0

    _, updated, _ = pay(admin_principal, invoice, 680, method='Cash')

    assert updated.payment_status == 'Paid'
    assert updated.paid_amount == 1180.0
    assert updated.paid_date is not None


def test_payment_and_receipt_numbers(admin_principal, invoice):
    month = utcnow().strftime('%y%m')
    payment, _, receipt = pay(admin_principal, invoice, 100)
    assert payment.payment_number == f"PAY-{month}-0001"
    assert receipt.receipt_number == f"RCPT-{month}-0001"


def test_overpayment_is_rejected_without_side_effects(admin_principal, invoice):
    pay(admin_principal, invoice, 500)

    with pytest.raises(ValidationError) as exc:
        pay(admin_principal, invoice, 700)

    assert 'exceeds remaining balance (680.0)' in str(exc.value)
    assert Payment.query.count() == 1
    assert Receipt.query.count() == 1
    assert db.session.get(Invoice, invoice.id).paid_amount == 500.0


@pytest.mark.parametrize('attrs', [
    {'amount': 0, 'payment_method': 'Cash'},
    {'amount': -5, 'payment_method': 'Cash'},
    {'amount': 'lots', 'payment_method': 'Cash'},
    {'amount': 10, 'payment_method': 'Barter'},
])
def test_invalid_payments(admin_principal, invoice, attrs):
    with pytest.raises(ValidationError):
        billing.process_payment(admin_principal, invoice.id, attrs)
    assert Payment.query.count() == 0


def test_payment_loses_to_a_concurrent_payment(monkeypatch, admin_principal, invoice):
    def racing_clock():
        # another cashier commits between our read and our write
        db.session.execute(
            update(Invoice).where(Invoice.id == invoice.id).values(paid_amount=200.0, payment_status='Partial')
        )
        db.session.commit()
        return utcnow()

    monkeypatch.setattr(billing, 'utcnow', racing_clock)

    with pytest.raises(ConflictError) as exc:
        pay(admin_principal, invoice, 500)

    assert exc.value.status_code == 409
    assert Payment.query.count() == 0
    assert Receipt.query.count() == 0
    assert db.session.get(Invoice, invoice.id).paid_amount == 200.0


def test_payment_on_other_clinic_invoice(make_clinic, make_user, invoice):
    outsider = principal_for(make_user('Admin', make_clinic()))
    with pytest.raises(NotFoundError):
        pay(outsider, invoice, 10)


def test_pricing_frozen_after_payment(admin_principal, invoice):
    pay(admin_principal, invoice, 100)

    with pytest.raises(ConflictError):
        billing.update_invoice(admin_principal, invoice.id, {'discount': 50})
    with pytest.raises(ConflictError):
        billing.delete_invoice(admin_principal, invoice.id)

    updated = billing.update_invoice(admin_principal, invoice.id, {'notes': 'Second visit pending'})
    assert updated.notes == 'Second visit pending'


def test_update_reprices_unpaid_invoice(admin_principal, invoice):
    updated = billing.update_invoice(admin_principal, invoice.id, {'is_intra_state': False})
    assert updated.total_igst == 180.0
    assert updated.total_cgst == 0.0
    assert len(updated.services) == 1


def test_delete_unpaid_invoice(admin_principal, invoice):
    billing.delete_invoice(admin_principal, invoice.id)
    assert Invoice.query.count() == 0


def test_payments_are_append_only(admin_principal, invoice):
    payment, _, _ = pay(admin_principal, invoice, 100)

    payment.amount = 1
    with pytest.raises(ConflictError):
        db.session.commit()
    db.session.rollback()

    assert db.session.get(Payment, payment.id).amount == 100.0


def test_receipt_is_issued_lazily(admin_principal, admin, invoice):
    payment = Payment(
        clinic_id=invoice.clinic_id,
        payment_number='PAY-LEGACY-0001',
        invoice_id=invoice.id,
        patient_id=invoice.patient_id,
        amount=50.0,
        payment_method='Cash',
        received_by_id=admin.id,
    )
    db.session.add(payment)
    db.session.commit()

    first = billing.receipt_for_payment(admin_principal, payment.id)
    second = billing.receipt_for_payment(admin_principal, payment.id)

    assert first.id == second.id
    assert Receipt.query.filter_by(payment_id=payment.id).count() == 1


def test_gst_report_needs_paid_invoices(admin_principal, invoice):
    today = utcnow().date()
    with pytest.raises(NotFoundError):
        billing.generate_gst_report(admin_principal, today, today, 'Monthly')

    pay(admin_principal, invoice, 1180)
    report = billing.generate_gst_report(admin_principal, today, today, 'Monthly')

    assert report.summary['total_invoices'] == 1
    assert report.summary['total_cgst'] == 90.0
    assert report.summary['total_value'] == 1180.0
    assert report.rate_breakup == [
        {'rate': 18.0, 'taxable_value': 1000.0, 'cgst': 90.0, 'sgst': 90.0, 'igst': 0.0, 'total': 1180.0},
    ]
    assert report.invoice_ids == [invoice.id]

    with pytest.raises(ValidationError):
        billing.generate_gst_report(admin_principal, today, today, 'Weekly')


def test_patients_see_only_their_invoices(admin_principal, make_user, make_patient, clinic, invoice):
    login = make_user('Patient', clinic)
    mine = make_patient(clinic, user=login, email='me@example.com')
    own = billing.create_invoice(admin_principal, {'patient_id': mine.id, 'services': [SCALING]})
    me = principal_for(login)

    assert [i.id for i in billing.list_invoices(me)] == [own.id]
    with pytest.raises(NotFoundError):
        billing.get_invoice(me, invoice.id)


def test_single_default_bank_account(admin_principal):
    first = billing.add_bank_account(admin_principal, {
        'bank_name': 'State Bank', 'account_holder': 'Clinic', 'account_number': '111', 'ifsc_code': 'SBIN0000001',
    })
    second = billing.add_bank_account(admin_principal, {
        'bank_name': 'HDFC', 'account_holder': 'Clinic', 'account_number': '222',
    })
    assert db.session.get(BankAccount, first.id).is_default is True
    assert db.session.get(BankAccount, second.id).is_default is False

    billing.set_default_bank_account(admin_principal, second.id)

    defaults = [a.id for a in billing.list_bank_accounts(admin_principal) if a.is_default]
    assert defaults == [second.id]


def test_billing_stats(admin_principal, patient, invoice):
    billing.create_invoice(admin_principal, {'patient_id': patient.id, 'services': [SCALING]})
    pay(admin_principal, invoice, 1180)

    stats = billing.billing_stats(admin_principal)

    assert stats['total_invoices'] == 2
    assert stats['revenue'] == {'total': 2360.0, 'paid': 1180.0, 'pending': 1180.0}
    assert {row['status'] for row in stats['status_distribution']} == {'Paid', 'Unpaid'}
