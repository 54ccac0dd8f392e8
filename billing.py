"""Invoices, payments, receipts and GST reporting."""

from collections import defaultdict

from sqlalchemy import select, update, case

import notifications
from errors import ValidationError, ConflictError, NotFoundError
from logs import get_logger
from models import (
    db, Invoice, InvoiceService, Payment, Receipt, GstReport, BankAccount, Clinic, Patient,
    User, Appointment, get_for_clinic, format_document_number, range_start, range_end, utcnow,
    payment_methods, gst_report_types,
)
from scheduling import own_patient_ids

logger = get_logger(__name__)

DEFAULT_GST_RATE = 18.0
REPORTABLE_STATUSES = ('Paid', 'Partial')


def _money(value):
    return round(float(value or 0), 2)


def _clinic(principal):
    clinic = db.session.get(Clinic, principal.clinic_id)
    if clinic is None:
        raise NotFoundError('Clinic not found')
    return clinic


def _restrict_to_own(principal, query, patient_column):
    if principal.is_patient:
        query = query.filter(patient_column.in_(own_patient_ids(principal)))
    return query


def _check_own(principal, patient_id, label):
    if principal.is_patient and patient_id not in own_patient_ids(principal):
        raise NotFoundError(f"{label} not found")


def price_services(services, discount=0.0, is_intra_state=True):
    """Build priced ``InvoiceService`` rows and the invoice-level tax totals.

    ``discount`` is a percentage that scales every line's taxable value.
    Intra-state supplies split GST into equal CGST/SGST halves; inter-state
    supplies book it all as IGST.
    """
    if not services:
        raise ValidationError('At least one service is required')
    factor = 1 - (discount or 0) / 100.0

    lines = []
    totals = {'subtotal': 0.0, 'taxable': 0.0, 'cgst': 0.0, 'sgst': 0.0, 'igst': 0.0}
    for service in services:
        if service.get('cost') is None:
            raise ValidationError('Service cost is required')
        quantity = int(service.get('quantity') or 1)
        rate = service.get('gst_rate')
        rate = DEFAULT_GST_RATE if rate is None else float(rate)
        line = InvoiceService(
            name=service.get('name'),
            cost=float(service['cost']),
            quantity=quantity,
            hsn_sac=service.get('hsn_sac'),
            gst_rate=rate,
        )
        gross = line.cost * line.quantity
        taxable = _money(gross * factor)
        gst = taxable * rate / 100.0
        line.taxable_value = taxable
        if is_intra_state:
            line.cgst = _money(gst / 2)
            line.sgst = _money(gst / 2)
            line.igst = 0.0
        else:
            line.cgst = line.sgst = 0.0
            line.igst = _money(gst)
        lines.append(line)

        totals['subtotal'] += gross
        totals['taxable'] += taxable
        totals['cgst'] += line.cgst
        totals['sgst'] += line.sgst
        totals['igst'] += line.igst

    return lines, {key: _money(value) for key, value in totals.items()}


def _apply_pricing(invoice, services):
    lines, totals = price_services(services, invoice.discount, invoice.is_intra_state)
    invoice.services = lines
    invoice.subtotal = totals['subtotal']
    invoice.total_taxable_value = totals['taxable']
    invoice.total_cgst = totals['cgst']
    invoice.total_sgst = totals['sgst']
    invoice.total_igst = totals['igst']
    invoice.total_gst = _money(totals['cgst'] + totals['sgst'] + totals['igst'])
    invoice.total = _money(invoice.total_taxable_value + invoice.total_gst)


def get_invoice(principal, invoice_id):
    invoice = get_for_clinic(Invoice, principal.clinic_id, invoice_id, 'Invoice')
    _check_own(principal, invoice.patient_id, 'Invoice')
    return invoice


def create_invoice(principal, attrs):
    if not attrs.get('patient_id'):
        raise ValidationError('patient_id is required')
    clinic = _clinic(principal)
    patient = get_for_clinic(Patient, principal.clinic_id, attrs['patient_id'], 'Patient')
    if attrs.get('doctor_id'):
        get_for_clinic(User, principal.clinic_id, attrs['doctor_id'], 'Doctor')
    if attrs.get('appointment_id'):
        get_for_clinic(Appointment, principal.clinic_id, attrs['appointment_id'], 'Appointment')

    invoice = Invoice(
        clinic_id=principal.clinic_id,
        patient_id=patient.id,
        doctor_id=attrs.get('doctor_id'),
        appointment_id=attrs.get('appointment_id'),
        discount=float(attrs.get('discount') or 0),
        is_intra_state=attrs.get('is_intra_state', True),
        place_of_supply=attrs.get('place_of_supply'),
        gst_number=clinic.gst_number,
        notes=attrs.get('notes'),
        created_by_id=principal.actor_id,
    )
    _apply_pricing(invoice, attrs.get('services') or [])
    invoice.invoice_number = format_document_number('INV', principal.clinic_id)
    db.session.add(invoice)
    db.session.commit()

    logger.info('invoice_created', invoice_id=invoice.id, invoice_number=invoice.invoice_number, total=invoice.total)
    return invoice


def update_invoice(principal, invoice_id, attrs):
    invoice = get_invoice(principal, invoice_id)
    pricing_changed = any(key in attrs for key in ('services', 'discount', 'is_intra_state'))
    if pricing_changed and invoice.payment_status != 'Unpaid':
        raise ConflictError('Services and discounts can only change while the invoice is unpaid')

    if 'discount' in attrs and attrs['discount'] is not None:
        invoice.discount = float(attrs['discount'])
    if 'is_intra_state' in attrs and attrs['is_intra_state'] is not None:
        invoice.is_intra_state = bool(attrs['is_intra_state'])
    for key in ('notes', 'place_of_supply'):
        if key in attrs:
            setattr(invoice, key, attrs[key])

    if pricing_changed:
        services = attrs.get('services')
        if services is None:
            services = [
                {'name': s.name, 'cost': s.cost, 'quantity': s.quantity, 'hsn_sac': s.hsn_sac, 'gst_rate': s.gst_rate}
                for s in invoice.services
            ]
        _apply_pricing(invoice, services)

    db.session.commit()
    return invoice


def delete_invoice(principal, invoice_id):
    invoice = get_invoice(principal, invoice_id)
    if invoice.payment_status != 'Unpaid' or invoice.payments:
        raise ConflictError('Only unpaid invoices without payments can be deleted')
    db.session.delete(invoice)
    db.session.commit()


def list_invoices(principal, patient_id=None, status=None, start_date=None, end_date=None):
    query = Invoice.query.filter(Invoice.clinic_id == principal.clinic_id)
    query = _restrict_to_own(principal, query, Invoice.patient_id)
    if patient_id:
        query = query.filter(Invoice.patient_id == patient_id)
    if status:
        query = query.filter(Invoice.payment_status == status)
    if start_date:
        query = query.filter(Invoice.created_at >= range_start(start_date))
    if end_date:
        query = query.filter(Invoice.created_at <= range_end(end_date))
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc())


def _prorated_gst(invoice, amount):
    ratio = amount / invoice.total if invoice.total else 0
    return {
        'taxable_amount': _money(invoice.total_taxable_value * ratio),
        'cgst': _money(invoice.total_cgst * ratio),
        'sgst': _money(invoice.total_sgst * ratio),
        'igst': _money(invoice.total_igst * ratio),
        'total_gst': _money(invoice.total_gst * ratio),
    }


def _new_receipt(payment):
    return Receipt(
        clinic_id=payment.clinic_id,
        receipt_number=format_document_number('RCPT', payment.clinic_id),
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        patient_id=payment.patient_id,
        amount=payment.amount,
        payment_method=payment.payment_method,
        payment_date=payment.created_at or utcnow(),
        notes=payment.notes,
        **payment.gst_details(),
    )


def process_payment(principal, invoice_id, attrs):
    """Apply a payment to an invoice and issue its receipt.

    ``paid_amount`` moves with a compare-and-set UPDATE keyed on the value
    read at the start, so two concurrent payments cannot both spend the same
    balance. The loser gets a ``ConflictError`` and nothing is written.
    """
    try:
        amount = _money(attrs.get('amount'))
    except (TypeError, ValueError):
        raise ValidationError('Valid payment amount is required')
    if amount <= 0:
        raise ValidationError('Valid payment amount is required')
    method = attrs.get('payment_method')
    if method not in payment_methods:
        raise ValidationError(f"Payment method must be one of {payment_methods}")

    invoice = db.session.execute(
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.clinic_id == principal.clinic_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if invoice is None:
        raise NotFoundError('Invoice not found')
    _check_own(principal, invoice.patient_id, 'Invoice')

    observed = invoice.paid_amount
    remaining = _money(invoice.total - observed)
    if amount > remaining:
        raise ValidationError(f"Payment amount ({amount}) exceeds remaining balance ({remaining})")

    now = utcnow()
    new_paid = _money(observed + amount)
    status = Invoice.status_for(new_paid, invoice.total)
    result = db.session.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.paid_amount == observed)
        .values(paid_amount=new_paid, payment_status=status, paid_date=now if status == 'Paid' else None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise ConflictError('Invoice was updated by another payment; retry')

    try:
        payment = Payment(
            clinic_id=principal.clinic_id,
            payment_number=format_document_number('PAY', principal.clinic_id, now),
            invoice_id=invoice.id,
            patient_id=invoice.patient_id,
            doctor_id=invoice.doctor_id,
            amount=amount,
            payment_method=method,
            transaction_id=attrs.get('transaction_id'),
            upi_id=attrs.get('upi_id'),
            cheque_number=attrs.get('cheque_number'),
            bank_name=attrs.get('bank_name'),
            notes=attrs.get('notes'),
            received_by_id=principal.actor_id,
            created_at=now,
            **_prorated_gst(invoice, amount),
        )
        db.session.add(payment)
        db.session.flush()
        receipt = _new_receipt(payment)
        db.session.add(receipt)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('payment_applied', invoice_id=invoice.id, payment_id=payment.id, amount=amount, status=status)
    patient = db.session.get(Patient, payment.patient_id)
    notifications.dispatch(
        patient.email if patient else None,
        'Payment received',
        f"We received {amount:,.2f} against invoice {invoice.invoice_number}. Receipt {receipt.receipt_number}.",
    )
    return payment, invoice, receipt


def get_payment(principal, payment_id):
    payment = get_for_clinic(Payment, principal.clinic_id, payment_id, 'Payment')
    _check_own(principal, payment.patient_id, 'Payment')
    return payment


def list_payments(principal, patient_id=None, invoice_id=None, method=None, status=None,
                  start_date=None, end_date=None):
    query = Payment.query.filter(Payment.clinic_id == principal.clinic_id)
    query = _restrict_to_own(principal, query, Payment.patient_id)
    if patient_id:
        query = query.filter(Payment.patient_id == patient_id)
    if invoice_id:
        query = query.filter(Payment.invoice_id == invoice_id)
    if method:
        query = query.filter(Payment.payment_method == method)
    if status:
        query = query.filter(Payment.status == status)
    if start_date:
        query = query.filter(Payment.created_at >= range_start(start_date))
    if end_date:
        query = query.filter(Payment.created_at <= range_end(end_date))
    return query.order_by(Payment.created_at.desc(), Payment.id.desc())


def receipt_for_payment(principal, payment_id):
    """Return the payment's receipt, issuing it if it is missing."""
    payment = get_payment(principal, payment_id)
    receipt = Receipt.query.filter_by(payment_id=payment.id).first()
    if receipt is None:
        receipt = _new_receipt(payment)
        db.session.add(receipt)
        db.session.commit()
        logger.info('receipt_issued_lazily', payment_id=payment.id, receipt_id=receipt.id)
    return receipt


def list_receipts(principal, patient_id=None, method=None, start_date=None, end_date=None):
    query = Receipt.query.filter(Receipt.clinic_id == principal.clinic_id)
    query = _restrict_to_own(principal, query, Receipt.patient_id)
    if patient_id:
        query = query.filter(Receipt.patient_id == patient_id)
    if method:
        query = query.filter(Receipt.payment_method == method)
    if start_date:
        query = query.filter(Receipt.payment_date >= range_start(start_date))
    if end_date:
        query = query.filter(Receipt.payment_date <= range_end(end_date))
    return query.order_by(Receipt.payment_date.desc(), Receipt.id.desc())


def generate_gst_report(principal, start_date, end_date, report_type):
    if not start_date or not end_date:
        raise ValidationError('start_date and end_date are required')
    if report_type not in gst_report_types:
        raise ValidationError(f"Report type must be one of {gst_report_types}")
    start, end = range_start(start_date), range_end(end_date)
    if start > end:
        raise ValidationError('start_date must not be after end_date')
    clinic = _clinic(principal)

    invoices = Invoice.query.filter(
        Invoice.clinic_id == principal.clinic_id,
        Invoice.payment_status.in_(REPORTABLE_STATUSES),
        Invoice.created_at >= start,
        Invoice.created_at <= end,
    ).order_by(Invoice.id.asc()).all()
    if not invoices:
        raise NotFoundError('No invoices found for the specified period')

    summary = defaultdict(float)
    rates = {}
    for invoice in invoices:
        summary['total_taxable_value'] += invoice.total_taxable_value
        summary['total_cgst'] += invoice.total_cgst
        summary['total_sgst'] += invoice.total_sgst
        summary['total_igst'] += invoice.total_igst
        summary['total_gst'] += invoice.total_gst
        summary['total_value'] += invoice.total
        for service in invoice.services:
            row = rates.setdefault(service.gst_rate, {
                'rate': service.gst_rate, 'taxable_value': 0.0, 'cgst': 0.0, 'sgst': 0.0, 'igst': 0.0, 'total': 0.0,
            })
            row['taxable_value'] += service.taxable_value
            row['cgst'] += service.cgst
            row['sgst'] += service.sgst
            row['igst'] += service.igst
            row['total'] += service.taxable_value + service.cgst + service.sgst + service.igst

    report = GstReport(
        clinic_id=principal.clinic_id,
        report_type=report_type,
        start_date=start,
        end_date=end,
        gst_number=clinic.gst_number,
        summary={'total_invoices': len(invoices), **{key: _money(value) for key, value in summary.items()}},
        rate_breakup=[
            {key: (_money(value) if key != 'rate' else value) for key, value in row.items()}
            for _, row in sorted(rates.items())
        ],
        invoice_ids=[invoice.id for invoice in invoices],
        generated_by_id=principal.actor_id,
    )
    db.session.add(report)
    db.session.commit()
    logger.info('gst_report_generated', report_id=report.id, invoices=len(invoices))
    return report


def list_gst_reports(principal, report_type=None):
    query = GstReport.query.filter(GstReport.clinic_id == principal.clinic_id)
    if report_type:
        query = query.filter(GstReport.report_type == report_type)
    return query.order_by(GstReport.created_at.desc(), GstReport.id.desc())


def billing_stats(principal, start_date=None, end_date=None):
    invoices = list_invoices(principal, start_date=start_date, end_date=end_date).all()

    status_rows = defaultdict(lambda: {'count': 0, 'amount': 0.0})
    monthly = defaultdict(lambda: {'total': 0.0, 'paid': 0.0, 'count': 0})
    for invoice in invoices:
        status_rows[invoice.payment_status]['count'] += 1
        status_rows[invoice.payment_status]['amount'] += invoice.total
        bucket = monthly[(invoice.created_at.year, invoice.created_at.month)]
        bucket['total'] += invoice.total
        bucket['paid'] += invoice.paid_amount
        bucket['count'] += 1

    total = sum(invoice.total for invoice in invoices)
    paid = sum(invoice.paid_amount for invoice in invoices)
    return {
        'total_invoices': len(invoices),
        'revenue': {'total': _money(total), 'paid': _money(paid), 'pending': _money(total - paid)},
        'status_distribution': sorted(
            ({'status': status, 'count': row['count'], 'amount': _money(row['amount'])}
             for status, row in status_rows.items()),
            key=lambda row: (-row['count'], row['status']),
        ),
        'monthly_trend': [
            {'year': year, 'month': month, 'total': _money(row['total']), 'paid': _money(row['paid']),
             'count': row['count']}
            for (year, month), row in sorted(monthly.items())
        ],
    }


def add_bank_account(principal, attrs):
    has_accounts = BankAccount.query.filter_by(clinic_id=principal.clinic_id).count() > 0
    account = BankAccount(
        clinic_id=principal.clinic_id,
        bank_name=attrs.get('bank_name'),
        account_holder=attrs.get('account_holder'),
        account_number=attrs.get('account_number'),
        ifsc_code=attrs.get('ifsc_code'),
        is_default=False,
    )
    db.session.add(account)
    db.session.flush()
    if attrs.get('is_default') or not has_accounts:
        _make_default(principal.clinic_id, account.id)
    db.session.commit()
    return account


def _make_default(clinic_id, account_id):
    db.session.execute(
        update(BankAccount)
        .where(BankAccount.clinic_id == clinic_id)
        .values(is_default=case((BankAccount.id == account_id, True), else_=False))
        .execution_options(synchronize_session=False)
    )


def set_default_bank_account(principal, account_id):
    """Flip the clinic's default account in one UPDATE."""
    account = get_for_clinic(BankAccount, principal.clinic_id, account_id, 'Bank account')
    _make_default(principal.clinic_id, account.id)
    db.session.commit()
    return account


def list_bank_accounts(principal):
    return (
        BankAccount.query.filter_by(clinic_id=principal.clinic_id)
        .order_by(BankAccount.is_default.desc(), BankAccount.id.asc())
    )


def payment_to_dict(payment):
    data = payment.to_dict()
    receipt = Receipt.query.filter_by(payment_id=payment.id).first()
    data['receipt_number'] = receipt.receipt_number if receipt else None
    return data
