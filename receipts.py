import re
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer


def receipt_filename(receipt):
    patient = receipt.patient
    first_name = (patient.first_name if patient else None) or 'Patient'
    last_name = (patient.last_name if patient else None) or ''
    safe_first = re.sub(r'[^A-Za-z0-9]+', '_', first_name)
    safe_last = re.sub(r'[^A-Za-z0-9]+', '_', last_name)
    return f"{safe_first}_{safe_last}_{receipt.receipt_number}.pdf"


def render_receipt_pdf(receipt, clinic):
    """Render a payment receipt as PDF bytes."""
    payment = receipt.payment
    invoice = receipt.invoice
    patient = receipt.patient

    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4)
    elements = []

    styles = getSampleStyleSheet()
    normal = styles['Normal']

    # Header
    elements.append(Paragraph(clinic.name.upper(), styles['Title']))
    if clinic.gst_number:
        elements.append(Paragraph(f"GSTIN: {clinic.gst_number}", normal))
    elements.append(Paragraph("PAYMENT RECEIPT", styles['Heading2']))
    elements.append(Spacer(1, 20))

    info = [
        f"Receipt No: {receipt.receipt_number}",
        f"Payment No: {payment.payment_number}",
        f"Invoice No: {invoice.invoice_number}",
        f"Patient: {patient.full_name}",
        f"Payment Method: {receipt.payment_method}",
        f"Date: {receipt.payment_date.strftime('%Y-%m-%d %H:%M')} UTC",
    ]
    if payment.transaction_id:
        info.append(f"Transaction ID: {payment.transaction_id}")
    if payment.cheque_number:
        info.append(f"Cheque No: {payment.cheque_number}")

    for line in info:
        elements.append(Paragraph(line, normal))
    elements.append(Spacer(1, 15))

    service_data = [["Service", "Qty", "Taxable", "GST %", "Amount"]]
    for service in invoice.services:
        gst = service.cgst + service.sgst + service.igst
        service_data.append([
            Paragraph(service.name, normal),
            service.quantity,
            f"{service.taxable_value:,.2f}",
            f"{service.gst_rate:g}",
            f"{service.taxable_value + gst:,.2f}",
        ])

    table = Table(service_data, colWidths=[200, 40, 90, 50, 90])
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("ALIGN", (1, 1), (-1, -1), "CENTER"),
        ("ALIGN", (0, 0), (0, -1), "LEFT"),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 12),
        ("GRID", (0, 0), (-1, -1), 1, colors.black),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 15))

    # GST share of this payment
    tax_rows = [["Taxable", "CGST", "SGST", "IGST", "Total GST"]]
    tax_rows.append([f"{receipt.taxable_amount:,.2f}", f"{receipt.cgst:,.2f}", f"{receipt.sgst:,.2f}",
                     f"{receipt.igst:,.2f}", f"{receipt.total_gst:,.2f}"])
    tax_table = Table(tax_rows, colWidths=[94] * 5)
    tax_table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
    ]))
    elements.append(tax_table)
    elements.append(Spacer(1, 15))

    elements.append(Paragraph(f"<b>Invoice Total: {invoice.total:,.2f}</b>", styles['Heading3']))
    elements.append(Paragraph(f"<b>Paid Now: {receipt.amount:,.2f}</b>", styles['Heading3']))
    elements.append(Paragraph(f"<b>Balance: {invoice.balance:,.2f}</b>", styles['Heading3']))
    elements.append(Spacer(1, 20))

    elements.append(Paragraph("Thank you for your payment.", styles['Italic']))
    elements.append(Paragraph(f"This is a system-generated receipt from {clinic.name}.", styles['Italic']))

    doc.build(elements)
    return buffer.getvalue()
