"""Request payload and query-string schemas."""

from marshmallow import Schema, fields, validate, validates_schema, EXCLUDE, ValidationError

from models import (
    roles, genders, transaction_types, procedure_categories, procedure_statuses,
    appointment_statuses, appointment_priorities, invoice_statuses, payment_methods, gst_report_types,
)


class BaseSchema(Schema):
    class Meta:
        unknown = EXCLUDE


class PageSchema(BaseSchema):
    page = fields.Integer(load_default=None, validate=validate.Range(min=1))
    limit = fields.Integer(load_default=None, validate=validate.Range(min=1))


class DateRangeSchema(PageSchema):
    start_date = fields.Date(load_default=None)
    end_date = fields.Date(load_default=None)

    @validates_schema
    def validate_range(self, data, **kwargs):
        if data.get('start_date') and data.get('end_date') and data['start_date'] > data['end_date']:
            raise ValidationError('start_date must not be after end_date', 'start_date')


class LoginSchema(BaseSchema):
    email = fields.Email(required=True)
    password = fields.String(required=True, validate=validate.Length(min=1))


class RegisterSchema(BaseSchema):
    first_name = fields.String(required=True)
    last_name = fields.String(required=True)
    email = fields.Email(required=True)
    password = fields.String(required=True, validate=validate.Length(min=8))
    phone_number = fields.String(load_default=None)
    role = fields.String(required=True, validate=validate.OneOf(roles))
    clinic_id = fields.Integer(load_default=None)
    message = fields.String(load_default=None)


class PatientSchema(BaseSchema):
    first_name = fields.String(required=True)
    last_name = fields.String(required=True)
    gender = fields.String(load_default=None, validate=validate.OneOf(genders))
    dob = fields.Date(load_default=None)
    phone_number = fields.String(load_default=None)
    email = fields.Email(load_default=None)
    user_id = fields.Integer(load_default=None)


class PatientQuerySchema(PageSchema):
    search = fields.String(load_default=None)


# Inventory

class InventoryItemSchema(BaseSchema):
    name = fields.String(required=True, validate=validate.Length(min=1, max=120))
    category = fields.String(required=True, validate=validate.Length(min=1, max=60))
    description = fields.String(load_default=None)
    unit_of_measure = fields.String(load_default=None)
    current_quantity = fields.Integer(load_default=0, validate=validate.Range(min=0))
    reorder_level = fields.Integer(load_default=None, validate=validate.Range(min=0))
    ideal_quantity = fields.Integer(load_default=None, validate=validate.Range(min=0))
    unit_cost = fields.Float(required=True, validate=validate.Range(min=0))
    expiry_date = fields.Date(load_default=None)
    location = fields.String(load_default=None)
    supplier_name = fields.String(load_default=None)
    supplier_contact = fields.String(load_default=None)
    notes = fields.String(load_default=None)


class InventoryItemUpdateSchema(BaseSchema):
    name = fields.String(validate=validate.Length(min=1, max=120))
    category = fields.String(validate=validate.Length(min=1, max=60))
    description = fields.String(allow_none=True)
    unit_of_measure = fields.String()
    current_quantity = fields.Integer(validate=validate.Range(min=0))
    reorder_level = fields.Integer(validate=validate.Range(min=0))
    ideal_quantity = fields.Integer(validate=validate.Range(min=0))
    unit_cost = fields.Float(validate=validate.Range(min=0))
    expiry_date = fields.Date(allow_none=True)
    location = fields.String(allow_none=True)
    supplier_name = fields.String(allow_none=True)
    supplier_contact = fields.String(allow_none=True)
    notes = fields.String(allow_none=True)
    is_active = fields.Boolean()


class InventoryQuerySchema(PageSchema):
    category = fields.String(load_default=None)
    status = fields.String(load_default=None, validate=validate.OneOf(('active', 'inactive')))
    low_stock = fields.Boolean(load_default=False)
    expiring_soon = fields.Boolean(load_default=False)
    expiring_within_days = fields.Integer(load_default=None, validate=validate.Range(min=0))
    supplier = fields.String(load_default=None)
    search = fields.String(load_default=None)


class InventoryTransactionSchema(BaseSchema):
    item_id = fields.Integer(required=True)
    transaction_type = fields.String(required=True, validate=validate.OneOf(transaction_types))
    quantity = fields.Integer(required=True)
    unit_cost = fields.Float(load_default=None, validate=validate.Range(min=0))
    reference_number = fields.String(load_default=None)
    notes = fields.String(load_default=None)


class TransactionQuerySchema(DateRangeSchema):
    item_id = fields.Integer(load_default=None)
    type = fields.String(load_default=None, validate=validate.OneOf(transaction_types))


# Procedures

class ProcedureLineSchema(BaseSchema):
    item_id = fields.Integer(required=True)
    quantity = fields.Integer(required=True, validate=validate.Range(min=1))


class ProcedureSchema(BaseSchema):
    name = fields.String(required=True, validate=validate.Length(min=1, max=120))
    category = fields.String(required=True, validate=validate.OneOf(procedure_categories))
    description = fields.String(load_default=None)
    patient_id = fields.Integer(required=True)
    dentist_id = fields.Integer(required=True)
    appointment_id = fields.Integer(load_default=None)
    date = fields.DateTime(load_default=None)
    duration = fields.Integer(load_default=None, validate=validate.Range(min=0))
    inventory_items = fields.List(fields.Nested(ProcedureLineSchema), load_default=list)
    notes = fields.String(load_default=None)
    status = fields.String(load_default=None, validate=validate.OneOf(procedure_statuses))


class ProcedureUpdateSchema(BaseSchema):
    name = fields.String(validate=validate.Length(min=1, max=120))
    category = fields.String(validate=validate.OneOf(procedure_categories))
    description = fields.String(allow_none=True)
    patient_id = fields.Integer()
    dentist_id = fields.Integer()
    date = fields.DateTime()
    duration = fields.Integer(validate=validate.Range(min=0))
    notes = fields.String(allow_none=True)
    status = fields.String(validate=validate.OneOf(procedure_statuses))


class ProcedureItemsSchema(BaseSchema):
    inventory_items = fields.List(fields.Nested(ProcedureLineSchema), required=True,
                                  validate=validate.Length(min=1))


class ProcedureQuerySchema(DateRangeSchema):
    search = fields.String(load_default=None)
    category = fields.String(load_default=None, validate=validate.OneOf(procedure_categories))
    status = fields.String(load_default=None, validate=validate.OneOf(procedure_statuses))
    dentist_id = fields.Integer(load_default=None)
    patient_id = fields.Integer(load_default=None)


class UsageReportQuerySchema(DateRangeSchema):
    category = fields.String(load_default=None, validate=validate.OneOf(procedure_categories))


class UsageTrendQuerySchema(BaseSchema):
    period = fields.String(load_default='month')
    category = fields.String(load_default=None, validate=validate.OneOf(procedure_categories))
    limit = fields.Integer(load_default=10, validate=validate.Range(min=1, max=100))


class CommonItemsQuerySchema(BaseSchema):
    category = fields.String(required=True, validate=validate.OneOf(procedure_categories))


# Appointments

class AppointmentSchema(BaseSchema):
    patient_id = fields.Integer(required=True)
    doctor_id = fields.Integer(required=True)
    start_time = fields.DateTime(required=True)
    end_time = fields.DateTime(required=True)
    reason = fields.String(required=True, validate=validate.Length(min=1))
    service_type = fields.String(load_default=None)
    priority = fields.String(load_default=None, validate=validate.OneOf(appointment_priorities))
    notes = fields.String(load_default=None)
    clinic_id = fields.Integer(load_default=None)


class AppointmentUpdateSchema(BaseSchema):
    service_type = fields.String(allow_none=True)
    reason = fields.String(validate=validate.Length(min=1))
    priority = fields.String(validate=validate.OneOf(appointment_priorities))
    notes = fields.String(allow_none=True)


class AppointmentQuerySchema(DateRangeSchema):
    doctor_id = fields.Integer(load_default=None)
    patient_id = fields.Integer(load_default=None)
    status = fields.String(load_default=None, validate=validate.OneOf(appointment_statuses))


class StatusSchema(BaseSchema):
    status = fields.String(required=True, validate=validate.OneOf(appointment_statuses))
    reason = fields.String(load_default=None)


class CancelSchema(BaseSchema):
    reason = fields.String(load_default=None)


class RescheduleSchema(BaseSchema):
    start_time = fields.DateTime(required=True)
    end_time = fields.DateTime(required=True)
    reason = fields.String(load_default=None)


class QueuePositionSchema(BaseSchema):
    position = fields.Integer(required=True, validate=validate.Range(min=1))


class DoctorDayQuerySchema(BaseSchema):
    doctor_id = fields.Integer(required=True)
    date = fields.Date(required=True)
    duration = fields.Integer(load_default=None, validate=validate.Range(min=5, max=480))


# Billing

class InvoiceServiceSchema(BaseSchema):
    name = fields.String(required=True, validate=validate.Length(min=1))
    cost = fields.Float(required=True, validate=validate.Range(min=0))
    quantity = fields.Integer(load_default=1, validate=validate.Range(min=1))
    hsn_sac = fields.String(load_default=None)
    gst_rate = fields.Float(load_default=None, validate=validate.Range(min=0, max=100))


class InvoiceSchema(BaseSchema):
    patient_id = fields.Integer(required=True)
    doctor_id = fields.Integer(load_default=None)
    appointment_id = fields.Integer(load_default=None)
    services = fields.List(fields.Nested(InvoiceServiceSchema), required=True, validate=validate.Length(min=1))
    discount = fields.Float(load_default=0.0, validate=validate.Range(min=0, max=100))
    is_intra_state = fields.Boolean(load_default=True)
    place_of_supply = fields.String(load_default=None)
    notes = fields.String(load_default=None)


class InvoiceUpdateSchema(BaseSchema):
    services = fields.List(fields.Nested(InvoiceServiceSchema), validate=validate.Length(min=1))
    discount = fields.Float(validate=validate.Range(min=0, max=100))
    is_intra_state = fields.Boolean()
    place_of_supply = fields.String(allow_none=True)
    notes = fields.String(allow_none=True)


class InvoiceQuerySchema(DateRangeSchema):
    patient_id = fields.Integer(load_default=None)
    status = fields.String(load_default=None, validate=validate.OneOf(invoice_statuses))


class PaymentSchema(BaseSchema):
    amount = fields.Float(required=True)
    payment_method = fields.String(required=True, validate=validate.OneOf(payment_methods))
    transaction_id = fields.String(load_default=None)
    upi_id = fields.String(load_default=None)
    cheque_number = fields.String(load_default=None)
    bank_name = fields.String(load_default=None)
    notes = fields.String(load_default=None)


class PaymentQuerySchema(DateRangeSchema):
    patient_id = fields.Integer(load_default=None)
    invoice_id = fields.Integer(load_default=None)
    method = fields.String(load_default=None, validate=validate.OneOf(payment_methods))
    status = fields.String(load_default=None)


class ReceiptQuerySchema(DateRangeSchema):
    patient_id = fields.Integer(load_default=None)
    method = fields.String(load_default=None, validate=validate.OneOf(payment_methods))


class GstReportSchema(BaseSchema):
    start_date = fields.Date(required=True)
    end_date = fields.Date(required=True)
    report_type = fields.String(required=True, validate=validate.OneOf(gst_report_types))


class GstReportQuerySchema(PageSchema):
    report_type = fields.String(load_default=None, validate=validate.OneOf(gst_report_types))


class BankAccountSchema(BaseSchema):
    bank_name = fields.String(required=True)
    account_holder = fields.String(required=True)
    account_number = fields.String(required=True)
    ifsc_code = fields.String(load_default=None)
    is_default = fields.Boolean(load_default=False)


# Staff

class StaffRequestSchema(BaseSchema):
    clinic_id = fields.Integer(required=True)
    role = fields.String(load_default=None, validate=validate.OneOf(tuple(r for r in roles if r != 'Patient')))
    message = fields.String(load_default=None)


class RejectSchema(BaseSchema):
    reason = fields.String(load_default=None)


class StaffRequestQuerySchema(PageSchema):
    status = fields.String(load_default=None, validate=validate.OneOf(('pending', 'approved', 'rejected')))
