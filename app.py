import time
from functools import wraps

from flask import Flask, request, make_response, session, g, current_app
from flask_restful import Resource, Api
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy.exc import IntegrityError
from marshmallow import ValidationError as SchemaValidationError

import billing
import inventory
import patients
import procedures
import scheduling
import staff
import schemas
from config import Config
from errors import ClinicError, AuthenticationError, ForbiddenError
from logs import configure_logging, get_logger, bind_request_context, clear_request_context
from models import db, bcrypt, User, Clinic
from notifications import LogNotifier
from pagination import paginate
from permissions import Role, Action, Principal, PermissionTable
from receipts import render_receipt_pdf, receipt_filename

logger = get_logger(__name__)
migrate = Migrate()


def handle_errors(func):
    """Roll back and turn domain, payload and constraint errors into JSON responses."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ClinicError as e:
            db.session.rollback()
            return e.to_dict(), e.status_code
        except SchemaValidationError as e:
            db.session.rollback()
            return {'error': 'Invalid request payload', 'kind': 'validation_error', 'details': e.messages}, 400
        except IntegrityError as e:
            db.session.rollback()
            logger.warning('integrity_error', error=str(e.orig))
            return {'error': 'The change conflicts with existing data', 'kind': 'conflict'}, 409
    return wrapper


def session_user():
    user_id = session.get('user_id')
    user = db.session.get(User, user_id) if user_id else None
    if user is None:
        raise AuthenticationError('Not logged in')
    return user


def current_principal():
    user = session_user()
    if not user.is_active:
        raise ForbiddenError('This account is disabled')
    role = Role(user.role)
    if role.requires_approval and not user.is_approved:
        raise ForbiddenError('Your account is pending approval')
    if user.clinic_id is None:
        raise ForbiddenError('No clinic is assigned to this account')
    bind_request_context(clinic_id=user.clinic_id)
    return Principal(actor_id=user.id, clinic_id=user.clinic_id, role=role)


def authorize(action):
    return current_app.extensions['permissions'].require(current_principal(), action)


def load_json(schema_cls, **kwargs):
    return schema_cls(**kwargs).load(request.get_json(silent=True) or {})


def load_args(schema_cls):
    return schema_cls().load(request.args)


class ClinicResource(Resource):
    method_decorators = [handle_errors]


# Session Resource classes
class Login(ClinicResource):
    def post(self):
        data = load_json(schemas.LoginSchema)
        user = User.query.filter_by(email=data['email'].lower()).first()
        if not user or not user.check_password(data['password']):
            raise AuthenticationError('Invalid credentials')
        if not user.is_active:
            raise ForbiddenError('This account is disabled')

        session['user_id'] = user.id
        session.permanent = True
        logger.info('user_logged_in', user_id=user.id)
        return user.to_dict(), 200


class Logout(ClinicResource):
    def delete(self):
        if 'user_id' in session:
            session.pop('user_id')
            return '', 204
        return {'message': 'No active session'}, 400


class CheckSession(ClinicResource):
    def get(self):
        return session_user().to_dict(), 200


class Register(ClinicResource):
    def post(self):
        user = staff.register_user(load_json(schemas.RegisterSchema))
        return user.to_dict(), 201


# Staff onboarding
class Staff(ClinicResource):
    def get(self):
        principal = authorize(Action.STAFF_MANAGE)
        args = request.args
        return paginate(staff.list_staff(principal, args.get('role')), args.get('page'), args.get('limit')), 200


class StaffRequests(ClinicResource):
    def get(self):
        principal = authorize(Action.STAFF_MANAGE)
        args = load_args(schemas.StaffRequestQuerySchema)
        return paginate(staff.list_requests(principal, args['status']), args['page'], args['limit']), 200

    def post(self):
        user = session_user()
        data = load_json(schemas.StaffRequestSchema)
        staff_request = staff.submit_request(user.id, data['clinic_id'], data['role'], data['message'])
        return staff_request.to_dict(), 201


class StaffRequestApproval(ClinicResource):
    def post(self, id):
        principal = authorize(Action.STAFF_MANAGE)
        return staff.approve_request(principal, id).to_dict(), 200


class StaffRequestRejection(ClinicResource):
    def post(self, id):
        principal = authorize(Action.STAFF_MANAGE)
        data = load_json(schemas.RejectSchema)
        return staff.reject_request(principal, id, data['reason']).to_dict(), 200


# Patients
class Patients(ClinicResource):
    def get(self):
        principal = authorize(Action.PATIENT_VIEW)
        args = load_args(schemas.PatientQuerySchema)
        return paginate(patients.list_patients(principal, args['search']), args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.PATIENT_MANAGE)
        patient = patients.create_patient(principal, load_json(schemas.PatientSchema))
        return patient.to_dict(), 201


class PatientByID(ClinicResource):
    def get(self, id):
        principal = current_principal()
        if not principal.is_patient:
            current_app.extensions['permissions'].require(principal, Action.PATIENT_VIEW)
        return patients.get_patient(principal, id).to_dict(), 200

    def patch(self, id):
        principal = authorize(Action.PATIENT_MANAGE)
        data = load_json(schemas.PatientSchema, partial=True)
        return patients.update_patient(principal, id, data).to_dict(), 200


# Inventory
class InventoryItems(ClinicResource):
    def get(self):
        principal = authorize(Action.INVENTORY_VIEW)
        args = load_args(schemas.InventoryQuerySchema)
        is_active = {'active': True, 'inactive': False}.get(args['status'])
        expiring = args['expiring_within_days']
        if expiring is None and args['expiring_soon']:
            expiring = current_app.config['LOW_STOCK_EXPIRY_WINDOW_DAYS']
        query = inventory.query_items(
            principal,
            category=args['category'],
            is_active=is_active,
            low_stock=args['low_stock'],
            expiring_within_days=expiring,
            supplier=args['supplier'],
            search=args['search'],
        )
        return paginate(query, args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.INVENTORY_MANAGE)
        item = inventory.create_item(principal, load_json(schemas.InventoryItemSchema))
        return item.to_dict(), 201


class InventoryItemByID(ClinicResource):
    def get(self, id):
        principal = authorize(Action.INVENTORY_VIEW)
        return inventory.get_item(principal, id).to_dict(), 200

    def patch(self, id):
        principal = authorize(Action.INVENTORY_MANAGE)
        item = inventory.update_item(principal, id, load_json(schemas.InventoryItemUpdateSchema))
        return item.to_dict(), 200

    def delete(self, id):
        principal = authorize(Action.INVENTORY_MANAGE)
        inventory.deactivate_item(principal, id)
        return {'message': f'Inventory item {id} deactivated'}, 200


class InventoryItemLedger(ClinicResource):
    def get(self, id):
        principal = authorize(Action.INVENTORY_VIEW)
        return inventory.ledger_balance(principal, id), 200


class InventoryItemTransactions(ClinicResource):
    def get(self, id):
        principal = authorize(Action.INVENTORY_VIEW)
        args = load_args(schemas.PageSchema)
        query = inventory.list_transactions(principal, item_id=id)
        return paginate(query, args['page'], args['limit'], inventory.transaction_to_dict), 200


class InventoryTransactions(ClinicResource):
    def get(self):
        principal = authorize(Action.INVENTORY_VIEW)
        args = load_args(schemas.TransactionQuerySchema)
        query = inventory.list_transactions(
            principal, item_id=args['item_id'], transaction_type=args['type'],
            start_date=args['start_date'], end_date=args['end_date'],
        )
        return paginate(query, args['page'], args['limit'], inventory.transaction_to_dict), 200

    def post(self):
        principal = authorize(Action.INVENTORY_TRANSACT)
        data = load_json(schemas.InventoryTransactionSchema)
        entry = inventory.record_transaction(
            principal, data['item_id'], data['transaction_type'], data['quantity'],
            unit_cost=data['unit_cost'], notes=data['notes'], reference_number=data['reference_number'],
        )
        return {
            'transaction': inventory.transaction_to_dict(entry),
            'item': inventory.get_item(principal, data['item_id']).to_dict(),
        }, 201


class InventoryStats(ClinicResource):
    def get(self):
        principal = authorize(Action.INVENTORY_VIEW)
        return inventory.stats(principal), 200


# Dental procedures
class Procedures(ClinicResource):
    def get(self):
        principal = authorize(Action.PROCEDURE_VIEW)
        args = load_args(schemas.ProcedureQuerySchema)
        query = procedures.list_procedures(
            principal, search=args['search'], category=args['category'], status=args['status'],
            start_date=args['start_date'], end_date=args['end_date'],
            dentist_id=args['dentist_id'], patient_id=args['patient_id'],
        )
        return paginate(query, args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.PROCEDURE_MANAGE)
        procedure = procedures.create_procedure(principal, load_json(schemas.ProcedureSchema))
        return procedure.to_dict(), 201


class ProcedureByID(ClinicResource):
    def get(self, id):
        principal = authorize(Action.PROCEDURE_VIEW)
        return procedures.get_procedure(principal, id).to_dict(), 200

    def patch(self, id):
        principal = authorize(Action.PROCEDURE_MANAGE)
        procedure = procedures.update_procedure(principal, id, load_json(schemas.ProcedureUpdateSchema))
        return procedure.to_dict(), 200

    def delete(self, id):
        principal = authorize(Action.PROCEDURE_MANAGE)
        procedures.delete_procedure(principal, id)
        return {'message': f'Dental procedure {id} deleted'}, 200


class ProcedureInventory(ClinicResource):
    def post(self, id):
        principal = authorize(Action.PROCEDURE_MANAGE)
        data = load_json(schemas.ProcedureItemsSchema)
        return procedures.add_inventory_items(principal, id, data['inventory_items']).to_dict(), 200


class ProcedureUsageReport(ClinicResource):
    def get(self):
        principal = authorize(Action.REPORT_VIEW)
        args = load_args(schemas.UsageReportQuerySchema)
        return procedures.usage_report(principal, args['start_date'], args['end_date'], args['category']), 200


class ProcedureUsageTrend(ClinicResource):
    def get(self):
        principal = authorize(Action.REPORT_VIEW)
        args = load_args(schemas.UsageTrendQuerySchema)
        return procedures.usage_trend(principal, args['period'], args['category'], args['limit']), 200


class ProcedureCommonItems(ClinicResource):
    def get(self):
        principal = authorize(Action.PROCEDURE_VIEW)
        args = load_args(schemas.CommonItemsQuerySchema)
        return {'data': procedures.common_inventory_items(principal, args['category'])}, 200


# Appointments
class Appointments(ClinicResource):
    def get(self):
        principal = authorize(Action.APPOINTMENT_VIEW)
        args = load_args(schemas.AppointmentQuerySchema)
        query = scheduling.list_appointments(
            principal, doctor_id=args['doctor_id'], patient_id=args['patient_id'], status=args['status'],
            start_date=args['start_date'], end_date=args['end_date'],
        )
        return paginate(query, args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.APPOINTMENT_BOOK)
        data = load_json(schemas.AppointmentSchema)
        appointment = scheduling.create_appointment(principal, data, clinic_id_hint=data.pop('clinic_id'))
        return appointment.to_dict(), 201


class AppointmentByID(ClinicResource):
    def get(self, id):
        principal = authorize(Action.APPOINTMENT_VIEW)
        return scheduling.get_appointment(principal, id).to_dict(), 200

    def patch(self, id):
        principal = authorize(Action.APPOINTMENT_UPDATE)
        data = load_json(schemas.AppointmentUpdateSchema)
        return scheduling.update_details(principal, id, data).to_dict(), 200


class AppointmentStatus(ClinicResource):
    def patch(self, id):
        data = load_json(schemas.StatusSchema)
        action = Action.APPOINTMENT_CANCEL if data['status'] == 'Cancelled' else Action.APPOINTMENT_UPDATE
        principal = authorize(action)
        appointment = scheduling.update_status(principal, id, data['status'], data['reason'])
        return appointment.to_dict(), 200


class AppointmentCancel(ClinicResource):
    def post(self, id):
        principal = authorize(Action.APPOINTMENT_CANCEL)
        data = load_json(schemas.CancelSchema)
        return scheduling.cancel(principal, id, data['reason']).to_dict(), 200


class AppointmentReschedule(ClinicResource):
    def post(self, id):
        principal = authorize(Action.APPOINTMENT_UPDATE)
        data = load_json(schemas.RescheduleSchema)
        appointment = scheduling.reschedule(principal, id, data['start_time'], data['end_time'], data['reason'])
        return appointment.to_dict(), 200


class AppointmentCheckIn(ClinicResource):
    def post(self, id):
        principal = authorize(Action.QUEUE_MANAGE)
        return scheduling.check_in(principal, id).to_dict(), 200


class AppointmentNoShow(ClinicResource):
    def post(self, id):
        principal = authorize(Action.APPOINTMENT_UPDATE)
        return scheduling.mark_no_show(principal, id).to_dict(), 200


class AppointmentReminder(ClinicResource):
    def post(self, id):
        principal = authorize(Action.APPOINTMENT_UPDATE)
        sent = scheduling.send_reminder(principal, id)
        return {'message': 'Reminder sent' if sent else 'Reminder could not be delivered', 'sent': sent}, 200


class AppointmentQueuePosition(ClinicResource):
    def patch(self, id):
        principal = authorize(Action.QUEUE_MANAGE)
        data = load_json(schemas.QueuePositionSchema)
        entries = scheduling.update_queue_position(principal, id, data['position'])
        return {'data': [entry.to_dict() for entry in entries]}, 200


class AvailableSlots(ClinicResource):
    def get(self):
        principal = authorize(Action.APPOINTMENT_VIEW)
        args = load_args(schemas.DoctorDayQuerySchema)
        result = scheduling.available_slots(principal, args['doctor_id'], args['date'], args['duration'])
        result['slots'] = [scheduling.slot_to_dict(slot) for slot in result['slots']]
        return result, 200


class AppointmentQueue(ClinicResource):
    def get(self):
        principal = authorize(Action.APPOINTMENT_VIEW)
        args = load_args(schemas.DoctorDayQuerySchema)
        entries = scheduling.queue(principal, args['doctor_id'], args['date'])
        return {
            'doctor_id': args['doctor_id'],
            'date': args['date'].isoformat(),
            'data': [entry.to_dict() for entry in entries],
        }, 200


class AppointmentStats(ClinicResource):
    def get(self):
        principal = authorize(Action.REPORT_VIEW)
        args = load_args(schemas.DateRangeSchema)
        return scheduling.appointment_stats(principal, args['start_date'], args['end_date']), 200


# Billing
class Invoices(ClinicResource):
    def get(self):
        principal = authorize(Action.BILLING_VIEW)
        args = load_args(schemas.InvoiceQuerySchema)
        query = billing.list_invoices(
            principal, patient_id=args['patient_id'], status=args['status'],
            start_date=args['start_date'], end_date=args['end_date'],
        )
        return paginate(query, args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.BILLING_MANAGE)
        invoice = billing.create_invoice(principal, load_json(schemas.InvoiceSchema))
        return invoice.to_dict(), 201


class InvoiceByID(ClinicResource):
    def get(self, id):
        principal = authorize(Action.BILLING_VIEW)
        return billing.get_invoice(principal, id).to_dict(), 200

    def patch(self, id):
        principal = authorize(Action.BILLING_MANAGE)
        invoice = billing.update_invoice(principal, id, load_json(schemas.InvoiceUpdateSchema))
        return invoice.to_dict(), 200

    def delete(self, id):
        principal = authorize(Action.BILLING_MANAGE)
        billing.delete_invoice(principal, id)
        return {'message': f'Invoice {id} deleted'}, 200


class InvoicePayments(ClinicResource):
    def post(self, id):
        principal = authorize(Action.PAYMENT_PROCESS)
        payment, invoice, receipt = billing.process_payment(principal, id, load_json(schemas.PaymentSchema))
        return {
            'payment': billing.payment_to_dict(payment),
            'invoice': invoice.to_dict(),
            'receipt': receipt.to_dict(),
        }, 201


class Payments(ClinicResource):
    def get(self):
        principal = authorize(Action.BILLING_VIEW)
        args = load_args(schemas.PaymentQuerySchema)
        query = billing.list_payments(
            principal, patient_id=args['patient_id'], invoice_id=args['invoice_id'], method=args['method'],
            status=args['status'], start_date=args['start_date'], end_date=args['end_date'],
        )
        return paginate(query, args['page'], args['limit'], billing.payment_to_dict), 200


class PaymentByID(ClinicResource):
    def get(self, id):
        principal = authorize(Action.BILLING_VIEW)
        return billing.payment_to_dict(billing.get_payment(principal, id)), 200


class PaymentReceipt(ClinicResource):
    def get(self, id):
        principal = authorize(Action.BILLING_VIEW)
        return billing.receipt_for_payment(principal, id).to_dict(), 200


class PaymentReceiptPdf(ClinicResource):
    def get(self, id):
        principal = authorize(Action.BILLING_VIEW)
        receipt = billing.receipt_for_payment(principal, id)
        clinic = db.session.get(Clinic, principal.clinic_id)

        response = make_response(render_receipt_pdf(receipt, clinic))
        response.headers['Content-Type'] = 'application/pdf'
        response.headers['Content-Disposition'] = f'inline; filename="{receipt_filename(receipt)}"'
        return response


class Receipts(ClinicResource):
    def get(self):
        principal = authorize(Action.BILLING_VIEW)
        args = load_args(schemas.ReceiptQuerySchema)
        query = billing.list_receipts(
            principal, patient_id=args['patient_id'], method=args['method'],
            start_date=args['start_date'], end_date=args['end_date'],
        )
        return paginate(query, args['page'], args['limit']), 200


class BillingStats(ClinicResource):
    def get(self):
        principal = authorize(Action.REPORT_VIEW)
        args = load_args(schemas.DateRangeSchema)
        return billing.billing_stats(principal, args['start_date'], args['end_date']), 200


class GstReports(ClinicResource):
    def get(self):
        principal = authorize(Action.REPORT_VIEW)
        args = load_args(schemas.GstReportQuerySchema)
        return paginate(billing.list_gst_reports(principal, args['report_type']), args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.REPORT_VIEW)
        data = load_json(schemas.GstReportSchema)
        report = billing.generate_gst_report(principal, data['start_date'], data['end_date'], data['report_type'])
        return report.to_dict(), 201


class BankAccounts(ClinicResource):
    def get(self):
        principal = authorize(Action.BILLING_MANAGE)
        args = load_args(schemas.PageSchema)
        return paginate(billing.list_bank_accounts(principal), args['page'], args['limit']), 200

    def post(self):
        principal = authorize(Action.BILLING_MANAGE)
        account = billing.add_bank_account(principal, load_json(schemas.BankAccountSchema))
        return account.to_dict(), 201


class BankAccountDefault(ClinicResource):
    def post(self, id):
        principal = authorize(Action.BILLING_MANAGE)
        return billing.set_default_bank_account(principal, id).to_dict(), 200


def register_resources(api):
    api.add_resource(Login, '/login')
    api.add_resource(Logout, '/logout')
    api.add_resource(CheckSession, '/check_session')
    api.add_resource(Register, '/register')

    api.add_resource(Staff, '/staff')
    api.add_resource(StaffRequests, '/staff_requests')
    api.add_resource(StaffRequestApproval, '/staff_requests/<int:id>/approve')
    api.add_resource(StaffRequestRejection, '/staff_requests/<int:id>/reject')

    api.add_resource(Patients, '/patients')
    api.add_resource(PatientByID, '/patients/<int:id>')

    api.add_resource(InventoryItems, '/inventory')
    api.add_resource(InventoryItemByID, '/inventory/<int:id>')
    api.add_resource(InventoryItemLedger, '/inventory/<int:id>/ledger')
    api.add_resource(InventoryItemTransactions, '/inventory/<int:id>/transactions')
    api.add_resource(InventoryTransactions, '/inventory/transactions')
    api.add_resource(InventoryStats, '/inventory/stats')

    api.add_resource(Procedures, '/procedures')
    api.add_resource(ProcedureByID, '/procedures/<int:id>')
    api.add_resource(ProcedureInventory, '/procedures/<int:id>/inventory')
    api.add_resource(ProcedureUsageReport, '/procedures/reports/usage')
    api.add_resource(ProcedureUsageTrend, '/procedures/reports/trend')
    api.add_resource(ProcedureCommonItems, '/procedures/common_items')

    api.add_resource(Appointments, '/appointments')
    api.add_resource(AppointmentByID, '/appointments/<int:id>')
    api.add_resource(AppointmentStatus, '/appointments/<int:id>/status')
    api.add_resource(AppointmentCancel, '/appointments/<int:id>/cancel')
    api.add_resource(AppointmentReschedule, '/appointments/<int:id>/reschedule')
    api.add_resource(AppointmentCheckIn, '/appointments/<int:id>/check_in')
    api.add_resource(AppointmentNoShow, '/appointments/<int:id>/no_show')
    api.add_resource(AppointmentReminder, '/appointments/<int:id>/reminder')
    api.add_resource(AppointmentQueuePosition, '/appointments/<int:id>/queue_position')
    api.add_resource(AvailableSlots, '/appointments/available_slots')
    api.add_resource(AppointmentQueue, '/appointments/queue')
    api.add_resource(AppointmentStats, '/appointments/stats')

    api.add_resource(Invoices, '/invoices')
    api.add_resource(InvoiceByID, '/invoices/<int:id>')
    api.add_resource(InvoicePayments, '/invoices/<int:id>/payments')
    api.add_resource(Payments, '/payments')
    api.add_resource(PaymentByID, '/payments/<int:id>')
    api.add_resource(PaymentReceipt, '/payments/<int:id>/receipt')
    api.add_resource(PaymentReceiptPdf, '/payments/<int:id>/receipt/pdf')
    api.add_resource(Receipts, '/receipts')
    api.add_resource(BillingStats, '/billing/stats')
    api.add_resource(GstReports, '/gst_reports')
    api.add_resource(BankAccounts, '/bank_accounts')
    api.add_resource(BankAccountDefault, '/bank_accounts/<int:id>/default')


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.json.compact = False

    configure_logging(app.config['LOG_LEVEL'], app.config['LOG_FORMAT'])

    db.init_app(app)
    migrate.init_app(app, db)
    bcrypt.init_app(app)
    CORS(app, supports_credentials=True)

    app.extensions['permissions'] = PermissionTable()
    app.extensions['notifier'] = LogNotifier()

    @app.before_request
    def bind_request():
        g.request_started = time.perf_counter()
        clear_request_context()
        bind_request_context(method=request.method, path=request.path, user_id=session.get('user_id'))

    @app.after_request
    def log_request(response):
        started = g.get('request_started')
        duration_ms = round((time.perf_counter() - started) * 1000, 2) if started else None
        logger.info('http_access', status=response.status_code, duration_ms=duration_ms)
        return response

    api = Api(app)
    register_resources(api)
    return app


if __name__ == '__main__':
    create_app().run(port=5050, debug=True)
