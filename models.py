from sqlalchemy_serializer import SerializerMixin
from sqlalchemy.orm import validates, Session
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import MetaData, Enum, CheckConstraint, UniqueConstraint, event, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.hybrid import hybrid_property
from flask import current_app, has_app_context
from flask_bcrypt import Bcrypt
from datetime import datetime, time, timezone
import pytz
import re
import phonenumbers

from errors import ValidationError, ConflictError, NotFoundError

# Define metadata, instantiate db
metadata = MetaData(naming_convention={
    "ix": "ix_%(column_0_label)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
})
db = SQLAlchemy(metadata=metadata)
bcrypt = Bcrypt()

roles = ('Admin', 'Doctor', 'Receptionist', 'Patient', 'Staff', 'Nurse', 'LabTechnician', 'Pharmacist')
approval_statuses = ('pending', 'approved', 'rejected')
genders = ('male', 'female', 'other')
clinic_statuses = ('active', 'inactive', 'suspended', 'pending')
subscription_plans = ('Free', 'Pro', 'Enterprise')

transaction_types = ('Purchase', 'Usage', 'Adjustment', 'Return', 'Disposal', 'Transfer')
consumption_types = ('Usage', 'Return', 'Disposal', 'Transfer')

procedure_categories = (
    'Diagnostic', 'Preventive', 'Restorative', 'Endodontic', 'Periodontic',
    'Prosthodontic', 'Oral Surgery', 'Orthodontic', 'Implant', 'Other',
)
procedure_statuses = ('Scheduled', 'In Progress', 'Completed', 'Cancelled')

appointment_statuses = ('Scheduled', 'Confirmed', 'Cancelled', 'Completed', 'NoShow', 'Rescheduled')
appointment_priorities = ('Low', 'Medium', 'High', 'Urgent')

invoice_statuses = ('Unpaid', 'Partial', 'Paid')
payment_methods = ('Cash', 'Credit Card', 'Debit Card', 'UPI', 'Net Banking', 'Cheque', 'Wallet', 'Insurance', 'Bank Transfer')
gst_report_types = ('Monthly', 'Quarterly', 'Annual', 'Custom')

EMAIL_PATTERN = r'^[\w\.-]+@[\w\.-]+\.\w+$'
HOUR_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'


def utcnow():
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def range_start(value):
    """Lower bound of a filter range; a bare date means the start of that day."""
    if isinstance(value, datetime):
        return to_utc_naive(value)
    return datetime.combine(value, time.min)


def range_end(value):
    """Upper bound of a filter range; a bare date covers the whole day."""
    if isinstance(value, datetime):
        return to_utc_naive(value)
    return datetime.combine(value, time.max)


def _iso(value):
    return value.isoformat() if value else None


def get_for_clinic(model, clinic_id, ident, label=None):
    """Load ``model`` by id, treating rows of another clinic as missing."""
    obj = db.session.get(model, ident) if ident is not None else None
    if obj is None or obj.clinic_id != clinic_id:
        raise NotFoundError(f"{label or model.__name__} not found")
    return obj


def normalize_phone(phone_number):
    if not phone_number:
        return None
    region = current_app.config.get('PHONE_REGION', 'IN') if has_app_context() else 'IN'
    try:
        parsed_number = phonenumbers.parse(phone_number, region)
    except phonenumbers.phonenumberutil.NumberParseException:
        raise ValidationError('Invalid phone number format. Use the national format or +<country code><number>')
    if not phonenumbers.is_valid_number(parsed_number):
        raise ValidationError('Invalid phone number')
    return phonenumbers.format_number(parsed_number, phonenumbers.PhoneNumberFormat.E164)


class AppendOnlyMixin:
    """Ledger-style rows: created once, never updated or deleted."""


class Clinic(db.Model, SerializerMixin):
    __tablename__ = 'clinics'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    gst_number = db.Column(db.String(20), nullable=True)
    subscription_plan = db.Column(Enum(*subscription_plans, name='subscription_plan_enum'), default='Free', nullable=False)
    status = db.Column(Enum(*clinic_statuses, name='clinic_status_enum'), default='active', nullable=False)
    timezone = db.Column(db.String(64), default='UTC', nullable=False)
    working_hours_start = db.Column(db.String(5), default='09:00', nullable=False)
    working_hours_end = db.Column(db.String(5), default='17:00', nullable=False)
    appointment_duration = db.Column(db.Integer, default=30, nullable=False)  # minutes
    created_at = db.Column(db.DateTime, default=utcnow)

    users = db.relationship('User', back_populates='clinic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'tenant_id': self.tenant_id,
            'email': self.email,
            'gst_number': self.gst_number,
            'subscription_plan': self.subscription_plan,
            'status': self.status,
            'timezone': self.timezone,
            'working_hours': {'start': self.working_hours_start, 'end': self.working_hours_end},
            'appointment_duration': self.appointment_duration,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Clinic {self.name} ({self.status})>'

    @property
    def tz(self):
        return pytz.timezone(self.timezone or 'UTC')

    @validates('name')
    def validate_name(self, key, name):
        if not name:
            raise ValidationError('Clinic name is required')
        return name

    @validates('timezone')
    def validate_timezone(self, key, value):
        if value not in pytz.all_timezones_set:
            raise ValidationError(f"Unknown timezone '{value}'")
        return value

    @validates('working_hours_start', 'working_hours_end')
    def validate_working_hours(self, key, value):
        if not re.match(HOUR_PATTERN, value or ''):
            raise ValidationError(f"{key.replace('_', ' ').capitalize()} must be in HH:MM format")
        return value

    @validates('appointment_duration')
    def validate_appointment_duration(self, key, value):
        if value is None or value <= 0:
            raise ValidationError('Appointment duration must be greater than 0')
        return value


class User(db.Model, SerializerMixin):
    __tablename__ = 'users'

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone_number': self.phone_number,
            'role': self.role,
            'is_approved': self.is_approved,
            'approval_status': self.approval_status,
            'is_email_verified': self.is_email_verified,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=True, index=True)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone_number = db.Column(db.String(20), nullable=True)
    _password_hash = db.Column(db.String, nullable=True)
    role = db.Column(Enum(*roles, name='role_enum'), nullable=False)
    is_approved = db.Column(db.Boolean, default=False, nullable=False)
    approval_status = db.Column(Enum(*approval_statuses, name='approval_status_enum'), default='pending', nullable=False)
    is_email_verified = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    clinic = db.relationship('Clinic', back_populates='users')

    def __repr__(self):
        return f'<User {self.first_name} {self.last_name} | Email: {self.email}>'

    def __str__(self):
        return f'{self.first_name} {self.last_name} ({self.role})'

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'

    @validates('first_name', 'last_name')
    def validate_name(self, key, name):
        if not name or len(name) > 50:
            raise ValidationError(f"{key.replace('_', ' ').capitalize()} must be present and under 50 characters.")
        return name

    @validates('email')
    def validate_email(self, key, email):
        if not email:
            raise ValidationError('Email is required')
        if not re.match(EMAIL_PATTERN, email):
            raise ValidationError('Invalid email format')
        return email.lower()

    @validates('role')
    def validate_role(self, key, role):
        if role not in roles:
            raise ValidationError(f"Invalid role. Must be one of: {roles}")
        return role

    @validates('phone_number')
    def validate_phone_number(self, key, phone_number):
        return normalize_phone(phone_number)

    @hybrid_property
    def password(self):
        return self._password_hash

    @password.setter
    def password(self, plaintext_password):
        self._password_hash = bcrypt.generate_password_hash(plaintext_password).decode('utf-8')

    def check_password(self, plaintext_password):
        if not self._password_hash:
            return False
        return bcrypt.check_password_hash(self._password_hash, plaintext_password)


class StaffRequest(db.Model, SerializerMixin):
    __tablename__ = 'staff_requests'

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(Enum(*roles, name='staff_request_role_enum'), nullable=False)
    status = db.Column(Enum(*approval_statuses, name='staff_request_status_enum'), default='pending', nullable=False)
    message = db.Column(db.Text, nullable=True)
    reviewed_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', foreign_keys=[user_id])

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'user': self.user.to_dict() if self.user else None,
            'role': self.role,
            'status': self.status,
            'message': self.message,
            'reviewed_by_id': self.reviewed_by_id,
            'reviewed_at': _iso(self.reviewed_at),
            'rejection_reason': self.rejection_reason,
            'created_at': _iso(self.created_at),
        }

    @validates('role')
    def validate_role(self, key, role):
        if role not in roles or role == 'Patient':
            raise ValidationError('Staff requests must name a clinical or administrative role')
        return role


class Patient(db.Model, SerializerMixin):
    __tablename__ = 'patients'

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'user_id': self.user_id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'gender': self.gender,
            'dob': self.dob.isoformat() if self.dob else None,
            'age': self.age,
            'phone_number': self.phone_number,
            'email': self.email,
            'created_at': _iso(self.created_at),
        }

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    gender = db.Column(Enum(*genders, name='gender_enum'), nullable=True)
    dob = db.Column(db.Date, nullable=True)
    phone_number = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def age(self):
        if not self.dob:
            return None
        today = utcnow().date()
        return today.year - self.dob.year - ((today.month, today.day) < (self.dob.month, self.dob.day))

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'

    def __repr__(self):
        return f"<Patient {self.first_name} {self.last_name}>"

    @validates('first_name', 'last_name')
    def validate_name(self, key, name):
        if not name or len(name) > 50:
            raise ValidationError(f"{key.replace('_', ' ').capitalize()} must be present and under 50 characters.")
        return name

    @validates('email')
    def validate_email(self, key, email):
        if email and not re.match(EMAIL_PATTERN, email):
            raise ValidationError('Invalid email format')
        return email

    @validates('dob')
    def validate_dob(self, key, dob):
        if dob is None:
            return dob
        if dob >= utcnow().date():
            raise ValidationError("Date of birth must be in the past.")
        if dob < datetime(1900, 1, 1).date():
            raise ValidationError("Date of birth is too far in the past.")
        return dob

    @validates('phone_number')
    def validate_phone_number(self, key, phone_number):
        return normalize_phone(phone_number)


class SequenceCounter(db.Model):
    """One row per (clinic, sequence name); incremented in place."""
    __tablename__ = 'sequence_counters'
    __table_args__ = (UniqueConstraint('clinic_id', 'name', name='uq_sequence_counters_clinic_name'),)

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False)
    name = db.Column(db.String(80), nullable=False)
    value = db.Column(db.Integer, default=0, nullable=False)


def next_sequence(clinic_id, name):
    """Atomically bump and return the per-clinic counter called ``name``."""
    insert_for = pg_insert if db.engine.dialect.name == 'postgresql' else sqlite_insert
    db.session.execute(
        insert_for(SequenceCounter)
        .values(clinic_id=clinic_id, name=name, value=0)
        .on_conflict_do_nothing(index_elements=['clinic_id', 'name'])
    )
    counter = SequenceCounter.__table__
    db.session.execute(
        update(counter)
        .where(counter.c.clinic_id == clinic_id, counter.c.name == name)
        .values(value=counter.c.value + 1)
    )
    return db.session.execute(
        select(counter.c.value).where(counter.c.clinic_id == clinic_id, counter.c.name == name)
    ).scalar_one()


def format_document_number(prefix, clinic_id, when=None):
    """INV-2406-0001 style numbers backed by ``next_sequence``."""
    when = when or utcnow()
    sequence = next_sequence(clinic_id, prefix.lower())
    return f"{prefix}-{when.strftime('%y%m')}-{sequence:04d}"


class InventoryItem(db.Model, SerializerMixin):
    __tablename__ = 'inventory_items'
    __table_args__ = (
        UniqueConstraint('clinic_id', 'item_code', name='uq_inventory_items_clinic_code'),
        CheckConstraint('current_quantity >= 0', name='non_negative_quantity'),
    )

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    item_code = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(60), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit_of_measure = db.Column(db.String(30), default='unit', nullable=False)
    current_quantity = db.Column(db.Integer, default=0, nullable=False)
    reorder_level = db.Column(db.Integer, default=10, nullable=False)
    ideal_quantity = db.Column(db.Integer, default=50, nullable=False)
    unit_cost = db.Column(db.Float, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)
    location = db.Column(db.String(120), nullable=True)
    supplier_name = db.Column(db.String(120), nullable=True)
    supplier_contact = db.Column(db.String(120), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def stock_status(self):
        if self.current_quantity <= 0:
            return 'OutOfStock'
        if self.current_quantity <= self.reorder_level:
            return 'LowStock'
        if self.current_quantity < self.ideal_quantity:
            return 'Adequate'
        return 'WellStocked'

    @property
    def total_value(self):
        return round(self.current_quantity * self.unit_cost, 2)

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'item_code': self.item_code,
            'name': self.name,
            'category': self.category,
            'description': self.description,
            'unit_of_measure': self.unit_of_measure,
            'current_quantity': self.current_quantity,
            'reorder_level': self.reorder_level,
            'ideal_quantity': self.ideal_quantity,
            'unit_cost': self.unit_cost,
            'total_value': self.total_value,
            'stock_status': self.stock_status,
            'expiry_date': self.expiry_date.isoformat() if self.expiry_date else None,
            'location': self.location,
            'supplier': {'name': self.supplier_name, 'contact': self.supplier_contact},
            'notes': self.notes,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<InventoryItem {self.item_code} {self.name} - qty={self.current_quantity} - cost={self.unit_cost}>"

    @validates('name', 'category')
    def validate_required_text(self, key, value):
        if not value or not str(value).strip():
            raise ValidationError(f"{key.capitalize()} is required")
        return value.strip()

    @validates('current_quantity', 'reorder_level', 'ideal_quantity')
    def validate_quantities(self, key, value):
        if value is None or value < 0:
            raise ValidationError(f"{key.replace('_', ' ').capitalize()} cannot be negative")
        return value

    @validates('unit_cost')
    def validate_unit_cost(self, key, value):
        if value is None or value < 0:
            raise ValidationError('Unit cost cannot be negative')
        return value


class InventoryTransaction(db.Model, SerializerMixin, AppendOnlyMixin):
    __tablename__ = 'inventory_transactions'

    serialize_only = (
        'id', 'clinic_id', 'item_id', 'transaction_type', 'quantity', 'unit_cost',
        'total_cost', 'reference_number', 'notes', 'performed_by_id', 'procedure_id', 'date',
    )

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey('inventory_items.id'), nullable=False, index=True)
    transaction_type = db.Column(Enum(*transaction_types, name='transaction_type_enum'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)  # signed
    unit_cost = db.Column(db.Float, nullable=False, default=0.0)
    total_cost = db.Column(db.Float, nullable=False, default=0.0)
    reference_number = db.Column(db.String(60), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    performed_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    procedure_id = db.Column(db.Integer, db.ForeignKey('dental_procedures.id', ondelete='SET NULL'), nullable=True)
    date = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    item = db.relationship('InventoryItem')

    def __repr__(self):
        return f"<InventoryTransaction {self.transaction_type} item={self.item_id} qty={self.quantity}>"

    @validates('transaction_type')
    def validate_transaction_type(self, key, value):
        if value not in transaction_types:
            raise ValidationError(f"Transaction type must be one of {transaction_types}")
        return value


class DentalProcedure(db.Model, SerializerMixin):
    __tablename__ = 'dental_procedures'

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    category = db.Column(Enum(*procedure_categories, name='procedure_category_enum'), nullable=False)
    description = db.Column(db.Text, nullable=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    dentist_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id'), nullable=True)
    date = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    duration = db.Column(db.Integer, nullable=True)  # minutes
    total_inventory_cost = db.Column(db.Float, default=0.0, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(Enum(*procedure_statuses, name='procedure_status_enum'), default='Scheduled', nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    updated_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    patient = db.relationship('Patient')
    dentist = db.relationship('User', foreign_keys=[dentist_id])
    items = db.relationship(
        'ProcedureItem', back_populates='procedure',
        cascade='all, delete-orphan', order_by='ProcedureItem.id',
    )

    def recalculate_inventory_cost(self):
        self.total_inventory_cost = round(sum(line.total_cost or 0 for line in self.items), 2)
        return self.total_inventory_cost

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'name': self.name,
            'category': self.category,
            'description': self.description,
            'patient_id': self.patient_id,
            'patient_name': self.patient.full_name if self.patient else None,
            'dentist_id': self.dentist_id,
            'dentist_name': self.dentist.full_name if self.dentist else None,
            'appointment_id': self.appointment_id,
            'date': _iso(self.date),
            'duration': self.duration,
            'inventory_items': [line.to_dict() for line in self.items],
            'total_inventory_cost': self.total_inventory_cost,
            'notes': self.notes,
            'status': self.status,
            'created_by_id': self.created_by_id,
            'updated_by_id': self.updated_by_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<DentalProcedure {self.name} ({self.category}) cost={self.total_inventory_cost}>"

    @validates('name')
    def validate_name(self, key, name):
        if not name or not name.strip():
            raise ValidationError('Procedure name is required')
        return name.strip()

    @validates('category')
    def validate_category(self, key, value):
        if value not in procedure_categories:
            raise ValidationError(f"Category must be one of {procedure_categories}")
        return value

    @validates('status')
    def validate_status(self, key, value):
        if value not in procedure_statuses:
            raise ValidationError(f"Status must be one of {procedure_statuses}")
        return value

    @validates('duration')
    def validate_duration(self, key, value):
        if value is not None and value < 0:
            raise ValidationError('Duration cannot be negative')
        return value


class ProcedureItem(db.Model):
    """Cost snapshot of one inventory line consumed by a procedure."""
    __tablename__ = 'procedure_items'

    id = db.Column(db.Integer, primary_key=True)
    procedure_id = db.Column(db.Integer, db.ForeignKey('dental_procedures.id'), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey('inventory_items.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Float, nullable=False)
    total_cost = db.Column(db.Float, nullable=False)

    procedure = db.relationship('DentalProcedure', back_populates='items')
    item = db.relationship('InventoryItem')

    def to_dict(self):
        return {
            'id': self.id,
            'item_id': self.item_id,
            'name': self.item.name if self.item else None,
            'category': self.item.category if self.item else None,
            'quantity': self.quantity,
            'unit_cost': self.unit_cost,
            'total_cost': self.total_cost,
        }


class Appointment(db.Model, SerializerMixin):
    __tablename__ = 'appointments'
    __table_args__ = (CheckConstraint('start_time < end_time', name='start_before_end'),)

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)
    status = db.Column(Enum(*appointment_statuses, name='appointment_status_enum'), default='Scheduled', nullable=False)
    service_type = db.Column(db.String(100), nullable=True)
    reason = db.Column(db.Text, nullable=False)
    priority = db.Column(Enum(*appointment_priorities, name='appointment_priority_enum'), default='Medium', nullable=False)
    notes = db.Column(db.Text, nullable=True)
    queue_position = db.Column(db.Integer, nullable=True)
    checked_in_at = db.Column(db.DateTime, nullable=True)
    cancelled_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    patient = db.relationship('Patient')
    doctor = db.relationship('User', foreign_keys=[doctor_id])
    reschedule_history = db.relationship(
        'RescheduleEntry', back_populates='appointment',
        cascade='all, delete-orphan', order_by='RescheduleEntry.id',
    )

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'patient_name': self.patient.full_name if self.patient else None,
            'doctor_id': self.doctor_id,
            'doctor_name': self.doctor.full_name if self.doctor else None,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'status': self.status,
            'service_type': self.service_type,
            'reason': self.reason,
            'priority': self.priority,
            'notes': self.notes,
            'queue_position': self.queue_position,
            'checked_in_at': _iso(self.checked_in_at),
            'cancelled_by_id': self.cancelled_by_id,
            'cancellation_reason': self.cancellation_reason,
            'cancelled_at': _iso(self.cancelled_at),
            'reschedule_history': [entry.to_dict() for entry in self.reschedule_history],
            'created_by_id': self.created_by_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Appointment doctor={self.doctor_id} patient={self.patient_id} {self.start_time} {self.status}>"

    @validates('status')
    def validate_status(self, key, value):
        if value not in appointment_statuses:
            raise ValidationError(f"Status must be one of {appointment_statuses}")
        return value

    @validates('priority')
    def validate_priority(self, key, value):
        if value not in appointment_priorities:
            raise ValidationError(f"Priority must be one of {appointment_priorities}")
        return value


class RescheduleEntry(db.Model):
    __tablename__ = 'reschedule_entries'

    id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id'), nullable=False, index=True)
    previous_start_time = db.Column(db.DateTime, nullable=False)
    previous_end_time = db.Column(db.DateTime, nullable=False)
    rescheduled_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    rescheduled_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    reason = db.Column(db.Text, nullable=True)

    appointment = db.relationship('Appointment', back_populates='reschedule_history')

    def to_dict(self):
        return {
            'previous_start_time': _iso(self.previous_start_time),
            'previous_end_time': _iso(self.previous_end_time),
            'rescheduled_by_id': self.rescheduled_by_id,
            'rescheduled_at': _iso(self.rescheduled_at),
            'reason': self.reason,
        }


class Invoice(db.Model, SerializerMixin):
    __tablename__ = 'invoices'
    __table_args__ = (
        UniqueConstraint('clinic_id', 'invoice_number', name='uq_invoices_clinic_number'),
        CheckConstraint('paid_amount >= 0', name='non_negative_paid'),
        CheckConstraint('paid_amount <= total', name='paid_within_total'),
    )

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    invoice_number = db.Column(db.String(30), nullable=False)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id'), nullable=True)
    subtotal = db.Column(db.Float, default=0.0, nullable=False)
    discount = db.Column(db.Float, default=0.0, nullable=False)  # percent
    is_intra_state = db.Column(db.Boolean, default=True, nullable=False)
    place_of_supply = db.Column(db.String(60), nullable=True)
    gst_number = db.Column(db.String(20), nullable=True)
    total_taxable_value = db.Column(db.Float, default=0.0, nullable=False)
    total_cgst = db.Column(db.Float, default=0.0, nullable=False)
    total_sgst = db.Column(db.Float, default=0.0, nullable=False)
    total_igst = db.Column(db.Float, default=0.0, nullable=False)
    total_gst = db.Column(db.Float, default=0.0, nullable=False)
    total = db.Column(db.Float, default=0.0, nullable=False)
    paid_amount = db.Column(db.Float, default=0.0, nullable=False)
    payment_status = db.Column(Enum(*invoice_statuses, name='invoice_status_enum'), default='Unpaid', nullable=False)
    paid_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    patient = db.relationship('Patient')
    services = db.relationship(
        'InvoiceService', back_populates='invoice',
        cascade='all, delete-orphan', order_by='InvoiceService.id',
    )
    payments = db.relationship('Payment', back_populates='invoice', order_by='Payment.id')

    @property
    def balance(self):
        return round((self.total or 0) - (self.paid_amount or 0), 2)

    @staticmethod
    def status_for(paid_amount, total):
        if paid_amount > 0 and round(paid_amount, 2) >= round(total, 2):
            return 'Paid'
        if paid_amount > 0:
            return 'Partial'
        return 'Unpaid'

    def refresh_payment_status(self):
        self.payment_status = self.status_for(self.paid_amount or 0, self.total or 0)
        if self.payment_status == 'Paid' and self.paid_date is None:
            self.paid_date = utcnow()
        elif self.payment_status != 'Paid':
            self.paid_date = None
        return self.payment_status

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'invoice_number': self.invoice_number,
            'patient_id': self.patient_id,
            'patient_name': self.patient.full_name if self.patient else None,
            'doctor_id': self.doctor_id,
            'appointment_id': self.appointment_id,
            'services': [service.to_dict() for service in self.services],
            'subtotal': self.subtotal,
            'discount': self.discount,
            'is_intra_state': self.is_intra_state,
            'place_of_supply': self.place_of_supply,
            'gst_number': self.gst_number,
            'total_taxable_value': self.total_taxable_value,
            'total_cgst': self.total_cgst,
            'total_sgst': self.total_sgst,
            'total_igst': self.total_igst,
            'total_gst': self.total_gst,
            'total': self.total,
            'paid_amount': self.paid_amount,
            'balance': self.balance,
            'payment_status': self.payment_status,
            'paid_date': _iso(self.paid_date),
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number} total={self.total} paid={self.paid_amount} {self.payment_status}>"

    @validates('discount')
    def validate_discount(self, key, value):
        if value is None or value < 0 or value > 100:
            raise ValidationError('Discount must be between 0 and 100 percent')
        return value


class InvoiceService(db.Model):
    __tablename__ = 'invoice_services'

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    cost = db.Column(db.Float, nullable=False)
    quantity = db.Column(db.Integer, default=1, nullable=False)
    hsn_sac = db.Column(db.String(20), nullable=True)
    gst_rate = db.Column(db.Float, default=18.0, nullable=False)
    taxable_value = db.Column(db.Float, default=0.0, nullable=False)
    cgst = db.Column(db.Float, default=0.0, nullable=False)
    sgst = db.Column(db.Float, default=0.0, nullable=False)
    igst = db.Column(db.Float, default=0.0, nullable=False)

    invoice = db.relationship('Invoice', back_populates='services')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'cost': self.cost,
            'quantity': self.quantity,
            'hsn_sac': self.hsn_sac,
            'gst_rate': self.gst_rate,
            'taxable_value': self.taxable_value,
            'cgst': self.cgst,
            'sgst': self.sgst,
            'igst': self.igst,
        }

    @validates('name')
    def validate_name(self, key, name):
        if not name:
            raise ValidationError('Service name is required')
        return name

    @validates('cost')
    def validate_cost(self, key, value):
        if value is None or value < 0:
            raise ValidationError('Cost must be a positive number')
        return value

    @validates('quantity')
    def validate_quantity(self, key, value):
        if value is None or value < 1:
            raise ValidationError('Quantity must be at least 1')
        return value

    @validates('gst_rate')
    def validate_gst_rate(self, key, value):
        if value is None or value < 0 or value > 100:
            raise ValidationError('GST rate must be between 0 and 100')
        return value


class Payment(db.Model, SerializerMixin, AppendOnlyMixin):
    __tablename__ = 'payments'
    __table_args__ = (UniqueConstraint('clinic_id', 'payment_number', name='uq_payments_clinic_number'),)

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    payment_number = db.Column(db.String(30), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False, index=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(Enum(*payment_methods, name='payment_method_enum'), nullable=False)
    status = db.Column(db.String(20), default='completed', nullable=False)
    transaction_id = db.Column(db.String(100), nullable=True)
    upi_id = db.Column(db.String(100), nullable=True)
    cheque_number = db.Column(db.String(40), nullable=True)
    bank_name = db.Column(db.String(100), nullable=True)
    taxable_amount = db.Column(db.Float, default=0.0, nullable=False)
    cgst = db.Column(db.Float, default=0.0, nullable=False)
    sgst = db.Column(db.Float, default=0.0, nullable=False)
    igst = db.Column(db.Float, default=0.0, nullable=False)
    total_gst = db.Column(db.Float, default=0.0, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    received_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    invoice = db.relationship('Invoice', back_populates='payments')

    def __repr__(self):
        return f"<Payment {self.payment_number} invoice={self.invoice_id} amount={self.amount} method={self.payment_method}>"

    def gst_details(self):
        return {
            'taxable_amount': self.taxable_amount,
            'cgst': self.cgst,
            'sgst': self.sgst,
            'igst': self.igst,
            'total_gst': self.total_gst,
        }

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'payment_number': self.payment_number,
            'invoice_id': self.invoice_id,
            'invoice_number': self.invoice.invoice_number if self.invoice else None,
            'patient_id': self.patient_id,
            'doctor_id': self.doctor_id,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'status': self.status,
            'transaction_id': self.transaction_id,
            'upi_id': self.upi_id,
            'cheque_number': self.cheque_number,
            'bank_name': self.bank_name,
            'gst_details': self.gst_details(),
            'notes': self.notes,
            'received_by_id': self.received_by_id,
            'created_at': _iso(self.created_at),
        }

    @validates('amount')
    def validate_amount(self, key, value):
        if value is None or value <= 0:
            raise ValidationError("Amount must be greater than 0")
        return value

    @validates('payment_method')
    def validate_payment_method(self, key, value):
        if value not in payment_methods:
            raise ValidationError(f"Payment method must be one of {payment_methods}")
        return value


class Receipt(db.Model, SerializerMixin, AppendOnlyMixin):
    __tablename__ = 'receipts'
    __table_args__ = (UniqueConstraint('clinic_id', 'receipt_number', name='uq_receipts_clinic_number'),)

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    receipt_number = db.Column(db.String(30), nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'), nullable=False, unique=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(db.String(30), nullable=False)
    payment_date = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    taxable_amount = db.Column(db.Float, default=0.0, nullable=False)
    cgst = db.Column(db.Float, default=0.0, nullable=False)
    sgst = db.Column(db.Float, default=0.0, nullable=False)
    igst = db.Column(db.Float, default=0.0, nullable=False)
    total_gst = db.Column(db.Float, default=0.0, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    payment = db.relationship('Payment')
    invoice = db.relationship('Invoice')
    patient = db.relationship('Patient')

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'receipt_number': self.receipt_number,
            'payment_id': self.payment_id,
            'invoice_id': self.invoice_id,
            'patient_id': self.patient_id,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'payment_date': _iso(self.payment_date),
            'gst_details': {
                'taxable_amount': self.taxable_amount,
                'cgst': self.cgst,
                'sgst': self.sgst,
                'igst': self.igst,
                'total_gst': self.total_gst,
            },
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }


class GstReport(db.Model, SerializerMixin):
    __tablename__ = 'gst_reports'

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    report_type = db.Column(Enum(*gst_report_types, name='gst_report_type_enum'), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    gst_number = db.Column(db.String(20), nullable=True)
    summary = db.Column(db.JSON, nullable=False)
    rate_breakup = db.Column(db.JSON, nullable=False)
    invoice_ids = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), default='Generated', nullable=False)
    generated_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'report_type': self.report_type,
            'report_period': {'start_date': _iso(self.start_date), 'end_date': _iso(self.end_date)},
            'gst_number': self.gst_number,
            'summary': self.summary,
            'gst_rate_wise_breakup': self.rate_breakup,
            'invoices': self.invoice_ids,
            'status': self.status,
            'generated_by_id': self.generated_by_id,
            'created_at': _iso(self.created_at),
        }


class BankAccount(db.Model, SerializerMixin):
    __tablename__ = 'bank_accounts'

    serialize_only = ('id', 'clinic_id', 'bank_name', 'account_holder', 'account_number', 'ifsc_code', 'is_default')

    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.Integer, db.ForeignKey('clinics.id'), nullable=False, index=True)
    bank_name = db.Column(db.String(100), nullable=False)
    account_holder = db.Column(db.String(120), nullable=False)
    account_number = db.Column(db.String(40), nullable=False)
    ifsc_code = db.Column(db.String(20), nullable=True)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @validates('bank_name', 'account_holder', 'account_number')
    def validate_required(self, key, value):
        if not value:
            raise ValidationError(f"{key.replace('_', ' ').capitalize()} is required")
        return value


@event.listens_for(Session, 'before_flush')
def enforce_aggregate_invariants(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, AppendOnlyMixin):
            raise ConflictError(f"{type(obj).__name__} entries are append-only and cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, AppendOnlyMixin) and session.is_modified(obj, include_collections=False):
            raise ConflictError(f"{type(obj).__name__} entries are append-only and cannot be modified")

    procedures = set()
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, DentalProcedure):
            procedures.add(obj)
        elif isinstance(obj, ProcedureItem) and obj.procedure is not None:
            procedures.add(obj.procedure)
        elif isinstance(obj, Invoice):
            obj.refresh_payment_status()
    for procedure in procedures:
        procedure.recalculate_inventory_cost()
