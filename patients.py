from sqlalchemy import or_

from errors import ValidationError, NotFoundError
from models import db, Patient, User, get_for_clinic

PATIENT_FIELDS = ('first_name', 'last_name', 'gender', 'dob', 'phone_number', 'email')


def create_patient(principal, attrs):
    for field in ('first_name', 'last_name'):
        if not attrs.get(field):
            raise ValidationError(f"{field} is required")
    patient = Patient(
        clinic_id=principal.clinic_id,
        **{key: attrs[key] for key in PATIENT_FIELDS if attrs.get(key) is not None},
    )
    if attrs.get('user_id'):
        user = get_for_clinic(User, principal.clinic_id, attrs['user_id'], 'Patient login')
        if user.role != 'Patient':
            raise NotFoundError('Patient login not found')
        patient.user_id = user.id
    db.session.add(patient)
    db.session.commit()
    return patient


def get_patient(principal, patient_id):
    patient = get_for_clinic(Patient, principal.clinic_id, patient_id, 'Patient')
    if principal.is_patient and patient.user_id != principal.actor_id:
        raise NotFoundError('Patient not found')
    return patient


def update_patient(principal, patient_id, attrs):
    patient = get_patient(principal, patient_id)
    for key in PATIENT_FIELDS:
        if key in attrs:
            setattr(patient, key, attrs[key])
    db.session.commit()
    return patient


def list_patients(principal, search=None):
    query = Patient.query.filter(Patient.clinic_id == principal.clinic_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Patient.first_name.ilike(pattern),
            Patient.last_name.ilike(pattern),
            Patient.phone_number.ilike(pattern),
            Patient.email.ilike(pattern),
        ))
    return query.order_by(Patient.last_name.asc(), Patient.first_name.asc())
