import pytest

import patients
from conftest import principal_for
from errors import ValidationError, NotFoundError
from models import Patient


def test_create_patient_in_callers_clinic(admin_principal):
    patient = patients.create_patient(admin_principal, {'first_name': 'Meera', 'last_name': 'Iyer'})

    assert patient.clinic_id == admin_principal.clinic_id
    assert patient.user_id is None


def test_create_patient_requires_names(admin_principal):
    with pytest.raises(ValidationError):
        patients.create_patient(admin_principal, {'first_name': 'Meera'})


def test_create_patient_links_a_local_login(admin_principal, make_user, clinic):
    login = make_user('Patient', clinic)

    patient = patients.create_patient(admin_principal, {
        'first_name': 'Meera', 'last_name': 'Iyer', 'user_id': login.id,
    })

    assert patient.user_id == login.id


def test_create_patient_refuses_a_login_from_another_clinic(admin_principal, make_clinic, make_user):
    foreign = make_user('Patient', make_clinic())

    with pytest.raises(NotFoundError):
        patients.create_patient(admin_principal, {
            'first_name': 'Meera', 'last_name': 'Iyer', 'user_id': foreign.id,
        })
    assert Patient.query.count() == 0


def test_create_patient_refuses_a_staff_login(admin_principal, doctor):
    with pytest.raises(NotFoundError):
        patients.create_patient(admin_principal, {
            'first_name': 'Meera', 'last_name': 'Iyer', 'user_id': doctor.id,
        })


def test_patient_login_sees_only_own_record(make_user, make_patient, clinic, patient):
    login = make_user('Patient', clinic)
    own = make_patient(clinic, user=login, email='own@example.com')
    me = principal_for(login)

    assert patients.get_patient(me, own.id).id == own.id
    with pytest.raises(NotFoundError):
        patients.get_patient(me, patient.id)
