import pytest

from app import create_app
from config import TestConfig
from models import db, Clinic, User, Patient
from permissions import Principal, Role
import inventory


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_clinic(app):
    counter = {'n': 0}

    def _make(**overrides):
        counter['n'] += 1
        attrs = dict(
            name=f"Clinic {counter['n']}",
            tenant_id=f"tenant-{counter['n']}",
            gst_number=f"27AAAAA000{counter['n']}A1Z5",
            timezone='UTC',
            working_hours_start='09:00',
            working_hours_end='17:00',
        )
        attrs.update(overrides)
        clinic = Clinic(**attrs)
        db.session.add(clinic)
        db.session.commit()
        return clinic
    return _make


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make(role, clinic=None, approved=True, password='password123', **overrides):
        counter['n'] += 1
        user = User(
            clinic_id=clinic.id if clinic else None,
            first_name=overrides.pop('first_name', role),
            last_name=overrides.pop('last_name', f"User{counter['n']}"),
            email=overrides.pop('email', f"{role.lower()}{counter['n']}@example.com"),
            role=role,
            is_approved=approved,
            approval_status='approved' if approved else 'pending',
            **overrides,
        )
        user.password = password
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_patient(app):
    def _make(clinic, user=None, **overrides):
        patient = Patient(
            clinic_id=clinic.id,
            user_id=user.id if user else None,
            first_name=overrides.pop('first_name', 'Asha'),
            last_name=overrides.pop('last_name', 'Rao'),
            email=overrides.pop('email', 'asha.rao@example.com'),
            **overrides,
        )
        db.session.add(patient)
        db.session.commit()
        return patient
    return _make


def principal_for(user):
    return Principal(actor_id=user.id, clinic_id=user.clinic_id, role=Role(user.role))


@pytest.fixture
def clinic(make_clinic):
    return make_clinic()


@pytest.fixture
def admin(make_user, clinic):
    return make_user('Admin', clinic)


@pytest.fixture
def doctor(make_user, clinic):
    return make_user('Doctor', clinic, first_name='Meera', last_name='Iyer')


@pytest.fixture
def admin_principal(admin):
    return principal_for(admin)


@pytest.fixture
def patient(make_patient, clinic):
    return make_patient(clinic)


@pytest.fixture
def make_item(admin_principal):
    def _make(principal=None, **overrides):
        attrs = dict(name='Cotton Rolls', category='Dental Supplies', unit_cost=10.0,
                     current_quantity=20, reorder_level=5)
        attrs.update(overrides)
        return inventory.create_item(principal or admin_principal, attrs)
    return _make


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
        return client
    return _login
