"""Staff registration and clinic membership requests."""

from errors import ValidationError, ConflictError, NotFoundError
from logs import get_logger
import notifications
from models import db, User, StaffRequest, Clinic, get_for_clinic, utcnow, roles
from permissions import Role

logger = get_logger(__name__)


def register_user(attrs):
    """Create a login. Patients are usable at once; every other role waits for approval."""
    for field in ('first_name', 'last_name', 'email', 'password', 'role'):
        if not attrs.get(field):
            raise ValidationError(f"{field} is required")
    if attrs['role'] not in roles:
        raise ValidationError(f"Invalid role. Must be one of: {roles}")
    if User.query.filter_by(email=attrs['email'].lower()).first():
        raise ConflictError('Email already exists')

    needs_approval = Role(attrs['role']).requires_approval
    user = User(
        first_name=attrs['first_name'],
        last_name=attrs['last_name'],
        email=attrs['email'],
        phone_number=attrs.get('phone_number'),
        role=attrs['role'],
        is_approved=not needs_approval,
        approval_status='pending' if needs_approval else 'approved',
    )
    user.password = attrs['password']
    if not needs_approval and attrs.get('clinic_id'):
        user.clinic_id = _active_clinic(attrs['clinic_id']).id
    db.session.add(user)
    db.session.flush()

    if needs_approval and attrs.get('clinic_id'):
        _open_request(user, attrs['clinic_id'], attrs['role'], attrs.get('message'))
    db.session.commit()
    logger.info('user_registered', user_id=user.id, role=user.role)
    return user


def _active_clinic(clinic_id):
    clinic = db.session.get(Clinic, clinic_id)
    if clinic is None or clinic.status != 'active':
        raise NotFoundError('Clinic not found')
    return clinic


def _open_request(user, clinic_id, role, message=None):
    clinic = _active_clinic(clinic_id)
    if user.clinic_id == clinic.id and user.is_approved:
        raise ConflictError('You are already a member of this clinic')
    pending = StaffRequest.query.filter_by(user_id=user.id, clinic_id=clinic.id, status='pending').first()
    if pending:
        raise ConflictError('A request for this clinic is already pending')

    request = StaffRequest(clinic_id=clinic.id, user_id=user.id, role=role, message=message)
    db.session.add(request)
    return request


def submit_request(user_id, clinic_id, role=None, message=None):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    request = _open_request(user, clinic_id, role or user.role, message)
    db.session.commit()
    logger.info('staff_request_submitted', request_id=request.id, clinic_id=clinic_id)
    return request


def get_request(principal, request_id):
    return get_for_clinic(StaffRequest, principal.clinic_id, request_id, 'Staff request')


def list_requests(principal, status=None):
    query = StaffRequest.query.filter(StaffRequest.clinic_id == principal.clinic_id)
    if status:
        query = query.filter(StaffRequest.status == status)
    return query.order_by(StaffRequest.created_at.desc(), StaffRequest.id.desc())


def approve_request(principal, request_id):
    """Approve a pending request. Approving it a second time is a no-op."""
    request = get_request(principal, request_id)
    if request.status == 'approved':
        return request
    if request.status == 'rejected':
        raise ConflictError('This request was already rejected')

    request.status = 'approved'
    request.reviewed_by_id = principal.actor_id
    request.reviewed_at = utcnow()
    user = request.user
    user.clinic_id = request.clinic_id
    user.role = request.role
    user.is_approved = True
    user.approval_status = 'approved'
    db.session.commit()

    logger.info('staff_request_approved', request_id=request.id, user_id=user.id)
    notifications.dispatch(user.email, 'Clinic access approved', 'Your request to join the clinic was approved.')
    return request


def reject_request(principal, request_id, reason=None):
    request = get_request(principal, request_id)
    if request.status == 'rejected':
        return request
    if request.status == 'approved':
        raise ConflictError('This request was already approved')

    request.status = 'rejected'
    request.reviewed_by_id = principal.actor_id
    request.reviewed_at = utcnow()
    request.rejection_reason = reason
    if not request.user.is_approved:
        request.user.approval_status = 'rejected'
    db.session.commit()

    notifications.dispatch(request.user.email, 'Clinic access request declined', reason or 'Your request was declined.')
    return request


def list_staff(principal, role=None):
    query = User.query.filter(User.clinic_id == principal.clinic_id, User.role != 'Patient')
    if role:
        query = query.filter(User.role == role)
    return query.order_by(User.last_name.asc(), User.first_name.asc())
