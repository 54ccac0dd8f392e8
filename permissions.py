from dataclasses import dataclass
from enum import Enum

from errors import ForbiddenError


class Role(Enum):
    ADMIN = 'Admin'
    DOCTOR = 'Doctor'
    RECEPTIONIST = 'Receptionist'
    PATIENT = 'Patient'
    STAFF = 'Staff'
    NURSE = 'Nurse'
    LAB_TECHNICIAN = 'LabTechnician'
    PHARMACIST = 'Pharmacist'

    @property
    def requires_approval(self):
        return self is not Role.PATIENT


class Action(Enum):
    INVENTORY_VIEW = 'inventory:view'
    INVENTORY_MANAGE = 'inventory:manage'
    INVENTORY_TRANSACT = 'inventory:transact'
    PROCEDURE_VIEW = 'procedure:view'
    PROCEDURE_MANAGE = 'procedure:manage'
    APPOINTMENT_VIEW = 'appointment:view'
    APPOINTMENT_BOOK = 'appointment:book'
    APPOINTMENT_UPDATE = 'appointment:update'
    APPOINTMENT_CANCEL = 'appointment:cancel'
    QUEUE_MANAGE = 'queue:manage'
    PATIENT_VIEW = 'patient:view'
    PATIENT_MANAGE = 'patient:manage'
    BILLING_VIEW = 'billing:view'
    BILLING_MANAGE = 'billing:manage'
    PAYMENT_PROCESS = 'payment:process'
    REPORT_VIEW = 'report:view'
    STAFF_MANAGE = 'staff:manage'


DEFAULT_PERMISSIONS = {
    Role.ADMIN: frozenset(Action),
    Role.DOCTOR: frozenset({
        Action.INVENTORY_VIEW, Action.INVENTORY_TRANSACT,
        Action.PROCEDURE_VIEW, Action.PROCEDURE_MANAGE,
        Action.APPOINTMENT_VIEW, Action.APPOINTMENT_BOOK, Action.APPOINTMENT_UPDATE, Action.APPOINTMENT_CANCEL,
        Action.QUEUE_MANAGE,
        Action.PATIENT_VIEW, Action.PATIENT_MANAGE,
        Action.BILLING_VIEW, Action.REPORT_VIEW,
    }),
    Role.RECEPTIONIST: frozenset({
        Action.APPOINTMENT_VIEW, Action.APPOINTMENT_BOOK, Action.APPOINTMENT_UPDATE,
        Action.APPOINTMENT_CANCEL, Action.QUEUE_MANAGE,
        Action.PATIENT_VIEW, Action.PATIENT_MANAGE,
        Action.BILLING_VIEW, Action.BILLING_MANAGE, Action.PAYMENT_PROCESS,
    }),
    Role.NURSE: frozenset({
        Action.APPOINTMENT_VIEW, Action.QUEUE_MANAGE,
        Action.PATIENT_VIEW, Action.PROCEDURE_VIEW,
        Action.INVENTORY_VIEW, Action.INVENTORY_TRANSACT,
    }),
    Role.STAFF: frozenset({
        Action.INVENTORY_VIEW, Action.INVENTORY_TRANSACT,
        Action.APPOINTMENT_VIEW, Action.PATIENT_VIEW,
    }),
    Role.LAB_TECHNICIAN: frozenset({Action.PATIENT_VIEW, Action.INVENTORY_VIEW}),
    Role.PHARMACIST: frozenset({
        Action.INVENTORY_VIEW, Action.INVENTORY_MANAGE, Action.INVENTORY_TRANSACT,
        Action.BILLING_VIEW,
    }),
    Role.PATIENT: frozenset({
        Action.APPOINTMENT_VIEW, Action.APPOINTMENT_BOOK, Action.APPOINTMENT_CANCEL, Action.BILLING_VIEW,
    }),
}


# appointment statuses each role may set directly
DEFAULT_STATUS_PERMISSIONS = {
    Role.ADMIN: frozenset({'Scheduled', 'Confirmed', 'Completed', 'Cancelled', 'NoShow'}),
    Role.RECEPTIONIST: frozenset({'Scheduled', 'Confirmed', 'Cancelled'}),
    Role.DOCTOR: frozenset({'Confirmed', 'Completed', 'Cancelled', 'NoShow'}),
    Role.PATIENT: frozenset({'Cancelled'}),
}


@dataclass(frozen=True)
class Principal:
    """The authenticated caller every service operation is scoped to."""
    actor_id: int
    clinic_id: int
    role: Role

    @property
    def is_patient(self):
        return self.role is Role.PATIENT


class PermissionTable:
    """Static Role x Action lookup; swap the table in tests or per deployment."""

    def __init__(self, table=None, statuses=None):
        self._table = dict(DEFAULT_PERMISSIONS if table is None else table)
        self._statuses = dict(DEFAULT_STATUS_PERMISSIONS if statuses is None else statuses)

    def allows(self, role, action):
        return action in self._table.get(role, frozenset())

    def may_set_status(self, role, status):
        return status in self._statuses.get(role, frozenset())

    def require(self, principal, action):
        if not self.allows(principal.role, action):
            raise ForbiddenError(f"Role {principal.role.value} may not perform {action.value}")
        return principal
