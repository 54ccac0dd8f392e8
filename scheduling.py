"""Appointment scheduling, availability and the same-day visit queue.

Datetimes are stored as naive UTC. Calendar days and working hours are
interpreted in the clinic's own timezone through pytz.
"""

from collections import Counter
from datetime import datetime, timedelta

import pytz
from flask import current_app, has_app_context

import notifications
from errors import ValidationError, ForbiddenError, ConflictError, NotFoundError
from logs import get_logger
from models import (
    db, Appointment, RescheduleEntry, Clinic, Patient, User,
    get_for_clinic, to_utc_naive, range_start, range_end, utcnow,
)
from permissions import PermissionTable

logger = get_logger(__name__)

MAX_DURATION = timedelta(hours=8)
TERMINAL_STATUSES = ('Completed', 'Cancelled', 'NoShow')
INACTIVE_STATUSES = ('Cancelled', 'NoShow')
RESCHEDULABLE_STATUSES = ('Scheduled', 'Confirmed', 'Rescheduled')

TRANSITIONS = {
    'Scheduled': ('Confirmed', 'Cancelled', 'Rescheduled'),
    'Confirmed': ('Completed', 'Cancelled', 'NoShow', 'Rescheduled'),
    'Rescheduled': ('Scheduled', 'Confirmed', 'Cancelled'),
    'Completed': (),
    'Cancelled': (),
    'NoShow': (),
}

EDITABLE_FIELDS = ('service_type', 'reason', 'priority', 'notes')


def _may_set_status(principal, status):
    table = current_app.extensions.get('permissions') if has_app_context() else None
    return (table or PermissionTable()).may_set_status(principal.role, status)


def _clinic(principal):
    clinic = db.session.get(Clinic, principal.clinic_id)
    if clinic is None:
        raise NotFoundError('Clinic not found')
    return clinic


def _doctor(principal, doctor_id):
    doctor = get_for_clinic(User, principal.clinic_id, doctor_id, 'Doctor')
    if doctor.role != 'Doctor':
        raise ValidationError('Selected user is not a doctor')
    return doctor


def own_patient_ids(principal):
    rows = db.session.query(Patient.id).filter(
        Patient.clinic_id == principal.clinic_id, Patient.user_id == principal.actor_id
    ).all()
    return [row[0] for row in rows]


def _parse_hour(value):
    hours, minutes = value.split(':')
    return int(hours), int(minutes)


def local_window(clinic, day, start=None, end=None):
    """Clinic working window for ``day`` as naive UTC datetimes."""
    tz = clinic.tz
    start_h, start_m = _parse_hour(start or clinic.working_hours_start)
    end_h, end_m = _parse_hour(end or clinic.working_hours_end)
    opens = tz.localize(datetime(day.year, day.month, day.day, start_h, start_m))
    closes = tz.localize(datetime(day.year, day.month, day.day, end_h, end_m))
    return to_utc_naive(opens), to_utc_naive(closes)


def local_day_bounds(clinic, day):
    tz = clinic.tz
    start = tz.localize(datetime(day.year, day.month, day.day))
    end = tz.localize(datetime(day.year, day.month, day.day) + timedelta(days=1))
    return to_utc_naive(start), to_utc_naive(end)


def local_date(clinic, moment):
    return pytz.utc.localize(moment).astimezone(clinic.tz).date()


def validate_times(start_time, end_time):
    if start_time is None or end_time is None:
        raise ValidationError('start_time and end_time are required')
    start_time, end_time = to_utc_naive(start_time), to_utc_naive(end_time)
    if start_time >= end_time:
        raise ValidationError('End time must be after start time')
    if end_time - start_time > MAX_DURATION:
        raise ValidationError('Appointment duration cannot exceed 8 hours')
    return start_time, end_time


def find_overlap(clinic_id, doctor_id, start_time, end_time, exclude_id=None):
    query = Appointment.query.filter(
        Appointment.clinic_id == clinic_id,
        Appointment.doctor_id == doctor_id,
        Appointment.status.notin_(INACTIVE_STATUSES),
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
    )
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)
    return query.order_by(Appointment.start_time.asc()).first()


def _guard_overlap(principal, doctor_id, start_time, end_time, exclude_id=None):
    clash = find_overlap(principal.clinic_id, doctor_id, start_time, end_time, exclude_id)
    if clash is None:
        return
    enforce = has_app_context() and current_app.config.get('ENFORCE_SLOT_EXCLUSIVITY', False)
    if enforce:
        raise ConflictError(
            'The selected time slot is not available',
            details={'appointment_id': clash.id, 'start_time': clash.start_time.isoformat(),
                     'end_time': clash.end_time.isoformat()},
        )
    logger.warning('appointment_overlap', doctor_id=doctor_id, clashes_with=clash.id)


def _notify(appointment, subject, body):
    for person in (appointment.patient, appointment.doctor):
        if person is not None:
            notifications.dispatch(person.email, subject, body)


def _describe(appointment):
    return f"{appointment.start_time:%Y-%m-%d %H:%M} UTC with Dr. {appointment.doctor.full_name}"


def get_appointment(principal, appointment_id):
    appointment = get_for_clinic(Appointment, principal.clinic_id, appointment_id, 'Appointment')
    if principal.is_patient and appointment.patient_id not in own_patient_ids(principal):
        raise NotFoundError('Appointment not found')
    return appointment


def create_appointment(principal, attrs, clinic_id_hint=None):
    """Book an appointment in the principal's clinic.

    ``clinic_id_hint`` is whatever the caller put in the payload. It is never
    used for scoping; a mismatch is only logged.
    """
    if clinic_id_hint is not None and clinic_id_hint != principal.clinic_id:
        logger.warning('clinic_id_ignored', supplied=clinic_id_hint, principal_clinic=principal.clinic_id)

    for field in ('patient_id', 'doctor_id', 'start_time', 'end_time', 'reason'):
        if not attrs.get(field):
            raise ValidationError(f"{field} is required")

    start_time, end_time = validate_times(attrs['start_time'], attrs['end_time'])
    patient = get_for_clinic(Patient, principal.clinic_id, attrs['patient_id'], 'Patient')
    if principal.is_patient and patient.id not in own_patient_ids(principal):
        raise ForbiddenError('Patients may only book for themselves')
    doctor = _doctor(principal, attrs['doctor_id'])
    _guard_overlap(principal, doctor.id, start_time, end_time)

    appointment = Appointment(
        clinic_id=principal.clinic_id,
        patient_id=patient.id,
        doctor_id=doctor.id,
        start_time=start_time,
        end_time=end_time,
        reason=attrs['reason'],
        service_type=attrs.get('service_type'),
        priority=attrs.get('priority') or 'Medium',
        notes=attrs.get('notes'),
        status='Scheduled',
        created_by_id=principal.actor_id,
    )
    db.session.add(appointment)
    db.session.commit()

    logger.info('appointment_created', appointment_id=appointment.id, doctor_id=doctor.id)
    _notify(appointment, 'Appointment scheduled', f"Your appointment is booked for {_describe(appointment)}.")
    return appointment


def list_appointments(principal, doctor_id=None, patient_id=None, status=None, start_date=None, end_date=None):
    query = Appointment.query.filter(Appointment.clinic_id == principal.clinic_id)
    if principal.is_patient:
        query = query.filter(Appointment.patient_id.in_(own_patient_ids(principal)))
    if doctor_id:
        query = query.filter(Appointment.doctor_id == doctor_id)
    if patient_id:
        query = query.filter(Appointment.patient_id == patient_id)
    if status:
        query = query.filter(Appointment.status == status)
    if start_date:
        query = query.filter(Appointment.start_time >= range_start(start_date))
    if end_date:
        query = query.filter(Appointment.start_time <= range_end(end_date))
    return query.order_by(Appointment.start_time.asc(), Appointment.id.asc())


def update_details(principal, appointment_id, attrs):
    appointment = get_appointment(principal, appointment_id)
    if appointment.status in TERMINAL_STATUSES:
        raise ValidationError(f"Cannot edit a {appointment.status} appointment")
    for key in EDITABLE_FIELDS:
        if key in attrs and attrs[key] is not None:
            setattr(appointment, key, attrs[key])
    db.session.commit()
    return appointment


def _check_transition(appointment, new_status):
    if new_status not in TRANSITIONS.get(appointment.status, ()):
        raise ValidationError(f"Cannot change status from {appointment.status} to {new_status}")


def update_status(principal, appointment_id, new_status, reason=None, now=None):
    if new_status == 'Rescheduled':
        raise ValidationError('Use reschedule to move an appointment')
    if new_status == 'Cancelled':
        return cancel(principal, appointment_id, reason)
    if new_status == 'NoShow':
        return mark_no_show(principal, appointment_id, now=now)

    appointment = get_appointment(principal, appointment_id)
    _check_transition(appointment, new_status)
    if not _may_set_status(principal, new_status):
        raise ForbiddenError(f"You do not have permission to change appointment status to {new_status}")

    appointment.status = new_status
    db.session.commit()
    logger.info('appointment_status_changed', appointment_id=appointment.id, status=new_status)
    return appointment


def cancel(principal, appointment_id, reason=None):
    appointment = get_appointment(principal, appointment_id)
    _check_transition(appointment, 'Cancelled')
    if not _may_set_status(principal, 'Cancelled'):
        raise ForbiddenError('You do not have permission to cancel appointments')
    if not principal.is_patient and not (reason and reason.strip()):
        raise ValidationError('A cancellation reason is required')

    appointment.status = 'Cancelled'
    appointment.cancelled_by_id = principal.actor_id
    appointment.cancellation_reason = reason
    appointment.cancelled_at = utcnow()
    appointment.queue_position = None
    db.session.commit()

    logger.info('appointment_cancelled', appointment_id=appointment.id)
    _notify(appointment, 'Appointment cancelled', f"Your appointment on {_describe(appointment)} was cancelled.")
    return appointment


def reschedule(principal, appointment_id, start_time, end_time, reason=None):
    appointment = get_appointment(principal, appointment_id)
    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise ValidationError(f"Cannot reschedule a {appointment.status} appointment")
    start_time, end_time = validate_times(start_time, end_time)
    _guard_overlap(principal, appointment.doctor_id, start_time, end_time, exclude_id=appointment.id)

    appointment.reschedule_history.append(RescheduleEntry(
        previous_start_time=appointment.start_time,
        previous_end_time=appointment.end_time,
        rescheduled_by_id=principal.actor_id,
        rescheduled_at=utcnow(),
        reason=reason,
    ))
    appointment.start_time = start_time
    appointment.end_time = end_time
    appointment.status = 'Rescheduled'
    appointment.queue_position = None
    appointment.checked_in_at = None
    db.session.commit()

    logger.info('appointment_rescheduled', appointment_id=appointment.id)
    _notify(appointment, 'Appointment rescheduled', f"Your appointment has moved to {_describe(appointment)}.")
    return appointment


def check_in(principal, appointment_id):
    appointment = get_appointment(principal, appointment_id)
    if appointment.status in TERMINAL_STATUSES:
        raise ValidationError(f"Cannot check in a {appointment.status} appointment")
    appointment.checked_in_at = utcnow()
    db.session.commit()
    return appointment


def mark_no_show(principal, appointment_id, now=None):
    appointment = get_appointment(principal, appointment_id)
    _check_transition(appointment, 'NoShow')
    if not _may_set_status(principal, 'NoShow'):
        raise ForbiddenError('You do not have permission to mark no-shows')
    now = to_utc_naive(now) or utcnow()
    if appointment.end_time > now:
        raise ValidationError('The appointment slot has not passed yet')
    if appointment.checked_in_at is not None:
        raise ValidationError('The patient checked in for this appointment')

    appointment.status = 'NoShow'
    appointment.queue_position = None
    db.session.commit()
    return appointment


def send_reminder(principal, appointment_id, now=None):
    appointment = get_appointment(principal, appointment_id)
    now = to_utc_naive(now) or utcnow()
    if appointment.status in TERMINAL_STATUSES or appointment.start_time <= now:
        raise ValidationError('Cannot send reminder for past or closed appointments')
    patient = appointment.patient
    return notifications.dispatch(
        patient.email if patient else None,
        'Appointment reminder',
        f"Reminder: you have an appointment on {_describe(appointment)}.",
    )


def _merge(intervals):
    merged = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return merged


def free_intervals(window_start, window_end, busy):
    """``[window_start, window_end)`` minus the busy intervals."""
    free = []
    cursor = window_start
    for start, end in _merge(busy):
        if end <= cursor or start >= window_end:
            continue
        if start > cursor:
            free.append((cursor, min(start, window_end)))
        cursor = max(cursor, end)
    if cursor < window_end:
        free.append((cursor, window_end))
    return free


def available_slots(principal, doctor_id, day, service_duration=None):
    clinic = _clinic(principal)
    doctor = _doctor(principal, doctor_id)
    duration = int(service_duration or clinic.appointment_duration)
    if duration <= 0:
        raise ValidationError('Service duration must be greater than 0')

    window_start, window_end = local_window(clinic, day)
    booked = Appointment.query.filter(
        Appointment.clinic_id == principal.clinic_id,
        Appointment.doctor_id == doctor.id,
        Appointment.status.notin_(INACTIVE_STATUSES),
        Appointment.start_time < window_end,
        Appointment.end_time > window_start,
    ).all()

    step = timedelta(minutes=duration)
    slots = []
    for start, end in free_intervals(window_start, window_end, [(a.start_time, a.end_time) for a in booked]):
        cursor = start
        while cursor + step <= end:
            slots.append({'start_time': cursor, 'end_time': cursor + step})
            cursor += step
    return {
        'doctor_id': doctor.id,
        'doctor_name': doctor.full_name,
        'date': day.isoformat(),
        'duration': duration,
        'slots': slots,
    }


def _merge_queue(entries):
    # unpositioned bookings slot in after the last queued entry that starts no later
    ordered = sorted((e for e in entries if e.queue_position is not None), key=lambda e: (e.queue_position, e.id))
    for entry in sorted((e for e in entries if e.queue_position is None), key=lambda e: (e.start_time, e.id)):
        index = 0
        for position, queued in enumerate(ordered, start=1):
            if queued.start_time <= entry.start_time:
                index = position
        ordered.insert(index, entry)
    return ordered


def queue(principal, doctor_id, day):
    """Same-day, non-cancelled appointments in visit order.

    Manually placed entries keep their relative order; the rest are merged in
    by start time.
    """
    clinic = _clinic(principal)
    start, end = local_day_bounds(clinic, day)
    entries = Appointment.query.filter(
        Appointment.clinic_id == principal.clinic_id,
        Appointment.doctor_id == doctor_id,
        Appointment.status != 'Cancelled',
        Appointment.start_time >= start,
        Appointment.start_time < end,
    ).all()
    return _merge_queue(entries)


def update_queue_position(principal, appointment_id, position):
    """Move one appointment to a 1-based ``position`` and renumber the queue."""
    try:
        position = int(position)
    except (TypeError, ValueError):
        raise ValidationError('Position must be an integer')
    if position < 1:
        raise ValidationError('Position must be 1 or greater')

    appointment = get_appointment(principal, appointment_id)
    if appointment.status == 'Cancelled':
        raise ValidationError('Cancelled appointments are not queued')
    clinic = _clinic(principal)
    entries = queue(principal, appointment.doctor_id, local_date(clinic, appointment.start_time))

    entries = [entry for entry in entries if entry.id != appointment.id]
    entries.insert(min(position, len(entries) + 1) - 1, appointment)
    for index, entry in enumerate(entries, start=1):
        entry.queue_position = index
    db.session.commit()
    return entries


def appointment_stats(principal, start_date=None, end_date=None):
    today = utcnow().date()
    start = range_start(start_date or today - timedelta(days=30))
    end = range_end(end_date or today)
    appointments = Appointment.query.filter(
        Appointment.clinic_id == principal.clinic_id,
        Appointment.start_time >= start,
        Appointment.start_time <= end,
    ).all()

    by_doctor = Counter(a.doctor_id for a in appointments)
    doctors = {u.id: u for u in User.query.filter(User.id.in_(list(by_doctor))).all()} if by_doctor else {}
    daily = Counter(a.start_time.strftime('%Y-%m-%d') for a in appointments)

    return {
        'total_appointments': len(appointments),
        'date_range': {'start': start.isoformat(), 'end': end.isoformat()},
        'status_breakdown': [
            {'status': status, 'count': count}
            for status, count in sorted(Counter(a.status for a in appointments).items())
        ],
        'service_type_breakdown': [
            {'service_type': service, 'count': count}
            for service, count in sorted(Counter(a.service_type or 'Unspecified' for a in appointments).items())
        ],
        'doctor_breakdown': [
            {'doctor_id': doctor_id, 'doctor_name': doctors[doctor_id].full_name if doctor_id in doctors else None,
             'count': count}
            for doctor_id, count in sorted(by_doctor.items())
        ],
        'daily_counts': [{'date': day, 'count': count} for day, count in sorted(daily.items())],
    }


def slot_to_dict(slot):
    return {'start_time': slot['start_time'].isoformat(), 'end_time': slot['end_time'].isoformat()}
