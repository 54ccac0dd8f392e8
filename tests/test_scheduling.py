from datetime import date, datetime, timedelta

import pytest

import scheduling
from conftest import principal_for
from errors import ValidationError, ConflictError, ForbiddenError, NotFoundError
from models import db, Appointment
from permissions import PermissionTable, Role


DAY = date(2030, 3, 4)


def at(hour, minute=0, day=DAY):
    return datetime(day.year, day.month, day.day, hour, minute)


def book(principal, patient, doctor, start, end, **overrides):
    attrs = dict(patient_id=patient.id, doctor_id=doctor.id, start_time=start, end_time=end, reason='Check-up')
    attrs.update(overrides)
    return scheduling.create_appointment(principal, attrs)


def test_create_requires_end_after_start(admin_principal, patient, doctor):
    with pytest.raises(ValidationError):
        book(admin_principal, patient, doctor, at(10), at(10))
    with pytest.raises(ValidationError):
        book(admin_principal, patient, doctor, at(10), at(9))


def test_create_rejects_marathon_appointments(admin_principal, patient, doctor):
    with pytest.raises(ValidationError):
        book(admin_principal, patient, doctor, at(8), at(17))


def test_create_uses_principal_clinic_not_payload(admin_principal, make_clinic, patient, doctor):
    other = make_clinic()
    appointment = scheduling.create_appointment(
        admin_principal,
        dict(patient_id=patient.id, doctor_id=doctor.id, start_time=at(9), end_time=at(9, 30), reason='Pain'),
        clinic_id_hint=other.id,
    )
    assert appointment.clinic_id == admin_principal.clinic_id
    assert appointment.status == 'Scheduled'


def test_create_notifies_patient_and_doctor(app, admin_principal, patient, doctor):
    book(admin_principal, patient, doctor, at(9), at(9, 30))
    recipients = [message['recipient'] for message in app.extensions['notifier'].sent]
    assert recipients == [patient.email, doctor.email]


def test_available_slots_skip_booked_interval(admin_principal, clinic, patient, doctor):
    clinic.working_hours_end = '12:00'
    db.session.commit()
    book(admin_principal, patient, doctor, at(10), at(10, 45))

    result = scheduling.available_slots(admin_principal, doctor.id, DAY, 30)

    starts = [slot['start_time'].strftime('%H:%M') for slot in result['slots']]
    assert starts == ['09:00', '09:30', '10:45', '11:15']
    assert result['duration'] == 30


def test_available_slots_ignore_cancelled(admin_principal, clinic, patient, doctor):
    clinic.working_hours_end = '10:00'
    db.session.commit()
    appointment = book(admin_principal, patient, doctor, at(9), at(10))
    scheduling.cancel(admin_principal, appointment.id, 'Patient travelling')

    result = scheduling.available_slots(admin_principal, doctor.id, DAY)
    assert len(result['slots']) == 2


def test_available_slots_use_clinic_timezone(admin_principal, clinic, doctor):
    clinic.timezone = 'Asia/Kolkata'
    clinic.working_hours_end = '10:00'
    db.session.commit()

    result = scheduling.available_slots(admin_principal, doctor.id, DAY, 60)

    assert [scheduling.slot_to_dict(slot) for slot in result['slots']] == [
        {'start_time': '2030-03-04T03:30:00', 'end_time': '2030-03-04T04:30:00'},
    ]


def test_overlap_is_advisory_by_default(admin_principal, patient, doctor):
    book(admin_principal, patient, doctor, at(9), at(10))
    second = book(admin_principal, patient, doctor, at(9, 30), at(10, 30))
    assert second.id is not None


def test_overlap_rejected_when_enforced(app, admin_principal, patient, doctor):
    app.config['ENFORCE_SLOT_EXCLUSIVITY'] = True
    first = book(admin_principal, patient, doctor, at(9), at(10))

    with pytest.raises(ConflictError) as exc:
        book(admin_principal, patient, doctor, at(9, 30), at(10, 30))
    assert exc.value.details['appointment_id'] == first.id
    assert Appointment.query.count() == 1


def test_reschedule_appends_history(admin_principal, admin, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))

    moved = scheduling.reschedule(admin_principal, appointment.id, at(14), at(14, 30), reason='Doctor in surgery')

    assert moved.start_time == at(14)
    assert moved.status == 'Rescheduled'
    assert len(moved.reschedule_history) == 1
    entry = moved.reschedule_history[0]
    assert entry.previous_start_time == at(9)
    assert entry.previous_end_time == at(9, 30)
    assert entry.rescheduled_by_id == admin.id


def test_rescheduled_can_return_to_scheduled(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    scheduling.reschedule(admin_principal, appointment.id, at(11), at(11, 30))

    assert scheduling.update_status(admin_principal, appointment.id, 'Scheduled').status == 'Scheduled'


def test_status_machine(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))

    with pytest.raises(ValidationError):
        scheduling.update_status(admin_principal, appointment.id, 'Completed')
    with pytest.raises(ValidationError):
        scheduling.update_status(admin_principal, appointment.id, 'Rescheduled')

    scheduling.update_status(admin_principal, appointment.id, 'Confirmed')
    scheduling.update_status(admin_principal, appointment.id, 'Completed')

    with pytest.raises(ValidationError):
        scheduling.cancel(admin_principal, appointment.id, 'Too late')


def test_role_limits_status_changes(admin_principal, make_user, clinic, patient, doctor):
    receptionist = principal_for(make_user('Receptionist', clinic))
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    scheduling.update_status(receptionist, appointment.id, 'Confirmed')

    with pytest.raises(ForbiddenError):
        scheduling.update_status(receptionist, appointment.id, 'Completed')


def test_status_rights_come_from_the_app_permission_table(app, make_user, admin_principal, clinic, patient, doctor):
    app.extensions['permissions'] = PermissionTable(statuses={
        Role.RECEPTIONIST: frozenset({'Confirmed', 'Completed'}),
    })
    receptionist = principal_for(make_user('Receptionist', clinic))
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))

    scheduling.update_status(receptionist, appointment.id, 'Confirmed')
    assert scheduling.update_status(receptionist, appointment.id, 'Completed').status == 'Completed'

    other = book(admin_principal, patient, doctor, at(10), at(10, 30))
    with pytest.raises(ForbiddenError):
        scheduling.cancel(admin_principal, other.id, 'Clinic closed')


def test_cancel_requires_reason_from_staff(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    with pytest.raises(ValidationError):
        scheduling.cancel(admin_principal, appointment.id, '  ')

    cancelled = scheduling.cancel(admin_principal, appointment.id, 'Clinic closed')
    assert cancelled.status == 'Cancelled'
    assert cancelled.cancelled_by_id == admin_principal.actor_id


def test_patients_only_see_their_own_appointments(admin_principal, make_user, make_patient, clinic, doctor):
    login = make_user('Patient', clinic)
    mine = make_patient(clinic, user=login, email='me@example.com')
    other = make_patient(clinic, first_name='Ravi', email='ravi@example.com')
    own = book(admin_principal, mine, doctor, at(9), at(9, 30))
    foreign = book(admin_principal, other, doctor, at(10), at(10, 30))
    me = principal_for(login)

    assert [a.id for a in scheduling.list_appointments(me)] == [own.id]
    with pytest.raises(NotFoundError):
        scheduling.get_appointment(me, foreign.id)
    with pytest.raises(ForbiddenError):
        book(me, other, doctor, at(11), at(11, 30))

    cancelled = scheduling.cancel(me, own.id)
    assert cancelled.status == 'Cancelled'


def test_no_show_needs_confirmed_past_slot_without_check_in(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    scheduling.update_status(admin_principal, appointment.id, 'Confirmed')

    with pytest.raises(ValidationError):
        scheduling.mark_no_show(admin_principal, appointment.id, now=at(9, 15))

    assert scheduling.mark_no_show(admin_principal, appointment.id, now=at(10)).status == 'NoShow'


def test_checked_in_patient_is_not_a_no_show(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    scheduling.update_status(admin_principal, appointment.id, 'Confirmed')
    scheduling.check_in(admin_principal, appointment.id)

    with pytest.raises(ValidationError):
        scheduling.mark_no_show(admin_principal, appointment.id, now=at(10))


def test_queue_defaults_to_start_time_and_accepts_manual_moves(admin_principal, patient, doctor):
    first = book(admin_principal, patient, doctor, at(9), at(9, 30))
    second = book(admin_principal, patient, doctor, at(10), at(10, 30))
    walk_in = book(admin_principal, patient, doctor, at(11), at(11, 30))
    dropped = book(admin_principal, patient, doctor, at(12), at(12, 30))
    scheduling.cancel(admin_principal, dropped.id, 'Duplicate')

    assert [a.id for a in scheduling.queue(admin_principal, doctor.id, DAY)] == [first.id, second.id, walk_in.id]

    scheduling.update_queue_position(admin_principal, walk_in.id, 1)

    ordered = scheduling.queue(admin_principal, doctor.id, DAY)
    assert [a.id for a in ordered] == [walk_in.id, first.id, second.id]
    assert [a.queue_position for a in ordered] == [1, 2, 3]
    assert walk_in.start_time == at(11)


def test_new_bookings_merge_into_a_reordered_queue(admin_principal, patient, doctor):
    first = book(admin_principal, patient, doctor, at(9), at(9, 30))
    second = book(admin_principal, patient, doctor, at(10), at(10, 30))
    walk_in = book(admin_principal, patient, doctor, at(11), at(11, 30))
    scheduling.update_queue_position(admin_principal, walk_in.id, 1)

    squeezed = book(admin_principal, patient, doctor, at(9, 45), at(10))
    evening = book(admin_principal, patient, doctor, at(16), at(16, 30))

    ordered = scheduling.queue(admin_principal, doctor.id, DAY)
    assert [a.id for a in ordered] == [walk_in.id, first.id, squeezed.id, second.id, evening.id]

    scheduling.update_queue_position(admin_principal, evening.id, 2)
    ordered = scheduling.queue(admin_principal, doctor.id, DAY)
    assert [a.id for a in ordered] == [walk_in.id, evening.id, first.id, squeezed.id, second.id]
    assert [a.queue_position for a in ordered] == [1, 2, 3, 4, 5]


def test_queue_position_must_be_positive(admin_principal, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    with pytest.raises(ValidationError):
        scheduling.update_queue_position(admin_principal, appointment.id, 0)


def test_other_clinic_appointments_are_invisible(admin_principal, make_clinic, make_user, patient, doctor):
    appointment = book(admin_principal, patient, doctor, at(9), at(9, 30))
    outsider = principal_for(make_user('Admin', make_clinic()))

    assert scheduling.list_appointments(outsider).count() == 0
    with pytest.raises(NotFoundError):
        scheduling.get_appointment(outsider, appointment.id)
    with pytest.raises(NotFoundError):
        scheduling.reschedule(outsider, appointment.id, at(15), at(15, 30))


def test_free_intervals():
    start, end = at(9), at(12)
    busy = [(at(10), at(10, 30)), (at(10, 15), at(11)), (at(13), at(14))]
    assert scheduling.free_intervals(start, end, busy) == [(at(9), at(10)), (at(11), at(12))]


def test_appointment_stats(admin_principal, patient, doctor):
    book(admin_principal, patient, doctor, at(9), at(9, 30), service_type='Cleaning')
    cancelled = book(admin_principal, patient, doctor, at(10), at(10, 30), service_type='Cleaning')
    scheduling.cancel(admin_principal, cancelled.id, 'Sick')

    stats = scheduling.appointment_stats(admin_principal, DAY - timedelta(days=1), DAY)

    assert stats['total_appointments'] == 2
    assert {'status': 'Cancelled', 'count': 1} in stats['status_breakdown']
    assert stats['service_type_breakdown'] == [{'service_type': 'Cleaning', 'count': 2}]
    assert stats['daily_counts'] == [{'date': '2030-03-04', 'count': 2}]
