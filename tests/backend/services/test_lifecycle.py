from datetime import date, time

import pytest

from backend.core import config
from backend.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RescheduleLimitExceededError,
    SlotUnavailableError,
    ValidationError,
)
from backend.models.appointment import AppointmentStatus
from backend.models.invoice import Invoice, InvoiceStatus
from backend.models.user import Role
from backend.services import lifecycle
from backend.services.booking import book_appointment
from backend.services.notifications import APPOINTMENT_CANCELLED, APPOINTMENT_RESCHEDULED

MONDAY = date(2026, 1, 5)


@pytest.fixture
def booked(db, patient, provider, admin_user, actor_for, publisher):
    result = book_appointment(
        db, actor_for(admin_user), patient.id, provider.id, date(2025, 3, 1), time(10, 0), 30, 'General Checkup',
        publisher=publisher,
    )
    publisher.events.clear()
    return result


def test_provider_confirms_then_completes(db, provider, booked, actor_for, publisher) -> None:
    appointment = lifecycle.confirm(db, actor_for(provider), booked.appointment.id, publisher)
    assert appointment.status is AppointmentStatus.CONFIRMED

    appointment = lifecycle.complete(db, actor_for(provider), booked.appointment.id, publisher)
    assert appointment.status is AppointmentStatus.COMPLETED
    assert len(publisher.notifications) == 4
    assert len(publisher.activities) == 2


def test_patient_cannot_confirm_reject_or_complete(db, patient, booked, actor_for, publisher) -> None:
    for operation in (lifecycle.confirm, lifecycle.reject, lifecycle.complete):
        with pytest.raises(PermissionDeniedError):
            operation(db, actor_for(patient), booked.appointment.id, publisher)

    assert lifecycle.get_appointment(db, booked.appointment.id).status is AppointmentStatus.SCHEDULED
    assert publisher.events == []


def test_only_participants_can_act(db, make_user, booked, actor_for, publisher) -> None:
    stranger = make_user(Role.PROVIDER, 'Stranger')

    with pytest.raises(PermissionDeniedError):
        lifecycle.confirm(db, actor_for(stranger), booked.appointment.id, publisher)


def test_complete_requires_a_confirmed_appointment(db, provider, booked, actor_for, publisher) -> None:
    with pytest.raises(InvalidTransitionError) as exception_info:
        lifecycle.complete(db, actor_for(provider), booked.appointment.id, publisher)

    assert exception_info.value.status_code == 409


def test_reject_releases_invoice_and_slot(db, provider, booked, actor_for, publisher) -> None:
    lifecycle.reject(db, actor_for(provider), booked.appointment.id, publisher)

    invoice = db.query(Invoice).filter(Invoice.appointment_id == booked.appointment.id).one()
    assert invoice.status is InvoiceStatus.CANCELLED

    with pytest.raises(InvalidTransitionError):
        lifecycle.reject(db, actor_for(provider), booked.appointment.id, publisher)


def test_patient_cancel_notifies_both_parties(db, patient, provider, booked, actor_for, publisher) -> None:
    appointment = lifecycle.cancel(db, actor_for(patient), booked.appointment.id, publisher)

    assert appointment.status is AppointmentStatus.CANCELLED
    messages = {event.recipient_id: event.message for event in publisher.notifications}
    assert messages[provider.id] == 'Alice Patient has cancelled their appointment scheduled for 2025-03-01 at 10:00'
    assert messages[patient.id] == 'You have cancelled your appointment with Dr. Smith scheduled for 2025-03-01 at 10:00'
    assert all(event.event_type == APPOINTMENT_CANCELLED for event in publisher.notifications)


def test_cancel_is_refused_once_completed(db, provider, booked, actor_for, publisher) -> None:
    lifecycle.confirm(db, actor_for(provider), booked.appointment.id, publisher)
    lifecycle.complete(db, actor_for(provider), booked.appointment.id, publisher)

    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel(db, actor_for(provider), booked.appointment.id, publisher)


def test_patient_reschedule_once_then_limit(db, patient, booked, actor_for, publisher) -> None:
    appointment = lifecycle.reschedule(
        db, actor_for(patient), booked.appointment.id, '2025-03-05', '11:00', publisher
    )

    assert appointment.date == date(2025, 3, 5)
    assert appointment.time == time(11, 0)
    assert appointment.status is AppointmentStatus.CONFIRMED
    assert appointment.reschedule_count == 1

    invoice = db.query(Invoice).filter(Invoice.appointment_id == appointment.id).one()
    assert invoice.due_date == date(2025, 3, 2)
    assert invoice.description == 'Appointment with Dr. Smith on 2025-03-05 at 11:00'

    patient_event = next(event for event in publisher.notifications if event.recipient_id == patient.id)
    assert patient_event.event_type == APPOINTMENT_RESCHEDULED
    assert patient_event.payload['old_date'] == '2025-03-01'
    assert patient_event.payload['new_time'] == '11:00'
    assert patient_event.message == (
        'Your appointment with Dr. Smith has been rescheduled from 2025-03-01 at 10:00 to 2025-03-05 at 11:00'
    )

    with pytest.raises(RescheduleLimitExceededError) as exception_info:
        lifecycle.reschedule(db, actor_for(patient), booked.appointment.id, '2025-03-06', '11:00', publisher)

    assert exception_info.value.status_code == 403
    assert lifecycle.get_appointment(db, booked.appointment.id).reschedule_count == 1


def test_limit_is_checked_before_slot_availability(
    db, patient, other_patient, provider, booked, actor_for, add_appointment, publisher, monkeypatch
) -> None:
    monkeypatch.setattr(config, 'PATIENT_RESCHEDULE_LIMIT', 0)
    add_appointment(other_patient.id, provider.id, date(2025, 3, 5), time(11, 0))

    with pytest.raises(RescheduleLimitExceededError):
        lifecycle.reschedule(db, actor_for(patient), booked.appointment.id, '2025-03-05', '11:00', publisher)


def test_provider_reschedules_without_limit(db, provider, booked, actor_for, publisher) -> None:
    for hour in (11, 12, 13):
        appointment = lifecycle.reschedule(
            db, actor_for(provider), booked.appointment.id, date(2025, 3, 5), time(hour, 0), publisher
        )

    assert appointment.reschedule_count == 3
    assert appointment.time == time(13, 0)


def test_reschedule_into_a_taken_slot_is_refused(
    db, other_patient, provider, booked, actor_for, add_appointment, publisher
) -> None:
    add_appointment(other_patient.id, provider.id, date(2025, 3, 5), time(11, 0))

    with pytest.raises(SlotUnavailableError):
        lifecycle.reschedule(db, actor_for(provider), booked.appointment.id, '2025-03-05', '11:00', publisher)

    appointment = lifecycle.get_appointment(db, booked.appointment.id)
    assert appointment.date == date(2025, 3, 1)
    assert appointment.reschedule_count == 0


def test_reschedule_to_the_same_slot_is_a_validation_error(db, provider, booked, actor_for, publisher) -> None:
    with pytest.raises(ValidationError):
        lifecycle.reschedule(db, actor_for(provider), booked.appointment.id, '2025-03-01', '10:00', publisher)


def test_reschedule_missing_appointment(db, provider, actor_for, publisher) -> None:
    with pytest.raises(NotFoundError):
        lifecycle.reschedule(db, actor_for(provider), 999, '2025-03-05', '11:00', publisher)


def test_update_status_never_touches_reschedule_count(db, provider, booked, actor_for, publisher) -> None:
    appointment = lifecycle.update_status(
        db, actor_for(provider), booked.appointment.id, 'rescheduled', publisher
    )

    assert appointment.status is AppointmentStatus.RESCHEDULED
    assert appointment.reschedule_count == 0


def test_update_status_rejects_unknown_status(db, provider, booked, actor_for, publisher) -> None:
    with pytest.raises(ValidationError):
        lifecycle.update_status(db, actor_for(provider), booked.appointment.id, 'pending', publisher)


def test_update_status_reclaims_slot_when_reactivating(
    db, patient, other_patient, provider, booked, actor_for, add_appointment, publisher
) -> None:
    lifecycle.cancel(db, actor_for(patient), booked.appointment.id, publisher)
    add_appointment(other_patient.id, provider.id, date(2025, 3, 1), time(10, 0))

    with pytest.raises(SlotUnavailableError):
        lifecycle.update_status(db, actor_for(provider), booked.appointment.id, 'scheduled', publisher)

    assert lifecycle.get_appointment(db, booked.appointment.id).status is AppointmentStatus.CANCELLED


def test_list_appointments_is_scoped_to_the_actor(
    db, patient, other_patient, provider, admin_user, booked, actor_for, add_appointment
) -> None:
    add_appointment(other_patient.id, provider.id, MONDAY, time(9, 0), status=AppointmentStatus.CONFIRMED)

    assert [a.patient_id for a in lifecycle.list_appointments(db, actor_for(patient))] == [patient.id]
    assert len(lifecycle.list_appointments(db, actor_for(provider))) == 2
    assert len(lifecycle.list_appointments(db, actor_for(admin_user), start_date=MONDAY)) == 1
    confirmed = lifecycle.list_appointments(db, actor_for(admin_user), status=AppointmentStatus.CONFIRMED)
    assert [a.date for a in confirmed] == [MONDAY]


def test_invoice_lookup_requires_participation(db, other_patient, booked, actor_for) -> None:
    with pytest.raises(PermissionDeniedError):
        lifecycle.get_invoice_for_appointment(db, actor_for(other_patient), booked.appointment.id)


def test_transition_loads_participants_once(
    db, provider, booked, actor_for, publisher, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls = []
    load_context = lifecycle._load_context

    def counting_load_context(session, appointment):
        calls.append(appointment.id)
        return load_context(session, appointment)

    monkeypatch.setattr(lifecycle, '_load_context', counting_load_context)

    lifecycle.confirm(db, actor_for(provider), booked.appointment.id, publisher)
    lifecycle.reschedule(db, actor_for(provider), booked.appointment.id, '2025-03-05', '11:00', publisher)

    assert calls == [booked.appointment.id, booked.appointment.id]
    assert publisher.activities[0].message == 'Appointment confirmed: Alice Patient with Dr. Smith on 2025-03-01'
