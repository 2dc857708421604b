"""Appointment state machine and the role rules for moving through it."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import transaction
from backend.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RescheduleLimitExceededError,
    StorageError,
    ValidationError,
)
from backend.models.appointment import (
    Appointment,
    AppointmentStatus,
    INACTIVE_STATUSES,
    TERMINAL_STATUSES,
)
from backend.models.invoice import Invoice, InvoiceStatus
from backend.models.user import Actor, Role, User
from backend.services import booking_guard
from backend.services.booking import invoice_description, invoice_due_date
from backend.services.notifications import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_REJECTED,
    APPOINTMENT_RESCHEDULED,
    AppointmentContext,
    EventPublisher,
    appointment_context,
    appointment_events,
)
from backend.utils.dates import format_time, normalize_date, normalize_time

logger = logging.getLogger(__name__)

ALL_ROLES = frozenset(Role)
STAFF_ROLES = frozenset({Role.PROVIDER, Role.ADMIN})
NON_TERMINAL_STATUSES = frozenset(AppointmentStatus) - TERMINAL_STATUSES


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset
    target: AppointmentStatus
    roles: frozenset
    event_type: str
    releases_invoice: bool = False


CONFIRM = Transition(
    'confirm',
    frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED}),
    AppointmentStatus.CONFIRMED,
    STAFF_ROLES,
    APPOINTMENT_CONFIRMED,
)
REJECT = Transition(
    'reject',
    frozenset({AppointmentStatus.SCHEDULED}),
    AppointmentStatus.REJECTED,
    STAFF_ROLES,
    APPOINTMENT_REJECTED,
    releases_invoice=True,
)
CANCEL = Transition(
    'cancel',
    NON_TERMINAL_STATUSES,
    AppointmentStatus.CANCELLED,
    ALL_ROLES,
    APPOINTMENT_CANCELLED,
    releases_invoice=True,
)
COMPLETE = Transition(
    'complete',
    frozenset({AppointmentStatus.CONFIRMED}),
    AppointmentStatus.COMPLETED,
    STAFF_ROLES,
    APPOINTMENT_COMPLETED,
)


def get_appointment(db: Session, appointment_id: int, for_update: bool = False) -> Appointment:
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    appointment = query.first()
    if appointment is None:
        raise NotFoundError(f'Appointment #{appointment_id} not found.')
    return appointment


def authorize_participant(actor: Actor, appointment: Appointment) -> None:
    if actor.is_admin:
        return
    if actor.role is Role.PATIENT and appointment.patient_id == actor.user_id:
        return
    if actor.role is Role.PROVIDER and appointment.provider_id == actor.user_id:
        return
    raise PermissionDeniedError(f'You are not a participant of appointment #{appointment.id}.')


def _release_pending_invoice(db: Session, appointment_id: int) -> None:
    invoice = db.query(Invoice).filter(Invoice.appointment_id == appointment_id).first()
    if invoice is not None and invoice.status == InvoiceStatus.PENDING:
        invoice.status = InvoiceStatus.CANCELLED


def _load_context(db: Session, appointment: Appointment) -> AppointmentContext:
    patient = db.get(User, appointment.patient_id)
    provider = db.get(User, appointment.provider_id)
    return appointment_context(appointment, patient, provider)


def _activity_message(verb: str, context: AppointmentContext) -> str:
    return (
        f'Appointment {verb}: {context.patient_name} with Dr. {context.provider_name} '
        f'on {context.date.isoformat()}'
    )


def _publish(
    context: AppointmentContext,
    event_type: str,
    activity_message: str,
    publisher: EventPublisher | None,
    **details,
) -> None:
    events = appointment_events(event_type, context, activity_message, **details)
    (publisher or EventPublisher()).publish(events)


def apply_transition(
    db: Session,
    actor: Actor,
    appointment_id: int,
    transition: Transition,
    publisher: EventPublisher | None = None,
) -> Appointment:
    try:
        with transaction(db):
            appointment = get_appointment(db, appointment_id, for_update=True)
            authorize_participant(actor, appointment)

            if actor.role not in transition.roles:
                raise PermissionDeniedError(
                    f'A {actor.role.value} cannot {transition.name} appointments.'
                )
            if appointment.status not in transition.sources:
                raise InvalidTransitionError(
                    f'Cannot {transition.name} an appointment that is {appointment.status.value}.'
                )

            appointment.status = transition.target
            if transition.releases_invoice:
                _release_pending_invoice(db, appointment.id)
    except SQLAlchemyError as exc:
        logger.exception('Failed to %s appointment %s', transition.name, appointment_id)
        raise StorageError('Database unavailable. Please try again.') from exc

    logger.info('Appointment %s -> %s by %s %s', appointment_id, transition.target.value, actor.role.value, actor.user_id)

    details = {}
    if transition is CANCEL:
        details['cancelled_by'] = actor.role.value
    context = _load_context(db, appointment)
    _publish(
        context,
        transition.event_type,
        _activity_message(transition.target.value, context),
        publisher,
        **details,
    )
    return appointment


def confirm(db: Session, actor: Actor, appointment_id: int, publisher: EventPublisher | None = None) -> Appointment:
    return apply_transition(db, actor, appointment_id, CONFIRM, publisher)


def reject(db: Session, actor: Actor, appointment_id: int, publisher: EventPublisher | None = None) -> Appointment:
    return apply_transition(db, actor, appointment_id, REJECT, publisher)


def cancel(db: Session, actor: Actor, appointment_id: int, publisher: EventPublisher | None = None) -> Appointment:
    return apply_transition(db, actor, appointment_id, CANCEL, publisher)


def complete(db: Session, actor: Actor, appointment_id: int, publisher: EventPublisher | None = None) -> Appointment:
    return apply_transition(db, actor, appointment_id, COMPLETE, publisher)


def reschedule(
    db: Session,
    actor: Actor,
    appointment_id: int,
    new_date: date | datetime | str,
    new_time: time | datetime | str,
    publisher: EventPublisher | None = None,
) -> Appointment:
    """Move an appointment to a new slot and mark it confirmed.

    Patients get ``PATIENT_RESCHEDULE_LIMIT`` reschedules per appointment;
    providers and admins are unlimited. The limit is checked before the
    target slot so an exhausted patient is refused even for a free slot.
    """
    slot_date = normalize_date(new_date)
    slot_time = normalize_time(new_time)
    provider_id = get_appointment(db, appointment_id).provider_id

    with booking_guard.guarded_write(db, provider_id, slot_date, slot_time):
        appointment = get_appointment(db, appointment_id, for_update=True)
        authorize_participant(actor, appointment)

        if appointment.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f'Cannot reschedule an appointment that is {appointment.status.value}.'
            )
        if actor.role is Role.PATIENT and appointment.reschedule_count >= config.PATIENT_RESCHEDULE_LIMIT:
            raise RescheduleLimitExceededError(appointment.id, config.PATIENT_RESCHEDULE_LIMIT)
        if appointment.date == slot_date and appointment.time == slot_time:
            raise ValidationError('The new time matches the current appointment time.')

        booking_guard.ensure_available(db, provider_id, slot_date, slot_time)

        old_date, old_time = appointment.date, appointment.time
        appointment.date = slot_date
        appointment.time = slot_time
        appointment.status = AppointmentStatus.CONFIRMED
        appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
        context = _load_context(db, appointment)

        invoice = db.query(Invoice).filter(Invoice.appointment_id == appointment.id).first()
        if invoice is not None and invoice.status == InvoiceStatus.PENDING:
            invoice.due_date = invoice_due_date(slot_date)
            invoice.description = invoice_description(context.provider_name, slot_date, slot_time)

    logger.info(
        'Appointment %s rescheduled by %s from %s %s to %s %s',
        appointment_id,
        actor.role.value,
        old_date.isoformat(),
        format_time(old_time),
        slot_date.isoformat(),
        format_time(slot_time),
    )

    _publish(
        context,
        APPOINTMENT_RESCHEDULED,
        (
            f'Appointment rescheduled: {context.patient_name} with Dr. {context.provider_name} '
            f'from {old_date.isoformat()}, {format_time(old_time)}, '
            f'to {slot_date.isoformat()}, {format_time(slot_time)}'
        ),
        publisher,
        rescheduled_by=actor.role.value,
        old_date=old_date,
        old_time=old_time,
        new_date=slot_date,
        new_time=slot_time,
    )
    return appointment


def update_status(
    db: Session,
    actor: Actor,
    appointment_id: int,
    new_status: AppointmentStatus | str,
    publisher: EventPublisher | None = None,
) -> Appointment:
    """Set any enumerated status directly. Never touches ``reschedule_count``."""
    try:
        target = AppointmentStatus(new_status)
    except ValueError as exc:
        raise ValidationError(f'Invalid status: {new_status!r}.') from exc

    current = get_appointment(db, appointment_id)
    authorize_participant(actor, current)

    with booking_guard.guarded_write(db, current.provider_id, current.date, current.time):
        appointment = get_appointment(db, appointment_id, for_update=True)
        # Re-activating frees nothing, it claims the slot again.
        if appointment.status in INACTIVE_STATUSES and target not in INACTIVE_STATUSES:
            booking_guard.ensure_available(
                db,
                appointment.provider_id,
                appointment.date,
                appointment.time,
                exclude_appointment_id=appointment.id,
            )
        appointment.status = target
        if target in INACTIVE_STATUSES:
            _release_pending_invoice(db, appointment.id)

    event_type = f'APPOINTMENT_{target.value.upper()}'
    details = {'cancelled_by': actor.role.value} if target is AppointmentStatus.CANCELLED else {}
    context = _load_context(db, appointment)
    _publish(context, event_type, _activity_message(target.value, context), publisher, **details)
    return appointment


def list_appointments(
    db: Session,
    actor: Actor,
    start_date: date | None = None,
    end_date: date | None = None,
    status: AppointmentStatus | None = None,
) -> list[Appointment]:
    query = db.query(Appointment)
    if actor.role is Role.PATIENT:
        query = query.filter(Appointment.patient_id == actor.user_id)
    elif actor.role is Role.PROVIDER:
        query = query.filter(Appointment.provider_id == actor.user_id)

    if start_date is not None:
        query = query.filter(Appointment.date >= start_date)
    if end_date is not None:
        query = query.filter(Appointment.date <= end_date)
    if status is not None:
        query = query.filter(Appointment.status == status)

    return query.order_by(Appointment.date.asc(), Appointment.time.asc()).all()


def get_appointment_for_actor(db: Session, actor: Actor, appointment_id: int) -> Appointment:
    appointment = get_appointment(db, appointment_id)
    authorize_participant(actor, appointment)
    return appointment


def get_invoice_for_appointment(db: Session, actor: Actor, appointment_id: int) -> Invoice:
    appointment = get_appointment_for_actor(db, actor, appointment_id)
    invoice = db.query(Invoice).filter(Invoice.appointment_id == appointment.id).first()
    if invoice is None:
        raise NotFoundError(f'No invoice found for appointment #{appointment_id}.')
    return invoice
