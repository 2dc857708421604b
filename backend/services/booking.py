"""Booking orchestration: one appointment plus its invoice, all or nothing."""

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.errors import NotFoundError, PermissionDeniedError, StorageError, ValidationError
from backend.models.appointment import Appointment, AppointmentStatus
from backend.models.invoice import Invoice, InvoiceStatus
from backend.models.user import Actor, Role, User
from backend.services import booking_guard
from backend.services.notifications import (
    APPOINTMENT_CREATED,
    APPOINTMENT_SCHEDULED,
    Event,
    EventPublisher,
    appointment_context,
    appointment_events,
    invoice_created_events,
)
from backend.utils.dates import format_time, normalize_date, normalize_time

logger = logging.getLogger(__name__)

MAX_APPOINTMENT_NOTES_LENGTH = 600
MAX_APPOINTMENT_DURATION_MINUTES = 8 * 60


class FeeCategory(str, enum.Enum):
    SPECIALIST = 'specialist'
    FOLLOW_UP = 'follow_up'
    URGENT = 'urgent'
    GENERAL = 'general'


# First match wins, so "Urgent Specialist Follow-up" is a specialist visit.
FEE_RULES: tuple[tuple[str, FeeCategory], ...] = (
    ('specialist', FeeCategory.SPECIALIST),
    ('follow', FeeCategory.FOLLOW_UP),
    ('urgent', FeeCategory.URGENT),
)

CATEGORY_FEES = {
    FeeCategory.SPECIALIST: Decimal('100.00'),
    FeeCategory.FOLLOW_UP: Decimal('30.00'),
    FeeCategory.URGENT: Decimal('80.00'),
    FeeCategory.GENERAL: Decimal('50.00'),
}


@dataclass
class BookingResult:
    appointment: Appointment
    invoice: Invoice
    events: list[Event] = field(default_factory=list)


def classify_fee_category(appointment_type: str) -> FeeCategory:
    normalized = appointment_type.lower()
    for keyword, category in FEE_RULES:
        if keyword in normalized:
            return category
    return FeeCategory.GENERAL


def appointment_fee(appointment_type: str) -> Decimal:
    return CATEGORY_FEES[classify_fee_category(appointment_type)]


def invoice_due_date(appointment_date: date) -> date:
    return appointment_date - timedelta(days=config.INVOICE_LEAD_DAYS)


def invoice_description(provider_name: str, appointment_date: date, appointment_time: time) -> str:
    return f'Appointment with Dr. {provider_name} on {appointment_date.isoformat()} at {format_time(appointment_time)}'


def build_invoice(appointment: Appointment, provider: User) -> Invoice:
    return Invoice(
        patient_id=appointment.patient_id,
        appointment_id=appointment.id,
        amount=appointment_fee(appointment.type),
        status=InvoiceStatus.PENDING,
        due_date=invoice_due_date(appointment.date),
        description=invoice_description(provider.name, appointment.date, appointment.time),
    )


def load_user(db: Session, user_id: int, role: Role) -> User:
    try:
        user = db.query(User).filter(User.id == user_id).first()
    except SQLAlchemyError as exc:
        logger.exception('Failed to load %s %s', role.value, user_id)
        raise StorageError('Database unavailable. Please try again.') from exc
    if user is None or user.role != role.value:
        raise NotFoundError(f'{role.value.capitalize()} #{user_id} not found.')
    return user


def _validate_booking_fields(
    appointment_type: str | None,
    duration: int | None,
    notes: str | None,
) -> tuple[str, int, str | None]:
    normalized_type = (appointment_type or '').strip()
    if not normalized_type:
        raise ValidationError('Appointment type is required.')

    if duration is None or isinstance(duration, bool):
        raise ValidationError('Appointment duration is required.')
    try:
        normalized_duration = int(duration)
    except (TypeError, ValueError) as exc:
        raise ValidationError('Appointment duration must be a whole number of minutes.') from exc
    if not 0 < normalized_duration <= MAX_APPOINTMENT_DURATION_MINUTES:
        raise ValidationError(
            f'Appointment duration must be between 1 and {MAX_APPOINTMENT_DURATION_MINUTES} minutes.'
        )

    normalized_notes = (notes or '').strip() or None
    if normalized_notes and len(normalized_notes) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValidationError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized_type, normalized_duration, normalized_notes


def book_appointment(
    db: Session,
    actor: Actor,
    patient_id: int,
    provider_id: int,
    appointment_date: date | datetime | str,
    appointment_time: time | datetime | str,
    duration: int,
    appointment_type: str,
    notes: str | None = None,
    publisher: EventPublisher | None = None,
) -> BookingResult:
    """Create a ``scheduled`` appointment and its pending invoice atomically.

    Input validation happens before the transaction opens. The slot check,
    appointment insert and invoice insert share one transaction; any failure
    there leaves no rows behind. Notifications go out only after commit.
    """
    slot_date = normalize_date(appointment_date)
    slot_time = normalize_time(appointment_time)
    normalized_type, normalized_duration, normalized_notes = _validate_booking_fields(
        appointment_type, duration, notes
    )

    if actor.role is Role.PATIENT and actor.user_id != patient_id:
        raise PermissionDeniedError('Patients can only book appointments for themselves.')
    if actor.role is Role.PROVIDER and actor.user_id != provider_id:
        raise PermissionDeniedError('Providers can only book appointments on their own calendar.')

    patient = load_user(db, patient_id, Role.PATIENT)
    provider = load_user(db, provider_id, Role.PROVIDER)

    with booking_guard.guarded_write(db, provider_id, slot_date, slot_time):
        booking_guard.ensure_available(db, provider_id, slot_date, slot_time)

        appointment = Appointment(
            patient_id=patient_id,
            provider_id=provider_id,
            date=slot_date,
            time=slot_time,
            duration=normalized_duration,
            type=normalized_type,
            notes=normalized_notes,
            status=AppointmentStatus.SCHEDULED,
            reschedule_count=0,
        )
        db.add(appointment)
        db.flush()

        invoice = build_invoice(appointment, provider)
        db.add(invoice)
        db.flush()

    context = appointment_context(appointment, patient, provider)
    events = appointment_events(
        APPOINTMENT_SCHEDULED,
        context,
        (
            f'New appointment scheduled: {patient.name} with Dr. {provider.name} '
            f'on {slot_date.isoformat()}'
        ),
        activity_type=APPOINTMENT_CREATED,
    )
    events.extend(invoice_created_events(context, invoice.id, invoice.amount))

    logger.info(
        'Booked appointment %s (provider %s, %s %s) with invoice %s',
        appointment.id,
        provider_id,
        slot_date.isoformat(),
        format_time(slot_time),
        invoice.id,
    )
    (publisher or EventPublisher()).publish(events)

    return BookingResult(appointment=appointment, invoice=invoice, events=events)
