"""Notification and audit events emitted by the scheduling core.

Events are collected while a transaction is open and published only after it
commits. Publishing is fire-and-forget: a failing sink is logged and the next
event is still delivered.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from backend import database
from backend.models.appointment import Appointment
from backend.models.notification import Notification, SystemActivity
from backend.models.user import User
from backend.utils.dates import format_time

logger = logging.getLogger(__name__)

APPOINTMENT_SCHEDULED = 'APPOINTMENT_SCHEDULED'
APPOINTMENT_CONFIRMED = 'APPOINTMENT_CONFIRMED'
APPOINTMENT_REJECTED = 'APPOINTMENT_REJECTED'
APPOINTMENT_CANCELLED = 'APPOINTMENT_CANCELLED'
APPOINTMENT_COMPLETED = 'APPOINTMENT_COMPLETED'
APPOINTMENT_RESCHEDULED = 'APPOINTMENT_RESCHEDULED'
APPOINTMENT_REMINDER = 'APPOINTMENT_REMINDER'
APPOINTMENT_CREATED = 'APPOINTMENT_CREATED'
INVOICE_CREATED = 'INVOICE_CREATED'
USER_DELETED = 'USER_DELETED'

_TITLES = {
    APPOINTMENT_SCHEDULED: ('Appointment Request Sent', 'New Appointment Request'),
    APPOINTMENT_CONFIRMED: ('Appointment Confirmed', 'Appointment Confirmed'),
    APPOINTMENT_REJECTED: ('Appointment Rejected', 'Appointment Rejected'),
    APPOINTMENT_CANCELLED: ('Appointment Cancelled', 'Appointment Cancelled'),
    APPOINTMENT_COMPLETED: ('Appointment Completed', 'Appointment Completed'),
    APPOINTMENT_RESCHEDULED: ('Appointment Rescheduled', 'Appointment Rescheduled'),
    APPOINTMENT_REMINDER: ('Appointment Reminder', 'Appointment Reminder'),
    INVOICE_CREATED: ('New Invoice Created', 'New Invoice Created'),
}


@dataclass(frozen=True)
class NotificationEvent:
    event_type: str
    recipient_id: int
    title: str
    message: str
    related_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivityEvent:
    event_type: str
    message: str
    related_id: int | None = None


Event = NotificationEvent | ActivityEvent


@dataclass(frozen=True)
class AppointmentContext:
    """What the message templates need to know about an appointment."""
    appointment_id: int
    patient_id: int
    provider_id: int
    patient_name: str
    provider_name: str
    date: date
    time: time


def appointment_context(appointment: Appointment, patient: User | None, provider: User | None) -> AppointmentContext:
    return AppointmentContext(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        provider_id=appointment.provider_id,
        patient_name=patient.name if patient else f'patient #{appointment.patient_id}',
        provider_name=provider.name if provider else f'provider #{appointment.provider_id}',
        date=appointment.date,
        time=appointment.time,
    )


def notification_title(event_type: str, for_provider: bool = False) -> str:
    titles = _TITLES.get(event_type)
    if titles is None:
        return 'System Update'
    return titles[1] if for_provider else titles[0]


def notification_message(
    event_type: str,
    context: AppointmentContext,
    for_provider: bool = False,
    **details: Any,
) -> str:
    when = f'{context.date.isoformat()} at {format_time(context.time)}'
    patient = context.patient_name
    doctor = f'Dr. {context.provider_name}'

    if event_type == APPOINTMENT_SCHEDULED:
        if for_provider:
            return f'New appointment request from {patient} for {when}'
        return f'Your appointment request with {doctor} for {when} has been sent. Waiting for confirmation.'
    if event_type == APPOINTMENT_CONFIRMED:
        if for_provider:
            return f'You have confirmed the appointment with {patient} for {when}'
        return f"Your appointment with {doctor} on {when} has been confirmed. You're all set!"
    if event_type == APPOINTMENT_REJECTED:
        if for_provider:
            return f'You have rejected the appointment request from {patient} for {when}'
        return f'Your appointment request with {doctor} for {when} was not approved. Please schedule another time.'
    if event_type == APPOINTMENT_CANCELLED:
        cancelled_by = details.get('cancelled_by', 'patient')
        if cancelled_by == 'provider':
            if for_provider:
                return f'You have cancelled the appointment with {patient} for {when}'
            return f'{doctor} has cancelled your appointment scheduled for {when}'
        if cancelled_by == 'admin':
            other = patient if for_provider else doctor
            return f'An administrator has cancelled the appointment with {other} scheduled for {when}'
        if for_provider:
            return f'{patient} has cancelled their appointment scheduled for {when}'
        return f'You have cancelled your appointment with {doctor} scheduled for {when}'
    if event_type == APPOINTMENT_COMPLETED:
        if for_provider:
            return f'You have marked the appointment with {patient} on {context.date.isoformat()} as completed'
        return f'Your appointment with {doctor} on {context.date.isoformat()} has been completed. Thank you for visiting!'
    if event_type == APPOINTMENT_RESCHEDULED:
        old_date = details.get('old_date', context.date)
        old_time = details.get('old_time', context.time)
        old = f'{old_date.isoformat()} at {format_time(old_time)}'
        if for_provider:
            return f'Appointment with {patient} has been rescheduled from {old} to {when}'
        return f'Your appointment with {doctor} has been rescheduled from {old} to {when}'
    if event_type == APPOINTMENT_REMINDER:
        return f'Reminder: You have an appointment with {doctor} on {when}.'
    return 'System has been updated'


def appointment_events(
    event_type: str,
    context: AppointmentContext,
    activity_message: str,
    activity_type: str | None = None,
    **details: Any,
) -> list[Event]:
    """One notification each for patient and provider, plus the activity record."""
    payload = {
        'appointment_id': context.appointment_id,
        'patient_name': context.patient_name,
        'provider_name': context.provider_name,
        'date': context.date.isoformat(),
        'time': format_time(context.time),
    }
    for key, value in details.items():
        if isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, time):
            value = format_time(value)
        payload[key] = value

    events: list[Event] = []
    for recipient_id, for_provider in ((context.patient_id, False), (context.provider_id, True)):
        events.append(
            NotificationEvent(
                event_type=event_type,
                recipient_id=recipient_id,
                title=notification_title(event_type, for_provider),
                message=notification_message(event_type, context, for_provider, **details),
                related_id=context.appointment_id,
                payload=payload,
            )
        )
    events.append(ActivityEvent(activity_type or event_type, activity_message, context.appointment_id))
    return events


def invoice_created_events(context: AppointmentContext, invoice_id: int, amount: Decimal) -> list[Event]:
    return [
        NotificationEvent(
            event_type=INVOICE_CREATED,
            recipient_id=context.patient_id,
            title=notification_title(INVOICE_CREATED),
            message=(
                f'Invoice created for your appointment with Dr. {context.provider_name}. '
                f'Amount: ${amount:.2f}'
            ),
            related_id=invoice_id,
            payload={'appointment_id': context.appointment_id, 'amount': f'{amount:.2f}'},
        ),
        ActivityEvent(
            INVOICE_CREATED,
            f'Invoice created for appointment #{context.appointment_id}, amount: ${amount:.2f}',
            invoice_id,
        ),
    ]


class _DatabaseSink:
    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._session_factory = session_factory

    def _open(self) -> Session:
        if self._session_factory is not None:
            return self._session_factory()
        return database.SessionLocal()


class NotificationSink(_DatabaseSink):
    """Writes notifications to the recipients' inboxes."""

    def notify(self, event: NotificationEvent) -> None:
        db = self._open()
        try:
            db.add(
                Notification(
                    user_id=event.recipient_id,
                    type=event.event_type,
                    title=event.title,
                    message=event.message,
                    related_id=event.related_id,
                    is_read=False,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info('Notification %s delivered to user %s', event.event_type, event.recipient_id)


class AuditSink(_DatabaseSink):
    """Appends entries to the system activity log."""

    def record_activity(self, event: ActivityEvent) -> None:
        db = self._open()
        try:
            db.add(SystemActivity(type=event.event_type, message=event.message, related_id=event.related_id))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class EventPublisher:
    def __init__(
        self,
        notification_sink: NotificationSink | None = None,
        audit_sink: AuditSink | None = None,
    ):
        self.notification_sink = notification_sink or NotificationSink()
        self.audit_sink = audit_sink or AuditSink()

    def publish(self, events: Iterable[Event]) -> None:
        for event in events:
            self._deliver(event)

    def _deliver(self, event: Event) -> None:
        try:
            if isinstance(event, NotificationEvent):
                self.notification_sink.notify(event)
            else:
                self.audit_sink.record_activity(event)
        except Exception:
            logger.exception('Failed to deliver %s event (related_id=%s)', event.event_type, event.related_id)


class BackgroundEventPublisher(EventPublisher):
    """Defers delivery until the HTTP response has been sent."""

    def __init__(self, background_tasks, **sinks):
        super().__init__(**sinks)
        self._background_tasks = background_tasks

    def publish(self, events: Iterable[Event]) -> None:
        self._background_tasks.add_task(EventPublisher.publish, self, list(events))
