"""Administrative operations that touch appointments."""

import logging
from datetime import date, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import transaction
from backend.errors import NotFoundError, PermissionDeniedError, StorageError, ValidationError
from backend.models.appointment import Appointment, AppointmentStatus
from backend.models.availability import AvailabilityTemplate, ProviderLeave
from backend.models.invoice import Invoice
from backend.models.notification import Notification, SystemActivity
from backend.models.user import Actor, Role, User
from backend.services.notifications import (
    APPOINTMENT_REMINDER,
    USER_DELETED,
    ActivityEvent,
    EventPublisher,
    NotificationEvent,
    appointment_context,
    notification_message,
    notification_title,
)

logger = logging.getLogger(__name__)

REMINDER_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError('Only admins can perform this action.')


def delete_user(db: Session, actor: Actor, user_id: int, publisher: EventPublisher | None = None) -> dict:
    """Remove a user, cancelling every appointment they take part in first."""
    _require_admin(actor)
    if user_id == actor.user_id:
        raise ValidationError('You cannot delete your own account.')

    try:
        with transaction(db):
            user = db.query(User).filter(User.id == user_id).with_for_update().first()
            if user is None:
                raise NotFoundError(f'User #{user_id} not found.')

            if user.role == Role.ADMIN.value:
                admin_count = db.query(User).filter(User.role == Role.ADMIN.value).count()
                if admin_count <= 1:
                    raise ValidationError('Cannot delete the last admin user.')

            involves_user = or_(Appointment.patient_id == user_id, Appointment.provider_id == user_id)
            appointments = db.query(Appointment).filter(involves_user).all()
            for appointment in appointments:
                appointment.status = AppointmentStatus.CANCELLED
            db.flush()

            appointment_ids = [appointment.id for appointment in appointments]
            if appointment_ids:
                db.query(Invoice).filter(Invoice.appointment_id.in_(appointment_ids)).delete(
                    synchronize_session=False
                )
            db.query(Invoice).filter(Invoice.patient_id == user_id).delete(synchronize_session=False)
            for appointment in appointments:
                db.delete(appointment)

            db.query(Notification).filter(Notification.user_id == user_id).delete(synchronize_session=False)
            db.query(AvailabilityTemplate).filter(AvailabilityTemplate.provider_id == user_id).delete(
                synchronize_session=False
            )
            db.query(ProviderLeave).filter(ProviderLeave.provider_id == user_id).delete(synchronize_session=False)

            deleted = {'id': user.id, 'name': user.name, 'role': user.role}
            summary = f'User {user.name} ({user.role}) was deleted'
            db.delete(user)
    except SQLAlchemyError as exc:
        logger.exception('Failed to delete user %s', user_id)
        raise StorageError('Database unavailable. Please try again.') from exc

    logger.info('%s by admin %s; %d appointment(s) cancelled', summary, actor.user_id, len(appointment_ids))
    (publisher or EventPublisher()).publish([ActivityEvent(USER_DELETED, summary, actor.user_id)])
    return deleted


def list_activities(db: Session, actor: Actor, limit: int = 50) -> list[SystemActivity]:
    _require_admin(actor)
    return db.query(SystemActivity).order_by(
        SystemActivity.created_at.desc(),
        SystemActivity.id.desc(),
    ).limit(limit).all()


def reminder_target_date(target_date: date | None = None) -> date:
    if target_date is not None:
        return target_date
    return date.today() + timedelta(days=config.REMINDER_LOOKAHEAD_DAYS)


def send_appointment_reminders(
    db: Session,
    target_date: date | None = None,
    publisher: EventPublisher | None = None,
) -> int:
    """Remind each patient with an active appointment on ``target_date``."""
    target_date = reminder_target_date(target_date)

    appointments = db.query(Appointment).filter(
        Appointment.date == target_date,
        Appointment.status.in_(REMINDER_STATUSES),
    ).order_by(Appointment.time.asc()).all()

    events = []
    for appointment in appointments:
        context = appointment_context(
            appointment,
            db.get(User, appointment.patient_id),
            db.get(User, appointment.provider_id),
        )
        events.append(
            NotificationEvent(
                event_type=APPOINTMENT_REMINDER,
                recipient_id=appointment.patient_id,
                title=notification_title(APPOINTMENT_REMINDER),
                message=notification_message(APPOINTMENT_REMINDER, context),
                related_id=appointment.id,
            )
        )

    (publisher or EventPublisher()).publish(events)
    logger.info('Queued %d reminder(s) for %s', len(events), target_date.isoformat())
    return len(events)
