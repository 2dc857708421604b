"""Provider weekly templates and leave periods."""

import logging
from dataclasses import dataclass
from datetime import date, time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import transaction
from backend.errors import NotFoundError, PermissionDeniedError, StorageError, ValidationError
from backend.models.appointment import Appointment, INACTIVE_STATUSES
from backend.models.availability import AvailabilityTemplate, ProviderLeave
from backend.models.user import Actor, Role, User

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
MAX_CAPACITY_PER_HOUR = 60
TEMPLATE_FIELDS = ('start_time', 'end_time', 'break_start', 'break_end', 'capacity_per_hour', 'is_available')


@dataclass(frozen=True)
class TemplateEntry:
    day_of_week: int
    start_time: time
    end_time: time
    break_start: time | None = None
    break_end: time | None = None
    capacity_per_hour: int = config.DEFAULT_CAPACITY_PER_HOUR
    is_available: bool = True


def validate_entry(entry: TemplateEntry) -> None:
    if not 0 <= entry.day_of_week < DAYS_PER_WEEK:
        raise ValidationError(f'Day of week must be between 0 (Sunday) and 6 (Saturday), got {entry.day_of_week}.')

    if entry.start_time >= entry.end_time:
        raise ValidationError(f'Day {entry.day_of_week}: start time must be before end time.')

    if (entry.break_start is None) != (entry.break_end is None):
        raise ValidationError(f'Day {entry.day_of_week}: break start and break end must be set together.')

    if entry.break_start is not None and not (
        entry.start_time <= entry.break_start < entry.break_end <= entry.end_time
    ):
        raise ValidationError(f'Day {entry.day_of_week}: break must fall within working hours.')

    if not 1 <= entry.capacity_per_hour <= MAX_CAPACITY_PER_HOUR:
        raise ValidationError(
            f'Day {entry.day_of_week}: capacity per hour must be between 1 and {MAX_CAPACITY_PER_HOUR}.'
        )


def validate_entries(entries: list[TemplateEntry]) -> None:
    seen: set[int] = set()
    for entry in entries:
        validate_entry(entry)
        if entry.day_of_week in seen:
            raise ValidationError(f'Day {entry.day_of_week} appears more than once.')
        seen.add(entry.day_of_week)


def authorize_schedule_owner(actor: Actor, provider_id: int) -> None:
    if actor.is_admin:
        return
    if actor.role is Role.PROVIDER and actor.user_id == provider_id:
        return
    raise PermissionDeniedError('Only the provider or an admin can change this schedule.')


def _lock_provider(db: Session, provider_id: int) -> User:
    provider = db.query(User).filter(User.id == provider_id).with_for_update().first()
    if provider is None or provider.role != Role.PROVIDER.value:
        raise NotFoundError(f'Provider #{provider_id} not found.')
    return provider


def get_weekly_template(db: Session, provider_id: int) -> list[AvailabilityTemplate]:
    return db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.provider_id == provider_id,
    ).order_by(AvailabilityTemplate.day_of_week.asc()).all()


def set_weekly_template(
    db: Session,
    actor: Actor,
    provider_id: int,
    entries: list[TemplateEntry],
) -> list[AvailabilityTemplate]:
    """Replace the provider's template with ``entries``.

    Applied as a diff keyed by day-of-week in one transaction, so readers never
    observe a provider with no template rows mid-write. Days missing from
    ``entries`` are removed.
    """
    authorize_schedule_owner(actor, provider_id)
    validate_entries(entries)

    try:
        with transaction(db):
            _lock_provider(db, provider_id)
            existing = {row.day_of_week: row for row in get_weekly_template(db, provider_id)}
            incoming = {entry.day_of_week: entry for entry in entries}

            for day, row in existing.items():
                if day not in incoming:
                    db.delete(row)

            for day, entry in incoming.items():
                row = existing.get(day)
                if row is None:
                    row = AvailabilityTemplate(provider_id=provider_id, day_of_week=day)
                    db.add(row)
                for field_name in TEMPLATE_FIELDS:
                    setattr(row, field_name, getattr(entry, field_name))
    except SQLAlchemyError as exc:
        logger.exception('Failed to save weekly template for provider %s', provider_id)
        raise StorageError('Database unavailable. Please try again.') from exc

    logger.info('Provider %s weekly template saved (%d day(s))', provider_id, len(entries))
    return get_weekly_template(db, provider_id)


def request_leave(
    db: Session,
    actor: Actor,
    provider_id: int,
    start_date: date,
    end_date: date,
    leave_type: str,
    reason: str | None = None,
) -> ProviderLeave:
    authorize_schedule_owner(actor, provider_id)

    if end_date < start_date:
        raise ValidationError('Leave end date must be on or after the start date.')
    normalized_type = (leave_type or '').strip().lower()
    if not normalized_type:
        raise ValidationError('Leave type is required.')

    try:
        with transaction(db):
            _lock_provider(db, provider_id)
            conflicting = db.query(Appointment).filter(
                Appointment.provider_id == provider_id,
                Appointment.date >= start_date,
                Appointment.date <= end_date,
                Appointment.status.notin_(INACTIVE_STATUSES),
            ).count()
            if conflicting:
                raise ValidationError(
                    f'Cannot request leave. You have {conflicting} active appointment(s) during this period.'
                )

            leave = ProviderLeave(
                provider_id=provider_id,
                start_date=start_date,
                end_date=end_date,
                leave_type=normalized_type,
                reason=(reason or '').strip() or None,
                status='pending',
            )
            db.add(leave)
    except SQLAlchemyError as exc:
        logger.exception('Failed to save leave request for provider %s', provider_id)
        raise StorageError('Database unavailable. Please try again.') from exc

    db.refresh(leave)
    return leave


def list_leaves(db: Session, provider_id: int) -> list[ProviderLeave]:
    return db.query(ProviderLeave).filter(
        ProviderLeave.provider_id == provider_id,
    ).order_by(ProviderLeave.start_date.asc()).all()
