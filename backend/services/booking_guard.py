"""No-double-booking enforcement.

The pre-check only gives callers a fast, friendly rejection. The partial unique
index ``uq_appointments_active_slot`` on ``(provider_id, date, time)`` for active
statuses is what actually serializes concurrent bookers: whichever transaction
commits first wins, and the loser's ``IntegrityError`` is translated into
``SlotUnavailableError`` here.
"""

import logging
from contextlib import contextmanager
from datetime import date, time
from typing import Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.database import transaction
from backend.errors import SlotUnavailableError, StorageError
from backend.models.appointment import Appointment, INACTIVE_STATUSES

logger = logging.getLogger(__name__)

ACTIVE_SLOT_INDEX = 'uq_appointments_active_slot'
# SQLite reports the columns rather than the index name.
_SQLITE_ACTIVE_SLOT_MESSAGE = 'appointments.provider_id, appointments.date, appointments.time'


def is_available(
    db: Session,
    provider_id: int,
    slot_date: date,
    slot_time: time,
    exclude_appointment_id: int | None = None,
) -> bool:
    query = db.query(Appointment.id).filter(
        Appointment.provider_id == provider_id,
        Appointment.date == slot_date,
        Appointment.time == slot_time,
        Appointment.status.notin_(INACTIVE_STATUSES),
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)
    return query.first() is None


def ensure_available(
    db: Session,
    provider_id: int,
    slot_date: date,
    slot_time: time,
    exclude_appointment_id: int | None = None,
) -> None:
    if not is_available(db, provider_id, slot_date, slot_time, exclude_appointment_id):
        raise SlotUnavailableError(provider_id, slot_date, slot_time)


def is_active_slot_conflict(exc: IntegrityError) -> bool:
    orig = getattr(exc, 'orig', None)
    diag = getattr(orig, 'diag', None)
    constraint_name = getattr(diag, 'constraint_name', None) if diag is not None else None
    if constraint_name:
        return constraint_name == ACTIVE_SLOT_INDEX

    message = str(orig if orig is not None else exc)
    return ACTIVE_SLOT_INDEX in message or _SQLITE_ACTIVE_SLOT_MESSAGE in message


@contextmanager
def guarded_write(db: Session, provider_id: int, slot_date: date, slot_time: time) -> Iterator[Session]:
    """One transaction that claims ``(provider_id, slot_date, slot_time)``.

    Rolls back on every exit path except a clean one. Storage failures surface
    as ``SlotUnavailableError`` when the active-slot index rejected the write
    and as ``StorageError`` otherwise.
    """
    try:
        with transaction(db):
            yield db
    except IntegrityError as exc:
        if is_active_slot_conflict(exc):
            logger.info(
                'Lost race for provider %s slot %s %s',
                provider_id,
                slot_date.isoformat(),
                slot_time.strftime('%H:%M'),
            )
            raise SlotUnavailableError(provider_id, slot_date, slot_time) from exc
        logger.exception('Integrity failure while writing appointment for provider %s', provider_id)
        raise StorageError('Could not save the appointment. Please try again.') from exc
    except SQLAlchemyError as exc:
        logger.exception('Storage failure while writing appointment for provider %s', provider_id)
        raise StorageError('Database unavailable. Please try again.') from exc
