"""Derive bookable slots from a provider's weekly template."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Collection

from sqlalchemy.orm import Session

from backend.core import config
from backend.models.appointment import Appointment, INACTIVE_STATUSES
from backend.models.availability import AvailabilityTemplate
from backend.utils.dates import day_of_week

MINUTES_PER_HOUR = 60


@dataclass(frozen=True, order=True)
class Slot:
    start: time
    minutes: int

    @property
    def end(self) -> time:
        return (datetime.combine(date.min, self.start) + timedelta(minutes=self.minutes)).time()


def minutes_per_slot(capacity_per_hour: int) -> int:
    # Capacities that do not divide 60 leave the tail of each hour unused.
    return MINUTES_PER_HOUR // capacity_per_hour


def generate_slots(template: AvailabilityTemplate | None, booked_times: Collection[time]) -> list[Slot]:
    """Return the free slots of one template day, ordered by start time.

    Only whole hours in ``[start_time.hour, end_time.hour)`` produce slots, and
    the break window is not subtracted.
    """
    if template is None or not template.is_available:
        return []

    slots_per_hour = template.capacity_per_hour or config.DEFAULT_CAPACITY_PER_HOUR
    step = minutes_per_slot(slots_per_hour)
    booked = {booked_time.replace(second=0, microsecond=0) for booked_time in booked_times}

    slots: list[Slot] = []
    for hour in range(template.start_time.hour, template.end_time.hour):
        for index in range(slots_per_hour):
            start = time(hour, index * step)
            if start not in booked:
                slots.append(Slot(start=start, minutes=step))

    return slots


def get_template_for_date(db: Session, provider_id: int, slot_date: date) -> AvailabilityTemplate | None:
    return db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.provider_id == provider_id,
        AvailabilityTemplate.day_of_week == day_of_week(slot_date),
    ).first()


def get_booked_times(db: Session, provider_id: int, slot_date: date) -> set[time]:
    rows = db.query(Appointment.time).filter(
        Appointment.provider_id == provider_id,
        Appointment.date == slot_date,
        Appointment.status.notin_(INACTIVE_STATUSES),
    ).all()
    return {booked_time for (booked_time,) in rows}


def get_available_slots(db: Session, provider_id: int, slot_date: date) -> list[Slot]:
    """Read path for "what's available"; advisory only, bookings re-check on write."""
    template = get_template_for_date(db, provider_id, slot_date)
    if template is None:
        return []
    return generate_slots(template, get_booked_times(db, provider_id, slot_date))
