from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_actor
from backend.core import config
from backend.database import ensure_database_ready, get_db
from backend.models.user import Actor
from backend.services import availability, slots

router = APIRouter(tags=['availability'])

MAX_LEAVE_REASON_LENGTH = 600


class TemplateEntryRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    break_start: time | None = None
    break_end: time | None = None
    capacity_per_hour: int = config.DEFAULT_CAPACITY_PER_HOUR
    is_available: bool = True

    @field_validator('start_time', 'end_time', 'break_start', 'break_end')
    @classmethod
    def drop_seconds(cls, value: time | None) -> time | None:
        if value is None:
            return None
        return value.replace(second=0, microsecond=0, tzinfo=None)

    def to_entry(self) -> availability.TemplateEntry:
        return availability.TemplateEntry(
            day_of_week=self.day_of_week,
            start_time=self.start_time,
            end_time=self.end_time,
            break_start=self.break_start,
            break_end=self.break_end,
            capacity_per_hour=self.capacity_per_hour,
            is_available=self.is_available,
        )


class WeeklyTemplateRequest(BaseModel):
    entries: list[TemplateEntryRequest]


class TemplateEntryResponse(BaseModel):
    id: int
    provider_id: int
    day_of_week: int
    start_time: time
    end_time: time
    break_start: time | None = None
    break_end: time | None = None
    capacity_per_hour: int
    is_available: bool

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    date: date
    time: time
    end_time: time
    duration_minutes: int
    available: bool = True


class CreateLeaveRequest(BaseModel):
    start_date: date
    end_date: date
    leave_type: str
    reason: str | None = None

    @field_validator('leave_type')
    @classmethod
    def validate_leave_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError('Leave type is required.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_LEAVE_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_LEAVE_REASON_LENGTH} characters or fewer.')

        return normalized


class LeaveResponse(BaseModel):
    id: int
    provider_id: int
    start_date: date
    end_date: date
    leave_type: str
    reason: str | None = None
    status: str
    created_at: datetime | None = None

    class Config:
        from_attributes = True


@router.put('/providers/{provider_id}/template', response_model=list[TemplateEntryResponse])
def set_weekly_template(
    provider_id: int,
    data: WeeklyTemplateRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return availability.set_weekly_template(
        db,
        actor,
        provider_id,
        [entry.to_entry() for entry in data.entries],
    )


@router.get('/providers/{provider_id}/template', response_model=list[TemplateEntryResponse])
def get_weekly_template(provider_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    return availability.get_weekly_template(db, provider_id)


@router.get('/slots', response_model=list[SlotResponse])
def list_available_slots(
    provider_id: int = Query(...),
    slot_date: date = Query(..., alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return [
        SlotResponse(
            date=slot_date,
            time=slot.start,
            end_time=slot.end,
            duration_minutes=slot.minutes,
        )
        for slot in slots.get_available_slots(db, provider_id, slot_date)
    ]


@router.post(
    '/providers/{provider_id}/leaves',
    response_model=LeaveResponse,
    status_code=status.HTTP_201_CREATED,
)
def request_leave(
    provider_id: int,
    data: CreateLeaveRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return availability.request_leave(
        db,
        actor,
        provider_id,
        data.start_date,
        data.end_date,
        data.leave_type,
        data.reason,
    )


@router.get('/providers/{provider_id}/leaves', response_model=list[LeaveResponse])
def list_leaves(provider_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    return availability.list_leaves(db, provider_id)
