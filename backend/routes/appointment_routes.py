from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_actor, get_event_publisher
from backend.database import ensure_database_ready, get_db
from backend.errors import SchedulingError
from backend.models.appointment import AppointmentStatus
from backend.models.invoice import InvoiceStatus
from backend.models.user import Actor
from backend.services import booking, lifecycle
from backend.services.notifications import EventPublisher
from backend.utils.dates import normalize_date, normalize_time

router = APIRouter(tags=['appointments'])


def _parse_text(normalizer, value):
    if not isinstance(value, str):
        return value
    try:
        return normalizer(value)
    except SchedulingError as exc:
        raise ValueError(exc.message) from exc


class CreateAppointmentRequest(BaseModel):
    patient_id: int
    provider_id: int
    date: date
    time: time
    duration: int = 30
    type: str
    notes: str | None = None

    @field_validator('date', mode='before')
    @classmethod
    def normalize_appointment_date(cls, value):
        return _parse_text(normalize_date, value)

    @field_validator('time', mode='before')
    @classmethod
    def normalize_appointment_time(cls, value):
        return _parse_text(normalize_time, value)

    @field_validator('type')
    @classmethod
    def validate_type(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Appointment type is required.')
        return normalized

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError('Duration must be a positive number of minutes.')
        return value


class RescheduleRequest(BaseModel):
    date: date
    time: time

    @field_validator('date', mode='before')
    @classmethod
    def normalize_new_date(cls, value):
        return _parse_text(normalize_date, value)

    @field_validator('time', mode='before')
    @classmethod
    def normalize_new_time(cls, value):
        return _parse_text(normalize_time, value)


class UpdateStatusRequest(BaseModel):
    status: AppointmentStatus


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    provider_id: int
    date: date
    time: time
    duration: int
    type: str
    status: AppointmentStatus
    notes: str | None = None
    reschedule_count: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: int
    patient_id: int
    appointment_id: int
    amount: Decimal
    status: InvoiceStatus
    due_date: date
    description: str | None = None

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    appointment: AppointmentResponse
    invoice: InvoiceResponse


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    result = booking.book_appointment(
        db,
        actor,
        patient_id=data.patient_id,
        provider_id=data.provider_id,
        appointment_date=data.date,
        appointment_time=data.time,
        duration=data.duration,
        appointment_type=data.type,
        notes=data.notes,
        publisher=publisher,
    )
    return BookingResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        invoice=InvoiceResponse.model_validate(result.invoice),
    )


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.list_appointments(db, actor, start_date, end_date, appointment_status)


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.get_appointment_for_actor(db, actor, appointment_id)


@router.get('/{appointment_id}/invoice', response_model=InvoiceResponse)
def get_appointment_invoice(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.get_invoice_for_appointment(db, actor, appointment_id)


@router.put('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.confirm(db, actor, appointment_id, publisher)


@router.put('/{appointment_id}/reject', response_model=AppointmentResponse)
def reject_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.reject(db, actor, appointment_id, publisher)


@router.put('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.cancel(db, actor, appointment_id, publisher)


@router.put('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.complete(db, actor, appointment_id, publisher)


@router.put('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.reschedule(db, actor, appointment_id, data.date, data.time, publisher)


@router.put('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: UpdateStatusRequest,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return lifecycle.update_status(db, actor, appointment_id, data.status, publisher)
