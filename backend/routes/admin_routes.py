from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_actor, get_event_publisher
from backend.database import ensure_database_ready, get_db
from backend.errors import PermissionDeniedError
from backend.models.user import Actor
from backend.services import admin
from backend.services.notifications import EventPublisher

router = APIRouter(tags=['admin'])


class DeletedUserResponse(BaseModel):
    id: int
    name: str | None = None
    role: str


class ActivityResponse(BaseModel):
    id: int
    type: str
    message: str
    related_id: int | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ReminderRequest(BaseModel):
    target_date: date | None = None


class ReminderResponse(BaseModel):
    target_date: date
    reminders_sent: int


@router.delete('/users/{user_id}', response_model=DeletedUserResponse)
def delete_user(
    user_id: int,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return admin.delete_user(db, actor, user_id, publisher)


@router.get('/activities', response_model=list[ActivityResponse])
def list_activities(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return admin.list_activities(db, actor, limit)


@router.post('/reminders', response_model=ReminderResponse)
def send_reminders(
    data: ReminderRequest,
    actor: Actor = Depends(get_current_actor),
    publisher: EventPublisher = Depends(get_event_publisher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if not actor.is_admin:
        raise PermissionDeniedError('Only admins can send reminders.')

    target_date = admin.reminder_target_date(data.target_date)
    sent = admin.send_appointment_reminders(db, target_date, publisher)
    return ReminderResponse(target_date=target_date, reminders_sent=sent)
