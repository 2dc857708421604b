import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from backend.database import Base  # noqa: E402
from backend.models import appointment, availability, invoice, notification  # noqa: E402,F401
from backend.models.appointment import Appointment, AppointmentStatus  # noqa: E402
from backend.models.availability import AvailabilityTemplate  # noqa: E402
from backend.models.user import Actor, Role, User  # noqa: E402
from backend.services.notifications import ActivityEvent, EventPublisher, NotificationEvent  # noqa: E402


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    def publish(self, events) -> None:
        self.events.extend(events)

    @property
    def notifications(self) -> list[NotificationEvent]:
        return [event for event in self.events if isinstance(event, NotificationEvent)]

    @property
    def activities(self) -> list[ActivityEvent]:
        return [event for event in self.events if isinstance(event, ActivityEvent)]


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def make_user(db):
    def _make_user(role: Role, name: str, email: str | None = None) -> User:
        user = User(
            email=email or f'{name.lower().replace(" ", ".")}@clinic.test',
            name=name,
            hashed_password='x',
            role=role.value,
        )
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def patient(make_user) -> User:
    return make_user(Role.PATIENT, 'Alice Patient')


@pytest.fixture
def other_patient(make_user) -> User:
    return make_user(Role.PATIENT, 'Bob Patient')


@pytest.fixture
def provider(make_user) -> User:
    return make_user(Role.PROVIDER, 'Smith')


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user(Role.ADMIN, 'Root Admin')


@pytest.fixture
def actor_for():
    def _actor_for(user: User) -> Actor:
        return Actor(user_id=user.id, role=Role(user.role))

    return _actor_for


@pytest.fixture
def add_template(db):
    def _add_template(
        provider_id: int,
        day_of_week: int,
        start: time = time(9, 0),
        end: time = time(17, 0),
        capacity_per_hour: int = 4,
        is_available: bool = True,
    ) -> AvailabilityTemplate:
        template = AvailabilityTemplate(
            provider_id=provider_id,
            day_of_week=day_of_week,
            start_time=start,
            end_time=end,
            capacity_per_hour=capacity_per_hour,
            is_available=is_available,
        )
        db.add(template)
        db.commit()
        return template

    return _add_template


@pytest.fixture
def add_appointment(db):
    def _add_appointment(
        patient_id: int,
        provider_id: int,
        appointment_date: date,
        appointment_time: time,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        appointment_type: str = 'General Checkup',
        reschedule_count: int = 0,
    ) -> Appointment:
        appointment = Appointment(
            patient_id=patient_id,
            provider_id=provider_id,
            date=appointment_date,
            time=appointment_time,
            duration=30,
            type=appointment_type,
            status=status,
            reschedule_count=reschedule_count,
        )
        db.add(appointment)
        db.commit()
        return appointment

    return _add_appointment
