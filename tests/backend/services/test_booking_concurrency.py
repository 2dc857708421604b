import threading
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.database import Base
from backend.errors import SlotUnavailableError
from backend.models.appointment import Appointment
from backend.models.invoice import Invoice
from backend.models.user import Actor, Role, User
from backend.services.booking import book_appointment
from backend.services.notifications import APPOINTMENT_SCHEDULED

BOOKERS = 8


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f'sqlite:///{tmp_path / "race.db"}',
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


def test_concurrent_bookers_get_exactly_one_appointment(file_session_factory, publisher) -> None:
    with file_session_factory() as session:
        provider = User(email='smith@clinic.test', name='Smith', hashed_password='x', role=Role.PROVIDER.value)
        patients = [
            User(email=f'patient{index}@clinic.test', name=f'Patient {index}', hashed_password='x', role=Role.PATIENT.value)
            for index in range(BOOKERS)
        ]
        session.add_all([provider, *patients])
        session.commit()
        provider_id = provider.id
        patient_ids = [patient.id for patient in patients]

    barrier = threading.Barrier(BOOKERS)
    booked, refused, failures = [], [], []

    def book(patient_id: int) -> None:
        with file_session_factory() as session:
            barrier.wait()
            try:
                result = book_appointment(
                    session,
                    Actor(user_id=patient_id, role=Role.PATIENT),
                    patient_id,
                    provider_id,
                    date(2026, 1, 5),
                    time(9, 0),
                    30,
                    'General Checkup',
                    publisher=publisher,
                )
                booked.append(result.appointment.patient_id)
            except SlotUnavailableError as exc:
                refused.append(exc)
            except Exception as exc:  # noqa: BLE001
                failures.append(exc)

    threads = [threading.Thread(target=book, args=(patient_id,)) for patient_id in patient_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert failures == []
    assert len(booked) == 1
    assert len(refused) == BOOKERS - 1
    assert all(exc.status_code == 409 for exc in refused)

    with file_session_factory() as session:
        assert session.query(Appointment).count() == 1
        assert session.query(Invoice).count() == 1
    scheduled = [event for event in publisher.notifications if event.event_type == APPOINTMENT_SCHEDULED]
    assert sorted(event.recipient_id for event in scheduled) == sorted([booked[0], provider_id])
