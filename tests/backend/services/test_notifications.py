import logging
from datetime import date, time

import pytest

from backend.models.notification import Notification, SystemActivity
from backend.services.notifications import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_CONFIRMED,
    ActivityEvent,
    AppointmentContext,
    AuditSink,
    EventPublisher,
    NotificationEvent,
    NotificationSink,
    appointment_events,
    notification_message,
    notification_title,
)

CONTEXT = AppointmentContext(
    appointment_id=7,
    patient_id=1,
    provider_id=2,
    patient_name='Alice Patient',
    provider_name='Smith',
    date=date(2025, 3, 1),
    time=time(10, 0),
)


class _FailingNotificationSink(NotificationSink):
    def notify(self, event: NotificationEvent) -> None:
        raise RuntimeError('smtp down')


class _CollectingAuditSink(AuditSink):
    def __init__(self):
        super().__init__()
        self.recorded = []

    def record_activity(self, event: ActivityEvent) -> None:
        self.recorded.append(event)


@pytest.mark.parametrize(
    ('cancelled_by', 'for_provider', 'expected'),
    [
        ('patient', True, 'Alice Patient has cancelled their appointment scheduled for 2025-03-01 at 10:00'),
        ('provider', False, 'Dr. Smith has cancelled your appointment scheduled for 2025-03-01 at 10:00'),
        ('provider', True, 'You have cancelled the appointment with Alice Patient for 2025-03-01 at 10:00'),
        (
            'admin',
            False,
            'An administrator has cancelled the appointment with Dr. Smith scheduled for 2025-03-01 at 10:00',
        ),
    ],
)
def test_cancel_message_depends_on_who_cancelled(cancelled_by: str, for_provider: bool, expected: str) -> None:
    message = notification_message(APPOINTMENT_CANCELLED, CONTEXT, for_provider, cancelled_by=cancelled_by)

    assert message == expected


def test_unknown_event_types_fall_back_to_generic_text() -> None:
    assert notification_title('SOMETHING_ELSE') == 'System Update'
    assert notification_message('SOMETHING_ELSE', CONTEXT) == 'System has been updated'


def test_appointment_events_address_both_parties_and_the_log() -> None:
    events = appointment_events(APPOINTMENT_CONFIRMED, CONTEXT, 'Appointment confirmed')

    assert [(event.recipient_id, event.title) for event in events[:2]] == [
        (1, 'Appointment Confirmed'),
        (2, 'Appointment Confirmed'),
    ]
    assert events[0].payload['date'] == '2025-03-01'
    assert events[2] == ActivityEvent(APPOINTMENT_CONFIRMED, 'Appointment confirmed', 7)


def test_publisher_logs_sink_failures_and_keeps_delivering(caplog: pytest.LogCaptureFixture) -> None:
    audit_sink = _CollectingAuditSink()
    publisher = EventPublisher(notification_sink=_FailingNotificationSink(), audit_sink=audit_sink)

    with caplog.at_level(logging.ERROR, logger='backend.services.notifications'):
        publisher.publish(appointment_events(APPOINTMENT_CONFIRMED, CONTEXT, 'Appointment confirmed'))

    assert len(audit_sink.recorded) == 1
    failures = [record for record in caplog.records if 'Failed to deliver' in record.getMessage()]
    assert len(failures) == 2


def test_database_sinks_write_inbox_and_activity_rows(session_factory, db, patient) -> None:
    publisher = EventPublisher(
        notification_sink=NotificationSink(session_factory),
        audit_sink=AuditSink(session_factory),
    )

    publisher.publish([
        NotificationEvent('APPOINTMENT_REMINDER', patient.id, 'Appointment Reminder', 'See you soon', 7),
        ActivityEvent('APPOINTMENT_CREATED', 'New appointment scheduled', 7),
    ])

    notification = db.query(Notification).one()
    assert notification.user_id == patient.id
    assert notification.is_read is False
    assert db.query(SystemActivity).one().message == 'New appointment scheduled'
