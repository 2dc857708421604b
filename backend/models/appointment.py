"""Appointment model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Time, text
from backend.database import Base, INACTIVE_STATUS_SQL


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"


# Statuses that release the slot for other bookings.
INACTIVE_STATUSES = frozenset({AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED})
TERMINAL_STATUSES = frozenset({
    AppointmentStatus.REJECTED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
})


class Appointment(Base):
    """Represents a booked appointment with a provider."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_active_slot",
            "provider_id",
            "date",
            "time",
            unique=True,
            postgresql_where=text(INACTIVE_STATUS_SQL),
            sqlite_where=text(INACTIVE_STATUS_SQL),
        ),
        Index("idx_appointments_provider_date", "provider_id", "date"),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    duration = Column(Integer, nullable=False, default=30)
    type = Column(String, nullable=False)
    status = Column(
        Enum(
            AppointmentStatus,
            native_enum=False,
            length=20,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    notes = Column(Text, nullable=True)
    reschedule_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES
