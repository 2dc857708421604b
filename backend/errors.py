"""Error taxonomy for the scheduling core.

Every error carries the HTTP status it maps to so the application can render
it without the service layer knowing about FastAPI.
"""

from datetime import date, time

from fastapi import status


class SchedulingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed input, raised before any write."""
    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN


class RescheduleLimitExceededError(PermissionDeniedError):
    def __init__(self, appointment_id: int, limit: int):
        super().__init__(
            f'As a patient, you can only reschedule appointment #{appointment_id} {limit} time(s).'
        )
        self.appointment_id = appointment_id
        self.limit = limit


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class SlotUnavailableError(SchedulingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, provider_id: int, slot_date: date, slot_time: time):
        super().__init__(
            f'Time slot {slot_date.isoformat()} {slot_time.strftime("%H:%M")} '
            f'is not available for provider #{provider_id}.'
        )
        self.provider_id = provider_id
        self.slot_date = slot_date
        self.slot_time = slot_time


class InvalidTransitionError(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class StorageError(SchedulingError):
    """Transaction or commit failure; the caller may retry."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
