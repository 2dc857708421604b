from datetime import date, datetime, time

from backend.errors import ValidationError


def normalize_date(value: date | datetime | str) -> date:
    """Reduce a date-like value to a calendar date, dropping any time part."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        candidate = value.strip().split('T', 1)[0].split(' ', 1)[0]
        try:
            return date.fromisoformat(candidate)
        except ValueError as exc:
            raise ValidationError(f'Invalid date: {value!r}. Expected YYYY-MM-DD.') from exc
    raise ValidationError(f'Invalid date: {value!r}.')


def normalize_time(value: time | datetime | str) -> time:
    """Reduce a time-like value to minute precision with no timezone."""
    if isinstance(value, datetime):
        value = value.time()
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if isinstance(value, str):
        parts = value.strip().split(':')
        try:
            if len(parts) not in (2, 3):
                raise ValueError(value)
            if len(parts) == 3:
                float(parts[2])
            return time(int(parts[0]), int(parts[1]))
        except ValueError as exc:
            raise ValidationError(f'Invalid time: {value!r}. Expected HH:MM.') from exc
    raise ValidationError(f'Invalid time: {value!r}.')


def day_of_week(value: date) -> int:
    """0 = Sunday through 6 = Saturday."""
    return value.isoweekday() % 7


def format_time(value: time) -> str:
    return value.strftime('%H:%M')
