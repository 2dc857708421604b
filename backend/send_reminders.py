"""Send reminder notifications for upcoming appointments.

Usage:
    python -m backend.send_reminders [YYYY-MM-DD]
"""
import logging
import sys

from backend.core import config
from backend.database import SessionLocal, ensure_database_ready
from backend.errors import SchedulingError
from backend.services.admin import reminder_target_date, send_appointment_reminders
from backend.utils.dates import normalize_date


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)

    db = SessionLocal()
    try:
        target_date = reminder_target_date(normalize_date(sys.argv[1]) if len(sys.argv) > 1 else None)
        ensure_database_ready()
        sent = send_appointment_reminders(db, target_date)
    except SchedulingError as exc:
        print("Reminder run failed:", exc.message, file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()

    print(f"Sent {sent} reminder(s) for {target_date.isoformat()}.")


if __name__ == "__main__":
    main()
