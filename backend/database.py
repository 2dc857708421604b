from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend.core import config
from backend.errors import StorageError


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    config.DATABASE_URL,
    echo=config.SQL_ECHO,
    connect_args=_connect_args(config.DATABASE_URL),
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

INACTIVE_STATUS_SQL = "status NOT IN ('rejected', 'cancelled')"

_schema_lock = Lock()
_availability_schema_checked = False
_appointment_schema_checked = False


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit on a clean exit, roll back on every other exit path."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise StorageError('Database unavailable. Verify DATABASE_URL and Postgres credentials.') from exc


def ensure_availability_schema() -> None:
    global _availability_schema_checked

    if _availability_schema_checked:
        return

    with _schema_lock:
        if _availability_schema_checked:
            return

        inspector = inspect(engine)

        if 'availability_templates' not in inspector.get_table_names():
            _availability_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('availability_templates')}
        migration_steps = [
            ('is_available', 'ALTER TABLE availability_templates ADD COLUMN is_available BOOLEAN DEFAULT TRUE'),
            ('updated_at', 'ALTER TABLE availability_templates ADD COLUMN updated_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_availability_provider_day '
                    'ON availability_templates(provider_id, day_of_week)'
                )
            )

        _availability_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('reschedule_count', 'ALTER TABLE appointments ADD COLUMN reschedule_count INTEGER NOT NULL DEFAULT 0'),
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ('updated_at', 'ALTER TABLE appointments ADD COLUMN updated_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_slot '
                    f'ON appointments(provider_id, date, time) WHERE {INACTIVE_STATUS_SQL}'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_provider_date ON appointments(provider_id, date)')
            )

        _appointment_schema_checked = True
