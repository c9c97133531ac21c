import logging
import uuid
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from teletherapy.core import config

logger = logging.getLogger(__name__)

engine = create_engine(config.DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

def generate_id() -> str:
    return uuid.uuid4().hex


_schema_lock = Lock()
_appointment_schema_checked = False
_schedule_schema_checked = False


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
            ('time_slot_id', 'ALTER TABLE appointments ADD COLUMN time_slot_id VARCHAR'),
            ('channel_id', 'ALTER TABLE appointments ADD COLUMN channel_id VARCHAR'),
            ('booking_key', 'ALTER TABLE appointments ADD COLUMN booking_key VARCHAR'),
            ('cancellation_reason', 'ALTER TABLE appointments ADD COLUMN cancellation_reason VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    logger.info('Adding appointments.%s column', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_booking_key '
                    'ON appointments(booking_key)'
                )
            )
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_therapist_start '
                    'ON appointments(therapist_id, scheduled_for)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_client_start ON appointments(client_id, scheduled_for)')
            )

        _appointment_schema_checked = True


def ensure_schedule_schema() -> None:
    global _schedule_schema_checked

    if _schedule_schema_checked:
        return

    with _schema_lock:
        if _schedule_schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        if 'schedule_overrides' not in table_names or 'availability' not in table_names:
            _schedule_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('schedule_overrides')}
        migration_steps = [
            ('recurring_until', 'ALTER TABLE schedule_overrides ADD COLUMN recurring_until DATE'),
            ('notes', 'ALTER TABLE schedule_overrides ADD COLUMN notes VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    logger.info('Adding schedule_overrides.%s column', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_overrides_therapist_date '
                    'ON schedule_overrides(therapist_id, date)'
                )
            )
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_availability_therapist_day '
                    'ON availability(therapist_id, day_of_week)'
                )
            )

        _schedule_schema_checked = True
