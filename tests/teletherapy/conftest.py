import os
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from teletherapy.database import Base  # noqa: E402
from teletherapy.models.appointment import Appointment  # noqa: E402
from teletherapy.models.schedule_override import ScheduleOverride  # noqa: E402
from teletherapy.models.time_slot import TimeSlot  # noqa: E402
from teletherapy.scheduling.domain import MonthlyRule, RecurrencePattern  # noqa: E402
from teletherapy.scheduling.store import ScheduleStore  # noqa: E402

THERAPIST_ID = 'therapist-1'

SLOT_TIMES = {
    'slot-09': ('09:00', '10:00'),
    'slot-10': ('10:00', '11:00'),
    'slot-11': ('11:00', '12:00'),
    'slot-13': ('13:00', '14:00'),
}


def _add_catalog(db) -> None:
    for index, (slot_id, (start_time, end_time)) in enumerate(SLOT_TIMES.items()):
        db.add(
            TimeSlot(
                id=slot_id,
                start_time=start_time,
                end_time=end_time,
                duration_minutes=60,
                sort_order=index * 10,
            )
        )


def _add_weekly_pattern(db, therapist_id: str = THERAPIST_ID) -> None:
    ScheduleStore(db).replace_weekly_pattern(
        therapist_id,
        {2: list(SLOT_TIMES), 4: ['slot-09', 'slot-10']},
        RecurrencePattern.WEEKLY,
        None,
        MonthlyRule.DAY_OF_MONTH,
    )


@pytest.fixture
def db_session():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def seeded_db(db_session):
    """Four one-hour slots; therapist-1 works all of them on Tuesdays and 9-11 on Thursdays."""
    _add_catalog(db_session)
    db_session.flush()
    _add_weekly_pattern(db_session)
    db_session.commit()
    return db_session


@pytest.fixture
def session_factory(tmp_path):
    """Sessions on a shared file database, for tests that need two connections."""
    engine = create_engine(f'sqlite:///{tmp_path / "scheduling.db"}')
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = factory()
    try:
        _add_catalog(db)
        db.flush()
        _add_weekly_pattern(db)
        db.commit()
    finally:
        db.close()

    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def make_appointment():
    def make(db, start: datetime, duration_minutes: int = 60, status: str = 'confirmed', **fields) -> Appointment:
        appointment = Appointment(
            therapist_id=fields.pop('therapist_id', THERAPIST_ID),
            client_id=fields.pop('client_id', 'client-1'),
            scheduled_for=start,
            duration_minutes=duration_minutes,
            end_time=start + timedelta(minutes=duration_minutes),
            status=status,
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return make


@pytest.fixture
def make_override():
    def make(db, override_date: date, override_type: str, affected_slots=(), **fields) -> ScheduleOverride:
        override = ScheduleOverride(
            therapist_id=fields.pop('therapist_id', THERAPIST_ID),
            date=override_date,
            type=override_type,
            affected_slots=list(affected_slots),
            **fields,
        )
        db.add(override)
        db.commit()
        db.refresh(override)
        return override

    return make
