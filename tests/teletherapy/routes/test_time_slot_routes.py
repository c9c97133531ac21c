import os

import pytest
from fastapi import HTTPException

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from teletherapy.auth.dependencies import AuthContext  # noqa: E402
from teletherapy.models.time_slot import TimeSlot  # noqa: E402
from teletherapy.routes.time_slot_routes import (  # noqa: E402
    CreateTimeSlotRequest,
    GenerateTimeSlotsRequest,
    create_time_slot,
    generate_time_slots,
    list_time_slots,
)

ADMIN = AuthContext(uid='admin-1', role='admin')


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('teletherapy.routes.time_slot_routes.ensure_database_ready', lambda: None)


def test_create_time_slot_request_blanks_display_name() -> None:
    request = CreateTimeSlotRequest(start_time='09:00', end_time='10:00', duration_minutes=60, display_name='   ')

    assert request.display_name is None


def test_list_time_slots_orders_by_sort_order(seeded_db) -> None:
    seeded_db.add(TimeSlot(id='early', start_time='08:00', end_time='09:00', duration_minutes=60, sort_order=-5))
    seeded_db.commit()

    slots = list_time_slots(db=seeded_db)

    assert [slot.id for slot in slots] == ['early', 'slot-09', 'slot-10', 'slot-11', 'slot-13']


def test_create_time_slot_fills_display_name(db_session) -> None:
    time_slot = create_time_slot(
        CreateTimeSlotRequest(start_time='14:30', end_time='15:20', duration_minutes=50),
        auth=ADMIN,
        db=db_session,
    )

    assert time_slot.display_name == '2:30 PM - 3:20 PM'
    assert time_slot.is_standard is False


def test_create_time_slot_rejects_duplicate_window(seeded_db) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_time_slot(
            CreateTimeSlotRequest(start_time='09:00', end_time='10:00', duration_minutes=60),
            auth=ADMIN,
            db=seeded_db,
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'A time slot with these times already exists.'


@pytest.mark.parametrize(
    ('start_time', 'end_time', 'duration_minutes', 'error_detail'),
    [
        ('10:00', '09:00', 60, 'Start time must be before end time.'),
        ('09:00', '10:00', 45, "Duration doesn't match start and end times."),
        ('9am', '10:00', 60, "Time '9am' must be in HH:MM format."),
    ],
)
def test_create_time_slot_rejects_invalid_windows(
    db_session,
    start_time: str,
    end_time: str,
    duration_minutes: int,
    error_detail: str,
) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_time_slot(
            CreateTimeSlotRequest(start_time=start_time, end_time=end_time, duration_minutes=duration_minutes),
            auth=ADMIN,
            db=db_session,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == error_detail


def test_generate_time_slots_only_adds_missing_windows(seeded_db) -> None:
    created = generate_time_slots(
        GenerateTimeSlotsRequest(start_time='09:00', end_time='13:00', interval_minutes=60, duration_minutes=60),
        auth=ADMIN,
        db=seeded_db,
    )

    assert [(slot.start_time, slot.end_time) for slot in created] == [('12:00', '13:00')]
    assert seeded_db.query(TimeSlot).count() == 5


def test_generate_time_slots_rejects_non_positive_interval(db_session) -> None:
    with pytest.raises(HTTPException) as exception_info:
        generate_time_slots(
            GenerateTimeSlotsRequest(interval_minutes=0),
            auth=ADMIN,
            db=db_session,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Interval and duration must be positive.'
