from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import AuthContext, require_roles
from teletherapy.core import config
from teletherapy.models.time_slot import TimeSlot
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_db, scheduling_http_error
from teletherapy.scheduling.catalog import format_display_name, generate_standard_slots, validate_time_slot
from teletherapy.scheduling.errors import SchedulingError
from teletherapy.scheduling.store import ScheduleStore

router = APIRouter(tags=['time-slots'])


class TimeSlotResponse(BaseModel):
    id: str
    start_time: str
    end_time: str
    duration_minutes: int
    display_name: str | None = None
    is_standard: bool = True
    sort_order: int = 0

    class Config:
        from_attributes = True


class GenerateTimeSlotsRequest(BaseModel):
    start_time: str = config.SLOT_DAY_START
    end_time: str = config.SLOT_DAY_END
    interval_minutes: int = config.SLOT_INTERVAL_MINUTES
    duration_minutes: int = config.DEFAULT_SESSION_MINUTES


class CreateTimeSlotRequest(BaseModel):
    start_time: str
    end_time: str
    duration_minutes: int
    display_name: str | None = None
    sort_order: int = 0

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


@router.get('', response_model=list[TimeSlotResponse])
def list_time_slots(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(TimeSlot).order_by(TimeSlot.sort_order.asc(), TimeSlot.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=TimeSlotResponse, status_code=status.HTTP_201_CREATED)
def create_time_slot(
    data: CreateTimeSlotRequest,
    auth: AuthContext = Depends(require_roles('admin')),
    db: Session = Depends(get_db),
):
    try:
        start, end = validate_time_slot(data.start_time, data.end_time, data.duration_minutes)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc

    ensure_database_ready()

    try:
        duplicate = db.query(TimeSlot).filter(
            TimeSlot.start_time == data.start_time,
            TimeSlot.end_time == data.end_time,
        ).first()
        if duplicate:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='A time slot with these times already exists.',
            )

        time_slot = TimeSlot(
            start_time=data.start_time,
            end_time=data.end_time,
            duration_minutes=data.duration_minutes,
            display_name=data.display_name or format_display_name(start, end),
            is_standard=False,
            sort_order=data.sort_order,
        )
        db.add(time_slot)
        db.commit()
        db.refresh(time_slot)

        return time_slot
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/generate', response_model=list[TimeSlotResponse], status_code=status.HTTP_201_CREATED)
def generate_time_slots(
    data: GenerateTimeSlotsRequest,
    auth: AuthContext = Depends(require_roles('admin')),
    db: Session = Depends(get_db),
):
    try:
        generated = generate_standard_slots(
            data.start_time,
            data.end_time,
            interval_minutes=data.interval_minutes,
            duration_minutes=data.duration_minutes,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc

    ensure_database_ready()

    try:
        created = ScheduleStore(db).add_time_slots(generated)
        db.commit()
        for time_slot in created:
            db.refresh(time_slot)

        return created
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
