from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import AuthContext, ensure_can_manage, get_auth_context
from teletherapy.core import config
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_db
from teletherapy.routes.realtime_routes import report_stranded_appointments
from teletherapy.scheduling.domain import CatalogSlot, MonthlyRule, RecurrencePattern
from teletherapy.scheduling.realtime import PATTERN_CONFLICT
from teletherapy.scheduling.recurrence import DAY_NAMES, build_weekly_map
from teletherapy.scheduling.resolver import AvailabilityResolver
from teletherapy.scheduling.store import ScheduleStore

router = APIRouter(tags=['availability'])

MAX_CALENDAR_DAYS = 31
NEXT_SLOT_HORIZON_DAYS = 60


class WeeklyPatternRequest(BaseModel):
    pattern: RecurrencePattern = RecurrencePattern.WEEKLY
    reference_date: date | None = None
    monthly_rule: MonthlyRule = MonthlyRule.DAY_OF_MONTH
    days: dict[int, list[str]]

    @field_validator('days')
    @classmethod
    def validate_days(cls, value: dict[int, list[str]]) -> dict[int, list[str]]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError('day_of_week must be between 0 (Sunday) and 6 (Saturday).')
        return {day: sorted({slot_id.strip() for slot_id in slot_ids if slot_id.strip()}) for day, slot_ids in value.items()}

    @model_validator(mode='after')
    def validate_reference_date(self) -> 'WeeklyPatternRequest':
        if self.pattern != RecurrencePattern.WEEKLY and self.reference_date is None:
            raise ValueError(f'A reference date is required for {self.pattern.value} schedules.')
        return self


class WeeklyDayResponse(BaseModel):
    day_of_week: int
    day_name: str
    time_slot_ids: list[str]


class WeeklyPatternResponse(BaseModel):
    therapist_id: str
    pattern: str
    reference_date: date | None = None
    monthly_rule: str
    version: int
    days: list[WeeklyDayResponse]
    stranded_appointment_ids: list[str] = []


class AvailableSlotResponse(BaseModel):
    time_slot_id: str
    date: date
    start_time: str
    end_time: str
    duration_minutes: int
    display_name: str
    scheduled_for: datetime


class DaySlotsResponse(BaseModel):
    therapist_id: str
    date: date
    rendered_at: datetime
    slots: list[AvailableSlotResponse]


def to_slot_response(slot: CatalogSlot, slot_date: date) -> AvailableSlotResponse:
    start, _ = slot.window_on(slot_date)
    return AvailableSlotResponse(
        time_slot_id=slot.id,
        date=slot_date,
        start_time=slot.start_label,
        end_time=slot.end_label,
        duration_minutes=slot.duration_minutes,
        display_name=slot.display_name,
        scheduled_for=start,
    )


def build_weekly_response(store: ScheduleStore, therapist_id: str) -> WeeklyPatternResponse:
    weekly_map = build_weekly_map(store.weekly_rows(therapist_id))
    schedule = store.schedule_row(therapist_id)
    catalog = store.load_catalog()

    return WeeklyPatternResponse(
        therapist_id=therapist_id,
        pattern=schedule.pattern if schedule else RecurrencePattern.WEEKLY.value,
        reference_date=schedule.reference_date if schedule else None,
        monthly_rule=schedule.monthly_rule if schedule else MonthlyRule.DAY_OF_MONTH.value,
        version=schedule.version if schedule else 0,
        days=[
            WeeklyDayResponse(
                day_of_week=day,
                day_name=DAY_NAMES[day],
                time_slot_ids=[slot.id for slot in catalog.ordered(weekly_map[day])],
            )
            for day in sorted(weekly_map)
        ],
    )


def resolve_days(db: Session, therapist_id: str, start_date: date, days: int) -> list[DaySlotsResponse]:
    rendered_at = datetime.now()
    end_date = start_date + timedelta(days=days - 1)
    store = ScheduleStore(db)
    resolver = AvailabilityResolver(store.snapshot(therapist_id, start_date, end_date), store.load_catalog())

    return [
        DaySlotsResponse(
            therapist_id=therapist_id,
            date=slot_date,
            rendered_at=rendered_at,
            slots=[to_slot_response(slot, slot_date) for slot in slots],
        )
        for slot_date, slots in resolver.available_slots_in_range(start_date, end_date).items()
    ]


@router.get('/{therapist_id}/weekly', response_model=WeeklyPatternResponse)
def get_weekly_pattern(therapist_id: str, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return build_weekly_response(ScheduleStore(db), therapist_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{therapist_id}/weekly', response_model=WeeklyPatternResponse)
def replace_weekly_pattern(
    therapist_id: str,
    data: WeeklyPatternRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_can_manage(auth, therapist_id)
    ensure_database_ready()

    try:
        store = ScheduleStore(db)
        catalog = store.load_catalog()
        unknown = sorted({slot_id for slot_ids in data.days.values() for slot_id in slot_ids if slot_id not in catalog})
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'Unknown time slots: {", ".join(unknown)}.',
            )

        store.replace_weekly_pattern(
            therapist_id,
            data.days,
            data.pattern,
            data.reference_date,
            data.monthly_rule,
        )
        db.commit()

        response = build_weekly_response(store, therapist_id)
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='The schedule was changed from another session. Reload and try again.',
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    today = date.today()
    response.stranded_appointment_ids = report_stranded_appointments(
        store,
        therapist_id,
        today,
        today + timedelta(days=config.MAX_ADVANCE_BOOKING_DAYS),
        kind=PATTERN_CONFLICT,
        source='Weekly pattern update',
    )
    return response


@router.get('/{therapist_id}/slots', response_model=DaySlotsResponse)
def list_available_slots(
    therapist_id: str,
    slot_date: date = Query(alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return resolve_days(db, therapist_id, slot_date, 1)[0]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{therapist_id}/calendar', response_model=list[DaySlotsResponse])
def list_calendar(
    therapist_id: str,
    start: date | None = Query(default=None),
    days: int = Query(default=14, ge=1, le=MAX_CALENDAR_DAYS),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return resolve_days(db, therapist_id, start or date.today(), days)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{therapist_id}/next', response_model=AvailableSlotResponse)
def get_next_available_slot(
    therapist_id: str,
    horizon_days: int = Query(default=NEXT_SLOT_HORIZON_DAYS, ge=1, le=config.MAX_ADVANCE_BOOKING_DAYS),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        not_before = datetime.now() + timedelta(hours=config.MIN_ADVANCE_BOOKING_HOURS)
        start_date = not_before.date()
        end_date = start_date + timedelta(days=horizon_days)
        store = ScheduleStore(db)
        resolver = AvailabilityResolver(store.snapshot(therapist_id, start_date, end_date), store.load_catalog())
        found = resolver.next_available_slot(start_date, horizon_days, not_before=not_before)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if found is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='No availability found.',
        )

    slot_date, slot = found
    return to_slot_response(slot, slot_date)
