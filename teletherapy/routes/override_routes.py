from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import AuthContext, ensure_can_manage, get_auth_context
from teletherapy.core import config
from teletherapy.models.schedule_override import ScheduleOverride
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_db, scheduling_http_error
from teletherapy.routes.realtime_routes import report_stranded_appointments
from teletherapy.scheduling.domain import OverrideType
from teletherapy.scheduling.errors import SchedulingError
from teletherapy.scheduling.overrides import validate_override
from teletherapy.scheduling.realtime import OVERRIDE_CONFLICT
from teletherapy.scheduling.store import ScheduleStore

router = APIRouter(tags=['overrides'])

MAX_REASON_LENGTH = 200


class OverrideRequest(BaseModel):
    therapist_id: str
    date: date
    type: OverrideType
    reason: str = ''
    affected_slots: list[str] = []
    is_recurring: bool = False
    recurring_until: date | None = None
    notes: str | None = None

    @field_validator('therapist_id')
    @classmethod
    def validate_therapist_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Therapist ID is required.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) > MAX_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')
        return normalized


class OverrideResponse(BaseModel):
    id: str
    therapist_id: str
    date: date
    type: str
    reason: str | None = None
    affected_slots: list[str]
    is_recurring: bool
    recurring_until: date | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    stranded_appointment_ids: list[str] = []

    class Config:
        from_attributes = True


def affected_range(override: ScheduleOverride, today: date) -> tuple[date, date] | None:
    """Dates an override can touch from today on, capped at the booking horizon."""
    horizon = today + timedelta(days=config.MAX_ADVANCE_BOOKING_DAYS)
    start = max(override.date, today)
    if override.is_recurring:
        end = min(override.recurring_until or horizon, horizon)
    else:
        end = override.date
    if end < start:
        return None
    return start, end


def report_override_strandings(store: ScheduleStore, override: ScheduleOverride) -> list[str]:
    window = affected_range(override, date.today())
    if window is None:
        return []
    return report_stranded_appointments(
        store,
        override.therapist_id,
        *window,
        kind=OVERRIDE_CONFLICT,
        source=f'Override {override.id}',
    )


def apply_override_fields(override: ScheduleOverride, data: OverrideRequest, store: ScheduleStore) -> None:
    try:
        slots = validate_override(data.type, data.date, data.affected_slots, data.is_recurring, data.recurring_until)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc

    catalog = store.load_catalog()
    unknown = sorted(slot_id for slot_id in slots if slot_id not in catalog)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Unknown time slots: {", ".join(unknown)}.',
        )

    override.therapist_id = data.therapist_id
    override.date = data.date
    override.type = data.type.value
    override.reason = data.reason
    override.affected_slots = sorted(slots)
    override.is_recurring = data.is_recurring
    override.recurring_until = data.recurring_until
    override.notes = data.notes


def to_response(override: ScheduleOverride) -> OverrideResponse:
    return OverrideResponse.model_validate(override)


@router.get('/{therapist_id}', response_model=list[OverrideResponse])
def list_overrides(
    therapist_id: str,
    from_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return ScheduleStore(db).list_overrides(therapist_id, from_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=OverrideResponse, status_code=status.HTTP_201_CREATED)
def create_override(
    data: OverrideRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_can_manage(auth, data.therapist_id)
    ensure_database_ready()

    try:
        store = ScheduleStore(db)
        override = ScheduleOverride()
        apply_override_fields(override, data, store)

        db.add(override)
        store.bump_version(data.therapist_id)
        db.commit()
        db.refresh(override)
        response = to_response(override)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    response.stranded_appointment_ids = report_override_strandings(store, override)
    return response


@router.put('/{override_id}', response_model=OverrideResponse)
def update_override(
    override_id: str,
    data: OverrideRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        store = ScheduleStore(db)
        override = store.get_override(override_id)
        if not override:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Override not found.',
            )

        ensure_can_manage(auth, override.therapist_id)
        if data.therapist_id != override.therapist_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Overrides cannot be moved to another therapist.',
            )
        apply_override_fields(override, data, store)

        store.bump_version(override.therapist_id)
        db.commit()
        db.refresh(override)
        response = to_response(override)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    response.stranded_appointment_ids = report_override_strandings(store, override)
    return response


@router.delete('/{override_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_override(
    override_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        store = ScheduleStore(db)
        override = store.get_override(override_id)
        if not override:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Override not found.',
            )

        ensure_can_manage(auth, override.therapist_id)
        db.delete(override)
        store.bump_version(override.therapist_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
