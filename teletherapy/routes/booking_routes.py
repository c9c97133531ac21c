from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import AuthContext, get_auth_context, require_roles
from teletherapy.core import config
from teletherapy.models.appointment import Appointment
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_db, scheduling_http_error
from teletherapy.routes.realtime_routes import report_booking_conflict
from teletherapy.scheduling.booking import BookingTransaction, apply_payment_status, can_cancel, transition
from teletherapy.scheduling.conflicts import BookingCandidate
from teletherapy.scheduling.domain import AppointmentStatus, PaymentStatus, SessionType
from teletherapy.scheduling.errors import SchedulingError

router = APIRouter(tags=['bookings'])

MAX_CLIENT_NOTES_LENGTH = 1000


class CheckBookingRequest(BaseModel):
    therapist_id: str
    date: date
    time_slot_id: str | None = None
    start_time: time | None = None
    duration_minutes: int | None = None
    rendered_at: datetime | None = None

    def to_candidate(self) -> BookingCandidate:
        return BookingCandidate(
            therapist_id=self.therapist_id,
            date=self.date,
            time_slot_id=self.time_slot_id,
            start_time=self.start_time,
            duration_minutes=self.duration_minutes,
            rendered_at=self.rendered_at,
        )


class CreateBookingRequest(CheckBookingRequest):
    client_id: str | None = None
    session_type: SessionType = SessionType.INDIVIDUAL
    client_notes: str | None = None
    payment_amount: int = 0
    payment_currency: str | None = None

    @field_validator('client_notes')
    @classmethod
    def validate_client_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_CLIENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_CLIENT_NOTES_LENGTH} characters or fewer.')

        return normalized

    @field_validator('payment_currency')
    @classmethod
    def validate_payment_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().lower() or None


class VerdictResponse(BaseModel):
    bookable: bool
    kind: str | None = None
    message: str | None = None
    conflicting_appointment_ids: list[str] = []


class UpdateStatusRequest(BaseModel):
    status: AppointmentStatus
    reason: str | None = None


class PaymentUpdateRequest(BaseModel):
    payment_status: PaymentStatus


class AppointmentResponse(BaseModel):
    id: str
    therapist_id: str
    client_id: str
    time_slot_id: str | None = None
    scheduled_for: datetime
    duration_minutes: int
    end_time: datetime
    status: str
    session_type: str
    payment_amount: int
    payment_currency: str | None = None
    payment_status: str
    channel_id: str | None = None
    client_notes: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    class Config:
        from_attributes = True


class VideoChannelResponse(BaseModel):
    appointment_id: str
    channel_id: str


def get_participant_appointment(db: Session, appointment_id: str, auth: AuthContext) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if not appointment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Appointment not found.',
        )

    if auth.is_admin or auth.uid in (appointment.client_id, appointment.therapist_id):
        return appointment

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only participants can access this appointment.',
    )


@router.post('/check', response_model=VerdictResponse)
def check_booking(
    data: CheckBookingRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        verdict = BookingTransaction(db).preview(data.to_candidate())
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc

    return VerdictResponse(
        bookable=verdict.bookable,
        kind=verdict.kind.value if verdict.kind else None,
        message=verdict.message,
        conflicting_appointment_ids=list(verdict.conflicting_appointment_ids),
    )


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    auth: AuthContext = Depends(require_roles('client', 'admin')),
    db: Session = Depends(get_db),
):
    if auth.role == 'client':
        if data.client_id and data.client_id != auth.uid:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Clients can only book appointments for themselves.',
            )
        client_id = auth.uid
    else:
        client_id = data.client_id
        if not client_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Client ID is required.',
            )

    ensure_database_ready()

    transaction = BookingTransaction(db, on_conflict=report_booking_conflict)
    try:
        return transaction.commit(
            data.to_candidate(),
            client_id=client_id,
            session_type=data.session_type,
            client_notes=data.client_notes,
            payment_amount=data.payment_amount,
            payment_currency=data.payment_currency,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_bookings(
    include_past: bool = Query(default=False),
    auth: AuthContext = Depends(require_roles('client', 'therapist')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        owner_column = Appointment.client_id if auth.role == 'client' else Appointment.therapist_id
        query = db.query(Appointment).filter(owner_column == auth.uid)
        if not include_past:
            query = query.filter(Appointment.end_time > datetime.now())

        return query.order_by(Appointment.scheduled_for.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{appointment_id}/status', response_model=AppointmentResponse)
def update_booking_status(
    appointment_id: str,
    data: UpdateStatusRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_participant_appointment(db, appointment_id, auth)

        if auth.role == 'client':
            if data.status != AppointmentStatus.CANCELLED:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail='Clients can only cancel their appointments.',
                )
            if not can_cancel(appointment, auth.role):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f'Appointments can only be cancelled at least {config.MIN_CANCELLATION_NOTICE_HOURS} hours in advance.',
                )

        try:
            transition(appointment, data.status, reason=data.reason)
        except SchedulingError as exc:
            raise scheduling_http_error(exc) from exc

        db.commit()
        db.refresh(appointment)

        return appointment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/payment', response_model=AppointmentResponse)
def update_payment_status(
    appointment_id: str,
    data: PaymentUpdateRequest,
    auth: AuthContext = Depends(require_roles('admin')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_participant_appointment(db, appointment_id, auth)

        try:
            apply_payment_status(appointment, data.payment_status)
        except SchedulingError as exc:
            raise scheduling_http_error(exc) from exc

        db.commit()
        db.refresh(appointment)

        return appointment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{appointment_id}/video-channel', response_model=VideoChannelResponse)
def get_video_channel(
    appointment_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_participant_appointment(db, appointment_id, auth)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if appointment.status == AppointmentStatus.CANCELLED.value or not appointment.channel_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This appointment has no video session.',
        )

    return VideoChannelResponse(appointment_id=appointment.id, channel_id=appointment.channel_id)
