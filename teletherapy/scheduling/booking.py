"""Atomic check-then-create for appointments, plus the appointment state machine.

A booking re-reads the therapist's schedule inside its own transaction,
re-runs the conflict detector, then claims the schedule version with a
conditional update before inserting. Two writers that read the same version
cannot both claim it, and the unique ``booking_key`` rejects a second insert
of the identical window. A failed claim only means the schedule moved, so
the loser re-reads it and is judged against the fresh state: an overlapping
appointment or a closed slot is surfaced as such, and a window that is still
open is claimed again against the new version.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.core import config
from teletherapy.database import generate_id
from teletherapy.models.appointment import Appointment
from teletherapy.scheduling.conflicts import BookingCandidate, ConflictDetector, Verdict
from teletherapy.scheduling.domain import TERMINAL_STATUSES, AppointmentStatus, PaymentStatus, SessionType
from teletherapy.scheduling.errors import (
    BookingConflictError,
    BookingValidationError,
    ConflictKind,
    StoreUnavailableError,
)
from teletherapy.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}),
}

CLAIM_ATTEMPTS = 3

LOST_RACE_MESSAGE = 'This time has just been booked. Please pick another time.'

ConflictHandler = Callable[[BookingCandidate, Verdict], None]


def build_booking_key(therapist_id: str, scheduled_for: datetime, duration_minutes: int) -> str:
    return f'{therapist_id}:{scheduled_for.isoformat()}:{duration_minutes}'


def channel_for(appointment_id: str) -> str:
    return f'therapy_session_{appointment_id}'


def validate_booking_window(start: datetime, duration_minutes: int, now: datetime) -> None:
    if start < now:
        raise BookingValidationError('Cannot book appointments in the past.')

    if start < now + timedelta(hours=config.MIN_ADVANCE_BOOKING_HOURS):
        raise BookingValidationError(
            f'Appointments must be booked at least {config.MIN_ADVANCE_BOOKING_HOURS} hours in advance.'
        )

    if start > now + timedelta(days=config.MAX_ADVANCE_BOOKING_DAYS):
        raise BookingValidationError(
            f'Appointments cannot be booked more than {config.MAX_ADVANCE_BOOKING_DAYS} days in advance.'
        )

    if duration_minutes > config.MAX_SESSION_MINUTES:
        raise BookingValidationError(f'Duration cannot exceed {config.MAX_SESSION_MINUTES} minutes.')


def parse_session_type(value: str | SessionType) -> SessionType:
    try:
        return SessionType(value)
    except ValueError as exc:
        raise BookingValidationError(f'Unknown session type: {value}.') from exc


class BookingTransaction:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.now,
        on_conflict: ConflictHandler | None = None,
    ):
        self.db = db
        self.store = ScheduleStore(db)
        self.clock = clock
        self.on_conflict = on_conflict

    def preview(self, candidate: BookingCandidate) -> Verdict:
        """Read-only verdict for a candidate. Nothing is held or written."""
        try:
            catalog = self.store.load_catalog()
            start, end, _ = candidate.window(catalog)
            validate_booking_window(start, _minutes(start, end), self.clock())
            snapshot = self.store.snapshot(candidate.therapist_id, candidate.date)
        except BookingValidationError as exc:
            return Verdict.reject(ConflictKind.VALIDATION, exc.message)
        except SQLAlchemyError as exc:
            logger.exception('Could not load schedule for therapist %s', candidate.therapist_id)
            raise StoreUnavailableError('Scheduling store is unavailable. Please try again.') from exc

        return ConflictDetector(catalog).evaluate(candidate, snapshot)

    def commit(
        self,
        candidate: BookingCandidate,
        client_id: str,
        session_type: str | SessionType = SessionType.INDIVIDUAL,
        client_notes: str | None = None,
        payment_amount: int = 0,
        payment_currency: str | None = None,
    ) -> Appointment:
        if not client_id:
            raise BookingValidationError('Client ID is required.')
        if payment_amount < 0:
            raise BookingValidationError('Payment amount cannot be negative.')
        session = parse_session_type(session_type)

        try:
            catalog = self.store.load_catalog()
            start, end, slot = candidate.window(catalog)
            duration = _minutes(start, end)
            validate_booking_window(start, duration, self.clock())

            for _ in range(CLAIM_ATTEMPTS):
                snapshot = self.store.snapshot(candidate.therapist_id, candidate.date)
                verdict = ConflictDetector(catalog).evaluate(candidate, snapshot)
                if not verdict.bookable:
                    self.db.rollback()
                    self._report(candidate, verdict)
                    raise BookingConflictError(verdict)
                if self.store.claim_version(candidate.therapist_id, snapshot.version):
                    break
                self.db.rollback()
                logger.info(
                    'Schedule for therapist %s changed during booking; re-checking %s',
                    candidate.therapist_id,
                    candidate.date.isoformat(),
                )
            else:
                raise self._lost_race(candidate)

            appointment_id = generate_id()
            appointment = Appointment(
                id=appointment_id,
                therapist_id=candidate.therapist_id,
                client_id=client_id,
                time_slot_id=slot.id if slot is not None else None,
                scheduled_for=start,
                duration_minutes=duration,
                end_time=end,
                status=AppointmentStatus.PENDING.value,
                session_type=session.value,
                payment_amount=payment_amount,
                payment_currency=payment_currency or config.DEFAULT_CURRENCY,
                payment_status=PaymentStatus.PENDING.value,
                channel_id=channel_for(appointment_id),
                client_notes=client_notes,
                booking_key=build_booking_key(candidate.therapist_id, start, duration),
            )
            self.db.add(appointment)
            self.db.commit()
            self.db.refresh(appointment)
        except BookingValidationError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise self._lost_race(candidate)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception('Booking for therapist %s failed against the store', candidate.therapist_id)
            raise StoreUnavailableError('Scheduling store is unavailable. Please try again.') from exc

        logger.info(
            'Booked appointment %s for therapist %s at %s',
            appointment.id,
            appointment.therapist_id,
            appointment.scheduled_for.isoformat(),
        )
        return appointment

    def _lost_race(self, candidate: BookingCandidate) -> BookingConflictError:
        logger.warning(
            'Lost booking race for therapist %s on %s',
            candidate.therapist_id,
            candidate.date.isoformat(),
        )
        verdict = Verdict.reject(ConflictKind.DOUBLE_BOOKED, LOST_RACE_MESSAGE)
        self._report(candidate, verdict)
        return BookingConflictError(verdict)

    def _report(self, candidate: BookingCandidate, verdict: Verdict) -> None:
        if self.on_conflict is not None and verdict.kind != ConflictKind.VALIDATION:
            self.on_conflict(candidate, verdict)


def _minutes(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def transition(
    appointment: Appointment,
    new_status: str | AppointmentStatus,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Move an appointment to ``new_status``. The caller commits."""
    try:
        target = AppointmentStatus(new_status)
        current = AppointmentStatus(appointment.status)
    except ValueError as exc:
        raise BookingValidationError(f'Unknown appointment status: {new_status}.') from exc

    if current == target == AppointmentStatus.CANCELLED:
        return appointment

    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise BookingValidationError(f'Cannot change appointment from {current.value} to {target.value}.')

    now = now or datetime.now()
    appointment.status = target.value

    if target == AppointmentStatus.CONFIRMED:
        appointment.confirmed_at = now
    elif target == AppointmentStatus.COMPLETED:
        appointment.completed_at = now
    elif target == AppointmentStatus.CANCELLED:
        appointment.cancelled_at = now
        appointment.cancellation_reason = reason
        appointment.booking_key = None

    return appointment


def apply_payment_status(
    appointment: Appointment,
    payment_status: str | PaymentStatus,
    now: datetime | None = None,
) -> Appointment:
    try:
        status = PaymentStatus(payment_status)
    except ValueError as exc:
        raise BookingValidationError(f'Unknown payment status: {payment_status}.') from exc

    appointment.payment_status = status.value
    pending = appointment.status == AppointmentStatus.PENDING.value

    if status == PaymentStatus.PAID and pending:
        transition(appointment, AppointmentStatus.CONFIRMED, now=now)
    elif status == PaymentStatus.FAILED and pending:
        transition(appointment, AppointmentStatus.CANCELLED, reason='Payment failed', now=now)

    return appointment


def can_cancel(appointment: Appointment, role: str, now: datetime | None = None) -> bool:
    if AppointmentStatus(appointment.status) in TERMINAL_STATUSES:
        return appointment.status == AppointmentStatus.CANCELLED.value
    if appointment.status == AppointmentStatus.IN_PROGRESS.value:
        return False
    if role != 'client':
        return True

    now = now or datetime.now()
    notice = timedelta(hours=config.MIN_CANCELLATION_NOTICE_HOURS)
    return appointment.scheduled_for - now >= notice
