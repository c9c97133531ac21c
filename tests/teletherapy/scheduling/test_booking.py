from datetime import date, datetime, time

import pytest
from sqlalchemy.exc import OperationalError

from teletherapy.models.appointment import Appointment
from teletherapy.models.availability import TherapistSchedule
from teletherapy.scheduling.booking import (
    BookingTransaction,
    apply_payment_status,
    build_booking_key,
    can_cancel,
    transition,
)
from teletherapy.scheduling.conflicts import BookingCandidate, ConflictDetector
from teletherapy.scheduling.errors import (
    BookingConflictError,
    BookingValidationError,
    ConflictKind,
    StoreUnavailableError,
)
from teletherapy.scheduling.store import ScheduleStore

THERAPIST_ID = 'therapist-1'
NOW = datetime(2026, 3, 1, 8, 0)
TUESDAY = date(2026, 3, 3)


def _clock() -> datetime:
    return NOW


def _candidate(slot_id: str = 'slot-09', slot_date: date = TUESDAY, **fields) -> BookingCandidate:
    return BookingCandidate(therapist_id=THERAPIST_ID, date=slot_date, time_slot_id=slot_id, **fields)


def _schedule_version(db) -> int:
    db.expire_all()
    return db.get(TherapistSchedule, THERAPIST_ID).version


def test_commit_creates_pending_appointment(seeded_db) -> None:
    appointment = BookingTransaction(seeded_db, clock=_clock).commit(
        _candidate(),
        client_id='client-1',
        session_type='consultation',
        client_notes='First session',
        payment_amount=25000,
    )

    assert appointment.status == 'pending'
    assert appointment.payment_status == 'pending'
    assert appointment.payment_currency == 'aed'
    assert appointment.session_type == 'consultation'
    assert appointment.scheduled_for == datetime(2026, 3, 3, 9, 0)
    assert appointment.end_time == datetime(2026, 3, 3, 10, 0)
    assert appointment.time_slot_id == 'slot-09'
    assert appointment.channel_id == f'therapy_session_{appointment.id}'
    assert appointment.booking_key == build_booking_key(THERAPIST_ID, datetime(2026, 3, 3, 9, 0), 60)


def test_commit_bumps_schedule_version(seeded_db) -> None:
    before = _schedule_version(seeded_db)

    BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-1')

    assert _schedule_version(seeded_db) == before + 1


def test_commit_custom_time_range(seeded_db) -> None:
    candidate = BookingCandidate(
        therapist_id=THERAPIST_ID,
        date=TUESDAY,
        start_time=time(9, 30),
        duration_minutes=50,
    )

    appointment = BookingTransaction(seeded_db, clock=_clock).commit(candidate, client_id='client-1')

    assert appointment.time_slot_id is None
    assert appointment.duration_minutes == 50
    assert appointment.end_time == datetime(2026, 3, 3, 10, 20)


def test_second_booking_of_same_slot_is_double_booked(seeded_db) -> None:
    reported = []
    BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-1')

    with pytest.raises(BookingConflictError) as exception_info:
        BookingTransaction(
            seeded_db,
            clock=_clock,
            on_conflict=lambda candidate, verdict: reported.append(verdict),
        ).commit(_candidate(), client_id='client-2')

    assert exception_info.value.kind == ConflictKind.DOUBLE_BOOKED
    assert [verdict.kind for verdict in reported] == [ConflictKind.DOUBLE_BOOKED]
    assert seeded_db.query(Appointment).count() == 1


def test_racing_bookings_produce_exactly_one_winner(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    db_a = session_factory()
    db_b = session_factory()
    original_evaluate = ConflictDetector.evaluate
    rival = []

    def evaluate_then_let_rival_commit(self, candidate, snapshot):
        verdict = original_evaluate(self, candidate, snapshot)
        if not rival:
            rival.append('started')
            rival.append(BookingTransaction(db_a, clock=_clock).commit(candidate, client_id='client-a'))
        return verdict

    monkeypatch.setattr(ConflictDetector, 'evaluate', evaluate_then_let_rival_commit)

    try:
        with pytest.raises(BookingConflictError) as exception_info:
            BookingTransaction(db_b, clock=_clock).commit(_candidate(), client_id='client-b')

        assert exception_info.value.kind == ConflictKind.DOUBLE_BOOKED

        db_check = session_factory()
        try:
            appointments = db_check.query(Appointment).all()
            assert [appointment.client_id for appointment in appointments] == ['client-a']
        finally:
            db_check.close()
    finally:
        db_a.close()
        db_b.close()


def test_rival_booking_elsewhere_on_the_day_does_not_block(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    db_a = session_factory()
    db_b = session_factory()
    original_evaluate = ConflictDetector.evaluate
    rival = []

    def evaluate_then_let_rival_commit(self, candidate, snapshot):
        verdict = original_evaluate(self, candidate, snapshot)
        if not rival:
            rival.append('started')
            rival.append(BookingTransaction(db_a, clock=_clock).commit(_candidate('slot-13'), client_id='client-a'))
        return verdict

    monkeypatch.setattr(ConflictDetector, 'evaluate', evaluate_then_let_rival_commit)

    try:
        appointment = BookingTransaction(db_b, clock=_clock).commit(_candidate('slot-09'), client_id='client-b')

        assert appointment.time_slot_id == 'slot-09'

        db_check = session_factory()
        try:
            booked = {row.client_id: row.time_slot_id for row in db_check.query(Appointment).all()}
            assert booked == {'client-a': 'slot-13', 'client-b': 'slot-09'}
            assert db_check.get(TherapistSchedule, THERAPIST_ID).version == 3
        finally:
            db_check.close()
    finally:
        db_a.close()
        db_b.close()



def test_duplicate_booking_key_is_rejected_as_double_booked(seeded_db, make_appointment) -> None:
    start = datetime(2026, 3, 3, 9, 0)
    make_appointment(
        seeded_db,
        start,
        status='cancelled',
        booking_key=build_booking_key(THERAPIST_ID, start, 60),
    )

    with pytest.raises(BookingConflictError) as exception_info:
        BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-2')

    assert exception_info.value.kind == ConflictKind.DOUBLE_BOOKED
    assert seeded_db.query(Appointment).count() == 1


def test_cancelled_booking_frees_the_window(seeded_db) -> None:
    first = BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-1')
    transition(first, 'cancelled', reason='Schedule clash')
    seeded_db.commit()

    second = BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-2')

    assert second.client_id == 'client-2'
    assert first.booking_key is None


def test_unavailable_slot_is_rejected_and_reported(seeded_db) -> None:
    reported = []

    with pytest.raises(BookingConflictError) as exception_info:
        BookingTransaction(
            seeded_db,
            clock=_clock,
            on_conflict=lambda candidate, verdict: reported.append((candidate.therapist_id, verdict.kind)),
        ).commit(_candidate(slot_date=date(2026, 3, 4)), client_id='client-1')

    assert exception_info.value.kind == ConflictKind.NOT_AVAILABLE
    assert reported == [(THERAPIST_ID, ConflictKind.NOT_AVAILABLE)]


@pytest.mark.parametrize(
    ('candidate', 'message'),
    [
        (
            _candidate(slot_date=date(2026, 2, 24)),
            'Cannot book appointments in the past.',
        ),
        (
            _candidate(slot_date=date(2026, 3, 1), slot_id='slot-13'),
            'Appointments must be booked at least 24 hours in advance.',
        ),
        (
            _candidate(slot_date=date(2026, 6, 30)),
            'Appointments cannot be booked more than 90 days in advance.',
        ),
        (
            BookingCandidate(THERAPIST_ID, TUESDAY, start_time=time(9, 0), duration_minutes=601),
            'Duration cannot exceed 600 minutes.',
        ),
    ],
)
def test_booking_window_rules(seeded_db, candidate: BookingCandidate, message: str) -> None:
    with pytest.raises(BookingValidationError) as exception_info:
        BookingTransaction(seeded_db, clock=_clock).commit(candidate, client_id='client-1')

    assert exception_info.value.message == message
    assert seeded_db.query(Appointment).count() == 0


def test_unknown_session_type_is_rejected(seeded_db) -> None:
    with pytest.raises(BookingValidationError) as exception_info:
        BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-1', session_type='massage')

    assert exception_info.value.message == 'Unknown session type: massage.'


def test_preview_is_read_only(seeded_db) -> None:
    before = _schedule_version(seeded_db)

    verdict = BookingTransaction(seeded_db, clock=_clock).preview(_candidate())

    assert verdict.bookable
    assert seeded_db.query(Appointment).count() == 0
    assert _schedule_version(seeded_db) == before


def test_preview_reports_window_violations_as_verdicts(seeded_db) -> None:
    verdict = BookingTransaction(seeded_db, clock=_clock).preview(_candidate(slot_date=date(2026, 2, 24)))

    assert not verdict.bookable
    assert verdict.kind == ConflictKind.VALIDATION


def test_store_failure_is_store_unavailable(seeded_db, monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_claim(self, therapist_id, expected_version):
        raise OperationalError('UPDATE therapist_schedules', {}, Exception('connection refused'))

    monkeypatch.setattr(ScheduleStore, 'claim_version', fail_claim)

    with pytest.raises(StoreUnavailableError) as exception_info:
        BookingTransaction(seeded_db, clock=_clock).commit(_candidate(), client_id='client-1')

    assert exception_info.value.kind == ConflictKind.STORE_UNAVAILABLE
    assert seeded_db.query(Appointment).count() == 0


class TestStateMachine:
    def _appointment(self, status: str = 'pending') -> Appointment:
        return Appointment(
            therapist_id=THERAPIST_ID,
            client_id='client-1',
            scheduled_for=datetime(2026, 3, 3, 9, 0),
            duration_minutes=60,
            end_time=datetime(2026, 3, 3, 10, 0),
            status=status,
            payment_status='pending',
            booking_key='key',
        )

    def test_happy_path_to_completed(self) -> None:
        appointment = self._appointment()

        for status in ('confirmed', 'in_progress', 'completed'):
            transition(appointment, status, now=NOW)

        assert appointment.status == 'completed'
        assert appointment.confirmed_at == NOW
        assert appointment.completed_at == NOW

    @pytest.mark.parametrize(
        ('current', 'target'),
        [
            ('pending', 'in_progress'),
            ('pending', 'no_show'),
            ('completed', 'cancelled'),
            ('no_show', 'confirmed'),
            ('in_progress', 'cancelled'),
        ],
    )
    def test_invalid_transitions_are_rejected(self, current: str, target: str) -> None:
        with pytest.raises(BookingValidationError):
            transition(self._appointment(current), target)

    def test_cancel_records_reason_and_releases_key(self) -> None:
        appointment = self._appointment('confirmed')

        transition(appointment, 'cancelled', reason='Client request', now=NOW)

        assert appointment.status == 'cancelled'
        assert appointment.cancelled_at == NOW
        assert appointment.cancellation_reason == 'Client request'
        assert appointment.booking_key is None

    def test_cancelling_twice_is_a_no_op(self) -> None:
        appointment = self._appointment('cancelled')
        appointment.cancelled_at = NOW

        transition(appointment, 'cancelled', now=datetime(2026, 3, 2, 8, 0))

        assert appointment.cancelled_at == NOW

    def test_paid_confirms_pending_appointment(self) -> None:
        appointment = apply_payment_status(self._appointment(), 'paid', now=NOW)

        assert appointment.status == 'confirmed'
        assert appointment.payment_status == 'paid'

    def test_failed_payment_cancels_pending_appointment(self) -> None:
        appointment = apply_payment_status(self._appointment(), 'failed', now=NOW)

        assert appointment.status == 'cancelled'
        assert appointment.cancellation_reason == 'Payment failed'
        assert appointment.booking_key is None

    def test_refund_is_recorded_without_status_change(self) -> None:
        appointment = apply_payment_status(self._appointment('confirmed'), 'refunded')

        assert appointment.status == 'confirmed'
        assert appointment.payment_status == 'refunded'

    def test_client_cancellation_needs_notice(self) -> None:
        appointment = self._appointment('confirmed')

        assert can_cancel(appointment, 'client', now=datetime(2026, 3, 2, 9, 0))
        assert not can_cancel(appointment, 'client', now=datetime(2026, 3, 2, 9, 1))
        assert can_cancel(appointment, 'therapist', now=datetime(2026, 3, 3, 8, 0))
        assert not can_cancel(self._appointment('completed'), 'admin')
