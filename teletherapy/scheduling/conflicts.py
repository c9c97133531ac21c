from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from teletherapy.scheduling.catalog import TimeSlotCatalog
from teletherapy.scheduling.domain import AppointmentStatus, BookedWindow, CatalogSlot, ScheduleSnapshot
from teletherapy.scheduling.errors import BookingValidationError, ConflictKind
from teletherapy.scheduling.overrides import effective_override
from teletherapy.scheduling.resolver import AvailabilityResolver

LIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


@dataclass(frozen=True)
class BookingCandidate:
    """A booking the UI wants to make: a catalog slot, or a start time plus duration."""

    therapist_id: str
    date: date
    time_slot_id: str | None = None
    start_time: time | None = None
    duration_minutes: int | None = None
    rendered_at: datetime | None = None

    def window(self, catalog: TimeSlotCatalog) -> tuple[datetime, datetime, CatalogSlot | None]:
        if not self.therapist_id:
            raise BookingValidationError('Therapist ID is required.')

        if self.time_slot_id:
            slot = catalog.get_by_id(self.time_slot_id)
            if slot is None:
                raise BookingValidationError('Time slot is no longer offered.')
            start, end = slot.window_on(self.date)
            return start, end, slot

        if self.start_time is None or self.duration_minutes is None:
            raise BookingValidationError('Either a time slot or a start time and duration is required.')

        if self.duration_minutes <= 0:
            raise BookingValidationError('Duration must be greater than 0.')

        start = datetime.combine(self.date, self.start_time)
        return start, start + timedelta(minutes=self.duration_minutes), None


@dataclass(frozen=True)
class Verdict:
    bookable: bool
    kind: ConflictKind | None = None
    message: str | None = None
    conflicting_appointment_ids: tuple[str, ...] = ()

    @classmethod
    def accept(cls) -> 'Verdict':
        return cls(bookable=True)

    @classmethod
    def reject(cls, kind: ConflictKind, message: str, appointment_ids=()) -> 'Verdict':
        return cls(bookable=False, kind=kind, message=message, conflicting_appointment_ids=tuple(appointment_ids))

    def as_dict(self) -> dict:
        payload = {'bookable': self.bookable}
        if self.kind is not None:
            payload['kind'] = self.kind.value
        if self.message is not None:
            payload['message'] = self.message
        return payload


def merge_windows(windows: list[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
    merged: list[tuple[datetime, datetime]] = []
    for start, end in sorted(windows):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def range_is_open(start: datetime, end: datetime, open_slots: list[CatalogSlot], target_date: date) -> bool:
    """True when [start, end) lies inside one contiguous run of open slots."""
    windows = merge_windows([slot.window_on(target_date) for slot in open_slots])
    return any(window_start <= start and end <= window_end for window_start, window_end in windows)


class ConflictDetector:
    """Decides whether a candidate booking can be honored against a fresh snapshot.

    Checks run in order (input validation, availability, overlap) and the
    first failure is returned as the verdict.
    """

    def __init__(self, catalog: TimeSlotCatalog):
        self.catalog = catalog

    def evaluate(self, candidate: BookingCandidate, snapshot: ScheduleSnapshot) -> Verdict:
        try:
            start, end, slot = candidate.window(self.catalog)
        except BookingValidationError as exc:
            return Verdict.reject(ConflictKind.VALIDATION, exc.message)

        resolver = AvailabilityResolver(snapshot, self.catalog)
        open_slots = resolver.open_slots(candidate.date)

        if slot is not None:
            is_open = any(open_slot.id == slot.id for open_slot in open_slots)
        else:
            is_open = range_is_open(start, end, open_slots, candidate.date)

        if not is_open:
            return self._unavailable_verdict(candidate, snapshot)

        overlapping = [
            appointment.id
            for appointment in snapshot.appointments
            if appointment.therapist_id == candidate.therapist_id
            and appointment.blocks_schedule
            and appointment.overlaps(start, end)
        ]
        if overlapping:
            return Verdict.reject(
                ConflictKind.DOUBLE_BOOKED,
                'This time has just been booked. Please pick another time.',
                overlapping,
            )

        return Verdict.accept()

    def _unavailable_verdict(self, candidate: BookingCandidate, snapshot: ScheduleSnapshot) -> Verdict:
        override = effective_override(candidate.date, snapshot.overrides)
        if (
            candidate.rendered_at is not None
            and override is not None
            and override.changed_at is not None
            and override.changed_at > candidate.rendered_at
        ):
            return Verdict.reject(
                ConflictKind.STALE_AVAILABILITY,
                "The therapist's schedule changed after this time was shown. Please pick another time.",
            )

        return Verdict.reject(
            ConflictKind.NOT_AVAILABLE,
            'This time is not available for this therapist. Please pick another time.',
        )


def find_stranded_appointments(
    snapshot: ScheduleSnapshot,
    catalog: TimeSlotCatalog,
) -> list[BookedWindow]:
    """Live appointments in the snapshot whose window is no longer open.

    Used after an override or weekly pattern write: the write still lands,
    and the appointments it strands are surfaced for someone to resolve.
    """
    resolver = AvailabilityResolver(snapshot, catalog)
    stranded: list[BookedWindow] = []
    for appointment in snapshot.appointments:
        if appointment.status not in LIVE_STATUSES:
            continue
        appointment_date = appointment.start.date()
        if not range_is_open(appointment.start, appointment.end, resolver.open_slots(appointment_date), appointment_date):
            stranded.append(appointment)
    return stranded
