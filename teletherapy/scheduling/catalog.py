"""Platform-wide catalog of bookable time-of-day windows."""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import time

from teletherapy.scheduling.domain import CatalogSlot
from teletherapy.scheduling.errors import BookingValidationError

TIME_PATTERN = re.compile(r'^\d{2}:\d{2}$')
# Allowed drift between the stored duration and end - start.
DURATION_TOLERANCE_MINUTES = 1


def parse_hhmm(value: str) -> time:
    if not value or not TIME_PATTERN.match(value):
        raise BookingValidationError(f'Time {value!r} must be in HH:MM format.')
    hours, minutes = (int(part) for part in value.split(':'))
    if hours > 23 or minutes > 59:
        raise BookingValidationError(f'Time {value!r} is out of range.')
    return time(hours, minutes)


def minutes_since_midnight(value: time) -> int:
    return value.hour * 60 + value.minute


def format_hhmm(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def _twelve_hour(value: time) -> str:
    period = 'PM' if value.hour >= 12 else 'AM'
    hours = value.hour % 12 or 12
    if value.minute:
        return f'{hours}:{value.minute:02d} {period}'
    return f'{hours} {period}'


def format_display_name(start: time, end: time) -> str:
    """Render a slot window for the UI, e.g. ``9 AM - 9:50 AM``."""
    return f'{_twelve_hour(start)} - {_twelve_hour(end)}'


def validate_time_slot(start_time: str, end_time: str, duration_minutes: int) -> tuple[time, time]:
    if not start_time or not end_time:
        raise BookingValidationError('Start time and end time are required.')

    start = parse_hhmm(start_time)
    end = parse_hhmm(end_time)
    start_minutes = minutes_since_midnight(start)
    end_minutes = minutes_since_midnight(end)

    if start_minutes >= end_minutes:
        raise BookingValidationError('Start time must be before end time.')

    if duration_minutes <= 0:
        raise BookingValidationError('Duration must be positive.')

    if abs((end_minutes - start_minutes) - duration_minutes) > DURATION_TOLERANCE_MINUTES:
        raise BookingValidationError("Duration doesn't match start and end times.")

    return start, end


@dataclass(frozen=True)
class GeneratedSlot:
    start_time: str
    end_time: str
    duration_minutes: int
    display_name: str
    sort_order: int


def generate_standard_slots(
    start_time: str,
    end_time: str,
    interval_minutes: int = 60,
    duration_minutes: int = 60,
) -> list[GeneratedSlot]:
    """Lay out consecutive slots between two times.

    A slot that would run past ``end_time`` is not created. Sort orders are
    spaced by ten so manual slots can be inserted between generated ones.
    """
    if interval_minutes <= 0 or duration_minutes <= 0:
        raise BookingValidationError('Interval and duration must be positive.')

    current = minutes_since_midnight(parse_hhmm(start_time))
    day_end = minutes_since_midnight(parse_hhmm(end_time))

    slots: list[GeneratedSlot] = []
    while current < day_end:
        slot_end = current + duration_minutes
        if slot_end > day_end:
            break

        start_label = format_hhmm(current)
        end_label = format_hhmm(slot_end)
        slots.append(
            GeneratedSlot(
                start_time=start_label,
                end_time=end_label,
                duration_minutes=duration_minutes,
                display_name=format_display_name(parse_hhmm(start_label), parse_hhmm(end_label)),
                sort_order=len(slots) * 10,
            )
        )
        current += interval_minutes

    return slots


class TimeSlotCatalog:
    """Immutable lookup over the slot catalog.

    Missing ids are not errors here: callers treat an unknown id as a slot
    that is no longer offered and drop it.
    """

    def __init__(self, slots: Iterable[CatalogSlot]):
        ordered = sorted(slots, key=lambda slot: (slot.sort_order, slot.start_time, slot.id))
        self._slots = tuple(ordered)
        self._by_id = {slot.id: slot for slot in ordered}
        self._position = {slot.id: index for index, slot in enumerate(ordered)}

    @classmethod
    def from_rows(cls, rows) -> 'TimeSlotCatalog':
        return cls(
            CatalogSlot(
                id=row.id,
                start_time=parse_hhmm(row.start_time),
                end_time=parse_hhmm(row.end_time),
                duration_minutes=row.duration_minutes,
                display_name=row.display_name or format_display_name(
                    parse_hhmm(row.start_time), parse_hhmm(row.end_time)
                ),
                sort_order=row.sort_order or 0,
            )
            for row in rows
        )

    def get_all(self) -> list[CatalogSlot]:
        return list(self._slots)

    def get_by_id(self, slot_id: str) -> CatalogSlot | None:
        return self._by_id.get(slot_id)

    def __contains__(self, slot_id: str) -> bool:
        return slot_id in self._by_id

    def __len__(self) -> int:
        return len(self._slots)

    def ordered(self, slot_ids: Iterable[str]) -> list[CatalogSlot]:
        """Map ids to catalog entries in catalog order, dropping unknown ids."""
        known = {slot_id for slot_id in slot_ids if slot_id in self._by_id}
        return sorted((self._by_id[slot_id] for slot_id in known), key=lambda slot: self._position[slot.id])
