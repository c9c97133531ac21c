"""Date-specific exceptions to a therapist's standing availability.

This is the one place that decides which override governs a date. When
several overrides match, type precedence is::

    day_off > custom_hours > time_off

Within one type an exact-date override beats a recurring one, and then the
most recently created wins.
"""

from collections.abc import Iterable
from datetime import date, datetime

from teletherapy.scheduling.domain import OverrideRule, OverrideType
from teletherapy.scheduling.errors import BookingValidationError
from teletherapy.scheduling.recurrence import day_of_week

TYPE_PRECEDENCE = {
    OverrideType.DAY_OFF: 3,
    OverrideType.CUSTOM_HOURS: 2,
    OverrideType.TIME_OFF: 1,
}

SLOT_BEARING_TYPES = frozenset({OverrideType.TIME_OFF, OverrideType.CUSTOM_HOURS})


def override_matches(override: OverrideRule, target_date: date) -> bool:
    if override.date == target_date:
        return True

    if not override.is_recurring:
        return False

    if day_of_week(override.date) != day_of_week(target_date):
        return False

    if target_date < override.date:
        return False

    return override.recurring_until is None or target_date <= override.recurring_until


def _precedence_key(override: OverrideRule, target_date: date):
    return (
        TYPE_PRECEDENCE[OverrideType(override.type)],
        override.date == target_date,
        override.created_at or datetime.min,
        override.id,
    )


def matching_overrides(target_date: date, overrides: Iterable[OverrideRule]) -> list[OverrideRule]:
    """Every override that touches ``target_date``, governing one first."""
    matches = [override for override in overrides if override_matches(override, target_date)]
    return sorted(matches, key=lambda override: _precedence_key(override, target_date), reverse=True)


def effective_override(target_date: date, overrides: Iterable[OverrideRule]) -> OverrideRule | None:
    matches = matching_overrides(target_date, overrides)
    return matches[0] if matches else None


def validate_override(
    override_type: OverrideType,
    override_date: date,
    affected_slots: Iterable[str] | None,
    is_recurring: bool,
    recurring_until: date | None,
) -> frozenset[str]:
    """Check an override before it is stored and return its normalized slot set."""
    override_type = OverrideType(override_type)
    slots = frozenset(slot_id for slot_id in (affected_slots or ()) if slot_id)

    if override_type in SLOT_BEARING_TYPES and not slots:
        raise BookingValidationError(f'{override_type.value} overrides must list affected slots.')

    if recurring_until is not None:
        if not is_recurring:
            raise BookingValidationError('recurring_until is only valid for recurring overrides.')
        if recurring_until < override_date:
            raise BookingValidationError('recurring_until cannot be before the override date.')

    if override_type == OverrideType.DAY_OFF:
        return frozenset()

    return slots
