"""Standing weekly availability and its biweekly/monthly cadences."""

from collections import defaultdict
from collections.abc import Iterable
from datetime import date

from teletherapy.scheduling.domain import MonthlyRule, RecurrencePattern

DAY_NAMES = ('Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday')


def day_of_week(value: date) -> int:
    """Day index with 0=Sunday..6=Saturday."""
    return (value.weekday() + 1) % 7


def week_of_month(value: date) -> int:
    """Ordinal of this weekday within its month, 1-based (the 2nd Tuesday is 2)."""
    return (value.day - 1) // 7 + 1


def build_weekly_map(availability_rows: Iterable) -> dict[int, frozenset[str]]:
    """Group availability rows by weekday into sets of slot ids.

    Rows only need ``day_of_week`` and ``time_slot_id`` attributes. Duplicate
    (day, slot) rows collapse.
    """
    grouped: dict[int, set[str]] = defaultdict(set)
    for row in availability_rows:
        if row.day_of_week is None or row.time_slot_id is None:
            continue
        if not 0 <= row.day_of_week <= 6:
            continue
        grouped[row.day_of_week].add(row.time_slot_id)
    return {day: frozenset(slot_ids) for day, slot_ids in grouped.items()}


def weeks_between(reference_date: date, target_date: date) -> int:
    """Whole weeks elapsed from the reference date, counted in 7-day spans."""
    return (target_date - reference_date).days // 7


def pattern_applies(
    pattern: RecurrencePattern,
    reference_date: date | None,
    target_date: date,
    monthly_rule: MonthlyRule = MonthlyRule.DAY_OF_MONTH,
) -> bool:
    pattern = RecurrencePattern(pattern)
    if pattern == RecurrencePattern.WEEKLY:
        return True

    if reference_date is None or target_date < reference_date:
        return False

    if pattern == RecurrencePattern.BIWEEKLY:
        return weeks_between(reference_date, target_date) % 2 == 0

    if MonthlyRule(monthly_rule) == MonthlyRule.WEEK_OF_MONTH:
        return (
            day_of_week(target_date) == day_of_week(reference_date)
            and week_of_month(target_date) == week_of_month(reference_date)
        )

    # A reference on the 31st never falls in a 30-day month; that month is skipped.
    return target_date.day == reference_date.day


def apply_pattern(
    pattern: RecurrencePattern,
    weekly_map: dict[int, frozenset[str]],
    reference_date: date | None,
    target_date: date,
    monthly_rule: MonthlyRule = MonthlyRule.DAY_OF_MONTH,
) -> frozenset[str]:
    if not pattern_applies(pattern, reference_date, target_date, monthly_rule):
        return frozenset()
    return frozenset(weekly_map.get(day_of_week(target_date), frozenset()))
