"""Value types shared by the scheduling core.

The resolver, detector and booking code work on these frozen records rather
than on ORM rows, so a resolution is a pure function of its inputs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum


class OverrideType(str, Enum):
    DAY_OFF = 'day_off'
    TIME_OFF = 'time_off'
    CUSTOM_HOURS = 'custom_hours'


class RecurrencePattern(str, Enum):
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'


class MonthlyRule(str, Enum):
    DAY_OF_MONTH = 'day_of_month'
    WEEK_OF_MONTH = 'week_of_month'


class AppointmentStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    PAID = 'paid'
    REFUNDED = 'refunded'
    FAILED = 'failed'


class SessionType(str, Enum):
    INDIVIDUAL = 'individual'
    GROUP = 'group'
    CONSULTATION = 'consultation'
    FOLLOW_UP = 'follow_up'


@dataclass(frozen=True)
class CatalogSlot:
    """A platform-wide bookable time-of-day window."""

    id: str
    start_time: time
    end_time: time
    duration_minutes: int
    display_name: str
    sort_order: int = 0

    def window_on(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, self.start_time)
        return start, start + timedelta(minutes=self.duration_minutes)

    @property
    def start_label(self) -> str:
        return self.start_time.strftime('%H:%M')

    @property
    def end_label(self) -> str:
        return self.end_time.strftime('%H:%M')


@dataclass(frozen=True)
class OverrideRule:
    id: str
    therapist_id: str
    date: date
    type: OverrideType
    affected_slots: frozenset[str] = frozenset()
    reason: str = ''
    is_recurring: bool = False
    recurring_until: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def changed_at(self) -> datetime | None:
        return self.updated_at or self.created_at


@dataclass(frozen=True)
class BookedWindow:
    """An existing appointment reduced to what conflict checks need."""

    id: str
    therapist_id: str
    start: datetime
    duration_minutes: int
    status: AppointmentStatus
    client_id: str | None = None
    time_slot_id: str | None = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def blocks_schedule(self) -> bool:
        return self.status != AppointmentStatus.CANCELLED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class ScheduleSettings:
    pattern: RecurrencePattern = RecurrencePattern.WEEKLY
    reference_date: date | None = None
    monthly_rule: MonthlyRule = MonthlyRule.DAY_OF_MONTH


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Everything the resolver needs for one therapist, read at one point in time."""

    therapist_id: str
    weekly_map: dict[int, frozenset[str]]
    settings: ScheduleSettings = field(default_factory=ScheduleSettings)
    overrides: tuple[OverrideRule, ...] = ()
    appointments: tuple[BookedWindow, ...] = ()
    # None until the therapist has a schedule row.
    version: int | None = None
