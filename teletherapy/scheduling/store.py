"""SQLAlchemy access for the scheduling core.

Reads come back as the frozen records in ``domain``; writes never commit, the
caller owns the transaction.
"""

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from teletherapy.models.appointment import Appointment
from teletherapy.models.availability import Availability, TherapistSchedule
from teletherapy.models.schedule_override import ScheduleOverride
from teletherapy.models.time_slot import TimeSlot
from teletherapy.scheduling.catalog import GeneratedSlot, TimeSlotCatalog
from teletherapy.scheduling.domain import (
    AppointmentStatus,
    BookedWindow,
    MonthlyRule,
    OverrideRule,
    OverrideType,
    RecurrencePattern,
    ScheduleSettings,
    ScheduleSnapshot,
)
from teletherapy.scheduling.recurrence import build_weekly_map

logger = logging.getLogger(__name__)


def to_override_rule(row: ScheduleOverride) -> OverrideRule:
    return OverrideRule(
        id=row.id,
        therapist_id=row.therapist_id,
        date=row.date,
        type=OverrideType(row.type),
        affected_slots=frozenset(row.affected_slots or ()),
        reason=row.reason or '',
        is_recurring=bool(row.is_recurring),
        recurring_until=row.recurring_until,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_booked_window(row: Appointment) -> BookedWindow:
    return BookedWindow(
        id=row.id,
        therapist_id=row.therapist_id,
        client_id=row.client_id,
        start=row.scheduled_for,
        duration_minutes=row.duration_minutes,
        status=AppointmentStatus(row.status),
        time_slot_id=row.time_slot_id,
    )


def to_schedule_settings(row: TherapistSchedule | None) -> ScheduleSettings:
    if row is None:
        return ScheduleSettings()
    return ScheduleSettings(
        pattern=RecurrencePattern(row.pattern),
        reference_date=row.reference_date,
        monthly_rule=MonthlyRule(row.monthly_rule),
    )


class ScheduleStore:
    def __init__(self, db: Session):
        self.db = db

    # Catalog

    def load_catalog(self) -> TimeSlotCatalog:
        return TimeSlotCatalog.from_rows(self.db.query(TimeSlot).all())

    def add_time_slots(self, generated: Iterable[GeneratedSlot]) -> list[TimeSlot]:
        existing = {(row.start_time, row.end_time) for row in self.db.query(TimeSlot).all()}
        created: list[TimeSlot] = []
        for slot in generated:
            if (slot.start_time, slot.end_time) in existing:
                continue
            row = TimeSlot(
                start_time=slot.start_time,
                end_time=slot.end_time,
                duration_minutes=slot.duration_minutes,
                display_name=slot.display_name,
                is_standard=True,
                sort_order=slot.sort_order,
            )
            self.db.add(row)
            created.append(row)
        return created

    # Weekly pattern

    def weekly_rows(self, therapist_id: str) -> list[Availability]:
        return self.db.query(Availability).filter(
            Availability.therapist_id == therapist_id,
        ).order_by(Availability.day_of_week.asc()).all()

    def schedule_row(self, therapist_id: str) -> TherapistSchedule | None:
        return self.db.get(TherapistSchedule, therapist_id)

    def replace_weekly_pattern(
        self,
        therapist_id: str,
        weekly: dict[int, Iterable[str]],
        pattern: RecurrencePattern,
        reference_date: date | None,
        monthly_rule: MonthlyRule,
    ) -> list[Availability]:
        """Swap the therapist's standing pattern for a new one, last write wins."""
        for row in self.weekly_rows(therapist_id):
            self.db.delete(row)
        self.db.flush()

        created: list[Availability] = []
        for day, slot_ids in sorted(weekly.items()):
            for slot_id in sorted(set(slot_ids)):
                row = Availability(therapist_id=therapist_id, day_of_week=day, time_slot_id=slot_id)
                self.db.add(row)
                created.append(row)

        schedule = self.schedule_row(therapist_id)
        if schedule is None:
            schedule = TherapistSchedule(therapist_id=therapist_id, version=0)
            self.db.add(schedule)
        schedule.pattern = RecurrencePattern(pattern).value
        schedule.reference_date = reference_date
        schedule.monthly_rule = MonthlyRule(monthly_rule).value
        schedule.version = (schedule.version or 0) + 1
        self.db.flush()

        logger.info(
            'Replaced %s pattern for therapist %s with %d availability rows',
            schedule.pattern,
            therapist_id,
            len(created),
        )
        return created

    # Overrides

    def overrides_between(self, therapist_id: str, start_date: date, end_date: date) -> list[ScheduleOverride]:
        """Overrides that can match any date in [start_date, end_date]."""
        return self.db.query(ScheduleOverride).filter(
            ScheduleOverride.therapist_id == therapist_id,
            or_(
                and_(ScheduleOverride.date >= start_date, ScheduleOverride.date <= end_date),
                and_(
                    ScheduleOverride.is_recurring.is_(True),
                    ScheduleOverride.date <= end_date,
                    or_(
                        ScheduleOverride.recurring_until.is_(None),
                        ScheduleOverride.recurring_until >= start_date,
                    ),
                ),
            ),
        ).order_by(ScheduleOverride.date.asc()).all()

    def list_overrides(self, therapist_id: str, from_date: date | None = None) -> list[ScheduleOverride]:
        query = self.db.query(ScheduleOverride).filter(ScheduleOverride.therapist_id == therapist_id)
        if from_date is not None:
            query = query.filter(
                or_(
                    ScheduleOverride.date >= from_date,
                    and_(
                        ScheduleOverride.is_recurring.is_(True),
                        or_(
                            ScheduleOverride.recurring_until.is_(None),
                            ScheduleOverride.recurring_until >= from_date,
                        ),
                    ),
                )
            )
        return query.order_by(ScheduleOverride.date.asc()).all()

    def get_override(self, override_id: str) -> ScheduleOverride | None:
        return self.db.get(ScheduleOverride, override_id)

    # Appointments

    def appointments_between(self, therapist_id: str, start: datetime, end: datetime) -> list[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            Appointment.scheduled_for < end,
            Appointment.end_time > start,
        ).order_by(Appointment.scheduled_for.asc()).all()

    def get_appointment(self, appointment_id: str) -> Appointment | None:
        return self.db.get(Appointment, appointment_id)

    # Snapshots and versioning

    def snapshot(self, therapist_id: str, start_date: date, end_date: date | None = None) -> ScheduleSnapshot:
        end_date = end_date or start_date
        schedule = self.schedule_row(therapist_id)
        window_start = datetime.combine(start_date, time.min)
        window_end = datetime.combine(end_date + timedelta(days=1), time.min)

        return ScheduleSnapshot(
            therapist_id=therapist_id,
            weekly_map=build_weekly_map(self.weekly_rows(therapist_id)),
            settings=to_schedule_settings(schedule),
            overrides=tuple(to_override_rule(row) for row in self.overrides_between(therapist_id, start_date, end_date)),
            appointments=tuple(
                to_booked_window(row) for row in self.appointments_between(therapist_id, window_start, window_end)
            ),
            version=schedule.version if schedule is not None else None,
        )

    def bump_version(self, therapist_id: str) -> None:
        """Unconditional bump used by availability and override writes."""
        result = self.db.execute(
            update(TherapistSchedule)
            .where(TherapistSchedule.therapist_id == therapist_id)
            .values(version=TherapistSchedule.version + 1)
        )
        if result.rowcount == 0:
            self.db.add(TherapistSchedule(therapist_id=therapist_id, version=1))
        self.db.flush()

    def claim_version(self, therapist_id: str, expected_version: int | None) -> bool:
        """Compare-and-swap on the therapist's schedule version.

        Returns False when another writer moved the version first. When the
        therapist has no schedule row yet, the claim is an insert and a racing
        insert surfaces as an IntegrityError on flush.
        """
        if expected_version is None:
            self.db.add(TherapistSchedule(therapist_id=therapist_id, version=1))
            self.db.flush()
            return True

        result = self.db.execute(
            update(TherapistSchedule)
            .where(
                TherapistSchedule.therapist_id == therapist_id,
                TherapistSchedule.version == expected_version,
            )
            .values(version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
