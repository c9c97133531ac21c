"""Which slots can be booked with a therapist on a given date.

Resolution order for one date:

1. Apply the recurrence cadence to the weekly map.
2. Find the governing override, if any.
3. ``day_off`` empties the day; ``time_off`` removes its slots;
   ``custom_hours`` replaces the day with its slots.
4. Map ids to catalog entries, dropping ids the catalog no longer offers.
5. Remove slots whose window overlaps a non-cancelled appointment.

Steps 1-4 give the *open* slots; step 5 gives the *available* ones. Nothing
here holds mutable state, so the same snapshot always resolves the same way.
"""

from datetime import date, datetime, timedelta

from teletherapy.scheduling.catalog import TimeSlotCatalog
from teletherapy.scheduling.domain import CatalogSlot, OverrideType, ScheduleSnapshot
from teletherapy.scheduling.overrides import effective_override
from teletherapy.scheduling.recurrence import apply_pattern


class AvailabilityResolver:
    def __init__(self, snapshot: ScheduleSnapshot, catalog: TimeSlotCatalog):
        self.snapshot = snapshot
        self.catalog = catalog

    def base_slot_ids(self, target_date: date) -> frozenset[str]:
        settings = self.snapshot.settings
        return apply_pattern(
            settings.pattern,
            self.snapshot.weekly_map,
            settings.reference_date,
            target_date,
            settings.monthly_rule,
        )

    def open_slot_ids(self, target_date: date) -> frozenset[str]:
        base = self.base_slot_ids(target_date)
        override = effective_override(target_date, self.snapshot.overrides)

        if override is None:
            return base

        if override.type == OverrideType.DAY_OFF:
            return frozenset()

        if override.type == OverrideType.TIME_OFF:
            return base - override.affected_slots

        return frozenset(override.affected_slots)

    def open_slots(self, target_date: date) -> list[CatalogSlot]:
        return self.catalog.ordered(self.open_slot_ids(target_date))

    def is_consumed(self, slot: CatalogSlot, target_date: date) -> bool:
        start, end = slot.window_on(target_date)
        return any(
            appointment.blocks_schedule and appointment.overlaps(start, end)
            for appointment in self.snapshot.appointments
            if appointment.therapist_id == self.snapshot.therapist_id
        )

    def available_slots(self, target_date: date) -> list[CatalogSlot]:
        return [slot for slot in self.open_slots(target_date) if not self.is_consumed(slot, target_date)]

    def available_slots_in_range(self, start_date: date, end_date: date) -> dict[date, list[CatalogSlot]]:
        result: dict[date, list[CatalogSlot]] = {}
        current = start_date
        while current <= end_date:
            result[current] = self.available_slots(current)
            current += timedelta(days=1)
        return result

    def next_available_slot(
        self,
        from_date: date,
        horizon_days: int,
        not_before: datetime | None = None,
    ) -> tuple[date, CatalogSlot] | None:
        for offset in range(horizon_days + 1):
            current = from_date + timedelta(days=offset)
            for slot in self.available_slots(current):
                slot_start, _ = slot.window_on(current)
                if not_before is None or slot_start >= not_before:
                    return current, slot
        return None


def resolve_available_slots(
    target_date: date,
    snapshot: ScheduleSnapshot,
    catalog: TimeSlotCatalog,
) -> list[CatalogSlot]:
    return AvailabilityResolver(snapshot, catalog).available_slots(target_date)
