"""Live change subscription over the SQL store.

Session events collect inserts, updates and deletes of availability,
override and appointment rows around each flush and hand them to listeners only
after the transaction commits. A rollback discards them.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from threading import Lock

from sqlalchemy import event, inspect

from teletherapy.models.appointment import Appointment
from teletherapy.models.availability import Availability
from teletherapy.models.schedule_override import ScheduleOverride

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = 'teletherapy_pending_changes'

TRACKED_KINDS = {
    Availability: 'availability',
    ScheduleOverride: 'override',
    Appointment: 'appointment',
}

# Appointments carry client and payment details that stay off the feed.
PUBLISHED_COLUMNS = {
    Appointment: frozenset({
        'id',
        'therapist_id',
        'time_slot_id',
        'scheduled_for',
        'duration_minutes',
        'end_time',
        'status',
    }),
}


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # availability/override/appointment
    action: str  # created/updated/deleted
    therapist_id: str | None
    entity_id: str | None
    payload: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def as_dict(self) -> dict:
        return {
            'kind': self.kind,
            'action': self.action,
            'therapist_id': self.therapist_id,
            'entity_id': self.entity_id,
            'payload': self.payload,
            'timestamp': self.timestamp.isoformat(),
        }


def _serialize(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def row_payload(instance, loaded_only: bool = False) -> dict:
    """Published column values of a mapped instance.

    With ``loaded_only`` nothing is fetched; columns never set on a freshly
    inserted row read as None. Types listed in ``PUBLISHED_COLUMNS`` expose
    only those columns.
    """
    state = inspect(instance)
    published = PUBLISHED_COLUMNS.get(type(instance))
    keys = [attr.key for attr in state.mapper.column_attrs if published is None or attr.key in published]
    if loaded_only:
        values = state.dict
        return {key: _serialize(values.get(key)) for key in keys}
    return {key: _serialize(getattr(instance, key)) for key in keys}


def _change_for(instance, action: str) -> ChangeEvent | None:
    kind = TRACKED_KINDS.get(type(instance))
    if kind is None:
        return None
    payload = row_payload(instance, loaded_only=action == 'created')
    return ChangeEvent(
        kind=kind,
        action=action,
        therapist_id=payload.get('therapist_id'),
        entity_id=payload.get('id'),
        payload=payload,
    )


Listener = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = Lock()

    def attach(self, target) -> None:
        """Register the session hooks on a sessionmaker or Session class."""
        event.listen(target, 'before_flush', self._collect_existing)
        event.listen(target, 'after_flush', self._collect_created)
        event.listen(target, 'after_commit', self._deliver)
        event.listen(target, 'after_soft_rollback', self._discard)

    def detach(self, target) -> None:
        event.remove(target, 'before_flush', self._collect_existing)
        event.remove(target, 'after_flush', self._collect_created)
        event.remove(target, 'after_commit', self._deliver)
        event.remove(target, 'after_soft_rollback', self._discard)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception('Change listener failed for %s %s', change.kind, change.action)

    async def stream(self) -> AsyncIterator[ChangeEvent]:
        """Yield committed changes on the calling event loop until cancelled."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        remove = self.add_listener(lambda change: loop.call_soon_threadsafe(queue.put_nowait, change))
        try:
            while True:
                yield await queue.get()
        finally:
            remove()

    def _collect_existing(self, session, flush_context, instances) -> None:
        # Rows are still present here, so expired attributes can load.
        pending = session.info.setdefault(PENDING_CHANGES_KEY, [])
        for instance in session.dirty:
            if session.is_modified(instance, include_collections=False):
                change = _change_for(instance, 'updated')
                if change is not None:
                    pending.append(change)
        for instance in session.deleted:
            change = _change_for(instance, 'deleted')
            if change is not None:
                pending.append(change)

    def _collect_created(self, session, flush_context) -> None:
        # New rows only have their generated ids once flushed.
        pending = session.info.setdefault(PENDING_CHANGES_KEY, [])
        for instance in session.new:
            change = _change_for(instance, 'created')
            if change is not None:
                pending.append(change)

    def _deliver(self, session) -> None:
        for change in session.info.pop(PENDING_CHANGES_KEY, []):
            self.publish(change)

    def _discard(self, session, previous_transaction) -> None:
        session.info.pop(PENDING_CHANGES_KEY, None)
