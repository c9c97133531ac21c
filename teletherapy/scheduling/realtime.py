"""Fan-out of schedule changes and conflicts to live clients.

The bridge is not a source of truth. It relays committed changes from a
change source to subscriptions, keeps short bounded histories of events,
conflicts and notifications, and reports its own connection state.
Subscriptions are explicit handles owned by whoever opened them.
"""

import asyncio
import itertools
import logging
import random
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from teletherapy.core import config
from teletherapy.scheduling.change_feed import ChangeEvent

logger = logging.getLogger(__name__)

OVERRIDE_CONFLICT = 'OVERRIDE_CONFLICT'
PATTERN_CONFLICT = 'PATTERN_CONFLICT'
RECOVERABLE_ERRORS = (ConnectionError, OSError, SQLAlchemyError)

_ids = itertools.count(1)


def _next_id(prefix: str) -> str:
    return f'{prefix}_{next(_ids)}'


class ConnectionState(str, Enum):
    CONNECTED = 'connected'
    DISCONNECTED = 'disconnected'
    RECONNECTING = 'reconnecting'


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    last_seen: datetime | None = None

    @property
    def is_online(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def as_dict(self) -> dict:
        return {
            'state': self.state.value,
            'is_online': self.is_online,
            'reconnect_attempts': self.reconnect_attempts,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None,
        }


@dataclass(frozen=True)
class Notification:
    id: str
    type: str  # info/success/warning/error
    title: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    dismissed: bool = False
    auto_hide: bool = False
    duration: float | None = None
    priority: str = 'normal'


@dataclass(frozen=True)
class ConflictRecord:
    id: str
    kind: str
    involved_appointment_ids: tuple[str, ...]
    detected_at: datetime
    message: str = ''
    therapist_id: str | None = None
    resolved: bool = False


class _Closed:
    pass


_CLOSED = _Closed()


class Subscription:
    """A live feed of matching change events.

    Iterate it with ``async for``; close it with ``close()`` or by using it as
    a (async) context manager. When the queue is full the oldest event is
    dropped.
    """

    def __init__(self, bridge: 'RealtimeBridge', kinds: Iterable[str] | None, therapist_id: str | None, maxsize: int):
        self._bridge = bridge
        self.kinds = frozenset(kinds) if kinds else None
        self.therapist_id = therapist_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def matches(self, change: ChangeEvent) -> bool:
        if self.kinds is not None and change.kind not in self.kinds:
            return False
        return self.therapist_id is None or change.therapist_id == self.therapist_id

    def _offer(self, item) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> ChangeEvent:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            raise asyncio.QueueEmpty
        return item

    async def get(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bridge._unsubscribe(self)
        self._offer(_CLOSED)

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def __aenter__(self) -> 'Subscription':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


ChangeSource = Callable[[], AsyncIterator[ChangeEvent]]


class RealtimeBridge:
    def __init__(
        self,
        max_recent_events: int = config.REALTIME_MAX_RECENT_EVENTS,
        max_conflicts: int = config.REALTIME_MAX_CONFLICTS,
        max_notifications: int = config.REALTIME_MAX_NOTIFICATIONS,
        queue_size: int = config.REALTIME_SUBSCRIPTION_QUEUE_SIZE,
        notification_duration: float = config.NOTIFICATION_DURATION_SECONDS,
        reconnect_base_seconds: float = config.REALTIME_RECONNECT_BASE_SECONDS,
        reconnect_max_seconds: float = config.REALTIME_RECONNECT_MAX_SECONDS,
        max_reconnect_attempts: int = config.REALTIME_MAX_RECONNECT_ATTEMPTS,
    ):
        self.queue_size = queue_size
        self.notification_duration = notification_duration
        self.reconnect_base_seconds = reconnect_base_seconds
        self.reconnect_max_seconds = reconnect_max_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self.max_conflicts = max_conflicts
        self.max_notifications = max_notifications

        self._recent_events: deque[ChangeEvent] = deque(maxlen=max_recent_events)
        self._conflicts: list[ConflictRecord] = []
        self._notifications: list[Notification] = []
        self._subscriptions: list[Subscription] = []
        self._status = ConnectionStatus()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped = False

    # Subscriptions

    def subscribe(self, kinds: Iterable[str] | None = None, therapist_id: str | None = None) -> Subscription:
        self._bind_running_loop()
        subscription = Subscription(self, kinds, therapist_id, self.queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # Events

    def publish(self, change: ChangeEvent) -> None:
        """Fan a change out to subscribers. Callable from any thread."""
        if self._loop is not None and not self._loop.is_closed() and self._running_loop() is not self._loop:
            self._loop.call_soon_threadsafe(self._dispatch, change)
            return
        self._dispatch(change)

    def _dispatch(self, change: ChangeEvent) -> None:
        self._recent_events.appendleft(change)
        for subscription in list(self._subscriptions):
            if subscription.matches(change):
                subscription._offer(change)

        if change.kind == 'appointment' and change.action == 'created':
            self.add_notification('success', 'New Appointment', 'A new appointment has been scheduled', auto_hide=True)
        elif change.kind == 'appointment' and change.action == 'updated':
            self.add_notification('info', 'Appointment Updated', 'An appointment has been modified', auto_hide=True)

    def recent_events(self) -> list[ChangeEvent]:
        return list(self._recent_events)

    # Conflicts

    def report_conflict(
        self,
        kind: str,
        appointment_ids: Iterable[str] = (),
        message: str = '',
        therapist_id: str | None = None,
    ) -> ConflictRecord:
        record = ConflictRecord(
            id=_next_id('conflict'),
            kind=kind,
            involved_appointment_ids=tuple(appointment_ids),
            detected_at=datetime.now(),
            message=message,
            therapist_id=therapist_id,
        )
        self._conflicts = [record, *self._conflicts][: self.max_conflicts]
        self.add_notification(
            'warning',
            'Booking Conflict Detected',
            message or 'Please review the conflict and take action',
            priority='high',
        )
        return record

    def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        return next((record for record in self._conflicts if record.id == conflict_id), None)

    def resolve_conflict(self, conflict_id: str) -> ConflictRecord | None:
        for index, record in enumerate(self._conflicts):
            if record.id == conflict_id:
                self._conflicts[index] = replace(record, resolved=True)
                return self._conflicts[index]
        return None

    def clear_resolved_conflicts(self, therapist_id: str | None = None) -> None:
        """Drop resolved records, only the given therapist's when one is named."""
        self._conflicts = [
            record
            for record in self._conflicts
            if not record.resolved or (therapist_id is not None and record.therapist_id != therapist_id)
        ]

    def conflicts(self) -> list[ConflictRecord]:
        return list(self._conflicts)

    def active_conflicts(self) -> list[ConflictRecord]:
        return [record for record in self._conflicts if not record.resolved]

    # Notifications

    def add_notification(
        self,
        type: str,
        title: str,
        message: str,
        auto_hide: bool = False,
        duration: float | None = None,
        priority: str = 'normal',
    ) -> Notification:
        notification = Notification(
            id=_next_id('notification'),
            type=type,
            title=title,
            message=message,
            auto_hide=auto_hide,
            duration=duration,
            priority=priority,
        )
        self._notifications = [notification, *self._notifications][: self.max_notifications]

        if auto_hide:
            loop = self._running_loop()
            if loop is not None:
                loop.call_later(duration or self.notification_duration, self.dismiss_notification, notification.id)

        return notification

    def dismiss_notification(self, notification_id: str) -> bool:
        for index, notification in enumerate(self._notifications):
            if notification.id == notification_id:
                self._notifications[index] = replace(notification, dismissed=True)
                return True
        return False

    def clear_notifications(self) -> None:
        self._notifications = []

    def notifications(self, include_dismissed: bool = False) -> list[Notification]:
        if include_dismissed:
            return list(self._notifications)
        return [notification for notification in self._notifications if not notification.dismissed]

    # Connection

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def _set_status(self, state: ConnectionState, attempts: int) -> None:
        was_online = self._status.is_online
        self._status = ConnectionStatus(state=state, reconnect_attempts=attempts, last_seen=datetime.now())

        if was_online and not self._status.is_online:
            self.add_notification('warning', 'Connection Lost', 'Attempting to reconnect...')
        elif not was_online and self._status.is_online and attempts:
            self.add_notification('success', 'Connected', 'Real-time updates restored', auto_hide=True, duration=3.0)

    def reconnect_delay(self, attempt: int) -> float:
        exponential = self.reconnect_base_seconds * (2 ** min(attempt, 5))
        return min(exponential + random.uniform(0, self.reconnect_base_seconds), self.reconnect_max_seconds)

    async def run(self, source: ChangeSource) -> None:
        """Relay ``source`` until it ends, the bridge stops, or reconnects run out."""
        self._loop = asyncio.get_running_loop()
        attempts = 0

        while not self._stopped:
            try:
                self._set_status(ConnectionState.CONNECTED, attempts)
                async for change in source():
                    if attempts:
                        attempts = 0
                        self._status = replace(self._status, reconnect_attempts=0)
                    self._dispatch(change)
                    if self._stopped:
                        break
                return
            except RECOVERABLE_ERRORS as exc:
                attempts += 1
                logger.warning('Realtime change source lost (attempt %d): %s', attempts, exc)
                self._set_status(ConnectionState.DISCONNECTED, attempts)

                if attempts > self.max_reconnect_attempts:
                    logger.error('Realtime bridge giving up after %d reconnect attempts', attempts - 1)
                    return

                self._set_status(ConnectionState.RECONNECTING, attempts)
                await asyncio.sleep(self.reconnect_delay(attempts))

    def stop(self) -> None:
        self._stopped = True
        for subscription in list(self._subscriptions):
            subscription.close()
        self._set_status(ConnectionState.DISCONNECTED, 0)

    def _bind_running_loop(self) -> None:
        loop = self._running_loop()
        if loop is not None and self._loop is None:
            self._loop = loop

    @staticmethod
    def _running_loop() -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None
