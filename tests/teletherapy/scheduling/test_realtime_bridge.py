import asyncio

import pytest

from teletherapy.scheduling import realtime
from teletherapy.scheduling.change_feed import ChangeEvent
from teletherapy.scheduling.realtime import OVERRIDE_CONFLICT, ConnectionState, RealtimeBridge


def _change(kind: str = 'appointment', action: str = 'created', therapist_id: str = 'therapist-1', entity_id='a1'):
    return ChangeEvent(kind, action, therapist_id, entity_id)


def test_subscription_receives_only_matching_changes() -> None:
    bridge = RealtimeBridge()

    async def scenario():
        with bridge.subscribe(kinds=['override'], therapist_id='therapist-1') as subscription:
            bridge.publish(_change('appointment'))
            bridge.publish(_change('override', therapist_id='therapist-2'))
            bridge.publish(_change('override', entity_id='o1'))
            return [subscription.get_nowait().entity_id for _ in range(subscription.pending())]

    assert asyncio.run(scenario()) == ['o1']
    assert bridge.subscriber_count == 0


def test_full_subscription_drops_oldest_change() -> None:
    bridge = RealtimeBridge(queue_size=2)
    subscription = bridge.subscribe()

    for entity_id in ('a1', 'a2', 'a3'):
        bridge.publish(_change(entity_id=entity_id))

    assert subscription.dropped == 1
    assert [subscription.get_nowait().entity_id for _ in range(2)] == ['a2', 'a3']


def test_closed_subscription_ends_iteration() -> None:
    bridge = RealtimeBridge()

    async def scenario():
        subscription = bridge.subscribe()
        bridge.publish(_change(entity_id='a1'))
        subscription.close()
        return [change.entity_id async for change in subscription]

    assert asyncio.run(scenario()) == ['a1']
    assert bridge.subscriber_count == 0


def test_publish_from_worker_thread_reaches_subscriber() -> None:
    bridge = RealtimeBridge()

    async def scenario():
        async with bridge.subscribe() as subscription:
            await asyncio.to_thread(bridge.publish, _change(entity_id='from-thread'))
            change = await asyncio.wait_for(subscription.get(), timeout=1)
            return change.entity_id

    assert asyncio.run(scenario()) == 'from-thread'


def test_recent_events_are_bounded_newest_first() -> None:
    bridge = RealtimeBridge(max_recent_events=3)

    for entity_id in ('a1', 'a2', 'a3', 'a4'):
        bridge.publish(_change('availability', entity_id=entity_id))

    assert [change.entity_id for change in bridge.recent_events()] == ['a4', 'a3', 'a2']


def test_appointment_changes_raise_notifications() -> None:
    bridge = RealtimeBridge()

    bridge.publish(_change('appointment', 'created'))
    bridge.publish(_change('appointment', 'updated'))
    bridge.publish(_change('override', 'created'))

    assert [notification.title for notification in bridge.notifications()] == [
        'Appointment Updated',
        'New Appointment',
    ]


def test_auto_hide_notification_is_dismissed_after_duration() -> None:
    bridge = RealtimeBridge(notification_duration=0.01)

    async def scenario():
        notification = bridge.add_notification('info', 'Heads up', 'Auto hides', auto_hide=True)
        sticky = bridge.add_notification('error', 'Sticky', 'Stays put')
        await asyncio.sleep(0.05)
        return notification, sticky

    notification, sticky = asyncio.run(scenario())

    assert [item.id for item in bridge.notifications()] == [sticky.id]
    assert [item.id for item in bridge.notifications(include_dismissed=True)] == [sticky.id, notification.id]


def test_notifications_are_bounded_and_clearable() -> None:
    bridge = RealtimeBridge(max_notifications=2)

    for index in range(3):
        bridge.add_notification('info', f'Title {index}', 'Message')

    assert [notification.title for notification in bridge.notifications()] == ['Title 2', 'Title 1']
    assert bridge.dismiss_notification('missing') is False

    bridge.clear_notifications()

    assert bridge.notifications(include_dismissed=True) == []


def test_conflict_lifecycle() -> None:
    bridge = RealtimeBridge(max_conflicts=2)

    first = bridge.report_conflict('DOUBLE_BOOKED', ['a1'], 'Slot taken', therapist_id='therapist-1')
    second = bridge.report_conflict(OVERRIDE_CONFLICT, ['a2', 'a3'], therapist_id='therapist-1')
    third = bridge.report_conflict('STALE_AVAILABILITY', [], 'Schedule changed')

    assert [record.id for record in bridge.conflicts()] == [third.id, second.id]
    assert first.id not in {record.id for record in bridge.conflicts()}
    assert second.involved_appointment_ids == ('a2', 'a3')

    resolved = bridge.resolve_conflict(second.id)

    assert resolved.resolved
    assert [record.id for record in bridge.active_conflicts()] == [third.id]
    assert bridge.resolve_conflict('missing') is None

    bridge.clear_resolved_conflicts()

    assert [record.id for record in bridge.conflicts()] == [third.id]


def test_conflict_raises_high_priority_warning() -> None:
    bridge = RealtimeBridge()

    bridge.report_conflict('DOUBLE_BOOKED', ['a1'])

    notification = bridge.notifications()[0]
    assert notification.title == 'Booking Conflict Detected'
    assert notification.type == 'warning'
    assert notification.priority == 'high'
    assert notification.message == 'Please review the conflict and take action'
    assert not notification.auto_hide


def test_run_reconnects_after_source_failures() -> None:
    bridge = RealtimeBridge(reconnect_base_seconds=0, max_reconnect_attempts=5)
    states = []
    original_set_status = bridge._set_status

    def record_status(state, attempts):
        states.append(state)
        original_set_status(state, attempts)

    bridge._set_status = record_status
    calls = {'count': 0}

    async def flaky_source():
        calls['count'] += 1
        if calls['count'] < 3:
            raise ConnectionError('store went away')
        yield _change('availability', entity_id='after-reconnect')

    asyncio.run(bridge.run(flaky_source))

    assert states == [
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
    ]
    assert bridge.status.is_online
    assert bridge.status.reconnect_attempts == 0
    assert [change.entity_id for change in bridge.recent_events()] == ['after-reconnect']
    titles = [notification.title for notification in bridge.notifications()]
    assert titles.count('Connection Lost') == 2
    assert 'Connected' in titles


def test_run_gives_up_after_max_attempts() -> None:
    bridge = RealtimeBridge(reconnect_base_seconds=0, max_reconnect_attempts=2)
    calls = {'count': 0}

    async def dead_source():
        calls['count'] += 1
        raise OSError('unreachable')
        yield

    asyncio.run(bridge.run(dead_source))

    assert calls['count'] == 3
    assert bridge.status.state == ConnectionState.DISCONNECTED
    assert not bridge.status.is_online


def test_reconnect_delay_backs_off_to_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(realtime.random, 'uniform', lambda low, high: 0)
    bridge = RealtimeBridge(reconnect_base_seconds=1.0, reconnect_max_seconds=30.0)

    assert bridge.reconnect_delay(1) == 2.0
    assert bridge.reconnect_delay(3) == 8.0
    assert bridge.reconnect_delay(10) == 30.0


def test_stop_closes_subscriptions_and_reports_offline() -> None:
    bridge = RealtimeBridge()
    subscription = bridge.subscribe()

    bridge.stop()

    assert subscription.closed
    assert bridge.subscriber_count == 0
    assert bridge.status.state == ConnectionState.DISCONNECTED
